"""
kubesetup/utils/ephemeral_file.py

Provides an async context manager yielding a path inside a fresh private
(mode 700) temporary directory. Everything is removed on exit, whether the
body succeeded or not. Used for the locally rendered bundle and for
kubeconfig copies relayed between nodes.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional


@asynccontextmanager
async def ephemeral_file(
    file_name: str,
    *,
    prefix: str = "kubesetup-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Yields `<private tmpdir>/<file_name>`. The file itself is not created.

    Args:
        file_name: Base name of the yielded path.
        prefix: Prefix for the temporary directory name.
        parent_dir: Where to create the directory; the system default if None.

    Yields:
        str: The file path.

    Raises:
        ValueError: If file_name contains a path separator.
    """
    if os.sep in file_name or not file_name:
        raise ValueError(f"file_name must be a bare file name, got '{file_name}'")

    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir, prefix=prefix)
    os.chmod(ephemeral_dir, 0o700)
    try:
        yield os.path.join(ephemeral_dir, file_name)
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
