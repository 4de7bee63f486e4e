"""
kubesetup/utils/async_command_runner.py

Runs the local ssh/scp clients as asyncio subprocesses. `run_command` only
raises when the executable cannot be started; a non-zero exit comes back as
a CommandResult and the caller decides whether that is an error.

Usage example:
    from kubesetup.utils.async_command_runner import run_command

    result = await run_command(["ssh", "-o", "BatchMode=yes", "host", "true"])
    if not result.ok:
        print(f"ssh failed ({result.return_code}): {result.stderr}")
"""

from __future__ import annotations

import asyncio
import os
from typing import Dict, List, Optional

from pydantic import BaseModel


class CommandError(Exception):
    """A local executable could not be launched.

    Attributes:
        return_code (Optional[int]): Exit code, when the process got that far.
    """

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.return_code = return_code


class CommandResult(BaseModel):
    """Captured outcome of one subprocess (local, or remote through ssh)."""

    stdout: str = ""
    stderr: str = ""
    return_code: int

    @property
    def ok(self) -> bool:
        return self.return_code == 0


async def run_command(
    command: List[str],
    *,
    env: Optional[Dict[str, str]] = None,
    input_data: Optional[str] = None,
    new_session: bool = False,
) -> CommandResult:
    """
    Runs `command` (argv, never a shell string) and waits for it.

    Args:
        command (List[str]):
            Executable and arguments.
        env (Optional[Dict[str, str]]):
            Variables layered over the current environment; secrets passed
            here stay out of argv.
        input_data (Optional[str]):
            Written to the child's stdin; stdin is /dev/null otherwise.
        new_session (bool):
            Detach the child from the controlling terminal (like `setsid`),
            which ssh needs before it will consult SSH_ASKPASS.

    Returns:
        CommandResult: stripped stdout/stderr and the exit code.

    Raises:
        CommandError: If the executable could not be started.
    """
    proc_env = {**os.environ, **env} if env else None
    stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
            start_new_session=new_session,
        )
    except OSError as exc:
        raise CommandError(f"Failed to start '{command[0]}': {exc}") from exc

    try:
        out, err = await proc.communicate(input_data.encode() if input_data else None)
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return CommandResult(
        stdout=out.decode(errors="replace").strip(),
        stderr=err.decode(errors="replace").strip(),
        return_code=proc.returncode if proc.returncode is not None else -1,
    )
