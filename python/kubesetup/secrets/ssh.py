"""
kubesetup/secrets/ssh.py

Resolves SSH credentials for a run from settings and the invoking user's
home directory:
  - discover_private_key: ~/.ssh/id_ed25519, id_rsa, id_ecdsa (first match),
    using the pre-sudo user's home when run under sudo.
  - check_key_permissions: warn on keys that are not mode 600/400.
  - read_password_file: load a password from a mode-600/400, non-empty file.
  - resolve_credentials: combine all of the above into SessionCredentials.
"""

from __future__ import annotations

import logging
import os
import pwd
import stat
from typing import Optional

import aiofiles
from pydantic import SecretStr

from kubesetup.models.errors import ValidationError
from kubesetup.models.settings import DeploySettings
from kubesetup.models.ssh import HostKeyPolicy, SessionCredentials

logger = logging.getLogger(__name__)

DEFAULT_KEY_NAMES = ("id_ed25519", "id_rsa", "id_ecdsa")
_PRIVATE_MODES = (0o600, 0o400)


def invoking_user_home() -> Optional[str]:
    """Home directory of the user who ran the tool, looking through sudo."""
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user:
        try:
            return pwd.getpwnam(sudo_user).pw_dir
        except KeyError:
            return f"/home/{sudo_user}"
    return os.environ.get("HOME") or None


def discover_private_key(home: Optional[str] = None) -> Optional[str]:
    """
    Returns the first existing default private key under `<home>/.ssh`, or None.
    """
    home = home if home is not None else invoking_user_home()
    if not home:
        return None
    for name in DEFAULT_KEY_NAMES:
        candidate = os.path.join(home, ".ssh", name)
        if os.path.isfile(candidate):
            logger.info("SSH key auto-discovered: %s", candidate)
            return candidate
    return None


def _file_mode(path: str) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


def check_key_permissions(path: str) -> None:
    """
    Raises:
        ValidationError: If the key file does not exist.
    """
    if not os.path.isfile(path):
        raise ValidationError(f"SSH key file not found: {path}")
    mode = _file_mode(path)
    if mode not in _PRIVATE_MODES:
        logger.warning(
            "SSH key %s has permissions %o (expected 600 or 400)", path, mode
        )


async def read_password_file(path: str) -> SecretStr:
    """
    Reads a password from `path`, dropping one trailing newline.

    Raises:
        ValidationError: If the file is missing, readable by others or empty.
    """
    if not os.path.isfile(path):
        raise ValidationError(f"SSH password file not found: {path}")
    mode = _file_mode(path)
    if mode not in _PRIVATE_MODES:
        raise ValidationError(
            f"SSH password file {path} has permissions {mode:o} (must be 600 or 400)"
        )
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        content = await f.read()
    password = content.rstrip("\r\n")
    if not password:
        raise ValidationError(f"SSH password file is empty: {path}")
    return SecretStr(password)


async def resolve_credentials(
    settings: DeploySettings, *, home: Optional[str] = None
) -> SessionCredentials:
    """
    Builds SessionCredentials from settings. A key (explicit or discovered)
    wins over a password; the password is kept but left inactive.

    Args:
        settings: merged environment/CLI settings
        home: overrides the home directory used for key discovery

    Returns:
        SessionCredentials ready for the session and transport.

    Raises:
        ValidationError: On a missing key, bad password file or missing
            known-hosts seed.
    """
    key = settings.ssh_key or discover_private_key(home)
    if key:
        check_key_permissions(key)

    password = settings.ssh_password
    if settings.ssh_password_file:
        password = await read_password_file(settings.ssh_password_file)
    if key and password is not None:
        logger.warning("Using SSH key %s; the supplied password is ignored", key)

    if settings.ssh_known_hosts and not os.path.isfile(settings.ssh_known_hosts):
        raise ValidationError(f"Known hosts file not found: {settings.ssh_known_hosts}")

    if settings.ssh_host_key_check == HostKeyPolicy.OFF:
        logger.warning(
            "Host key checking is disabled (--ssh-host-key-check=no); "
            "connections are open to man-in-the-middle attacks"
        )

    return SessionCredentials(
        private_key_path=key,
        password=password,
        host_key_policy=settings.ssh_host_key_check,
        known_hosts_seed=settings.ssh_known_hosts,
        persist_known_hosts=settings.persist_known_hosts,
    )
