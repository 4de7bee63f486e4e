"""
kubesetup/utils/ssh.py

Provides the SSH/SCP transport used by every remote step. This includes:
  - run_ssh_command: run one shell command string on a node.
  - copy_to / copy_from: scp a file to or from a node.
  - SSHTransport: the three operations above bound to one SSHConnection.
  - write_askpass_script: the helper that feeds a password to ssh.

Every invocation applies the session's host-key policy and session-scoped
known_hosts file. The transport never retries and never raises on a non-zero
exit: callers get the CommandResult as-is and decide what to do with it.

Password authentication goes through SSH_ASKPASS with the secret passed in the
child's environment, in a new session without a controlling terminal, so it
never shows up in argv or the process list.
"""

from __future__ import annotations

import os
import shlex
from typing import Dict, List, Optional

import aiofiles

from kubesetup.models.errors import TransportError
from kubesetup.models.node import NodeAddress
from kubesetup.models.ssh import SSHConnection
from kubesetup.utils.async_command_runner import (
    CommandError,
    CommandResult,
    run_command,
)

ASKPASS_PASSWORD_ENV = "DEPLOY_SSH_PASSWORD"

_FAILURE_HINTS = [
    ("remote host identification has changed", "host key for {host} has changed"),
    ("host key verification failed", "host key for {host} is unknown or untrusted"),
    ("permission denied", "authentication to {host} was rejected"),
    ("connection refused", "connection to {host} was refused"),
    ("connection timed out", "connection to {host} timed out"),
    ("could not resolve hostname", "could not resolve {host}"),
    ("no route to host", "no route to {host}"),
]


def describe_ssh_failure(stderr: str, host: str = "host") -> Optional[str]:
    """
    Maps well-known ssh client stderr onto a short message, or None when the
    text is not recognized.
    """
    lower = stderr.lower()
    for needle, message in _FAILURE_HINTS:
        if needle in lower:
            return message.format(host=host)
    return None


def _common_options(conn: SSHConnection) -> List[str]:
    creds = conn.credentials
    opts = [
        "-o",
        f"StrictHostKeyChecking={creds.host_key_policy.value}",
        "-o",
        f"UserKnownHostsFile={conn.known_hosts_path}",
        "-o",
        "GlobalKnownHostsFile=/dev/null",
        "-o",
        "LogLevel=ERROR",
        "-o",
        f"ConnectTimeout={conn.connect_timeout}",
    ]
    if not creds.uses_password and (
        not os.environ.get("SSH_AUTH_SOCK") or creds.private_key_path
    ):
        opts += ["-o", "BatchMode=yes"]
    if creds.private_key_path:
        opts += ["-i", creds.private_key_path]
    return opts


def build_ssh_args(node: NodeAddress, conn: SSHConnection, remote_command: str) -> List[str]:
    """Full ssh argv for running `remote_command` on `node`."""
    return [
        "ssh",
        *_common_options(conn),
        "-p",
        str(node.port),
        "--",
        f"{node.user}@{node.ssh_host}",
        remote_command,
    ]


def build_scp_args(node: NodeAddress, conn: SSHConnection, source: str, dest: str) -> List[str]:
    """Full scp argv; `source`/`dest` are already local paths or remote specs."""
    return ["scp", *_common_options(conn), "-P", str(node.port), "--", source, dest]


def _remote_spec(node: NodeAddress, path: str) -> str:
    return f"{node.user}@{node.scp_host}:{path}"


def _auth_env(conn: SSHConnection) -> Optional[Dict[str, str]]:
    creds = conn.credentials
    if not creds.uses_password:
        return None
    if conn.askpass_path is None or creds.password is None:
        raise TransportError("password authentication requested but no askpass helper exists")
    return {
        "SSH_ASKPASS": conn.askpass_path,
        "SSH_ASKPASS_REQUIRE": "force",
        "DISPLAY": os.environ.get("DISPLAY", ":0"),
        ASKPASS_PASSWORD_ENV: creds.password.get_secret_value(),
    }


async def _invoke(
    args: List[str], conn: SSHConnection, input_data: Optional[str] = None
) -> CommandResult:
    env = _auth_env(conn)
    try:
        return await run_command(
            args,
            env=env,
            input_data=input_data,
            new_session=env is not None,
        )
    except CommandError as exc:
        raise TransportError(str(exc), exc.return_code) from exc


async def run_ssh_command(
    node: NodeAddress,
    conn: SSHConnection,
    command: str,
    *,
    input_data: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run a shell command string on a remote node.

    Args:
      node: target node
      conn: session connection settings
      command: shell text, interpreted by the remote login shell
      input_data: optional data written to the remote command's stdin
      env: optional environment variables, prefixed via `env K=V`

    Returns:
      CommandResult; an exit code of 255 usually means ssh itself failed

    Raises:
      TransportError: if the ssh client could not be started at all
    """
    if env:
        assignments = " ".join(shlex.quote(f"{k}={v}") for k, v in env.items())
        command = f"env {assignments} {command}"
    return await _invoke(build_ssh_args(node, conn, command), conn, input_data)


async def copy_to(
    node: NodeAddress, conn: SSHConnection, local_path: str, remote_path: str
) -> CommandResult:
    """scp a local file to `remote_path` on the node."""
    args = build_scp_args(node, conn, local_path, _remote_spec(node, remote_path))
    return await _invoke(args, conn)


async def copy_from(
    node: NodeAddress, conn: SSHConnection, remote_path: str, local_path: str
) -> CommandResult:
    """scp `remote_path` from the node to a local file."""
    args = build_scp_args(node, conn, _remote_spec(node, remote_path), local_path)
    return await _invoke(args, conn)


class SSHTransport:
    """The transport operations bound to one session's SSHConnection."""

    def __init__(self, conn: SSHConnection) -> None:
        self.conn = conn

    async def run(
        self,
        node: NodeAddress,
        command: str,
        *,
        input_data: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        return await run_ssh_command(node, self.conn, command, input_data=input_data, env=env)

    async def copy_to(self, node: NodeAddress, local_path: str, remote_path: str) -> CommandResult:
        return await copy_to(node, self.conn, local_path, remote_path)

    async def copy_from(self, node: NodeAddress, remote_path: str, local_path: str) -> CommandResult:
        return await copy_from(node, self.conn, remote_path, local_path)


async def write_askpass_script(path: str) -> str:
    """
    Writes the askpass helper to `path` with mode 700. The script only echoes
    an environment variable; the secret itself is never written to disk.
    """
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(f'#!/bin/sh\necho "${ASKPASS_PASSWORD_ENV}"\n')
    os.chmod(path, 0o700)
    return path
