"""
kubesetup/deployment/session.py

Owns everything scoped to one orchestration run:
  - the parsed ClusterTopology and resolved SessionCredentials,
  - a private known_hosts file (optionally seeded, optionally persisted),
  - the askpass helper for password authentication,
  - the CleanupStack of remediation handlers,
  - the transport every remote step goes through.

`open_session` validates and preflights all nodes before anything is mutated;
`close_session` runs outstanding cleanup handlers and removes the session
files exactly once. `session_scope` ties both together and also routes
SIGTERM/SIGHUP into task cancellation so teardown runs for signals too.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import tempfile
import threading
from contextlib import asynccontextmanager
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Union,
)

import aiofiles

from kubesetup.models.errors import (
    ConnectivityError,
    RemoteCommandFailure,
    TransportError,
)
from kubesetup.models.node import ClusterTopology, NodeAddress
from kubesetup.models.settings import DeploySettings
from kubesetup.models.ssh import SessionCredentials, SSHConnection
from kubesetup.secrets.ssh import resolve_credentials
from kubesetup.utils.async_command_runner import CommandResult
from kubesetup.utils.ssh import SSHTransport, describe_ssh_failure, write_askpass_script

logger = logging.getLogger(__name__)

CleanupHandler = Callable[[], Awaitable[None]]
NodeList = Union[str, Sequence[str], None]

SSH_CLIENT_FAILURE = 255


class Transport(Protocol):
    async def run(
        self,
        node: NodeAddress,
        command: str,
        *,
        input_data: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult: ...

    async def copy_to(self, node: NodeAddress, local_path: str, remote_path: str) -> CommandResult: ...

    async def copy_from(self, node: NodeAddress, remote_path: str, local_path: str) -> CommandResult: ...


TransportFactory = Callable[[SSHConnection], Transport]


class CleanupEntry:
    """One registered remediation handler."""

    def __init__(self, description: str, handler: CleanupHandler) -> None:
        self.description = description
        self.handler = handler

    def __repr__(self) -> str:
        return f"CleanupEntry({self.description!r})"


class CleanupStack:
    """
    LIFO stack of remediation handlers.

    Handlers are pushed right before the risky action they guard and popped
    right after it succeeds. Whatever is still registered when the session
    closes runs in reverse registration order.
    """

    def __init__(self) -> None:
        self._entries: List[CleanupEntry] = []
        self._lock = threading.Lock()

    def push(self, description: str, handler: CleanupHandler) -> CleanupEntry:
        entry = CleanupEntry(description, handler)
        with self._lock:
            self._entries.append(entry)
        logger.debug("Cleanup registered: %s", description)
        return entry

    def pop(self, entry: CleanupEntry) -> None:
        """Unregisters `entry` without running it. Unknown entries are ignored."""
        with self._lock:
            if entry in self._entries:
                self._entries.remove(entry)

    @property
    def descriptions(self) -> List[str]:
        with self._lock:
            return [e.description for e in self._entries]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def run_all(self) -> None:
        """
        Runs every remaining handler, newest first. A failing handler is
        logged and does not stop the ones registered before it.
        """
        while True:
            with self._lock:
                if not self._entries:
                    return
                entry = self._entries.pop()
            logger.info("Running cleanup: %s", entry.description)
            try:
                await entry.handler()
            except Exception as exc:
                logger.warning("Cleanup '%s' failed: %s", entry.description, exc)

    @asynccontextmanager
    async def guard(self, description: str, handler: CleanupHandler) -> AsyncIterator[CleanupEntry]:
        """
        Registers `handler` for the duration of the body and unregisters it
        only if the body completes without raising.
        """
        entry = self.push(description, handler)
        yield entry
        self.pop(entry)


class Session:
    """
    One orchestration run's shared state. Create it with `open_session`
    (or `session_scope`), never directly outside tests.
    """

    def __init__(
        self,
        topology: ClusterTopology,
        credentials: SessionCredentials,
        settings: DeploySettings,
        transport: Transport,
        *,
        workdir: str,
        known_hosts_path: str,
    ) -> None:
        self.topology = topology
        self.credentials = credentials
        self.settings = settings
        self.transport = transport
        self.workdir = workdir
        self.known_hosts_path = known_hosts_path
        self.cleanup = CleanupStack()
        self.closed = False

    async def run(
        self,
        node: NodeAddress,
        command: str,
        *,
        input_data: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """Runs `command` on `node` and returns the raw result."""
        return await self.transport.run(node, command, input_data=input_data, env=env)

    async def run_checked(
        self,
        node: NodeAddress,
        command: str,
        *,
        description: Optional[str] = None,
        input_data: Optional[str] = None,
    ) -> str:
        """
        Runs `command` on `node` and returns its stdout.

        Raises:
            TransportError: If ssh itself failed (exit 255).
            RemoteCommandFailure: If the command exited non-zero.
        """
        what = description or command
        result = await self.run(node, command, input_data=input_data)
        if result.return_code == SSH_CLIENT_FAILURE:
            reason = describe_ssh_failure(result.stderr, str(node)) or result.stderr
            raise TransportError(f"{what} on {node}: {reason}", result.return_code)
        if not result.ok:
            raise RemoteCommandFailure(
                f"{what} on {node} exited with code {result.return_code}",
                exit_code=result.return_code,
                log=result.stderr or result.stdout,
            )
        return result.stdout

    async def copy_to(self, node: NodeAddress, local_path: str, remote_path: str) -> None:
        """
        Raises:
            TransportError: If the copy failed.
        """
        result = await self.transport.copy_to(node, local_path, remote_path)
        if not result.ok:
            reason = describe_ssh_failure(result.stderr, str(node)) or result.stderr
            raise TransportError(
                f"copy of {local_path} to {node}:{remote_path} failed: {reason}",
                result.return_code,
            )

    async def copy_from(self, node: NodeAddress, remote_path: str, local_path: str) -> None:
        """
        Raises:
            TransportError: If the copy failed.
        """
        result = await self.transport.copy_from(node, remote_path, local_path)
        if not result.ok:
            reason = describe_ssh_failure(result.stderr, str(node)) or result.stderr
            raise TransportError(
                f"copy of {node}:{remote_path} to {local_path} failed: {reason}",
                result.return_code,
            )

    async def preflight(self) -> None:
        """
        Checks every node for SSH connectivity and, for non-root users,
        passwordless sudo. All nodes are checked before failing.

        Raises:
            ConnectivityError: Listing every node that failed.
        """
        failures: List[str] = []
        for node in self.topology.all_nodes:
            try:
                result = await self.run(node, "echo ok")
            except TransportError as exc:
                failures.append(f"{node}: {exc}")
                continue
            if not result.ok or result.stdout.strip() != "ok":
                reason = describe_ssh_failure(result.stderr, str(node)) or (
                    result.stderr or f"exit code {result.return_code}"
                )
                failures.append(f"{node}: SSH connectivity check failed ({reason})")
                continue
            if not node.is_root:
                sudo_check = await self.run(node, "sudo -n true")
                if not sudo_check.ok:
                    failures.append(
                        f"{node}: passwordless sudo is not available for user '{node.user}'"
                    )
                    continue
            logger.info("Preflight OK: %s", node)

        if failures:
            raise ConnectivityError(
                "Preflight failed; no changes were made:\n  " + "\n  ".join(failures)
            )


async def _create_known_hosts(path: str, seed: Optional[str]) -> None:
    content = ""
    if seed:
        async with aiofiles.open(seed, "r", encoding="utf-8") as f:
            content = await f.read()
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)
    os.chmod(path, 0o600)


async def _persist_known_hosts(source: str, sink: str) -> None:
    async with aiofiles.open(source, "r", encoding="utf-8") as f:
        content = await f.read()
    async with aiofiles.open(sink, "w", encoding="utf-8") as f:
        await f.write(content)
    os.chmod(sink, 0o600)
    logger.info("Known hosts saved to %s", sink)


async def open_session(
    control_planes: NodeList,
    workers: NodeList,
    settings: DeploySettings,
    *,
    credentials: Optional[SessionCredentials] = None,
    transport_factory: Optional[TransportFactory] = None,
    preflight: bool = True,
) -> Session:
    """
    Validates the node lists, resolves credentials, creates the session files
    and preflights every node.

    Args:
        control_planes: Control-plane nodes, first one bootstraps the cluster.
        workers: Worker nodes.
        settings: Merged environment/CLI settings.
        credentials: Pre-resolved credentials; resolved from settings if None.
        transport_factory: Builds the transport from the connection settings;
            defaults to SSHTransport.
        preflight: Set False only for dry runs.

    Returns:
        An open Session. The caller must pass it to `close_session`.

    Raises:
        ValidationError: On bad addresses, duplicate hosts or bad credentials.
        ConnectivityError: If any node fails preflight.
    """
    topology = ClusterTopology.from_lists(
        control_planes,
        workers,
        default_user=settings.ssh_user,
        port=settings.ssh_port,
    )
    if credentials is None:
        credentials = await resolve_credentials(settings)

    workdir = tempfile.mkdtemp(prefix="kubesetup-session-")
    os.chmod(workdir, 0o700)
    known_hosts_path = os.path.join(workdir, "known_hosts")
    try:
        await _create_known_hosts(known_hosts_path, credentials.known_hosts_seed)
        askpass_path = None
        if credentials.uses_password:
            askpass_path = await write_askpass_script(os.path.join(workdir, "askpass.sh"))
    except BaseException:
        shutil.rmtree(workdir, ignore_errors=True)
        raise

    conn = SSHConnection(
        credentials=credentials,
        known_hosts_path=known_hosts_path,
        askpass_path=askpass_path,
        connect_timeout=settings.connect_timeout,
    )
    factory: TransportFactory = transport_factory or SSHTransport
    session = Session(
        topology,
        credentials,
        settings,
        factory(conn),
        workdir=workdir,
        known_hosts_path=known_hosts_path,
    )
    logger.info(
        "Session opened: %d control-plane, %d worker node(s), auth=%s, host-key-check=%s",
        len(topology.control_planes),
        len(topology.workers),
        credentials.auth_method,
        credentials.host_key_policy.value,
    )

    if preflight:
        try:
            await session.preflight()
        except BaseException:
            await close_session(session)
            raise
    return session


async def close_session(session: Session) -> None:
    """
    Runs outstanding cleanup handlers (newest first), persists known_hosts
    if requested, then deletes the session files. Safe to call repeatedly;
    only the first call does anything.
    """
    if session.closed:
        return
    session.closed = True
    try:
        await session.cleanup.run_all()
    finally:
        sink = session.credentials.persist_known_hosts
        try:
            if sink and os.path.isfile(session.known_hosts_path):
                await _persist_known_hosts(session.known_hosts_path, sink)
        except OSError as exc:
            logger.warning("Could not persist known hosts to %s: %s", sink, exc)
        finally:
            shutil.rmtree(session.workdir, ignore_errors=True)
            logger.debug("Session files removed: %s", session.workdir)


def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop, task: Optional[asyncio.Task]
) -> List[signal.Signals]:
    if task is None:
        return []
    installed: List[signal.Signals] = []

    def _cancel(sig: signal.Signals) -> None:
        logger.warning("Received %s; aborting and running cleanup", sig.name)
        task.cancel()

    for sig in (signal.SIGTERM, signal.SIGHUP):
        try:
            loop.add_signal_handler(sig, _cancel, sig)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    return installed


@asynccontextmanager
async def session_scope(
    control_planes: NodeList,
    workers: NodeList,
    settings: DeploySettings,
    **kwargs: object,
) -> AsyncIterator[Session]:
    """
    `open_session` / `close_session` as an async context manager. Teardown
    runs on success, on error and on SIGINT/SIGTERM/SIGHUP.
    """
    loop = asyncio.get_running_loop()
    installed = _install_signal_handlers(loop, asyncio.current_task())
    try:
        session = await open_session(control_planes, workers, settings, **kwargs)  # type: ignore[arg-type]
        try:
            yield session
        finally:
            await close_session(session)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
