"""
Shared pytest fixtures for kubesetup tests.

FakeTransport stands in for ssh/scp. It keeps a tiny per-host filesystem so
the detached job protocol (mktemp, run.sh upload, nohup launch, run.exit
polling, log reads, rm -rf) behaves like a real node. `commands` records
every command; `events` records launched job scripts and every other
non-protocol command in order, so tests can assert on sequencing.
"""

import re
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

import pytest

from kubesetup.deployment.remote_job import MKTEMP_COMMAND, RemoteJobEngine
from kubesetup.deployment.session import Session
from kubesetup.models.node import ClusterTopology, NodeAddress
from kubesetup.models.settings import DeploySettings
from kubesetup.models.ssh import SessionCredentials
from kubesetup.utils.async_command_runner import CommandResult

JOIN_TOKEN = "abcdef.0123456789abcdef"
DISCOVERY_HASH = "sha256:" + "a" * 64
CERTIFICATE_KEY = "b" * 64

# (exit code, log) or None for a job that never finishes.
JobOutcome = Optional[Tuple[int, str]]
Responder = Callable[[NodeAddress, str], CommandResult]

_UPLOAD_RE = re.compile(r"^cat > (\S+)/run\.sh && chmod 700 ")
_LAUNCH_RE = re.compile(r"^nohup sh -c .*?sh (\S+)/run\.sh ")
_TEST_RE = re.compile(r"^test -f (\S+)/run\.exit$")
_TAIL_RE = re.compile(r"^tail -1 (\S+)/run\.log")
_CAT_LOG_RE = re.compile(r"^cat (\S+)/run\.log")
_CAT_EXIT_RE = re.compile(r"^cat (\S+)/run\.exit$")
_RM_RE = re.compile(r"^rm -rf (\S+)$")


def join_command_output(address: str = "10.0.0.1:6443") -> str:
    return (
        f"kubeadm join {address} --token {JOIN_TOKEN} "
        f"--discovery-token-ca-cert-hash {DISCOVERY_HASH}\n"
    )


def upload_certs_output() -> str:
    return (
        "[upload-certs] Storing the certificates in Secret \"kubeadm-certs\"\n"
        "[upload-certs] Using certificate key:\n"
        f"{CERTIFICATE_KEY}\n"
    )


class FakeTransport:
    """In-memory stand-in for SSHTransport."""

    def __init__(self) -> None:
        self.commands: List[Tuple[str, str]] = []
        self.copies: List[Tuple[str, str, str, str]] = []
        self.dirs: Dict[str, Set[str]] = {}
        self.files: Dict[Tuple[str, str], str] = {}
        self.scripts: List[Tuple[str, str]] = []
        self.events: List[Tuple[str, str]] = []
        self.responders: List[Tuple[re.Pattern, Responder]] = []
        self.job_outcome: Callable[[NodeAddress, str], JobOutcome] = lambda node, script: (0, "done\n")
        self._counter = 0

    def respond(
        self,
        pattern: str,
        result: Union[CommandResult, Responder, str],
        *,
        return_code: int = 0,
    ) -> None:
        """Answers commands matching `pattern` (regex search) with `result`."""
        if isinstance(result, str):
            fixed = CommandResult(stdout=result.strip(), return_code=return_code)
            self.responders.insert(0, (re.compile(pattern), lambda node, cmd: fixed))
        elif isinstance(result, CommandResult):
            self.responders.insert(0, (re.compile(pattern), lambda node, cmd: result))
        else:
            self.responders.insert(0, (re.compile(pattern), result))

    def commands_on(self, host: str) -> List[str]:
        return [cmd for h, cmd in self.commands if h == host]

    def scripts_on(self, host: str) -> List[str]:
        return [script for h, script in self.scripts if h == host]

    def bundle_scripts(self) -> List[Tuple[str, str]]:
        """Job scripts that invoke the bundle, leaving out health and diagnostics jobs."""
        return [(h, s) for h, s in self.scripts if "setup-k8s.sh" in s]

    def bundle_scripts_on(self, host: str) -> List[str]:
        return [s for h, s in self.bundle_scripts() if h == host]

    def live_dirs(self, host: str) -> Set[str]:
        return set(self.dirs.get(host, set()))

    async def run(
        self,
        node: NodeAddress,
        command: str,
        *,
        input_data: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        host = node.host
        self.commands.append((host, command))
        dirs = self.dirs.setdefault(host, set())

        if command == "echo ok":
            return CommandResult(stdout="ok", return_code=0)
        if command == MKTEMP_COMMAND:
            self._counter += 1
            path = f"/tmp/tmp.{self._counter}"
            dirs.add(path)
            return CommandResult(stdout=path, return_code=0)

        match = _UPLOAD_RE.match(command)
        if match:
            self.files[(host, match.group(1) + "/run.sh")] = input_data or ""
            return CommandResult(return_code=0)

        match = _LAUNCH_RE.match(command)
        if match:
            workdir = match.group(1)
            script = self.files.get((host, workdir + "/run.sh"), "")
            self.scripts.append((host, script))
            self.events.append((host, "job: " + script.strip()))
            outcome = self.job_outcome(node, script)
            if outcome is not None:
                code, log = outcome
                self.files[(host, workdir + "/run.log")] = log
                self.files[(host, workdir + "/run.exit")] = f"{code}\n"
            else:
                self.files[(host, workdir + "/run.log")] = "still working\n"
            return CommandResult(return_code=0)

        match = _TEST_RE.match(command)
        if match:
            present = (host, match.group(1) + "/run.exit") in self.files
            return CommandResult(return_code=0 if present else 1)

        match = _TAIL_RE.match(command)
        if match:
            log = self.files.get((host, match.group(1) + "/run.log"), "")
            lines = log.strip().splitlines()
            return CommandResult(stdout=lines[-1] if lines else "", return_code=0)

        match = _CAT_LOG_RE.match(command)
        if match:
            return CommandResult(
                stdout=self.files.get((host, match.group(1) + "/run.log"), ""), return_code=0
            )

        match = _CAT_EXIT_RE.match(command)
        if match:
            key = (host, match.group(1) + "/run.exit")
            if key not in self.files:
                return CommandResult(stderr="No such file or directory", return_code=1)
            return CommandResult(stdout=self.files[key].strip(), return_code=0)

        match = _RM_RE.match(command)
        if match:
            path = match.group(1)
            dirs.discard(path)
            for key in [k for k in self.files if k[0] == host and k[1].startswith(path + "/")]:
                del self.files[key]
            return CommandResult(return_code=0)

        self.events.append((host, command))
        for pattern, responder in self.responders:
            if pattern.search(command):
                return responder(node, command)
        return CommandResult(return_code=0)

    async def copy_to(self, node: NodeAddress, local_path: str, remote_path: str) -> CommandResult:
        self.copies.append(("to", node.host, local_path, remote_path))
        with open(local_path, "r", encoding="utf-8") as f:
            self.files[(node.host, remote_path)] = f.read()
        return CommandResult(return_code=0)

    async def copy_from(self, node: NodeAddress, remote_path: str, local_path: str) -> CommandResult:
        self.copies.append(("from", node.host, remote_path, local_path))
        with open(local_path, "w", encoding="utf-8") as f:
            f.write(self.files.get((node.host, remote_path), "apiVersion: v1\nkind: Config\n"))
        return CommandResult(return_code=0)


async def instant_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings() -> DeploySettings:
    return DeploySettings(remote_timeout=30, poll_interval=10)


def make_session(
    transport: FakeTransport,
    tmp_path,
    control_planes: str,
    workers: str = "",
    settings: Optional[DeploySettings] = None,
) -> Session:
    """Builds a Session around `transport` without touching ssh or credentials."""
    settings = settings or DeploySettings(remote_timeout=30, poll_interval=10)
    known_hosts = tmp_path / "known_hosts"
    known_hosts.write_text("")
    return Session(
        ClusterTopology.from_lists(control_planes, workers),
        SessionCredentials(),
        settings,
        transport,
        workdir=str(tmp_path),
        known_hosts_path=str(known_hosts),
    )


@pytest.fixture
def session(transport: FakeTransport, tmp_path) -> Session:
    return make_session(transport, tmp_path, "10.0.0.1", "10.0.0.10,10.0.0.11")


@pytest.fixture
def engine(session: Session) -> RemoteJobEngine:
    return RemoteJobEngine(session, timeout=30, poll_interval=10, sleep=instant_sleep)
