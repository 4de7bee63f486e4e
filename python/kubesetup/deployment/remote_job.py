"""
kubesetup/deployment/remote_job.py

Runs a command on a node so that it survives the SSH channel dropping:

  1) create a private (mode 700) temp directory on the node,
  2) upload the command as run.sh,
  3) launch it detached with nohup, writing run.log and finally run.exit,
  4) poll for run.exit every `poll_interval` seconds, logging the last log
     line as progress, until `timeout` seconds have elapsed,
  5) on timeout, dump the log and leave the directory in place for postmortem,
  6) on completion, validate run.exit, dump the log on failure, and always
     remove the directory.

`submit` returns exactly one terminal JobResult; call `raise_for_status()` on
it to turn failures into exceptions. The temp directory is registered on the
session's CleanupStack while the job runs, so a cancelled or interrupted job
is still cleaned up when the session closes.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
from typing import Awaitable, Callable, Optional, Tuple

from kubesetup.deployment.session import SSH_CLIENT_FAILURE, CleanupEntry, Session
from kubesetup.models.errors import ProtocolViolation, TransportError
from kubesetup.models.node import NodeAddress
from kubesetup.models.remote_job import JobResult, JobStatus, RemoteJob
from kubesetup.utils.ssh import describe_ssh_failure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600
DEFAULT_POLL_INTERVAL = 10

MKTEMP_COMMAND = 'd=$(mktemp -d) && chmod 700 "$d" && echo "$d"'

_EXIT_CODE_RE = re.compile(r"^[0-9]+$")

Sleeper = Callable[[float], Awaitable[None]]


class RemoteJobEngine:
    """
    Submits detached remote jobs through a Session.

    Args:
        session: The open session (transport and cleanup stack).
        timeout: Seconds one job's poll loop may run in total.
        poll_interval: Seconds between completion checks.
        sleep: Awaitable sleep used between polls; replaceable in tests.
    """

    def __init__(
        self,
        session: Session,
        *,
        timeout: int = DEFAULT_TIMEOUT,
        poll_interval: int = DEFAULT_POLL_INTERVAL,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.session = session
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep

    async def create_remote_tmpdir(self, node: NodeAddress) -> str:
        """
        Creates a mode-700 temp directory on `node` and returns its path.

        Raises:
            TransportError: If the command could not be run.
            ProtocolViolation: If the node did not print an absolute path.
        """
        result = await self.session.run(node, MKTEMP_COMMAND)
        if not result.ok:
            reason = describe_ssh_failure(result.stderr, str(node)) or result.stderr
            raise TransportError(
                f"failed to create remote temp directory on {node}: {reason}",
                result.return_code,
            )
        path = result.stdout.strip()
        if not path.startswith("/") or "\n" in path:
            raise ProtocolViolation(
                f"mktemp on {node} returned an unusable path: {path!r}"
            )
        return path

    async def remove_remote_dir(self, node: NodeAddress, path: str) -> None:
        await self.session.run(node, f"rm -rf {shlex.quote(path)}")

    async def submit(self, node: NodeAddress, command: str, description: str) -> JobResult:
        """
        Runs `command` detached on `node` and waits for it.

        Args:
            node: Target node.
            command: Shell script body.
            description: Human-readable label for logs and errors.

        Returns:
            JobResult with status COMPLETED, TIMED_OUT or FAILED.
        """
        logger.info("[%s] %s: starting", node, description)
        try:
            workdir = await self.create_remote_tmpdir(node)
        except (TransportError, ProtocolViolation) as exc:
            return JobResult(
                node=node,
                description=description,
                status=JobStatus.FAILED,
                error=str(exc),
                protocol_violation=isinstance(exc, ProtocolViolation),
            )

        job = RemoteJob(node=node, description=description, remote_work_dir=workdir)

        async def _remove_workdir() -> None:
            await self.remove_remote_dir(node, workdir)

        entry = self.session.cleanup.push(
            f"remove remote job directory {workdir} on {node}", _remove_workdir
        )

        try:
            launch_error = await self._upload_and_launch(job, command)
        except TransportError as exc:
            job.status = JobStatus.FAILED
            logger.error("[%s] %s: could not start job: %s", node, description, exc)
            return self._result(job, error=str(exc))
        if launch_error is not None:
            job.status = JobStatus.FAILED
            await self._discard(job, entry)
            return self._result(job, error=launch_error)

        job.status = JobStatus.RUNNING
        try:
            finished, elapsed = await self._wait(job)
        except TransportError as exc:
            job.status = JobStatus.FAILED
            logger.error(
                "[%s] %s: lost contact while polling: %s; remote directory left for session cleanup: %s",
                node,
                description,
                exc,
                workdir,
            )
            return self._result(job, error=str(exc))

        if not finished:
            job.status = JobStatus.TIMED_OUT
            try:
                log = await self._read_log(job)
            except TransportError as exc:
                log = ""
                logger.warning("[%s] could not fetch the log of the timed-out job: %s", node, exc)
            logger.error(
                "[%s] %s: timed out after %ds; remote log:\n%s",
                node,
                description,
                self.timeout,
                log,
            )
            logger.error(
                "[%s] remote directory kept for inspection: %s (the job may still be running)",
                node,
                workdir,
            )
            self.session.cleanup.pop(entry)
            return self._result(job, log=log, elapsed=elapsed)

        try:
            result = await self._collect(job, elapsed)
        except TransportError as exc:
            job.status = JobStatus.FAILED
            return self._result(job, elapsed=elapsed, error=str(exc))
        await self._discard(job, entry)
        return result

    async def _discard(self, job: RemoteJob, entry: CleanupEntry) -> None:
        """Removes the job directory; on a transport failure session close retries it."""
        try:
            await self.remove_remote_dir(job.node, job.remote_work_dir)
        except TransportError as exc:
            logger.warning(
                "[%s] could not remove %s now: %s", job.node, job.remote_work_dir, exc
            )
            return
        self.session.cleanup.pop(entry)

    async def _upload_and_launch(self, job: RemoteJob, command: str) -> Optional[str]:
        script = shlex.quote(job.script_path)
        upload = await self.session.run(
            job.node,
            f"cat > {script} && chmod 700 {script}",
            input_data=command if command.endswith("\n") else command + "\n",
        )
        if not upload.ok:
            return f"upload of job script failed: {upload.stderr or upload.return_code}"

        inner = (
            f"sh {shlex.quote(job.script_path)} > {shlex.quote(job.log_path)} 2>&1; "
            f"echo $? > {shlex.quote(job.exit_code_path)}"
        )
        launch = await self.session.run(
            job.node,
            f"nohup sh -c {shlex.quote(inner)} </dev/null >/dev/null 2>&1 &",
        )
        if not launch.ok:
            return f"launch of job failed: {launch.stderr or launch.return_code}"
        return None

    async def _wait(self, job: RemoteJob) -> Tuple[bool, float]:
        elapsed = 0.0
        last_poll_error = ""
        exit_file = shlex.quote(job.exit_code_path)
        log_file = shlex.quote(job.log_path)
        while elapsed < self.timeout:
            await self._sleep(self.poll_interval)
            elapsed += self.poll_interval

            check = await self.session.run(job.node, f"test -f {exit_file}")
            if check.ok:
                return True, elapsed
            if check.return_code == SSH_CLIENT_FAILURE:
                last_poll_error = check.stderr
                logger.warning("[%s] poll failed: %s", job.node, check.stderr)
                continue

            progress = await self.session.run(job.node, f"tail -1 {log_file} 2>/dev/null")
            line = progress.stdout.strip()
            if line:
                logger.info("[%s] %s (%ds): %s", job.node, job.description, elapsed, line)

        if last_poll_error:
            logger.error("[%s] last poll error: %s", job.node, last_poll_error)
        return False, elapsed

    async def _read_log(self, job: RemoteJob) -> str:
        result = await self.session.run(job.node, f"cat {shlex.quote(job.log_path)} 2>/dev/null")
        return result.stdout

    async def _collect(self, job: RemoteJob, elapsed: float) -> JobResult:
        raw = await self.session.run(job.node, f"cat {shlex.quote(job.exit_code_path)}")
        log = await self._read_log(job)
        if not raw.ok:
            job.status = JobStatus.FAILED
            return self._result(
                job,
                log=log,
                elapsed=elapsed,
                error=f"could not read exit code file: {raw.stderr or raw.return_code}",
                protocol_violation=raw.return_code != SSH_CLIENT_FAILURE,
            )

        text = raw.stdout.strip()
        if not _EXIT_CODE_RE.match(text):
            job.status = JobStatus.FAILED
            logger.error("[%s] %s: malformed exit code %r", job.node, job.description, text)
            return self._result(
                job,
                log=log,
                elapsed=elapsed,
                error=f"malformed exit code {text!r} in {job.exit_code_path}",
                protocol_violation=True,
            )

        exit_code = int(text)
        job.status = JobStatus.COMPLETED
        if exit_code != 0:
            logger.error(
                "[%s] %s: failed with exit code %d; remote log:\n%s",
                job.node,
                job.description,
                exit_code,
                log,
            )
        else:
            logger.info("[%s] %s: done (%ds)", job.node, job.description, elapsed)
            logger.debug("[%s] %s log:\n%s", job.node, job.description, log)
        return self._result(job, exit_code=exit_code, log=log, elapsed=elapsed)

    @staticmethod
    def _result(
        job: RemoteJob,
        *,
        exit_code: Optional[int] = None,
        log: str = "",
        elapsed: float = 0.0,
        error: Optional[str] = None,
        protocol_violation: bool = False,
    ) -> JobResult:
        return JobResult(
            node=job.node,
            description=job.description,
            status=job.status,
            exit_code=exit_code,
            log=log,
            remote_work_dir=job.remote_work_dir,
            elapsed=elapsed,
            error=error,
            protocol_violation=protocol_violation,
        )
