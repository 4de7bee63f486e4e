"""
kubesetup/models/remote_job.py

Defines Pydantic models for detached remote jobs:
 - JobStatus
 - RemoteJob
 - JobResult
"""

from __future__ import annotations

import posixpath
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from kubesetup.models.errors import (
    ProtocolViolation,
    RemoteCommandFailure,
    RemoteTimeoutError,
    TransportError,
)
from kubesetup.models.node import NodeAddress


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class RemoteJob(BaseModel):
    """
    Bookkeeping for one command launched on a node. All paths live in a
    private mode-700 directory created for this job alone.
    """

    node: NodeAddress
    description: str
    remote_work_dir: str
    status: JobStatus = JobStatus.PENDING

    @property
    def script_path(self) -> str:
        return posixpath.join(self.remote_work_dir, "run.sh")

    @property
    def log_path(self) -> str:
        return posixpath.join(self.remote_work_dir, "run.log")

    @property
    def exit_code_path(self) -> str:
        return posixpath.join(self.remote_work_dir, "run.exit")


class JobResult(BaseModel):
    """
    The single terminal outcome of a remote job.

    Attributes:
        status: COMPLETED, TIMED_OUT or FAILED.
        exit_code: The remote exit code, set only when COMPLETED.
        log: Captured remote log (empty when the job never launched).
        remote_work_dir: The job directory; only still present after a timeout.
        elapsed: Seconds spent polling.
        error: Transport stderr or protocol-violation detail for FAILED jobs.
        protocol_violation: True when the job ran but its exit-code file was
            unreadable or malformed.
    """

    node: NodeAddress
    description: str
    status: JobStatus
    exit_code: Optional[int] = None
    log: str = ""
    remote_work_dir: str = ""
    elapsed: float = 0.0
    error: Optional[str] = None
    protocol_violation: bool = False

    @property
    def ok(self) -> bool:
        return self.status == JobStatus.COMPLETED and self.exit_code == 0

    def raise_for_status(self) -> JobResult:
        """
        Returns self for a successful job, otherwise raises the matching error.

        Raises:
            TransportError: The job could not be created, uploaded or launched.
            ProtocolViolation: The exit-code file was missing or malformed.
            RemoteCommandFailure: The remote script exited non-zero.
            RemoteTimeoutError: The job was still running when the timeout expired.
        """
        where = f"{self.description} on {self.node}"
        if self.status == JobStatus.TIMED_OUT:
            raise RemoteTimeoutError(
                f"{where} timed out after {self.elapsed:.0f}s "
                f"(remote directory left at {self.remote_work_dir})",
                log=self.log,
                remote_work_dir=self.remote_work_dir,
            )
        if self.status == JobStatus.FAILED:
            if self.protocol_violation:
                raise ProtocolViolation(f"{where}: {self.error}")
            raise TransportError(f"{where} failed: {self.error}")
        if self.exit_code != 0:
            raise RemoteCommandFailure(
                f"{where} exited with code {self.exit_code}",
                exit_code=self.exit_code if self.exit_code is not None else -1,
                log=self.log,
            )
        return self
