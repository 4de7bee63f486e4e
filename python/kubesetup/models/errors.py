"""
kubesetup/models/errors.py

Error taxonomy for remote deployment and upgrade runs.

ValidationError and ConnectivityError are raised before anything on a node is
mutated. Everything else aborts only the remaining, not-yet-executed steps.
"""

from __future__ import annotations

from typing import Any, Optional


class KubesetupError(Exception):
    """Base class for every error raised by kubesetup."""


class ValidationError(KubesetupError, ValueError):
    """Bad node address, duplicate host, bad option or malformed credential."""


class ConnectivityError(KubesetupError):
    """A node was unreachable over SSH or lacked passwordless sudo."""


class TransportError(KubesetupError):
    """
    An ssh/scp invocation failed at the SSH layer.

    Attributes:
        return_code (Optional[int]): Exit code of the ssh/scp client, if known.
    """

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.return_code = return_code


class ProtocolViolation(KubesetupError):
    """The remote job files were missing or malformed."""


class RemoteCommandFailure(KubesetupError):
    """
    A remote script exited non-zero.

    Attributes:
        exit_code (int): The remote exit code.
        log (str): The captured combined stdout/stderr of the remote script.
    """

    def __init__(self, message: str, exit_code: int, log: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.log = log


class RemoteTimeoutError(KubesetupError, TimeoutError):
    """
    A remote job did not finish within its time limit.

    Attributes:
        log (str): The remote log captured at the moment of timeout.
        remote_work_dir (str): Directory left behind on the node for inspection.
    """

    def __init__(self, message: str, log: str = "", remote_work_dir: str = "") -> None:
        super().__init__(message)
        self.log = log
        self.remote_work_dir = remote_work_dir


class BundleError(KubesetupError):
    """The bundle could not be built from the payload tree."""


class DeploymentError(KubesetupError):
    """Every step ran but the cluster is not in the expected shape."""


class DeploymentAborted(KubesetupError):
    """Raised with a failed DeploymentReport attached."""

    def __init__(self, message: str, report: Any) -> None:
        super().__init__(message)
        self.report = report


class UpgradeAborted(KubesetupError):
    """Raised with a failed UpgradeReport attached."""

    def __init__(self, message: str, report: Any) -> None:
        super().__init__(message)
        self.report = report
