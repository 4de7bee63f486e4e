"""
kubesetup/deployment/health.py

Cluster health as seen from the first control plane: whether the API server
answers `/readyz`, and which registered nodes are Ready. Both checks run as
one detached job, so a slow API server cannot hang the SSH channel.

Health checks only inform; callers decide what a failed check means.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from kubesetup.deployment.remote_job import RemoteJobEngine
from kubesetup.deployment.session import Session
from kubesetup.models.cluster_deploy import HealthReport, NodeCondition
from kubesetup.models.node import NodeAddress
from kubesetup.models.remote_job import JobStatus

logger = logging.getLogger(__name__)

ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBECTL = f"kubectl --kubeconfig={ADMIN_CONF}"

READYZ_OK = "readyz: ok"
NODES_MARKER = "=== nodes ==="
NODES_UNAVAILABLE = "=== nodes unavailable ==="


def health_script(node: NodeAddress) -> str:
    kubectl = f"{node.sudo_prefix}{KUBECTL}"
    return (
        f"if {kubectl} get --raw /readyz >/dev/null 2>&1; then\n"
        f'  echo "{READYZ_OK}"\n'
        "else\n"
        '  echo "readyz: failed"\n'
        "fi\n"
        f'echo "{NODES_MARKER}"\n'
        f'{kubectl} get nodes --no-headers 2>/dev/null || echo "{NODES_UNAVAILABLE}"\n'
        "exit 0\n"
    )


def parse_health_log(log: str) -> HealthReport:
    """
    Reads the output of `health_script`.

    Lines before the nodes marker carry the `/readyz` verdict; every line
    after it is one `kubectl get nodes --no-headers` row.
    """
    lines = log.splitlines()
    api_ready = READYZ_OK in lines
    if NODES_MARKER not in lines or NODES_UNAVAILABLE in lines:
        return HealthReport(api_ready=api_ready, error="could not list nodes")

    nodes: List[NodeCondition] = []
    for line in lines[lines.index(NODES_MARKER) + 1 :]:
        fields = line.split()
        if len(fields) >= 2:
            nodes.append(NodeCondition(name=fields[0], status=fields[1]))
    return HealthReport(api_ready=api_ready, nodes=nodes)


class ClusterHealth:
    """
    Runs health checks on the session's first control plane.

    Args:
        session: The open session.
        engine: Remote job engine the check is submitted through.
    """

    def __init__(self, session: Session, engine: RemoteJobEngine) -> None:
        self.session = session
        self.engine = engine

    async def check(self, phase: str, node: Optional[NodeAddress] = None) -> HealthReport:
        """
        Checks `/readyz` and node readiness and logs the outcome.

        Args:
            phase: Label for the logs, e.g. "pre-upgrade".
            node: Control plane to ask; the first one by default.

        Returns:
            HealthReport: never raises for an unhealthy or unreachable cluster.
        """
        node = node or self.session.topology.first_control_plane
        logger.info("Running %s health checks on %s", phase, node)
        result = await self.engine.submit(node, health_script(node), f"{phase} health check")
        if result.status != JobStatus.COMPLETED:
            error = result.error or f"health check {result.status.value}"
            logger.warning("%s health check could not run: %s", phase, error)
            return HealthReport(error=error)
        report = parse_health_log(result.log)
        self._log(phase, report)
        return report

    @staticmethod
    def _log(phase: str, report: HealthReport) -> None:
        if report.api_ready:
            logger.info("API server: ready")
        else:
            logger.warning("API server: not ready")
        if report.nodes is None:
            logger.warning("Could not retrieve the node list")
        elif report.not_ready:
            logger.warning(
                "Not ready nodes: %s",
                ", ".join(f"{n.name}({n.status})" for n in report.not_ready),
            )
        else:
            logger.info("All %d node(s) are Ready", len(report.nodes))
        if report.healthy:
            logger.info("%s health check: all checks passed", phase)
        else:
            logger.warning("%s health check: some checks failed", phase)
