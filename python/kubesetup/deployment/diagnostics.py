"""
kubesetup/deployment/diagnostics.py

Best-effort postmortem collection from a node whose step failed. One detached
job gathers the kubelet and container runtime journals, recent cluster events
and disk/memory usage; each section is saved locally as
`<dir>/<host>-<section>.log`.

Collection never raises for anything the node does; a failure to collect is
logged and the original error stays the one reported.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import time
from typing import Dict, List, Optional

import aiofiles

from kubesetup.deployment.health import KUBECTL
from kubesetup.deployment.remote_job import RemoteJobEngine
from kubesetup.models.node import NodeAddress
from kubesetup.models.remote_job import JobStatus

logger = logging.getLogger(__name__)

_SECTION_RE = re.compile(r"^=== (\S+) ===$")
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def diagnostics_script(node: NodeAddress, runtime: str = "containerd") -> str:
    sudo = node.sudo_prefix
    return (
        'echo "=== kubelet ==="\n'
        f"{sudo}journalctl -u kubelet --no-pager -n 100 2>&1\n"
        f'echo "=== {runtime} ==="\n'
        f"{sudo}journalctl -u {runtime} --no-pager -n 50 2>&1\n"
        'echo "=== events ==="\n'
        f"{sudo}{KUBECTL} get events -A --sort-by=.lastTimestamp 2>/dev/null | tail -50\n"
        'echo "=== system ==="\n'
        'echo "--- df -h"\n'
        "df -h 2>&1\n"
        'echo "--- free -m"\n'
        "free -m 2>&1\n"
        "exit 0\n"
    )


def split_sections(log: str) -> Dict[str, str]:
    """Splits the job log on `=== name ===` lines; empty sections are dropped."""
    sections: Dict[str, List[str]] = {}
    current: Optional[List[str]] = None
    for line in log.splitlines():
        match = _SECTION_RE.match(line)
        if match:
            current = sections.setdefault(match.group(1), [])
        elif current is not None:
            current.append(line)
    return {name: "\n".join(lines) + "\n" for name, lines in sections.items() if any(lines)}


class DiagnosticsCollector:
    """
    Args:
        engine: Remote job engine the collection runs through.
        base_dir: Parent of the per-failure directories; the system temp
            directory when None.
        runtime: systemd unit of the container runtime.
    """

    def __init__(
        self,
        engine: RemoteJobEngine,
        *,
        base_dir: Optional[str] = None,
        runtime: str = "containerd",
    ) -> None:
        self.engine = engine
        self.base_dir = base_dir or tempfile.gettempdir()
        self.runtime = runtime

    async def collect(self, node: NodeAddress, label: str) -> Optional[str]:
        """
        Collects diagnostics from `node` into a fresh local directory.

        Args:
            node: The node whose step failed.
            label: Names the directory, e.g. "init" or "join-worker".

        Returns:
            The local directory, or None when nothing could be collected.
        """
        logger.info("Collecting diagnostics from %s", node)
        result = await self.engine.submit(
            node, diagnostics_script(node, self.runtime), "collect diagnostics"
        )
        if result.status == JobStatus.FAILED:
            logger.warning("Could not collect diagnostics from %s: %s", node, result.error)
            return None
        sections = split_sections(result.log)
        if not sections:
            logger.warning("Diagnostics job on %s produced no output", node)
            return None

        slug = _UNSAFE_RE.sub("-", label).strip("-") or "failure"
        output_dir = os.path.join(self.base_dir, f"kubesetup-diag-{slug}-{int(time.time())}")
        host = _UNSAFE_RE.sub("_", node.ssh_host)
        try:
            os.makedirs(output_dir, exist_ok=True)
            for name, text in sections.items():
                path = os.path.join(output_dir, f"{host}-{name}.log")
                async with aiofiles.open(path, "w", encoding="utf-8") as f:
                    await f.write(text)
                logger.info("  Saved %s: %s", name, path)
        except OSError as exc:
            logger.warning("Could not save diagnostics to %s: %s", output_dir, exc)
            return None
        logger.info("Diagnostics for %s collected in %s", node, output_dir)
        return output_dir
