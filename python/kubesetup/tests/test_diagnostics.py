"""Tests for postmortem diagnostics collection.

Covers:
- split_sections on the job log
- DiagnosticsCollector.collect: files written per section, failed jobs
"""

import os

import pytest

from kubesetup.deployment.diagnostics import DiagnosticsCollector, diagnostics_script, split_sections
from kubesetup.models.node import NodeAddress
from kubesetup.utils.async_command_runner import CommandResult

DIAGNOSTICS_LOG = (
    "=== kubelet ===\n"
    "kubelet[812]: failed to run Kubelet: validate service connection\n"
    "=== containerd ===\n"
    "=== events ===\n"
    "kube-system  5s  Warning  BackOff  pod/coredns\n"
    "=== system ===\n"
    "--- df -h\n"
    "/dev/sda1  20G  19G  1G  95% /\n"
)


def diagnostics_outcome(node, script):
    if "journalctl -u kubelet" in script:
        return (0, DIAGNOSTICS_LOG)
    return (0, "done\n")


class TestSplitSections:

    def test_sections_and_empty_dropped(self):
        sections = split_sections(DIAGNOSTICS_LOG)

        assert sorted(sections) == ["events", "kubelet", "system"]
        assert "validate service connection" in sections["kubelet"]
        assert sections["system"].startswith("--- df -h\n")

    def test_text_before_first_section_ignored(self):
        assert split_sections("sudo: noise\n=== kubelet ===\nline\n") == {"kubelet": "line\n"}


class TestDiagnosticsScript:

    def test_non_root_uses_sudo_for_journals(self):
        script = diagnostics_script(NodeAddress.parse("ubuntu@10.0.0.5"), runtime="crio")

        assert "sudo -n journalctl -u kubelet --no-pager -n 100" in script
        assert "sudo -n journalctl -u crio --no-pager -n 50" in script
        assert "get events -A --sort-by=.lastTimestamp" in script
        assert "free -m" in script


class TestDiagnosticsCollector:

    @pytest.mark.asyncio
    async def test_sections_saved_per_host(self, session, transport, engine, tmp_path):
        transport.job_outcome = diagnostics_outcome
        node = session.topology.workers[0]

        output_dir = await DiagnosticsCollector(engine, base_dir=str(tmp_path)).collect(
            node, "join as worker"
        )

        assert output_dir is not None
        assert os.path.basename(output_dir).startswith("kubesetup-diag-join-as-worker-")
        assert sorted(os.listdir(output_dir)) == [
            "10.0.0.10-events.log",
            "10.0.0.10-kubelet.log",
            "10.0.0.10-system.log",
        ]
        with open(os.path.join(output_dir, "10.0.0.10-kubelet.log"), encoding="utf-8") as f:
            assert "failed to run Kubelet" in f.read()
        assert transport.live_dirs("10.0.0.10") == set()

    @pytest.mark.asyncio
    async def test_unreachable_node_returns_none(self, session, transport, engine, tmp_path):
        original_run = transport.run

        async def _run(node, command, **kwargs):
            if "mktemp" in command:
                return CommandResult(stderr="ssh: connect to host: Connection refused", return_code=255)
            return await original_run(node, command, **kwargs)

        transport.run = _run

        base_dir = tmp_path / "diag"
        output_dir = await DiagnosticsCollector(engine, base_dir=str(base_dir)).collect(
            session.topology.workers[0], "init"
        )

        assert output_dir is None
        assert not base_dir.exists()
