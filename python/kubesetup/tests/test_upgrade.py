"""End-to-end upgrade tests against FakeTransport.

Covers:
- single control plane, 1.30.2 -> 1.32.5: two hops, apply once per hop
- worker failure: drain, admin.conf relay, rollback, kubelet restart through
  the bundle, uncordon
- health checks before the first hop and after the last one
- diagnostics collected from the failing node before its rollback
- --no-rollback and --skip-drain
- describe_upgrade_plan
"""

import os
import re

import pytest

from conftest import instant_sleep, make_session
from kubesetup.deployment.remote_job import RemoteJobEngine
from kubesetup.deployment.upgrade import ClusterUpgrader, describe_upgrade_plan
from kubesetup.models.cluster_deploy import UpgradeOptions
from kubesetup.models.errors import ValidationError
from kubesetup.models.settings import DeploySettings
from kubesetup.models.version import KubernetesVersion
from kubesetup.utils.async_command_runner import CommandResult
from kubesetup.utils.bundle import Bundler

V = KubernetesVersion.parse
_UPGRADE_RE = re.compile(r"upgrade --kubernetes-version (\S+)")


async def latest_patch_nine(major, minor):
    return KubernetesVersion(major=major, minor=minor, patch=9)


class Cluster:
    """Per-host kubeadm versions and control-plane markers behind a FakeTransport."""

    def __init__(self, transport, versions, control_planes, fail_upgrade_on=()):
        self.versions = dict(versions)
        self.control_planes = set(control_planes)
        self.fail_upgrade_on = set(fail_upgrade_on)
        transport.respond(r"kubeadm version -o short", self._version)
        transport.respond(r"test -f /etc/kubernetes/manifests/", self._manifest)
        transport.respond(
            r"get nodes -o jsonpath",
            "cp-1 10.0.0.1\nworker-1 10.0.0.10\n",
        )
        transport.job_outcome = self._outcome

    def _version(self, node, command):
        return CommandResult(stdout=f"v{self.versions[node.host]}", return_code=0)

    def _manifest(self, node, command):
        return CommandResult(return_code=0 if node.host in self.control_planes else 1)

    def _outcome(self, node, script):
        if "/readyz" in script:
            return (0, "readyz: ok\n=== nodes ===\ncp-1 Ready\nworker-1 Ready\n")
        if "journalctl" in script:
            return (0, "=== kubelet ===\nkubelet: version skew\n")
        match = _UPGRADE_RE.search(script)
        if match is None:
            return (0, "ok\n")
        if "--packages-only" not in script and node.host in self.fail_upgrade_on:
            return (1, "E: Unable to locate package kubeadm\n")
        self.versions[node.host] = match.group(1)
        return (0, f"upgraded to {match.group(1)}\n")


def _upgrader(session, **options):
    engine = RemoteJobEngine(session, timeout=30, poll_interval=10, sleep=instant_sleep)
    return ClusterUpgrader(
        session,
        Bundler(),
        UpgradeOptions(**options),
        engine=engine,
        resolver=latest_patch_nine,
    )


class TestSingleControlPlaneUpgrade:
    """1.30.2 -> 1.32.5 on a lone control plane."""

    @pytest.mark.asyncio
    async def test_two_hops_apply_twice(self, transport, tmp_path):
        session = make_session(transport, tmp_path, "10.0.0.1")
        Cluster(transport, {"10.0.0.1": "1.30.2"}, {"10.0.0.1"})
        upgrader = _upgrader(session, target_version="1.32.5")

        plan = await upgrader.plan()
        report = await upgrader.execute(plan)

        assert plan.hops == [V("1.31.9"), V("1.32.5")]
        assert report.ok
        assert report.completed_hops == ["1.31.9", "1.32.5"]
        scripts = transport.bundle_scripts_on("10.0.0.1")
        assert len(scripts) == 2
        assert all("--first-control-plane" in s for s in scripts)
        assert "--kubernetes-version 1.31.9" in scripts[0]
        assert "--kubernetes-version 1.32.5" in scripts[1]
        all_scripts = transport.scripts_on("10.0.0.1")
        assert "get --raw /readyz" in all_scripts[0]
        assert "get --raw /readyz" in all_scripts[-1]
        assert len(all_scripts) == 4
        assert report.health.healthy
        # the first control plane is never drained
        assert not any(" drain " in c for c in transport.commands_on("10.0.0.1"))
        assert transport.live_dirs("10.0.0.1") == set()
        assert len(session.cleanup) == 0

    @pytest.mark.asyncio
    async def test_downgrade_rejected(self, transport, tmp_path):
        session = make_session(transport, tmp_path, "10.0.0.1")
        Cluster(transport, {"10.0.0.1": "1.31.0"}, {"10.0.0.1"})

        with pytest.raises(ValidationError, match="must be newer"):
            await _upgrader(session, target_version="1.30.9").plan()

        assert transport.scripts == []


class TestWorkerFailure:
    """Control plane 10.0.0.1 and worker 10.0.0.10; the worker's upgrade fails."""

    @pytest.fixture
    def session(self, transport, tmp_path):
        Cluster(
            transport,
            {"10.0.0.1": "1.30.2", "10.0.0.10": "1.30.2"},
            {"10.0.0.1"},
            fail_upgrade_on={"10.0.0.10"},
        )
        return make_session(transport, tmp_path, "10.0.0.1", "10.0.0.10")

    @pytest.mark.asyncio
    async def test_rollback_and_uncordon(self, session, transport):
        report = await _upgrader(session, target_version="1.31.3").upgrade()

        assert not report.ok
        assert report.failed.node == "root@10.0.0.10"
        assert "upgrade" in report.failed.step
        assert "Unable to locate package" in report.failed.log
        assert report.succeeded == ["root@10.0.0.1"]
        assert report.completed_hops == []
        assert report.not_attempted == []
        assert report.rolled_back is True

        upgrade, rollback = transport.scripts_on("10.0.0.10")
        assert upgrade.startswith("env UPGRADE_ADMIN_CONF=/tmp/")
        assert "--first-control-plane" not in upgrade
        assert "--kubernetes-version 1.30.2 --packages-only" in rollback

        cp_commands = transport.commands_on("10.0.0.1")
        drain = [c for c in cp_commands if " drain " in c]
        assert drain == [
            "kubectl --kubeconfig=/etc/kubernetes/admin.conf drain worker-1 "
            "--ignore-daemonsets --delete-emptydir-data --timeout=300s"
        ]
        assert any(c.endswith("uncordon worker-1") for c in cp_commands)
        restarts = [c for c in transport.commands_on("10.0.0.10") if "--restart-kubelet" in c]
        assert len(restarts) == 1
        assert re.match(r"^sh \S+/setup-k8s.sh upgrade --restart-kubelet$", restarts[0])
        assert not any("systemctl" in c for c in transport.commands_on("10.0.0.10"))
        # admin.conf went cp1 -> local -> worker, then was removed again
        kinds = [(kind, host) for kind, host, _, _ in transport.copies]
        assert ("from", "10.0.0.1") in kinds
        assert any(remote.endswith("/admin.conf") for _, _, _, remote in transport.copies)
        assert any(
            c.startswith("rm -f ") and c.endswith("/admin.conf")
            for c in transport.commands_on("10.0.0.10")
        )
        # uncordon handler dropped; only the bundle directories remain
        assert len(session.cleanup) == 2

    @pytest.mark.asyncio
    async def test_no_rollback(self, session, transport):
        report = await _upgrader(session, target_version="1.31.3", no_rollback=True).upgrade()

        assert report.rolled_back is None
        assert len(transport.scripts_on("10.0.0.10")) == 1
        assert any(c.endswith("uncordon worker-1") for c in transport.commands_on("10.0.0.1"))

    @pytest.mark.asyncio
    async def test_skip_drain(self, session, transport):
        await _upgrader(session, target_version="1.31.3", skip_drain=True).upgrade()

        assert not any(" drain " in c for c in transport.commands_on("10.0.0.1"))
        assert not any("uncordon" in c for c in transport.commands_on("10.0.0.1"))


class TestFailureDiagnostics:
    """--collect-diagnostics on a failing worker upgrade."""

    @pytest.mark.asyncio
    async def test_collected_before_rollback(self, transport, tmp_path):
        Cluster(
            transport,
            {"10.0.0.1": "1.30.2", "10.0.0.10": "1.30.2"},
            {"10.0.0.1"},
            fail_upgrade_on={"10.0.0.10"},
        )
        settings = DeploySettings(
            remote_timeout=30,
            poll_interval=10,
            collect_diagnostics=True,
            diagnostics_dir=str(tmp_path / "diag"),
        )
        session = make_session(transport, tmp_path, "10.0.0.1", "10.0.0.10", settings=settings)

        report = await _upgrader(session, target_version="1.31.3").upgrade()

        assert report.rolled_back is True
        upgrade, diag, rollback = transport.scripts_on("10.0.0.10")
        assert "--kubernetes-version 1.31.3" in upgrade
        assert "journalctl -u kubelet" in diag
        assert "--packages-only" in rollback
        assert os.listdir(report.diagnostics_dir) == ["10.0.0.10-kubelet.log"]
        assert "upgrade-1.31.3" in report.diagnostics_dir
        # no post-upgrade health check after a failure
        assert report.health is None


class TestDescribeUpgradePlan:
    """Tests for the dry-run description."""

    @pytest.mark.asyncio
    async def test_lists_every_node_per_hop(self, transport, tmp_path):
        session = make_session(transport, tmp_path, "10.0.0.1", "10.0.0.10")
        Cluster(transport, {"10.0.0.1": "1.30.2", "10.0.0.10": "1.30.2"}, {"10.0.0.1"})
        plan = await _upgrader(session, target_version="1.32.0").plan()

        steps = describe_upgrade_plan(plan, session.topology)

        assert steps[0] == "Upgrade path: 1.30.2 -> 1.31.9 -> 1.32.0"
        assert len(steps) == 1 + 2 * 2
        assert "kubeadm upgrade apply v1.31.9" in steps[1]
        assert transport.scripts == []
