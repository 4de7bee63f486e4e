"""
kubesetup/deployment/upgrade.py

Rolling kubeadm upgrade of an existing cluster, one minor version per hop.

For every hop, nodes are upgraded one at a time: the first control plane
(`kubeadm upgrade apply`), the other control planes, then the workers
(`kubeadm upgrade node`). Every node but the first is drained beforehand and
uncordoned afterwards. When a node fails, its diagnostics are collected (if
enabled), its packages are put back to the version it had, kubelet is
restarted through the bundle, the node is uncordoned and the run stops.

Cluster health is checked before the first hop and after the last one; both
checks only warn.
"""

from __future__ import annotations

import logging
import posixpath
import shlex
from typing import List, Optional

import aiofiles

from kubesetup.deployment.deploy import DIAGNOSABLE_ERRORS, RemoteBundles
from kubesetup.deployment.diagnostics import DiagnosticsCollector
from kubesetup.deployment.health import ADMIN_CONF, KUBECTL, ClusterHealth
from kubesetup.deployment.remote_job import RemoteJobEngine
from kubesetup.deployment.session import CleanupEntry, Session
from kubesetup.deployment.versions import PatchResolver, StableReleaseResolver, plan_upgrade
from kubesetup.models.cluster_deploy import NodeFailure, UpgradeOptions, UpgradeReport
from kubesetup.models.errors import KubesetupError, ValidationError
from kubesetup.models.node import ClusterTopology, NodeAddress
from kubesetup.models.version import KubernetesVersion, UpgradePlan
from kubesetup.utils.bundle import Bundler
from kubesetup.utils.ephemeral_file import ephemeral_file

logger = logging.getLogger(__name__)

APISERVER_MANIFEST = "/etc/kubernetes/manifests/kube-apiserver.yaml"
DRAIN_FLAGS = "--ignore-daemonsets --delete-emptydir-data --timeout=300s"
NODE_ADDRESSES_JSONPATH = (
    '{range .items[*]}{.metadata.name}{" "}'
    '{.status.addresses[?(@.type=="InternalIP")].address}{"\\n"}{end}'
)


class _NodeUpgrade:
    """Per-node state needed to undo a failed upgrade."""

    def __init__(self, node: NodeAddress) -> None:
        self.node = node
        self.step = "detect role"
        self.is_control_plane = False
        self.pre_version: Optional[KubernetesVersion] = None
        self.name: Optional[str] = None
        self.uncordon_entry: Optional[CleanupEntry] = None


class ClusterUpgrader:
    """
    Plans and runs a cluster upgrade.

    Args:
        session: The open, preflighted session.
        bundler: Builds the `upgrade` bundle.
        options: Target version and drain/rollback switches.
        engine: Remote job engine; built from the session settings if None.
        resolver: Latest-patch lookup for intermediate minors; dl.k8s.io if None.
    """

    def __init__(
        self,
        session: Session,
        bundler: Bundler,
        options: UpgradeOptions,
        *,
        engine: Optional[RemoteJobEngine] = None,
        resolver: Optional[PatchResolver] = None,
    ) -> None:
        self.session = session
        self.bundler = bundler
        self.options = options
        self.engine = engine or RemoteJobEngine(
            session,
            timeout=session.settings.remote_timeout,
            poll_interval=session.settings.poll_interval,
        )
        self.resolver = resolver
        self.bundles = RemoteBundles(session, self.engine)
        self.health = ClusterHealth(session, self.engine)
        self.diagnostics: Optional[DiagnosticsCollector] = None
        if session.settings.collect_diagnostics:
            self.diagnostics = DiagnosticsCollector(
                self.engine, base_dir=session.settings.diagnostics_dir
            )

    @property
    def topology(self) -> ClusterTopology:
        return self.session.topology

    @property
    def cp1(self) -> NodeAddress:
        return self.topology.first_control_plane

    async def _kubeadm_version(self, node: NodeAddress) -> KubernetesVersion:
        out = await self.session.run_checked(
            node,
            f"{node.sudo_prefix}kubeadm version -o short",
            description="kubeadm version",
        )
        lines = [ln for ln in out.splitlines() if ln.strip()]
        return KubernetesVersion.parse(lines[-1] if lines else "")

    async def current_version(self) -> KubernetesVersion:
        """
        The kubeadm version installed on the first control plane.

        Raises:
            TransportError / RemoteCommandFailure: If kubeadm could not be run.
            ValidationError: If it printed something that is not a version.
        """
        return await self._kubeadm_version(self.cp1)

    async def plan(self) -> UpgradePlan:
        """
        Raises:
            ValidationError: On a downgrade, no-op or major change, or if an
                intermediate release cannot be resolved.
        """
        current = await self.current_version()
        target = KubernetesVersion.parse(self.options.target_version)
        if self.resolver is not None:
            return await plan_upgrade(current, target, self.resolver)
        async with StableReleaseResolver() as resolver:
            return await plan_upgrade(current, target, resolver)

    async def upgrade(self) -> UpgradeReport:
        """`plan` followed by `execute`."""
        return await self.execute(await self.plan())

    async def execute(self, plan: UpgradePlan) -> UpgradeReport:
        """
        Runs every hop of `plan`.

        Returns:
            UpgradeReport: `.ok` when every hop completed on every node.
        """
        report = UpgradeReport(plan=plan)
        nodes = self.topology.all_nodes
        logger.info("Upgrading %d node(s): %s", len(nodes), plan)

        try:
            bundle = self.bundler.build(["upgrade"])
            await self.bundles.transfer(bundle, nodes)
        except KubesetupError as exc:
            logger.error("Could not stage the upgrade bundle: %s", exc)
            report.failed = NodeFailure(node=str(self.cp1), step="copy bundle", error=str(exc))
            report.not_attempted = [str(n) for n in nodes]
            return report

        await self.health.check("pre-upgrade")
        await self._log_upgrade_plan()

        for hop in plan.hops:
            report.succeeded = []
            for idx, node in enumerate(nodes):
                state = _NodeUpgrade(node)
                try:
                    await self._upgrade_node(state, hop, first=node == self.cp1)
                except KubesetupError as exc:
                    logger.error("Upgrade to %s failed on %s during %s: %s", hop, node, state.step, exc)
                    report.failed = NodeFailure(
                        node=str(node),
                        step=f"upgrade to {hop}: {state.step}",
                        error=str(exc),
                        log=getattr(exc, "log", ""),
                    )
                    report.not_attempted = [str(n) for n in nodes[idx + 1 :]]
                    if self.diagnostics is not None and isinstance(exc, DIAGNOSABLE_ERRORS):
                        report.diagnostics_dir = await self.diagnostics.collect(
                            node, f"upgrade-{hop}"
                        )
                    report.rolled_back = await self._recover(state)
                    return report
                report.succeeded.append(str(node))
            report.completed_hops.append(str(hop))
            logger.info("Hop to %s complete on all %d node(s)", hop, len(nodes))

        await self.bundles.remove_all()
        await self._log_nodes()
        report.health = await self.health.check("post-upgrade")
        logger.info("Cluster upgraded to %s", plan.target)
        return report

    async def _log_upgrade_plan(self) -> None:
        result = await self.session.run(self.cp1, f"{self.cp1.sudo_prefix}kubeadm upgrade plan")
        if result.ok:
            logger.info("kubeadm upgrade plan on %s:\n%s", self.cp1, result.stdout)
        else:
            logger.warning("kubeadm upgrade plan failed on %s: %s", self.cp1, result.stderr)

    async def _log_nodes(self) -> None:
        result = await self.session.run(self.cp1, f"{self.cp1.sudo_prefix}{KUBECTL} get nodes")
        if result.ok:
            logger.info("Cluster nodes:\n%s", result.stdout)
        else:
            logger.warning("kubectl get nodes failed: %s", result.stderr)

    async def _detect_control_plane(self, node: NodeAddress) -> bool:
        result = await self.session.run(node, f"{node.sudo_prefix}test -f {APISERVER_MANIFEST}")
        return result.ok

    async def _node_name(self, node: NodeAddress) -> str:
        """
        Kubernetes node name: matched by InternalIP through kubectl on the
        first control plane, else the node's hostname, else the SSH host.
        """
        listing = await self.session.run(
            self.cp1,
            f"{self.cp1.sudo_prefix}{KUBECTL} get nodes -o jsonpath={shlex.quote(NODE_ADDRESSES_JSONPATH)}",
        )
        if listing.ok:
            for line in listing.stdout.splitlines():
                fields = line.split()
                if len(fields) >= 2 and node.ssh_host in fields[1:]:
                    return fields[0]
        hostname = await self.session.run(node, "hostname")
        name = hostname.stdout.strip()
        if hostname.ok and name:
            return name
        return node.ssh_host

    async def _drain(self, state: _NodeUpgrade) -> None:
        name = shlex.quote(state.name or state.node.ssh_host)
        uncordon = f"{self.cp1.sudo_prefix}{KUBECTL} uncordon {name}"

        async def _uncordon() -> None:
            await self.session.run(self.cp1, uncordon)

        state.uncordon_entry = self.session.cleanup.push(f"uncordon {state.name}", _uncordon)
        await self.session.run_checked(
            self.cp1,
            f"{self.cp1.sudo_prefix}{KUBECTL} drain {name} {DRAIN_FLAGS}",
            description=f"drain {state.name}",
        )

    async def _uncordon(self, state: _NodeUpgrade) -> None:
        if state.uncordon_entry is None:
            return
        await self.session.run_checked(
            self.cp1,
            f"{self.cp1.sudo_prefix}{KUBECTL} uncordon {shlex.quote(state.name or '')}",
            description=f"uncordon {state.name}",
        )
        self.session.cleanup.pop(state.uncordon_entry)
        state.uncordon_entry = None

    async def _relay_admin_conf(self, node: NodeAddress) -> str:
        """
        Copies admin.conf from the first control plane into `node`'s bundle
        directory (mode 600) and returns the remote path.
        """
        remote_path = posixpath.join(self.bundles.directory(node), "admin.conf")
        async with ephemeral_file("admin.conf") as local_path:
            if self.cp1.is_root:
                await self.session.copy_from(self.cp1, ADMIN_CONF, local_path)
            else:
                content = await self.session.run_checked(
                    self.cp1, f"sudo -n cat {ADMIN_CONF}", description="read admin.conf"
                )
                async with aiofiles.open(local_path, "w", encoding="utf-8") as f:
                    await f.write(content + "\n")
            await self.session.copy_to(node, local_path, remote_path)
        await self.session.run_checked(
            node, f"chmod 600 {shlex.quote(remote_path)}", description="chmod admin.conf"
        )
        return remote_path

    async def _upgrade_node(self, state: _NodeUpgrade, hop: KubernetesVersion, *, first: bool) -> None:
        node = state.node
        state.is_control_plane = await self._detect_control_plane(node)
        if first and not state.is_control_plane:
            raise ValidationError(f"{node} has no {APISERVER_MANIFEST}; it is not a control plane")

        state.step = "read version"
        state.pre_version = await self._kubeadm_version(node)
        if state.pre_version >= hop:
            logger.info("%s already runs kubeadm %s; skipping hop %s", node, state.pre_version, hop)
            return

        state.step = "resolve node name"
        state.name = await self._node_name(node)

        if not first and not self.options.skip_drain:
            state.step = "drain"
            await self._drain(state)

        env = {}
        if not state.is_control_plane:
            state.step = "copy admin.conf"
            env["UPGRADE_ADMIN_CONF"] = await self._relay_admin_conf(node)

        state.step = "upgrade"
        args = ["upgrade", "--kubernetes-version", str(hop)]
        if first:
            args.append("--first-control-plane")
        role = "first control plane" if first else ("control plane" if state.is_control_plane else "worker")
        try:
            result = await self.engine.submit(
                node,
                self.bundles.command(node, args, env=env),
                f"upgrade {role} to {hop}",
            )
            result.raise_for_status()
        finally:
            if env:
                await self.session.run(node, f"rm -f {shlex.quote(env['UPGRADE_ADMIN_CONF'])}")

        state.step = "uncordon"
        await self._uncordon(state)
        logger.info("%s upgraded to %s", node, hop)

    async def _recover(self, state: _NodeUpgrade) -> Optional[bool]:
        """
        Best-effort recovery of a failed node. Returns whether packages were
        rolled back, or None when no rollback was attempted.
        """
        node = state.node
        rolled_back: Optional[bool] = None
        if self.options.no_rollback:
            logger.warning("Rollback disabled; %s is left as it is", node)
        elif state.step != "upgrade" or state.pre_version is None:
            logger.warning("Packages on %s were not touched; nothing to roll back", node)
        else:
            logger.warning("Rolling %s back to %s", node, state.pre_version)
            result = await self.engine.submit(
                node,
                self.bundles.command(
                    node,
                    ["upgrade", "--kubernetes-version", str(state.pre_version), "--packages-only"],
                ),
                f"roll back to {state.pre_version}",
            )
            rolled_back = result.ok
            if not rolled_back:
                logger.error("Rollback of %s failed: %s", node, result.error or result.exit_code)

        if state.step == "upgrade":
            restart = await self.session.run(
                node, self.bundles.command(node, ["upgrade", "--restart-kubelet"])
            )
            if not restart.ok:
                logger.error("kubelet restart on %s failed: %s", node, restart.stderr)

        if state.uncordon_entry is not None:
            try:
                await self._uncordon(state)
            except KubesetupError as exc:
                logger.error("Could not uncordon %s: %s", state.name, exc)
        return rolled_back


def describe_upgrade_plan(plan: UpgradePlan, topology: ClusterTopology) -> List[str]:
    """Human-readable steps an upgrade would take, for --dry-run."""
    steps = [f"Upgrade path: {plan}"]
    for hop in plan.hops:
        for node, role in topology.nodes_with_roles():
            if node == topology.first_control_plane:
                steps.append(f"{hop}: {node}: kubeadm upgrade apply v{hop}")
            else:
                steps.append(f"{hop}: {node}: drain, kubeadm upgrade node ({role.value}), uncordon")
    return steps
