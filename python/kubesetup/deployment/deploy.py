"""
kubesetup/deployment/deploy.py

Deploys a kubeadm cluster across the session's nodes, strictly in order:

  1) Build one `deploy` bundle and copy it into a private directory on every node.
  2) HA only: run `kube-vip` on the first control plane (static pod manifest,
     VIP pre-added), guarded by a handler that releases the VIP again.
  3) `init` the first control plane, with the kubeadm config patch if given.
  4) Extract join credentials (with a certificate key when HA).
  5) `join` every additional control plane, then every worker.
  6) Check cluster health, verify that every node registered, remove the
     bundles and log how to reach the cluster.

Any failure stops the run; the returned DeploymentReport says which node and
step failed, which nodes made it and which were never touched. Nodes that
already joined are left as they are. With `collect_diagnostics` set, the
failing node's journals and the cluster events are saved locally first.
The health check only warns: nodes stay NotReady until a CNI plugin is
installed. A node-count mismatch fails the run.
"""

from __future__ import annotations

import logging
import posixpath
import shlex
from typing import Callable, Dict, List, Optional, Sequence

from kubesetup.deployment.diagnostics import DiagnosticsCollector
from kubesetup.deployment.health import ADMIN_CONF, KUBECTL, ClusterHealth
from kubesetup.deployment.join_credentials import JoinCredentialExtractor
from kubesetup.deployment.remote_job import RemoteJobEngine
from kubesetup.deployment.session import CleanupEntry, CleanupHandler, Session
from kubesetup.models.cluster_deploy import (
    DeploymentReport,
    DeploymentState,
    DeployOptions,
    NodeFailure,
)
from kubesetup.models.errors import (
    DeploymentError,
    KubesetupError,
    RemoteCommandFailure,
    RemoteTimeoutError,
)
from kubesetup.models.join import JoinCredential
from kubesetup.models.node import ClusterTopology, NodeAddress
from kubesetup.utils.bundle import ENTRY_SCRIPT, Bundle, Bundler
from kubesetup.utils.ephemeral_file import ephemeral_file

logger = logging.getLogger(__name__)

CONFIG_PATCH_NAME = "kubeadm-config-patch.yaml"

# Failures that trigger a diagnostics run on the failing node.
DIAGNOSABLE_ERRORS = (RemoteCommandFailure, RemoteTimeoutError, DeploymentError)


def _quote_args(args: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in args)


class RemoteBundles:
    """
    Tracks the bundle copied to each node. Every copy lives in its own
    mode-700 directory whose removal is registered on the cleanup stack
    until `remove_all` runs.
    """

    def __init__(self, session: Session, engine: RemoteJobEngine) -> None:
        self.session = session
        self.engine = engine
        self._dirs: Dict[NodeAddress, str] = {}
        self._entries: Dict[NodeAddress, CleanupEntry] = {}

    async def transfer(
        self,
        bundle: Bundle,
        nodes: Sequence[NodeAddress],
        *,
        on_node: Optional[Callable[[NodeAddress], None]] = None,
    ) -> None:
        """
        Copies `bundle` to every node in order. `on_node` is called before
        each node is touched.

        Raises:
            TransportError: If a directory could not be created or a copy failed.
            ProtocolViolation: If mktemp printed something unusable.
        """
        async with ephemeral_file(ENTRY_SCRIPT) as local_path:
            await bundle.write(local_path)
            for node in nodes:
                if on_node is not None:
                    on_node(node)
                remote_dir = await self.engine.create_remote_tmpdir(node)
                self._dirs[node] = remote_dir
                self._entries[node] = self.session.cleanup.push(
                    f"remove bundle directory {remote_dir} on {node}",
                    self._remover(node, remote_dir),
                )
                await self.session.copy_to(node, local_path, self.path(node))
                logger.info("Bundle copied to %s:%s", node, remote_dir)

    def _remover(self, node: NodeAddress, remote_dir: str) -> CleanupHandler:
        async def _remove() -> None:
            await self.engine.remove_remote_dir(node, remote_dir)

        return _remove

    def directory(self, node: NodeAddress) -> str:
        return self._dirs[node]

    def path(self, node: NodeAddress) -> str:
        return posixpath.join(self._dirs[node], ENTRY_SCRIPT)

    def command(self, node: NodeAddress, args: Sequence[str], *, env: Optional[Dict[str, str]] = None) -> str:
        """
        `[sudo -n ][env K=V ]sh <bundle> <args>` with every value quoted.
        Environment goes after sudo so it reaches the bundle.
        """
        parts = [node.sudo_prefix.rstrip()] if node.sudo_prefix else []
        if env:
            parts.append("env")
            parts.extend(shlex.quote(f"{k}={v}") for k, v in sorted(env.items()))
        parts += ["sh", shlex.quote(self.path(node)), _quote_args(args)]
        return " ".join(parts)

    async def remove_all(self) -> None:
        for node, remote_dir in list(self._dirs.items()):
            await self.engine.remove_remote_dir(node, remote_dir)
            self.session.cleanup.pop(self._entries.pop(node))
            del self._dirs[node]


class ClusterDeployer:
    """
    Drives one deployment through its states.

    Args:
        session: The open, preflighted session.
        bundler: Builds the `deploy` bundle.
        options: Cluster options forwarded to the bundle.
        engine: Remote job engine; built from the session settings if None.
        extractor: Join-credential extractor; built from the session if None.
    """

    def __init__(
        self,
        session: Session,
        bundler: Bundler,
        options: DeployOptions,
        *,
        engine: Optional[RemoteJobEngine] = None,
        extractor: Optional[JoinCredentialExtractor] = None,
    ) -> None:
        self.session = session
        self.bundler = bundler
        self.options = options
        self.engine = engine or RemoteJobEngine(
            session,
            timeout=session.settings.remote_timeout,
            poll_interval=session.settings.poll_interval,
        )
        self.extractor = extractor or JoinCredentialExtractor(session)
        self.bundles = RemoteBundles(session, self.engine)
        self.health = ClusterHealth(session, self.engine)
        self.diagnostics: Optional[DiagnosticsCollector] = None
        if session.settings.collect_diagnostics:
            self.diagnostics = DiagnosticsCollector(
                self.engine, base_dir=session.settings.diagnostics_dir, runtime=options.cri
            )
        self.report = DeploymentReport()
        self._current: Optional[NodeAddress] = None
        self._step = ""

    @property
    def topology(self) -> ClusterTopology:
        return self.session.topology

    def passthrough(self, *, worker: bool = False) -> List[str]:
        """Options forwarded to `init`/`join`. Workers never see the VIP."""
        opts = self.options
        args = ["--cri", opts.cri]
        if opts.kubernetes_version:
            args += ["--kubernetes-version", opts.kubernetes_version]
        if opts.pod_network_cidr:
            args += ["--pod-network-cidr", opts.pod_network_cidr]
        if opts.service_cidr:
            args += ["--service-cidr", opts.service_cidr]
        if opts.proxy_mode:
            args += ["--proxy-mode", opts.proxy_mode]
        if not worker:
            if opts.ha_vip:
                args += ["--ha-vip", opts.ha_vip]
            if opts.ha_interface:
                args += ["--ha-interface", opts.ha_interface]
        if opts.endpoint:
            args += ["--control-plane-endpoint", opts.endpoint]
        if opts.swap_enabled:
            args.append("--swap-enabled")
        return args

    def _vip_args(self) -> List[str]:
        args = ["--ha-vip", self.options.ha_vip or ""]
        if self.options.ha_interface:
            args += ["--ha-interface", self.options.ha_interface]
        return args

    def _at(self, node: NodeAddress, step: str) -> None:
        self._current = node
        self._step = step

    async def _run_job(self, node: NodeAddress, args: List[str], description: str) -> None:
        self._at(node, description)
        result = await self.engine.submit(node, self.bundles.command(node, args), description)
        result.raise_for_status()

    async def deploy(self) -> DeploymentReport:
        """
        Runs the deployment.

        Returns:
            DeploymentReport: state DONE on success, FAILED otherwise.

        Raises:
            ValidationError: If the options do not fit the topology or the
                config patch is unreadable; nothing has been touched then.
        """
        self.options.check_topology(self.topology)
        self.options.check_files()
        self.report.state = DeploymentState.VALIDATED
        logger.info(
            "Deploying %d control-plane and %d worker node(s)%s",
            len(self.topology.control_planes),
            len(self.topology.workers),
            f" behind VIP {self.options.ha_vip}" if self.topology.is_ha else "",
        )
        try:
            await self._deploy()
        except KubesetupError as exc:
            await self._fail(exc)
        return self.report

    async def _deploy(self) -> None:
        topology = self.topology
        cp1 = topology.first_control_plane

        self._at(cp1, "build bundle")
        bundle = self.bundler.build(["deploy"])
        await self.bundles.transfer(
            bundle, topology.all_nodes, on_node=lambda n: self._at(n, "copy bundle")
        )
        self.report.state = DeploymentState.BUNDLED

        await self._init_first_control_plane(cp1)
        self.report.succeeded.append(str(cp1))
        self.report.state = DeploymentState.FIRST_CP_INITIALIZED

        self._at(cp1, "extract join credentials")
        credential = await self.extractor.extract(cp1, control_plane=topology.is_ha)
        if topology.is_ha:
            self.report.state = DeploymentState.HA_CERTS_UPLOADED

        for node in topology.control_planes[1:]:
            await self._join(node, credential, control_plane=True)
        self.report.state = DeploymentState.ADDITIONAL_CPS_JOINED

        for node in topology.workers:
            await self._join(node, credential, control_plane=False)
        self.report.state = DeploymentState.WORKERS_JOINED

        self._at(cp1, "post-deploy health check")
        self.report.health = await self.health.check("post-deploy")
        await self._verify_node_count(cp1)

        self._at(cp1, "remove bundles")
        await self.bundles.remove_all()
        self.report.state = DeploymentState.DONE
        self._log_summary(cp1)

    async def _send_config_patch(self, cp1: NodeAddress) -> str:
        """Copies the kubeadm config patch next to cp1's bundle; returns the remote path."""
        self._at(cp1, "copy kubeadm config patch")
        remote_path = posixpath.join(self.bundles.directory(cp1), CONFIG_PATCH_NAME)
        logger.info("Transferring kubeadm config patch to %s", cp1)
        await self.session.copy_to(cp1, self.options.kubeadm_config_patch or "", remote_path)
        return remote_path

    async def _init_first_control_plane(self, cp1: NodeAddress) -> None:
        vip_entry: Optional[CleanupEntry] = None
        init_args = ["init"]
        if self.topology.is_ha:
            release_cmd = self.bundles.command(cp1, ["kube-vip", "--release"] + self._vip_args())

            async def _release_vip() -> None:
                await self.session.run(cp1, release_cmd)

            vip_entry = self.session.cleanup.push(
                f"release VIP {self.options.ha_vip}{self.options.ha_vip_prefix} on {cp1}",
                _release_vip,
            )
            await self._run_job(cp1, ["kube-vip"] + self._vip_args(), "kube-vip setup")
            init_args.append("--ha")

        if self.options.kubeadm_config_patch:
            init_args += ["--kubeadm-config-patch", await self._send_config_patch(cp1)]
        await self._run_job(cp1, init_args + self.passthrough(), "kubeadm init")
        if vip_entry is not None:
            self.session.cleanup.pop(vip_entry)

    async def _join(self, node: NodeAddress, credential: JoinCredential, *, control_plane: bool) -> None:
        args = ["join"] + credential.join_args(control_plane=control_plane)
        if control_plane:
            args.append("--skip-vip-preadd")
        args += self.passthrough(worker=not control_plane)
        role = "control plane" if control_plane else "worker"
        await self._run_job(node, args, f"join as {role}")
        self.report.succeeded.append(str(node))

    async def _verify_node_count(self, cp1: NodeAddress) -> None:
        """
        Raises:
            DeploymentError: If the nodes cannot be listed, or fewer or more
                are registered than the topology names.
        """
        self._at(cp1, "verify node count")
        expected = len(self.topology.all_nodes)
        try:
            out = await self.session.run_checked(
                cp1,
                f"{cp1.sudo_prefix}{KUBECTL} get nodes --no-headers",
                description="kubectl get nodes",
            )
        except KubesetupError as exc:
            raise DeploymentError(f"could not retrieve the node list: {exc}") from exc
        registered = len([ln for ln in out.splitlines() if ln.strip()])
        if registered != expected:
            raise DeploymentError(
                f"node count mismatch: expected {expected}, got {registered}"
            )
        logger.info("Node count verified: %d/%d", registered, expected)

    def _log_summary(self, cp1: NodeAddress) -> None:
        logger.info("Deployment complete: %s", ", ".join(self.report.succeeded))
        if self.topology.is_ha:
            logger.info("API server endpoint: %s", self.options.endpoint)
        logger.info(
            "Fetch the admin kubeconfig with: scp %s@%s:%s ~/.kube/config",
            cp1.user,
            cp1.scp_host,
            ADMIN_CONF,
        )
        logger.info("Next: install a CNI plugin, then check `kubectl get nodes`")

    async def _fail(self, exc: KubesetupError) -> None:
        node = self._current or self.topology.first_control_plane
        logger.error("Deployment failed on %s during %s: %s", node, self._step, exc)
        self.report.state = DeploymentState.FAILED
        self.report.failed = NodeFailure(
            node=str(node),
            step=self._step,
            error=str(exc),
            log=getattr(exc, "log", ""),
        )
        done = set(self.report.succeeded) | {str(node)}
        self.report.not_attempted = [str(n) for n in self.topology.all_nodes if str(n) not in done]
        if self.diagnostics is not None and isinstance(exc, DIAGNOSABLE_ERRORS):
            self.report.diagnostics_dir = await self.diagnostics.collect(node, self._step)


def describe_deploy_plan(topology: ClusterTopology, options: DeployOptions) -> List[str]:
    """
    Human-readable steps a deployment would take, for --dry-run.

    Raises:
        ValidationError: If the options do not fit the topology.
    """
    options.check_topology(topology)
    cp1 = topology.first_control_plane
    steps = [f"Copy the deploy bundle to {len(topology.all_nodes)} node(s)"]
    if topology.is_ha:
        steps.append(
            f"{cp1}: deploy kube-vip and pre-add {options.ha_vip}{options.ha_vip_prefix}"
        )
    if options.kubeadm_config_patch:
        steps.append(f"{cp1}: copy kubeadm config patch {options.kubeadm_config_patch}")
    if topology.is_ha:
        steps.append(f"{cp1}: kubeadm init (HA, endpoint {options.endpoint})")
        steps.append(f"{cp1}: create join token and upload control-plane certificates")
    else:
        steps.append(f"{cp1}: kubeadm init")
        steps.append(f"{cp1}: create join token")
    for node in topology.control_planes[1:]:
        steps.append(f"{node}: join as control plane")
    for node in topology.workers:
        steps.append(f"{node}: join as worker")
    steps.append(f"{cp1}: check API server and node readiness")
    steps.append(f"Verify {len(topology.all_nodes)} node(s) registered and remove bundles")
    return steps
