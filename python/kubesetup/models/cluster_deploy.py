"""
kubesetup/models/cluster_deploy.py

Defines Pydantic models describing deploy and upgrade runs:
 - DeployOptions / UpgradeOptions: user-selected behaviour
 - DeploymentState: deployment state machine
 - NodeFailure, DeploymentReport, UpgradeReport: what happened, per node
 - NodeCondition, HealthReport: API server and node readiness as seen from
   the first control plane
"""

from __future__ import annotations

import ipaddress
import os
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from kubesetup.models.node import ClusterTopology
from kubesetup.models.version import UpgradePlan
from kubesetup.models.errors import ValidationError

API_SERVER_PORT = 6443


class DeployOptions(BaseModel):
    """
    Options forwarded to the bundle's init/join subcommands.

    Attributes:
        cri: Container runtime to install on every node.
        kubernetes_version: MAJOR.MINOR to install; None lets the bundle pick.
        pod_network_cidr: Pod CIDR passed to kubeadm init.
        service_cidr: Service CIDR passed to kubeadm init.
        proxy_mode: kube-proxy mode.
        ha_vip: Virtual IP fronting the control planes (HA only).
        ha_interface: Interface kube-vip binds the VIP to; auto-detected when None.
        control_plane_endpoint: Overrides the default "<ha_vip>:6443" endpoint.
        swap_enabled: Keep swap on and configure kubelet accordingly.
        kubeadm_config_patch: Local YAML file appended to the kubeadm init
            configuration on the first control plane.
    """

    cri: Literal["containerd", "crio"] = "containerd"
    kubernetes_version: Optional[str] = None
    pod_network_cidr: Optional[str] = None
    service_cidr: Optional[str] = None
    proxy_mode: Optional[Literal["iptables", "ipvs", "nftables"]] = None
    ha_vip: Optional[str] = None
    ha_interface: Optional[str] = None
    control_plane_endpoint: Optional[str] = None
    swap_enabled: bool = False
    kubeadm_config_patch: Optional[str] = None

    @field_validator("ha_vip")
    @classmethod
    def validate_ha_vip(cls, val: Optional[str]) -> Optional[str]:
        if val is not None:
            try:
                ipaddress.ip_address(val)
            except ValueError as exc:
                raise ValueError(f"--ha-vip must be an IP address, got '{val}'") from exc
        return val

    @property
    def ha_vip_prefix(self) -> str:
        """Host prefix for the VIP: /32 for IPv4, /128 for IPv6."""
        if self.ha_vip is None:
            raise ValueError("no HA VIP configured")
        return "/128" if ipaddress.ip_address(self.ha_vip).version == 6 else "/32"

    @property
    def endpoint(self) -> Optional[str]:
        if self.control_plane_endpoint:
            return self.control_plane_endpoint
        if self.ha_vip is None:
            return None
        if ipaddress.ip_address(self.ha_vip).version == 6:
            return f"[{self.ha_vip}]:{API_SERVER_PORT}"
        return f"{self.ha_vip}:{API_SERVER_PORT}"

    def check_topology(self, topology: ClusterTopology) -> None:
        """
        Raises:
            ValidationError: When an HA VIP is missing for multiple control
                planes, or given for a single one.
        """
        if topology.is_ha and self.ha_vip is None:
            raise ValidationError(
                "--ha-vip is required when using multiple control-plane nodes"
            )
        if not topology.is_ha and self.ha_vip is not None:
            raise ValidationError(
                "--ha-vip requires multiple control-plane nodes (got 1)"
            )
        if self.ha_interface is not None and self.ha_vip is None:
            raise ValidationError("--ha-interface requires --ha-vip")

    def check_files(self) -> None:
        """
        Raises:
            ValidationError: If the kubeadm config patch is not a readable file.
        """
        patch = self.kubeadm_config_patch
        if patch is not None and not (os.path.isfile(patch) and os.access(patch, os.R_OK)):
            raise ValidationError(f"--kubeadm-config-patch {patch} is not a readable file")


class UpgradeOptions(BaseModel):
    target_version: str
    skip_drain: bool = False
    no_rollback: bool = False


class DeploymentState(str, Enum):
    VALIDATED = "validated"
    BUNDLED = "bundled"
    FIRST_CP_INITIALIZED = "first-cp-initialized"
    HA_CERTS_UPLOADED = "ha-certs-uploaded"
    ADDITIONAL_CPS_JOINED = "additional-cps-joined"
    WORKERS_JOINED = "workers-joined"
    DONE = "done"
    FAILED = "failed"


class NodeCondition(BaseModel):
    """One row of `kubectl get nodes --no-headers`."""

    name: str
    status: str

    @property
    def ready(self) -> bool:
        # cordoned nodes report "Ready,SchedulingDisabled"
        return self.status.split(",")[0] == "Ready"


class HealthReport(BaseModel):
    """
    Cluster health as seen from the first control plane.

    Attributes:
        api_ready: `/readyz` answered successfully.
        nodes: Registered nodes, or None when they could not be listed.
        error: Why the check itself could not run.
    """

    api_ready: bool = False
    nodes: Optional[List[NodeCondition]] = None
    error: Optional[str] = None

    @property
    def not_ready(self) -> List[NodeCondition]:
        return [n for n in self.nodes or [] if not n.ready]

    @property
    def healthy(self) -> bool:
        return self.api_ready and bool(self.nodes) and not self.not_ready


class NodeFailure(BaseModel):
    """Where a run stopped, and why."""

    node: str
    step: str
    error: str
    log: str = ""


class DeploymentReport(BaseModel):
    state: DeploymentState = DeploymentState.VALIDATED
    succeeded: List[str] = Field(default_factory=list)
    failed: Optional[NodeFailure] = None
    not_attempted: List[str] = Field(default_factory=list)
    health: Optional[HealthReport] = None
    diagnostics_dir: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == DeploymentState.DONE


class UpgradeReport(BaseModel):
    plan: UpgradePlan
    completed_hops: List[str] = Field(default_factory=list)
    succeeded: List[str] = Field(default_factory=list)
    failed: Optional[NodeFailure] = None
    not_attempted: List[str] = Field(default_factory=list)
    rolled_back: Optional[bool] = None
    health: Optional[HealthReport] = None
    diagnostics_dir: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failed is None and len(self.completed_hops) == len(self.plan.hops)
