"""
kubesetup/models/node.py

Defines Pydantic models for the cluster's node topology:
 - NodeAddress
 - NodeRole
 - ClusterTopology
"""

from __future__ import annotations

import re
from enum import Enum
from typing import List, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kubesetup.models.errors import ValidationError
from kubesetup.models.validator import build_model

_USER_RE = re.compile(r"^[a-zA-Z0-9._-]+$")
_DEFAULT_USER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_.-]*$")
_HOSTNAME_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9._-]*[a-zA-Z0-9])?$")
_IPV6_RE = re.compile(r"^[a-fA-F0-9:]+$")


class NodeRole(str, Enum):
    """Role of a node, derived from its position in the node lists."""

    FIRST_CONTROL_PLANE = "first-control-plane"
    ADDITIONAL_CONTROL_PLANE = "additional-control-plane"
    WORKER = "worker"


class NodeAddress(BaseModel):
    """
    A single SSH target. Immutable once parsed.

    Attributes:
        user: SSH login user.
        host: IPv4 literal, bracketed IPv6 literal (e.g. "[fd00::1]") or hostname.
        port: SSH port.
    """

    model_config = ConfigDict(frozen=True)

    user: str
    host: str
    port: int = Field(default=22, ge=1, le=65535)

    @field_validator("user")
    @classmethod
    def validate_user(cls, val: str) -> str:
        if not _USER_RE.match(val) or val.startswith("-"):
            raise ValueError(f"invalid SSH user '{val}'")
        return val

    @field_validator("host")
    @classmethod
    def validate_host(cls, val: str) -> str:
        if not val:
            raise ValueError("host must not be empty")
        if val.startswith("["):
            if not val.endswith("]") or not _IPV6_RE.match(val[1:-1]):
                raise ValueError(f"invalid bracketed IPv6 address '{val}'")
        elif ":" in val:
            raise ValueError(
                f"IPv6 address '{val}' must be bracketed, e.g. root@[{val}]"
            )
        elif not _HOSTNAME_RE.match(val):
            raise ValueError(f"invalid host '{val}'")
        return val

    @classmethod
    def parse(cls, raw: str, *, default_user: str = "root", port: int = 22) -> NodeAddress:
        """
        Parses "host" or "user@host" into a NodeAddress.

        Raises:
            ValidationError: If the user or host is malformed.
        """
        raw = raw.strip()
        if "@" in raw:
            user, _, host = raw.partition("@")
            if not user:
                raise ValidationError(f"empty user in node address '{raw}'")
        else:
            user, host = default_user, raw
        return build_model(cls, user=user, host=host, port=port)

    @property
    def is_ipv6(self) -> bool:
        return self.host.startswith("[")

    @property
    def ssh_host(self) -> str:
        """Host as the ssh client expects it (IPv6 without brackets)."""
        return self.host[1:-1] if self.is_ipv6 else self.host

    @property
    def scp_host(self) -> str:
        """Host as scp expects it (IPv6 in brackets)."""
        return self.host

    @property
    def is_root(self) -> bool:
        return self.user == "root"

    @property
    def sudo_prefix(self) -> str:
        return "" if self.is_root else "sudo -n "

    def __str__(self) -> str:
        return f"{self.user}@{self.host}"


def normalize_node_list(raw: Union[str, Sequence[str], None]) -> List[str]:
    """
    Splits comma-separated node lists, trims whitespace and drops empty entries.

    Accepts either one string ("a, b,,c") or a sequence of such strings.
    """
    if raw is None:
        return []
    chunks = [raw] if isinstance(raw, str) else list(raw)
    return [
        entry.strip() for chunk in chunks for entry in chunk.split(",") if entry.strip()
    ]


class ClusterTopology(BaseModel):
    """
    Ordered control-plane and worker lists. Roles are recomputed from position
    on every run and never stored.
    """

    control_planes: List[NodeAddress] = Field(min_length=1)
    workers: List[NodeAddress] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_hosts(self) -> ClusterTopology:
        seen: set = set()
        for node in self.control_planes + self.workers:
            key = node.host.lower()
            if key in seen:
                raise ValueError(f"duplicate host '{node.host}' in node lists")
            seen.add(key)
        return self

    @classmethod
    def from_lists(
        cls,
        control_planes: Union[str, Sequence[str], None],
        workers: Union[str, Sequence[str], None] = None,
        *,
        default_user: str = "root",
        port: int = 22,
    ) -> ClusterTopology:
        """
        Normalizes, parses and validates both node lists.

        Raises:
            ValidationError: On an empty control-plane list, a malformed
                address, an invalid default user or a duplicate host.
        """
        if not _DEFAULT_USER_RE.match(default_user):
            raise ValidationError(f"invalid default SSH user '{default_user}'")
        cp_entries = normalize_node_list(control_planes)
        if not cp_entries:
            raise ValidationError("at least one control-plane node is required")
        cps = [
            NodeAddress.parse(e, default_user=default_user, port=port)
            for e in cp_entries
        ]
        wks = [
            NodeAddress.parse(e, default_user=default_user, port=port)
            for e in normalize_node_list(workers)
        ]
        return build_model(cls, control_planes=cps, workers=wks)

    @property
    def first_control_plane(self) -> NodeAddress:
        return self.control_planes[0]

    @property
    def all_nodes(self) -> List[NodeAddress]:
        return self.control_planes + self.workers

    @property
    def is_ha(self) -> bool:
        return len(self.control_planes) > 1

    def nodes_with_roles(self) -> List[Tuple[NodeAddress, NodeRole]]:
        """Returns every node in execution order, paired with its role."""
        roles = [(self.control_planes[0], NodeRole.FIRST_CONTROL_PLANE)]
        roles += [(n, NodeRole.ADDITIONAL_CONTROL_PLANE) for n in self.control_planes[1:]]
        roles += [(n, NodeRole.WORKER) for n in self.workers]
        return roles

    def role_of(self, node: NodeAddress) -> NodeRole:
        for candidate, role in self.nodes_with_roles():
            if candidate.host == node.host:
                return role
        raise ValidationError(f"node {node} is not part of this cluster")
