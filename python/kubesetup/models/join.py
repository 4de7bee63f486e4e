"""
kubesetup/models/join.py

Defines the JoinCredential model shared by every node that joins after the
first control plane has been initialized.
"""

from __future__ import annotations

import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

TOKEN_RE = re.compile(r"^[a-z0-9]{6}\.[a-z0-9]{16}$")
DISCOVERY_HASH_RE = re.compile(r"^sha256:[a-f0-9]{64}$")
CERTIFICATE_KEY_RE = re.compile(r"^[a-f0-9]{64}$")
API_ADDRESS_RE = re.compile(r"^(\[[a-fA-F0-9:]+\]|[a-zA-Z0-9._-]+):([0-9]{1,5})$")


class JoinCredential(BaseModel):
    """
    Token, API address and CA hash a node needs to join the cluster, plus the
    certificate key for HA control-plane joins. Read-only once extracted.
    """

    model_config = ConfigDict(frozen=True)

    token: str
    api_address: str
    discovery_hash: str
    certificate_key: Optional[str] = None

    @field_validator("token")
    @classmethod
    def validate_token(cls, val: str) -> str:
        if not TOKEN_RE.match(val):
            raise ValueError(
                f"join token format is invalid (expected [a-z0-9]{{6}}.[a-z0-9]{{16}}, got '{val}')"
            )
        return val

    @field_validator("api_address")
    @classmethod
    def validate_api_address(cls, val: str) -> str:
        match = API_ADDRESS_RE.match(val)
        if not match or not 1 <= int(match.group(2)) <= 65535:
            raise ValueError(f"join address must be host:port, got '{val}'")
        return val

    @field_validator("discovery_hash")
    @classmethod
    def validate_discovery_hash(cls, val: str) -> str:
        if not DISCOVERY_HASH_RE.match(val):
            raise ValueError(
                f"discovery hash format is invalid (expected sha256:<64 hex chars>, got '{val}')"
            )
        return val

    @field_validator("certificate_key")
    @classmethod
    def validate_certificate_key(cls, val: Optional[str]) -> Optional[str]:
        if val is not None and not CERTIFICATE_KEY_RE.match(val):
            raise ValueError("certificate key must be 64 lowercase hex characters")
        return val

    def join_args(self, *, control_plane: bool = False) -> List[str]:
        """
        Renders the bundle's join flags. Control-plane joins require the
        certificate key.
        """
        args = [
            "--join-token",
            self.token,
            "--join-address",
            self.api_address,
            "--discovery-token-hash",
            self.discovery_hash,
        ]
        if control_plane:
            if self.certificate_key is None:
                raise ValueError("control-plane join requires a certificate key")
            args += ["--control-plane", "--certificate-key", self.certificate_key]
        return args
