# models.py

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, SecretStr


class HostKeyPolicy(str, Enum):
    """Value passed to ssh's StrictHostKeyChecking option."""

    STRICT = "yes"
    ACCEPT_NEW = "accept-new"
    OFF = "no"


class SessionCredentials(BaseModel):
    """
    Authentication and host-key settings for one orchestration run.

    A private key (explicit or auto-discovered) takes precedence over a
    password. With neither, ssh falls back to the agent.
    """

    private_key_path: Optional[str] = None
    password: Optional[SecretStr] = None
    host_key_policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_NEW
    known_hosts_seed: Optional[str] = None
    persist_known_hosts: Optional[str] = None

    @property
    def uses_password(self) -> bool:
        return self.private_key_path is None and self.password is not None

    @property
    def auth_method(self) -> str:
        if self.private_key_path:
            return "key"
        if self.password is not None:
            return "password"
        return "agent"


class SSHConnection(BaseModel):
    """
    Everything the transport needs besides the target node: credentials plus
    the session-scoped files created when the session was opened.
    """

    credentials: SessionCredentials
    known_hosts_path: str
    askpass_path: Optional[str] = None
    connect_timeout: int = Field(default=10, ge=1)
