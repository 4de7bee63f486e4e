"""
kubesetup/models/settings.py

Environment-backed defaults (DeploySettings) and the optional YAML cluster
file (ClusterFile). Command-line flags override both.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings

from kubesetup.models.cluster_deploy import DeployOptions
from kubesetup.models.errors import ValidationError
from kubesetup.models.ssh import HostKeyPolicy
from kubesetup.models.validator import build_model


class DeploySettings(BaseSettings):
    """
    Pydantic settings for remote runs.
    By default, these fields map to environment variables prefixed with `DEPLOY_`.
    For example, `DEPLOY_SSH_USER`, `DEPLOY_SSH_PASSWORD`, etc.
    """

    ssh_user: str = "root"
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_key: Optional[str] = None
    ssh_password: Optional[SecretStr] = None
    ssh_password_file: Optional[str] = None
    ssh_known_hosts: Optional[str] = None
    ssh_host_key_check: HostKeyPolicy = HostKeyPolicy.ACCEPT_NEW
    persist_known_hosts: Optional[str] = None
    remote_timeout: int = Field(default=600, ge=1)
    poll_interval: int = Field(default=10, ge=1)
    connect_timeout: int = Field(default=10, ge=1)
    collect_diagnostics: bool = False
    diagnostics_dir: Optional[str] = None

    class Config:
        # `DEPLOY_SSH_PASSWORD="..."` populates ssh_password without it ever
        # appearing on a command line.
        env_prefix = "DEPLOY_"


class ClusterFile(BaseModel):
    """
    Optional YAML description of a cluster, e.g.:

        control_planes: [root@10.0.0.1, root@10.0.0.2, root@10.0.0.3]
        workers: "10.0.0.10,10.0.0.11"
        ssh_user: ubuntu
        options:
          ha_vip: 10.0.0.100
          cri: containerd
    """

    control_planes: Union[str, List[str]] = Field(default_factory=list)
    workers: Union[str, List[str]] = Field(default_factory=list)
    ssh_user: Optional[str] = None
    ssh_port: Optional[int] = Field(default=None, ge=1, le=65535)
    options: DeployOptions = Field(default_factory=DeployOptions)

    def to_yaml(self, *, sort_keys: bool = False) -> str:
        """
        Serialize this ClusterFile to a YAML string using PyYAML.
        """
        return yaml.safe_dump(self.model_dump(exclude_none=True), sort_keys=sort_keys)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> ClusterFile:
        """
        Deserialize a ClusterFile from a YAML string.

        Raises:
            ValidationError: If the document is not a mapping or fails validation.
        """
        data: Any = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ValidationError("cluster file must be a YAML mapping")
        fields: Dict[str, Any] = {str(k): v for k, v in data.items()}
        return build_model(cls, **fields)
