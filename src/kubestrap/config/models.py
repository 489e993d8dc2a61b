# src/kubestrap/config/models.py

import ipaddress
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_NETWORK_MANIFEST = (
    "https://github.com/flannel-io/flannel/releases/latest/download/kube-flannel.yml"
)


class NodeSpec(BaseModel):
    name: str                        # must match the node's hostname as kubelet registers it
    address: str                     # IP or DNS to connect
    port: int = 22


class ConnectionSpec(BaseModel):
    """How every node is reached. Shared by the whole inventory."""

    user: str = "ubuntu"
    interpreter: str = "/bin/bash"   # remote shell commands are run through
    pkey_path: Optional[Path] = None
    password: Optional[str] = None
    become_password: Optional[str] = None   # for sudo -S
    connect_timeout: float = 20.0
    connect_retries: int = 3
    connect_retry_delay: float = 10.0

    @field_validator("pkey_path")
    @classmethod
    def _expand_home(cls, v: Optional[Path]) -> Optional[Path]:
        return v.expanduser() if v else v


class InventorySpec(BaseModel):
    master: NodeSpec
    workers: List[NodeSpec] = Field(default_factory=list)
    connection: ConnectionSpec = ConnectionSpec()

    @model_validator(mode="after")
    def _unique_names(self):
        names = [self.master.name] + [w.name for w in self.workers]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate node names in inventory: {', '.join(dupes)}")
        return self


class ClusterSpec(BaseModel):
    pod_network_cidr: str = "10.244.0.0/16"
    advertise_address: Optional[str] = None      # defaults to the master address
    kubernetes_version: Optional[str] = None
    cri_socket: Optional[str] = None
    network_manifest: Optional[str] = DEFAULT_NETWORK_MANIFEST
    admin_kubeconfig: str = "/etc/kubernetes/admin.conf"

    # Timeouts (seconds)
    command_timeout: float = 300.0
    init_timeout: float = 900.0
    readiness_timeout: float = 600.0
    readiness_interval: float = 10.0

    credentials_path: Path = Path("kubeconfig")
    max_parallel: int = 16

    @field_validator("pod_network_cidr")
    @classmethod
    def _valid_cidr(cls, v: str) -> str:
        ipaddress.ip_network(v, strict=False)
        return v


class ValidationSpec(BaseModel):
    enabled: bool = True
    name: str = "kubestrap-validation"
    namespace: str = "default"
    image: str = "registry.k8s.io/pause:3.9"
    replicas: int = Field(default=2, ge=2)
    timeout: float = 300.0
    interval: float = 5.0


class KubestrapConfig(BaseModel):
    environment: str = "dev"
    inventory: InventorySpec
    cluster: ClusterSpec = ClusterSpec()
    validation: ValidationSpec = ValidationSpec()
