# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/config/models.py

from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class VersionsConfig(BaseModel):
    kubernetes: str = "1.23.0"
    istio: str = "1.13.2"
    argocd: str = "v2.3.2"
    # {minor} is replaced by the kubernetes major.minor, e.g. 1.23
    package_repository: str = "https://pkgs.k8s.io/core:/stable:/v{minor}/deb/"


class NodeConfig(BaseModel):
    role: Literal["control-plane", "worker", "edge"]
    primary: bool = False
    username: str = "ubuntu"                 # SSH user, the credential reference
    port: int = 22
    pkey_path: Optional[Path] = None


class NetworkConfig(BaseModel):
    pod_cidr: str = "10.244.0.0/16"
    control_plane_endpoint: Optional[str] = None   # defaults to the primary address
    cni_manifest_url: str = (
        "https://raw.githubusercontent.com/coreos/flannel/master/Documentation/kube-flannel.yml"
    )
    apiserver_port: int = 6443


class AddonsConfig(BaseModel):
    istio_profile: str = "default"
    injection_namespace: str = "default"
    argocd_namespace: str = "argocd"
    argocd_manifest_url: str = (
        "https://raw.githubusercontent.com/argoproj/argo-cd/{version}/manifests/install.yaml"
    )
    load_balancer_template: Optional[Path] = None  # jinja2 template for haproxy.cfg
    load_balancer_config_path: str = "/etc/haproxy/haproxy.cfg"
    load_balancer_port: int = 8443


class OrchestrationConfig(BaseModel):
    concurrency: Optional[int] = None        # None -> node count
    retry_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=2.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    max_backoff_seconds: float = 60.0
    attempt_timeout_seconds: float = Field(default=600.0, gt=0)
    state_file: Path = Path(".kubeha/state.json")

    @field_validator("concurrency")
    @classmethod
    def _positive_concurrency(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("concurrency must be >= 1")
        return v


class ClusterConfig(BaseModel):
    name: str = "kubeha"
    versions: VersionsConfig = VersionsConfig()
    nodes: Dict[str, NodeConfig]             # address -> node description
    network: NetworkConfig = NetworkConfig()
    addons: AddonsConfig = AddonsConfig()
    orchestration: OrchestrationConfig = OrchestrationConfig()
