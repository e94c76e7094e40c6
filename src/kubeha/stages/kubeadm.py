# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/stages/kubeadm.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from kubeha.config.models import ClusterConfig
from kubeha.errors import ConfigError
from kubeha.execution.models import Command, StagePayload, sh
from kubeha.inventory.models import Node, NodeRole
from . import catalog
from .models import Stage

if TYPE_CHECKING:
    from kubeha.deploy.join import JoinCredential

log = logging.getLogger("kubeha")

TEMPLATES_DIR = Path(__file__).parent / "templates"

KEYRING = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
K8S_PACKAGES = ("kubelet", "kubeadm", "kubectl")


def _cmd(*argv: str, sudo: bool = True, stdin: Optional[str] = None) -> Command:
    return Command(argv=tuple(argv), sudo=sudo, stdin=stdin)


class KubeadmDriver:
    """
    Builds apt/kubeadm/istioctl/haproxy/kubectl payloads for the default stage catalog.
    Every command either converges (apt-get install, kubectl apply, tee) or is
    guarded by a check for the state it creates.
    """

    def __init__(self, cfg: ClusterConfig, nodes: Sequence[Node]):
        self.cfg = cfg
        self.nodes = tuple(nodes)
        self._builders: Dict[str, Callable[..., StagePayload]] = {
            catalog.INSTALL_PACKAGES: self.install_packages,
            catalog.PREPARE_RUNTIME: self.prepare_runtime,
            catalog.INIT_PRIMARY: self.init_primary,
            catalog.JOIN: self.join,
            catalog.INSTALL_MESH: self.install_mesh,
            catalog.CONFIGURE_LOAD_BALANCER: self.configure_load_balancer,
            catalog.INSTALL_CD: self.install_cd,
        }

    # ------------------ NodeDriver ------------------

    def payload(self, stage: Stage, node: Node, *, credential: Optional["JoinCredential"] = None) -> StagePayload:
        try:
            builder = self._builders[stage.name]
        except KeyError:
            raise ConfigError(f"no payload known for stage '{stage.name}'") from None
        if stage.name == catalog.JOIN:
            if credential is None:
                raise ValueError("join payload needs a credential")
            return builder(node, credential)
        return builder(node)

    def credential_payload(self, primary: Node, *, control_plane: bool) -> StagePayload:
        commands = [_cmd("kubeadm", "token", "create", "--print-join-command")]
        if control_plane:
            commands.append(_cmd("kubeadm", "init", "phase", "upload-certs", "--upload-certs"))
        return StagePayload(tuple(commands))

    # ------------------ helpers ------------------

    @property
    def primary(self) -> Node:
        return next(n for n in self.nodes if n.primary)

    @property
    def control_plane_endpoint(self) -> str:
        net = self.cfg.network
        return net.control_plane_endpoint or f"{self.primary.address}:{net.apiserver_port}"

    @property
    def kubernetes_minor(self) -> str:
        parts = self.cfg.versions.kubernetes.lstrip("v").split(".")
        if len(parts) < 2:
            raise ConfigError(f"kubernetes version '{self.cfg.versions.kubernetes}' is not major.minor[.patch]")
        return ".".join(parts[:2])

    # ------------------ provision ------------------

    def install_packages(self, node: Node) -> StagePayload:
        version = self.cfg.versions.kubernetes.lstrip("v")
        repo = self.cfg.versions.package_repository.format(minor=self.kubernetes_minor)
        return StagePayload((
            _cmd("apt-get", "update", "-y"),
            _cmd("apt-get", "install", "-y", "apt-transport-https", "ca-certificates", "curl", "gpg"),
            _cmd("install", "-d", "-m", "0755", "/etc/apt/keyrings"),
            sh('[ -s "$2" ] || curl -fsSL "${1}Release.key" | gpg --dearmor -o "$2"', repo, KEYRING, sudo=True),
            _cmd("tee", "/etc/apt/sources.list.d/kubernetes.list",
                 stdin=f"deb [signed-by={KEYRING}] {repo} /\n"),
            _cmd("apt-get", "update", "-y"),
            _cmd("apt-get", "install", "-y", "--allow-change-held-packages",
                 *(f"{p}={version}-*" for p in K8S_PACKAGES)),
            _cmd("apt-mark", "hold", *K8S_PACKAGES),
        ))

    def prepare_runtime(self, node: Node) -> StagePayload:
        return StagePayload((
            _cmd("modprobe", "overlay"),
            _cmd("modprobe", "br_netfilter"),
            _cmd("tee", "/etc/modules-load.d/k8s.conf", stdin="overlay\nbr_netfilter\n"),
            _cmd("tee", "/etc/sysctl.d/k8s.conf", stdin=(
                "net.bridge.bridge-nf-call-ip6tables = 1\n"
                "net.bridge.bridge-nf-call-iptables = 1\n"
                "net.ipv4.ip_forward = 1\n"
            )),
            _cmd("sysctl", "--system"),
            _cmd("apt-get", "install", "-y", "containerd"),
            _cmd("mkdir", "-p", "/etc/containerd"),
            sh('[ -s "$1" ] || containerd config default > "$1"', "/etc/containerd/config.toml", sudo=True),
            _cmd("systemctl", "restart", "containerd"),
            _cmd("systemctl", "enable", "containerd"),
            _cmd("swapoff", "-a"),
            _cmd("sed", "-i", r"/^[^#].*\sswap\s/ s/^/#/", "/etc/fstab"),
        ))

    # ------------------ bootstrap ------------------

    def init_primary(self, node: Node) -> StagePayload:
        net = self.cfg.network
        return StagePayload((
            sh(
                '[ -f /etc/kubernetes/admin.conf ] || kubeadm init '
                '--pod-network-cidr="$1" --control-plane-endpoint="$2" '
                '--kubernetes-version="$3" --upload-certs',
                net.pod_cidr, self.control_plane_endpoint, self.cfg.versions.kubernetes,
                sudo=True,
            ),
            sh(
                'mkdir -p "$HOME/.kube" && sudo -n cp -f /etc/kubernetes/admin.conf "$HOME/.kube/config" '
                '&& sudo -n chown "$(id -u):$(id -g)" "$HOME/.kube/config"'
            ),
            _cmd("kubectl", "apply", "-f", net.cni_manifest_url, sudo=False),
        ))

    # ------------------ join ------------------

    def join(self, node: Node, credential: "JoinCredential") -> StagePayload:
        args = [credential.endpoint, credential.token, credential.ca_cert_hash]
        script = (
            '[ -f /etc/kubernetes/kubelet.conf ] || kubeadm join "$1" '
            '--token "$2" --discovery-token-ca-cert-hash "$3"'
        )
        if node.role is NodeRole.CONTROL_PLANE:
            if not credential.certificate_key:
                raise ValueError(f"control-plane join of {node.address} needs a certificate key")
            script += ' --control-plane --certificate-key "$4"'
            args.append(credential.certificate_key)
        return StagePayload(
            (sh(script, *args, sudo=True, secret=True),),
            redactions=credential.secrets(),
        )

    # ------------------ addons ------------------

    def install_mesh(self, node: Node) -> StagePayload:
        addons = self.cfg.addons
        version = self.cfg.versions.istio
        return StagePayload((
            sh(
                'cd "$HOME" && { [ -x "istio-$1/bin/istioctl" ] || '
                'curl -fsSL https://istio.io/downloadIstio | ISTIO_VERSION="$1" sh -; }',
                version,
            ),
            sh('"$HOME/istio-$1/bin/istioctl" install --set profile="$2" -y', version, addons.istio_profile),
            _cmd("kubectl", "label", "namespace", addons.injection_namespace,
                 "istio-injection=enabled", "--overwrite", sudo=False),
        ))

    def render_load_balancer_config(self) -> str:
        addons = self.cfg.addons
        template = addons.load_balancer_template or TEMPLATES_DIR / "haproxy.cfg.j2"
        env = Environment(
            loader=FileSystemLoader(str(template.parent)),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        context = {
            "cluster_name": self.cfg.name,
            "control_plane_nodes": [n.address for n in self.nodes if n.role is NodeRole.CONTROL_PLANE],
            "worker_nodes": [n.address for n in self.nodes if n.role is NodeRole.WORKER],
            "apiserver_port": self.cfg.network.apiserver_port,
            "frontend_port": addons.load_balancer_port,
        }
        try:
            rendered = env.get_template(template.name).render(**context)
        except TemplateError as e:
            raise ConfigError(f"cannot render load balancer template {template}: {e}") from e
        return rendered if rendered.endswith("\n") else rendered + "\n"

    def configure_load_balancer(self, node: Node) -> StagePayload:
        path = self.cfg.addons.load_balancer_config_path
        return StagePayload((
            _cmd("apt-get", "install", "-y", "haproxy"),
            _cmd("tee", path, stdin=self.render_load_balancer_config()),
            _cmd("haproxy", "-c", "-f", path),
            _cmd("systemctl", "enable", "haproxy"),
            _cmd("systemctl", "restart", "haproxy"),
        ))

    def install_cd(self, node: Node) -> StagePayload:
        addons = self.cfg.addons
        manifest = addons.argocd_manifest_url.format(version=self.cfg.versions.argocd)
        return StagePayload((
            sh(
                'kubectl create namespace "$1" --dry-run=client -o yaml | kubectl apply -f -',
                addons.argocd_namespace,
            ),
            _cmd("kubectl", "apply", "-n", addons.argocd_namespace, "-f", manifest, sudo=False),
        ))
