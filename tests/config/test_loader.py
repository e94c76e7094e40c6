from pathlib import Path
import textwrap

import pytest

from kubeha.config.loader import load_config
from kubeha.errors import ConfigError

MINIMAL = """
    name: lab
    nodes:
      10.0.0.10:
        role: control-plane
        primary: true
      10.0.0.20:
        role: worker
"""


@pytest.fixture(autouse=True)
def _no_secrets_override(monkeypatch):
    monkeypatch.delenv("KUBEHA_SECRETS_FILE", raising=False)


def _write(path: Path, text: str) -> Path:
    path.write_text(textwrap.dedent(text))
    return path


def test_load_config_minimal_ok(tmp_path: Path):
    cfg = load_config(_write(tmp_path / "cluster.yaml", MINIMAL))
    assert cfg.name == "lab"
    assert cfg.versions.kubernetes == "1.23.0"
    assert cfg.versions.istio == "1.13.2"
    assert cfg.versions.argocd == "v2.3.2"
    assert cfg.network.pod_cidr == "10.244.0.0/16"
    assert cfg.addons.load_balancer_port == 8443
    assert cfg.orchestration.retry_attempts == 3
    assert cfg.orchestration.attempt_timeout_seconds == 600
    assert cfg.nodes["10.0.0.10"].primary is True


def test_env_vars_are_expanded(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("KUBE_VERSION", "1.29.3")
    cfg = load_config(_write(tmp_path / "cluster.yaml", MINIMAL + "    versions:\n      kubernetes: ${KUBE_VERSION}\n"))
    assert cfg.versions.kubernetes == "1.29.3"


def test_secrets_file_next_to_config_is_merged(tmp_path: Path):
    _write(tmp_path / "secrets.yaml", """
        nodes:
          10.0.0.10:
            username: deploy
            pkey_path: /keys/id_ed25519
    """)
    cfg = load_config(_write(tmp_path / "cluster.yaml", MINIMAL))
    node = cfg.nodes["10.0.0.10"]
    assert node.username == "deploy"
    assert str(node.pkey_path) == "/keys/id_ed25519"
    # merge keeps what the secrets file does not mention
    assert node.role == "control-plane" and node.primary is True


def test_secrets_file_from_env_wins(tmp_path: Path, monkeypatch):
    _write(tmp_path / "secrets.yaml", "nodes: {10.0.0.20: {username: local}}\n")
    other = _write(tmp_path / "elsewhere.yaml", "nodes: {10.0.0.20: {username: from-env}}\n")
    monkeypatch.setenv("KUBEHA_SECRETS_FILE", str(other))
    cfg = load_config(_write(tmp_path / "cluster.yaml", MINIMAL))
    assert cfg.nodes["10.0.0.20"].username == "from-env"


def test_relative_template_resolves_against_config_dir(tmp_path: Path):
    cfg = load_config(_write(tmp_path / "cluster.yaml", MINIMAL + "    addons:\n      load_balancer_template: lb/haproxy.j2\n"))
    assert cfg.addons.load_balancer_template == (tmp_path / "lb" / "haproxy.j2").resolve()


@pytest.mark.parametrize("text", [
    "nodes: [unclosed\n",
    "- just\n- a list\n",
    "name: no-nodes\n",
    "nodes:\n  10.0.0.10: {role: master}\n",
    "nodes:\n  10.0.0.10: {role: control-plane}\norchestration: {concurrency: 0}\n",
])
def test_bad_documents_are_config_errors(tmp_path: Path, text):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path / "cluster.yaml", text))


def test_missing_file_is_a_config_error(tmp_path: Path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.yaml")
