import pytest

from kubeha.config.models import ClusterConfig
from kubeha.deploy.join import JoinCredential
from kubeha.errors import ConfigError
from kubeha.inventory.loader import load_inventory
from kubeha.stages import catalog
from kubeha.stages.kubeadm import KubeadmDriver
from kubeha.stages.models import Stage, StagePhase

TOKEN = "abcdef.0123456789abcdef"
CA_HASH = "sha256:" + "c" * 64
CERT_KEY = "d" * 64


def _cfg(**overrides):
    data = {
        "name": "lab",
        "versions": {"kubernetes": "1.29.3"},
        "nodes": {
            "10.0.0.10": {"role": "control-plane", "primary": True},
            "10.0.0.11": {"role": "control-plane"},
            "10.0.0.20": {"role": "worker"},
        },
    }
    data.update(overrides)
    return ClusterConfig.model_validate(data)


def _driver(cfg=None):
    cfg = cfg or _cfg()
    inv = load_inventory(cfg)
    return KubeadmDriver(cfg, inv.nodes), inv


def _node(inv, address):
    return next(n for n in inv if n.address == address)


def _stage(name):
    return next(s for s in catalog.default_stages() if s.name == name)


def _rendered(payload):
    return [c.render() for c in payload]


def test_every_catalog_stage_has_a_payload():
    driver, inv = _driver()
    cred = JoinCredential("10.0.0.10:6443", TOKEN, CA_HASH, CERT_KEY)
    for stage in catalog.default_stages():
        for node in stage.targets(inv.nodes):
            assert len(driver.payload(stage, node, credential=cred)) > 0


def test_unknown_stage_is_a_config_error():
    driver, inv = _driver()
    with pytest.raises(ConfigError):
        driver.payload(Stage(name="install-dashboard", phase=StagePhase.ADDON), inv.primary)


def test_packages_are_pinned_and_held():
    driver, inv = _driver()
    lines = _rendered(driver.payload(_stage(catalog.INSTALL_PACKAGES), inv.primary))
    assert any("kubeadm=1.29.3-*" in ln and "kubelet=1.29.3-*" in ln for ln in lines)
    assert "sudo -n apt-mark hold kubelet kubeadm kubectl" in lines
    repo = next(c for c in driver.payload(_stage(catalog.INSTALL_PACKAGES), inv.primary)
                if c.argv[:2] == ("tee", "/etc/apt/sources.list.d/kubernetes.list"))
    assert "https://pkgs.k8s.io/core:/stable:/v1.29/deb/" in repo.stdin


def test_runtime_preparation_disables_swap_and_configures_containerd():
    driver, inv = _driver()
    lines = _rendered(driver.payload(_stage(catalog.PREPARE_RUNTIME), inv.primary))
    assert "sudo -n swapoff -a" in lines
    assert "sudo -n modprobe br_netfilter" in lines
    assert any("containerd config default" in ln for ln in lines)


def test_init_primary_is_guarded_and_uploads_certs():
    driver, inv = _driver()
    [init, *_] = driver.payload(_stage(catalog.INIT_PRIMARY), inv.primary)
    script = init.argv[2]
    assert script.startswith("[ -f /etc/kubernetes/admin.conf ] ||")
    assert "--upload-certs" in script
    assert init.argv[4:] == ("10.244.0.0/16", "10.0.0.10:6443", "1.29.3")


def test_control_plane_endpoint_override():
    cfg = _cfg(network={"control_plane_endpoint": "k8s.lab:8443"})
    driver, inv = _driver(cfg)
    [init, *_] = driver.payload(_stage(catalog.INIT_PRIMARY), inv.primary)
    assert "k8s.lab:8443" in init.argv


def test_join_commands_are_secret_and_role_aware():
    driver, inv = _driver()
    cred = JoinCredential("10.0.0.10:6443", TOKEN, CA_HASH, CERT_KEY)

    worker = driver.payload(_stage(catalog.JOIN), _node(inv, "10.0.0.20"), credential=cred)
    [cmd] = worker
    assert cmd.secret and "--control-plane" not in cmd.argv[2]
    assert cmd.argv[4:] == ("10.0.0.10:6443", TOKEN, CA_HASH)
    assert TOKEN not in cmd.describe()
    assert worker.redact(f"bad {TOKEN}") == "bad ***"

    [cp] = driver.payload(_stage(catalog.JOIN), _node(inv, "10.0.0.11"), credential=cred)
    assert "--control-plane --certificate-key" in cp.argv[2]
    assert cp.argv[-1] == CERT_KEY


def test_join_needs_a_credential():
    driver, inv = _driver()
    with pytest.raises(ValueError):
        driver.payload(_stage(catalog.JOIN), _node(inv, "10.0.0.20"))
    cred = JoinCredential("10.0.0.10:6443", TOKEN, CA_HASH)
    with pytest.raises(ValueError):
        driver.payload(_stage(catalog.JOIN), _node(inv, "10.0.0.11"), credential=cred)


def test_credential_payload():
    driver, inv = _driver()
    assert [c.argv for c in driver.credential_payload(inv.primary, control_plane=False)] == [
        ("kubeadm", "token", "create", "--print-join-command"),
    ]
    assert len(driver.credential_payload(inv.primary, control_plane=True)) == 2


def test_mesh_and_cd_use_configured_versions():
    driver, inv = _driver()
    mesh = driver.payload(_stage(catalog.INSTALL_MESH), inv.primary)
    assert any("1.13.2" in c.argv for c in mesh)
    assert any("istio-injection=enabled" in c.argv for c in mesh)
    cd = _rendered(driver.payload(_stage(catalog.INSTALL_CD), inv.primary))
    assert any("argo-cd/v2.3.2/manifests/install.yaml" in ln for ln in cd)


def test_default_load_balancer_config_lists_control_planes():
    driver, _ = _driver()
    text = driver.render_load_balancer_config()
    assert "bind *:8443" in text
    assert "server 10.0.0.10 10.0.0.10:6443 check" in text
    assert "server 10.0.0.11 10.0.0.11:6443 check" in text
    assert "10.0.0.20" not in text


def test_custom_load_balancer_template(tmp_path):
    tpl = tmp_path / "lb.cfg.j2"
    tpl.write_text("# {{ cluster_name }}\n{% for w in worker_nodes %}{{ w }}\n{% endfor %}")
    driver, inv = _driver(_cfg(addons={"load_balancer_template": str(tpl)}))
    assert driver.render_load_balancer_config() == "# lab\n10.0.0.20\n"

    payload = driver.payload(_stage(catalog.CONFIGURE_LOAD_BALANCER), inv.primary)
    tee = next(c for c in payload if c.argv[0] == "tee")
    assert tee.stdin == "# lab\n10.0.0.20\n"


def test_template_with_unknown_variable_is_a_config_error(tmp_path):
    tpl = tmp_path / "lb.cfg.j2"
    tpl.write_text("{{ not_defined }}\n")
    driver, _ = _driver(_cfg(addons={"load_balancer_template": str(tpl)}))
    with pytest.raises(ConfigError):
        driver.render_load_balancer_config()


def test_bad_kubernetes_version_is_a_config_error():
    driver, inv = _driver(_cfg(versions={"kubernetes": "latest"}))
    with pytest.raises(ConfigError):
        driver.payload(_stage(catalog.INSTALL_PACKAGES), inv.primary)
