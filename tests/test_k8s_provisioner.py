"""Tests for k8s_provisioner module."""

import pytest

from pvetemplate.k8s_provisioner import KubernetesProvisioner, find_manifests
from pvetemplate.models import CommandError, CommandResult, ProvisioningError


@pytest.fixture
def templates_dir(tmp_path):
    root = tmp_path / "k8s"
    root.mkdir()
    (root / "app.yaml").write_text("apiVersion: apps/v1\nkind: Deployment\n")
    (root / "bad.yaml").write_text("kind: Nope\n")
    return str(root)


def _provisioner(factory, templates_dir, **kwargs):
    kwargs.setdefault("kubeconfig", "")
    kwargs.setdefault("save_cluster_info", False)
    return KubernetesProvisioner(factory, templates_dir=templates_dir, **kwargs)


def _scripts(box):
    return [c.args[0] for c in box.exec.call_args_list]


def test_find_manifests(templates_dir):
    assert find_manifests(templates_dir) == ["app.yaml", "bad.yaml"]


def test_provision_validates_then_applies(templates_dir, mock_sandbox):
    factory, box = mock_sandbox

    def exec_(script, check=True, timeout=None):
        failed = "bad.yaml" in script and "--dry-run" in script
        return CommandResult(["pct"], 1 if failed else 0)

    box.exec.side_effect = exec_
    summary = _provisioner(factory, templates_dir).provision(["app", "bad", "missing"])

    assert summary.applied == ["app"]
    assert summary.failed == ["bad", "missing"]
    scripts = _scripts(box)
    assert "kubectl apply --dry-run=client -f /srv/k8s-templates/app.yaml" in scripts
    assert "kubectl apply -f /srv/k8s-templates/app.yaml" in scripts
    assert "kubectl wait --for=condition=available --timeout=300s deployment --all" in scripts


def test_falls_back_to_local_endpoint(templates_dir, mock_sandbox):
    factory, box = mock_sandbox

    def exec_(script, check=True, timeout=None):
        if script == "kubectl cluster-info" or "kubernetes.default.svc" in script:
            return CommandResult(["pct"], 1)
        return CommandResult(["pct"], 0)

    box.exec.side_effect = exec_
    provisioner = _provisioner(factory, templates_dir, wait_for_ready=False)
    provisioner.provision(["app"])

    assert provisioner.server == "https://127.0.0.1:6443"
    assert "kubectl --server=https://127.0.0.1:6443 apply -f /srv/k8s-templates/app.yaml" in _scripts(box)


def test_kubeconfig_pushed(templates_dir, mock_sandbox, tmp_path):
    factory, box = mock_sandbox
    kubeconfig = tmp_path / "config"
    kubeconfig.write_text("apiVersion: v1\n")
    _provisioner(factory, templates_dir, kubeconfig=str(kubeconfig)).provision(["app"])
    box.push.assert_any_call(str(kubeconfig), "/root/.kube/config")


def test_cluster_info_saved(templates_dir, mock_sandbox, tmp_path):
    factory, box = mock_sandbox
    box.exec.return_value = CommandResult(["pct"], 0, "Kubernetes control plane is running")
    _provisioner(factory, templates_dir, save_cluster_info=True, info_dir=str(tmp_path / "info")).provision(["app"])

    saved = list((tmp_path / "info").iterdir())
    assert len(saved) == 1
    assert "$ kubectl get nodes -o wide" in saved[0].read_text()


def test_tool_install_failure(templates_dir, mock_sandbox):
    factory, box = mock_sandbox
    box.exec.side_effect = CommandError(["pct", "exec"], 1, "curl failed")
    with pytest.raises(ProvisioningError, match="Kubernetes tools"):
        _provisioner(factory, templates_dir).provision(["app"])
