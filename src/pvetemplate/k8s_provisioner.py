"""Apply Kubernetes manifests from a temporary LXC container."""

import logging
import os
import shlex
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from pvetemplate.config import Config
from pvetemplate.lxc_sandbox import LXCSandbox, SandboxFactory
from pvetemplate.models import CommandError, ProvisionSummary, ProvisioningError

logger = logging.getLogger(__name__)

REMOTE_TEMPLATES_DIR = "/srv/k8s-templates"
HELM_VERSION = "3.13.0"
FALLBACK_ENDPOINTS = (
    "https://kubernetes.default.svc:443",
    "https://127.0.0.1:6443",
    "https://localhost:6443",
)
MANIFEST_SUFFIXES = (".yml", ".yaml", ".json")

INSTALL_K8S_TOOLS = " && ".join([
    "apt-get update",
    "DEBIAN_FRONTEND=noninteractive apt-get install -y curl ca-certificates",
    'curl -fsSLo /usr/local/bin/kubectl "https://dl.k8s.io/release/$(curl -fsSL https://dl.k8s.io/release/stable.txt)/bin/linux/amd64/kubectl"',
    "chmod +x /usr/local/bin/kubectl",
    f"curl -fsSL https://get.helm.sh/helm-v{HELM_VERSION}-linux-amd64.tar.gz | tar -xzO linux-amd64/helm > /usr/local/bin/helm",
    "chmod +x /usr/local/bin/helm",
])


def find_manifests(templates_dir: str) -> List[str]:
    root = Path(templates_dir)
    if not root.is_dir():
        return []
    return sorted(p.name for p in root.iterdir() if p.is_file() and p.suffix in MANIFEST_SUFFIXES)


def resolve_manifest(name: str, templates_dir: str) -> Optional[Path]:
    candidates = [Path(name), Path(templates_dir) / name]
    candidates += [Path(templates_dir) / f"{name}{suffix}" for suffix in MANIFEST_SUFFIXES]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


class KubernetesProvisioner:
    """Installs kubectl/helm in a sandbox and applies manifests to a cluster."""

    def __init__(
        self,
        sandbox_factory: SandboxFactory,
        templates_dir: Optional[str] = None,
        kubeconfig: Optional[str] = None,
        wait_for_ready: bool = True,
        save_cluster_info: bool = True,
        info_dir: Optional[str] = None,
        bridge: Optional[str] = None,
    ) -> None:
        self.sandbox_factory = sandbox_factory
        self.templates_dir = templates_dir or Config.K8S_TEMPLATES_DIR
        self.kubeconfig = kubeconfig if kubeconfig is not None else Config.KUBECONFIG
        self.wait_for_ready = wait_for_ready
        self.save_cluster_info = save_cluster_info
        self.info_dir = info_dir or Config.LOG_DIR
        self.bridge = bridge
        self.server: Optional[str] = None

    def list_templates(self) -> List[str]:
        return find_manifests(self.templates_dir)

    def _kubectl(self, args: str) -> str:
        server = f" --server={shlex.quote(self.server)}" if self.server else ""
        return f"kubectl{server} {args}"

    def provision(self, templates: Sequence[str]) -> ProvisionSummary:
        """
        Validate and apply each manifest.

        Returns:
            Summary of applied and failed manifests

        Raises:
            ProvisioningError: If the tools cannot be installed
        """
        summary = ProvisionSummary()
        if not templates:
            logger.info("No Kubernetes templates selected, skipping")
            return summary

        logger.info(f"☸️  Provisioning Kubernetes templates: {', '.join(templates)}")
        with self.sandbox_factory(hostname="k8s-runner", bridge=self.bridge) as box:
            try:
                box.exec(INSTALL_K8S_TOOLS, timeout=900)
                box.exec(f"mkdir -p {REMOTE_TEMPLATES_DIR} /root/.kube")
            except CommandError as e:
                raise ProvisioningError(f"Failed to install Kubernetes tools: {e}")

            if self.kubeconfig and os.path.isfile(self.kubeconfig):
                try:
                    box.push(self.kubeconfig, "/root/.kube/config")
                except CommandError as e:
                    logger.warning(f"Failed to copy kubeconfig, will try local cluster endpoints: {e}")

            self._connect(box)

            for name in templates:
                if self._apply(box, name):
                    summary.applied.append(name)
                else:
                    summary.failed.append(name)

            logger.info(f"Kubernetes provisioning summary: {summary}")
            if self.save_cluster_info:
                self._save_cluster_info(box)

        return summary

    def _connect(self, box: LXCSandbox) -> None:
        if box.exec(self._kubectl("cluster-info"), check=False).ok:
            return
        logger.warning("Cannot connect to Kubernetes cluster, trying local endpoints")
        for endpoint in FALLBACK_ENDPOINTS:
            if box.exec(f"kubectl --server={endpoint} cluster-info", check=False).ok:
                logger.info(f"Connected to cluster at {endpoint}")
                self.server = endpoint
                return
        logger.warning("No Kubernetes cluster reachable, applying will likely fail")

    def _apply(self, box: LXCSandbox, name: str) -> bool:
        path = resolve_manifest(name, self.templates_dir)
        if path is None:
            logger.error(f"Kubernetes template not found: {name} (looked in {self.templates_dir})")
            return False

        remote = shlex.quote(f"{REMOTE_TEMPLATES_DIR}/{path.name}")
        try:
            box.push(str(path), f"{REMOTE_TEMPLATES_DIR}/{path.name}")
        except CommandError as e:
            logger.error(f"Failed to copy template {name}: {e}")
            return False

        if not box.exec(self._kubectl(f"apply --dry-run=client -f {remote}"), check=False).ok:
            logger.error(f"Template validation failed: {name}")
            return False
        if not box.exec(self._kubectl(f"apply -f {remote}"), check=False).ok:
            logger.error(f"Failed to apply template: {name}")
            return False

        logger.info(f"✅ Applied Kubernetes template: {name}")
        if self.wait_for_ready:
            waited = box.exec(
                self._kubectl("wait --for=condition=available --timeout=300s deployment --all"),
                check=False,
                timeout=360,
            )
            if not waited.ok:
                logger.warning("Some deployments may not be ready yet")
        return True

    def _save_cluster_info(self, box: LXCSandbox) -> Optional[str]:
        if box.runner.dry_run:
            return None
        os.makedirs(self.info_dir, exist_ok=True)
        path = os.path.join(self.info_dir, f"k8s-cluster-info-{datetime.now():%Y%m%d-%H%M%S}.txt")
        with open(path, "w") as f:
            for args in ("cluster-info", "get nodes -o wide", "get all --all-namespaces"):
                result = box.exec(self._kubectl(args), check=False)
                f.write(f"$ kubectl {args}\n{result.stdout}\n")
        logger.info(f"Cluster information saved to {path}")
        return path
