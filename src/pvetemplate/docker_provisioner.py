"""Apply Docker Compose templates inside a temporary LXC container."""

import logging
import os
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

import yaml

from pvetemplate.config import Config
from pvetemplate.lxc_sandbox import LXCSandbox, SandboxFactory
from pvetemplate.models import CommandError, ProvisionSummary, ProvisioningError

logger = logging.getLogger(__name__)

REMOTE_TEMPLATES_DIR = "/srv/templates"
DOCKER_NETWORK = "app-network"
COMPOSE_SUFFIXES = (".yml", ".yaml")

INSTALL_DOCKER = " && ".join([
    "apt-get update",
    "DEBIAN_FRONTEND=noninteractive apt-get install -y ca-certificates curl gnupg lsb-release",
    "install -m 0755 -d /etc/apt/keyrings",
    "curl -fsSL https://download.docker.com/linux/ubuntu/gpg | gpg --dearmor -o /etc/apt/keyrings/docker.gpg",
    'echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] '
    'https://download.docker.com/linux/ubuntu $(lsb_release -cs) stable" > /etc/apt/sources.list.d/docker.list',
    "apt-get update",
    "DEBIAN_FRONTEND=noninteractive apt-get install -y docker-ce docker-ce-cli containerd.io docker-compose-plugin",
])


def find_compose_templates(templates_dir: str) -> List[str]:
    """Names of the compose files in ``templates_dir``."""
    root = Path(templates_dir)
    if not root.is_dir():
        return []
    return sorted(p.name for p in root.iterdir() if p.is_file() and p.suffix in COMPOSE_SUFFIXES)


def resolve_template(name: str, templates_dir: str) -> Optional[Path]:
    """Find a template by path, by file name, or by name without extension."""
    candidates = [Path(name), Path(templates_dir) / name]
    candidates += [Path(templates_dir) / f"{name}{suffix}" for suffix in COMPOSE_SUFFIXES]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def bind_mount_dirs(compose: Dict[str, Any]) -> List[str]:
    """Relative host directories used as bind mounts by the compose services."""
    dirs: Set[str] = set()
    for service in (compose.get("services") or {}).values():
        for volume in (service or {}).get("volumes") or []:
            if isinstance(volume, dict):
                source = volume.get("source", "") if volume.get("type") == "bind" else ""
            else:
                source = str(volume).split(":", 1)[0] if ":" in str(volume) else ""
            if source.startswith("./"):
                dirs.add(os.path.normpath(source))
    return sorted(dirs)


class DockerProvisioner:
    """Installs Docker in a sandbox container and brings compose templates up."""

    def __init__(self, sandbox_factory: SandboxFactory, templates_dir: Optional[str] = None,
                 bridge: Optional[str] = None) -> None:
        self.sandbox_factory = sandbox_factory
        self.templates_dir = templates_dir or Config.DOCKER_TEMPLATES_DIR
        self.bridge = bridge

    def list_templates(self) -> List[str]:
        return find_compose_templates(self.templates_dir)

    def provision(self, templates: Sequence[str]) -> ProvisionSummary:
        """
        Bring every template up with ``docker compose up -d``.

        Returns:
            Summary of applied and failed templates

        Raises:
            ProvisioningError: If the sandbox or Docker itself cannot be set up
        """
        summary = ProvisionSummary()
        if not templates:
            logger.info("No Docker templates selected, skipping")
            return summary

        logger.info(f"🐳 Provisioning Docker templates: {', '.join(templates)}")
        with self.sandbox_factory(hostname="docker-sandbox", unprivileged=False, bridge=self.bridge) as box:
            self._install_docker(box)
            box.exec(f"docker network create {DOCKER_NETWORK}", check=False)

            for name in templates:
                if self._apply(box, name):
                    summary.applied.append(name)
                else:
                    summary.failed.append(name)

        logger.info(f"Docker provisioning complete: {summary}")
        return summary

    def _install_docker(self, box: LXCSandbox) -> None:
        logger.info("Installing Docker Engine in sandbox container")
        try:
            box.exec(INSTALL_DOCKER, timeout=1200)
            box.exec(f"mkdir -p {REMOTE_TEMPLATES_DIR}")
        except CommandError as e:
            raise ProvisioningError(f"Failed to install Docker: {e}")

    def _apply(self, box: LXCSandbox, name: str) -> bool:
        path = resolve_template(name, self.templates_dir)
        if path is None:
            logger.error(f"Docker template not found: {name} (looked in {self.templates_dir})")
            return False

        try:
            compose = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            logger.error(f"Docker template {name} is not valid YAML: {e}")
            return False

        remote = f"{REMOTE_TEMPLATES_DIR}/{path.name}"
        try:
            box.push(str(path), remote)
            if not box.exec(f"docker compose -f {shlex.quote(remote)} config --quiet", check=False).ok:
                logger.warning(f"Docker Compose file has invalid syntax: {name}")
                return False
            for directory in bind_mount_dirs(compose):
                box.exec(f"mkdir -p {shlex.quote(os.path.join(REMOTE_TEMPLATES_DIR, directory))}", check=False)
            box.exec(f"cd {REMOTE_TEMPLATES_DIR} && docker compose -f {shlex.quote(remote)} up -d", timeout=1800)
        except CommandError as e:
            logger.error(f"Failed to provision Docker template {name}: {e}")
            return False

        logger.info(f"✅ Docker template provisioned: {name}")
        return True
