"""Cloud-init drive configuration and user-data snippets."""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml

from pvetemplate.command_runner import CommandRunner
from pvetemplate.config import Config
from pvetemplate.distributions import Distribution
from pvetemplate.models import CommandError, NetworkMode
from pvetemplate.packages import GUEST_AGENT
from pvetemplate.pve import ProxmoxCLI
from pvetemplate.template_config import TemplateConfig

logger = logging.getLogger(__name__)


def build_ipconfig(config: TemplateConfig) -> Optional[str]:
    """
    Value for ``qm set --ipconfig0``.

    Returns:
        "ip=dhcp", "ip=ADDR/NN[,gw=GW]", or None when networking is left alone
    """
    mode = config.mode
    if mode is NetworkMode.NONE:
        return None
    if mode is NetworkMode.STATIC:
        if not config.static_ip:
            logger.warning("Static network mode without an IP address, falling back to DHCP")
            return "ip=dhcp"
        ipconfig = f"ip={config.static_ip}"
        if config.gateway:
            ipconfig += f",gw={config.gateway}"
        return ipconfig
    return "ip=dhcp"


def read_ssh_keys(path: str) -> List[str]:
    """Public keys from ``path``, one per non-comment line; empty if missing."""
    path = os.path.expanduser(path)
    if not path or not os.path.isfile(path):
        return []
    with open(path) as f:
        return [line.strip() for line in f if line.strip() and not line.startswith("#")]


def render_user_data(config: TemplateConfig, distribution: Distribution) -> str:
    """Render a ``#cloud-config`` document for the template."""
    user: Dict[str, Any] = {
        "name": config.cloud_user(distribution),
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "shell": "/bin/sh" if distribution.os_type != "l26" else "/bin/bash",
        "lock_passwd": True,
    }
    keys = read_ssh_keys(config.ssh_key_file)
    if keys:
        user["ssh_authorized_keys"] = keys

    document: Dict[str, Any] = {
        "hostname": config.template_name,
        "manage_etc_hosts": True,
        "users": ["default", user],
        "package_update": True,
        "packages": [GUEST_AGENT],
        "runcmd": [["systemctl", "enable", "--now", GUEST_AGENT]],
    }
    return "#cloud-config\n" + yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


class CloudInitConfigurator:
    """Attaches and fills the cloud-init drive of a VM."""

    def __init__(self, cli: ProxmoxCLI, runner: CommandRunner) -> None:
        self.cli = cli
        self.runner = runner

    def configure(self, vmid: int, config: TemplateConfig, distribution: Distribution) -> List[str]:
        """
        Configure cloud-init for ``vmid``.

        Returns:
            Warnings for optional settings that could not be applied

        Raises:
            CommandError: If the drive cannot be attached or the user cannot be set
        """
        warnings: List[str] = []
        logger.info(f"☁️  Configuring cloud-init for VM {vmid}")

        self.cli.set_vm(vmid, ide2=f"{config.storage}:cloudinit")
        self.cli.set_vm(vmid, ciuser=config.cloud_user(distribution))

        key_path = os.path.expanduser(config.ssh_key_file)
        if key_path and os.path.isfile(key_path):
            try:
                self.cli.set_vm(vmid, sshkeys=self._host_path(vmid, key_path))
            except CommandError as e:
                warnings.append(f"SSH keys not set: {e}")
        else:
            logger.warning(f"SSH public key {key_path} not found, template will have no SSH keys")

        ipconfig = build_ipconfig(config)
        if ipconfig is not None:
            try:
                self.cli.set_vm(vmid, ipconfig0=ipconfig)
            except CommandError as e:
                warnings.append(f"Network configuration not set: {e}")

        if config.dns and config.mode is not NetworkMode.NONE:
            try:
                self.cli.set_vm(vmid, nameserver=" ".join(config.dns.replace(",", " ").split()))
            except CommandError as e:
                warnings.append(f"DNS servers not set: {e}")

        if config.user_data_snippet:
            try:
                self.cli.set_vm(vmid, cicustom=self.write_snippet(vmid, config, distribution))
            except CommandError as e:
                warnings.append(f"Cloud-init snippet not attached: {e}")

        for warning in warnings:
            logger.warning(warning)
        return warnings

    def write_snippet(self, vmid: int, config: TemplateConfig, distribution: Distribution) -> str:
        """Write the user-data snippet and return the ``cicustom`` value."""
        filename = f"{config.template_name}-{vmid}-user-data.yml"
        self.runner.write_text(os.path.join(Config.SNIPPETS_DIR, filename), render_user_data(config, distribution))
        storage = Config.SNIPPETS_STORAGE or "local"
        logger.info(f"📝 Cloud-init snippet {storage}:snippets/{filename}")
        return f"user={storage}:snippets/{filename}"

    def _host_path(self, vmid: int, local_path: str) -> str:
        if not self.runner.is_remote:
            return local_path
        remote = os.path.join(Config.WORK_DIR, f"{vmid}-sshkeys.pub")
        self.runner.put_file(local_path, remote)
        return remote
