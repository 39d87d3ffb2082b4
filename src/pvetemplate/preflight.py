"""Checks run before any template is created."""

import logging
import os
from typing import List, Sequence

from pvetemplate.command_runner import CommandRunner
from pvetemplate.models import InsufficientPermissionsError, MissingDependencyError
from pvetemplate.template_config import TemplateConfig

logger = logging.getLogger(__name__)

BASE_TOOLS = ["qm", "pvesm"]


def required_tools(config: TemplateConfig) -> List[str]:
    """Binaries the Proxmox host needs for ``config``."""
    tools = list(BASE_TOOLS)
    if config.packages:
        tools.append("virt-customize")
    if config.docker_enabled or config.k8s_enabled or config.ansible_enabled:
        tools.append("pct")
    return tools


def check_dependencies(runner: CommandRunner, tools: Sequence[str]) -> None:
    """
    Verify that every tool is installed where commands run.

    Raises:
        MissingDependencyError: Listing every missing tool
    """
    if runner.dry_run:
        logger.debug("Dry run, skipping dependency check")
        return
    missing = [tool for tool in dict.fromkeys(tools) if not runner.which(tool)]
    if missing:
        hint = " (virt-customize is in the libguestfs-tools package)" if "virt-customize" in missing else ""
        raise MissingDependencyError(f"Missing required tools: {', '.join(missing)}{hint}")
    logger.debug(f"All required tools available: {', '.join(tools)}")


def check_root(runner: CommandRunner) -> None:
    """
    Require root when the Proxmox tools run on this machine.

    Raises:
        InsufficientPermissionsError: If not running as root
    """
    if runner.dry_run or runner.is_remote:
        return
    if os.geteuid() != 0:
        raise InsufficientPermissionsError("This tool must be run as root on the Proxmox host (or set PVE_HOST)")
