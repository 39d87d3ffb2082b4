"""Install packages into the template disk with virt-customize."""

import logging
import os
import tempfile
from typing import Sequence

from pvetemplate.command_runner import CommandRunner
from pvetemplate.config import Config
from pvetemplate.models import CommandError
from pvetemplate.packages import GUEST_AGENT, build_install_command, normalize_packages
from pvetemplate.pve import ProxmoxCLI

logger = logging.getLogger(__name__)

CUSTOMIZE_TIMEOUT = 3600


def build_install_script(package_manager: str, packages: Sequence[str]) -> str:
    """Shell script run inside the image to install packages and enable the guest agent."""
    install = build_install_command(package_manager, packages)
    lines = [
        "#!/bin/sh",
        "set -e",
        install,
    ]
    if GUEST_AGENT in packages:
        lines += [
            "if command -v systemctl >/dev/null 2>&1; then",
            f"    systemctl enable {GUEST_AGENT} || true",
            "elif command -v rc-update >/dev/null 2>&1; then",
            f"    rc-update add {GUEST_AGENT} default || true",
            "fi",
        ]
    # Clones get a fresh machine-id on first boot
    lines += [
        "truncate -s 0 /etc/machine-id 2>/dev/null || true",
        "rm -f /var/lib/dbus/machine-id",
    ]
    return "\n".join(lines) + "\n"


class PackageInstaller:
    """Runs virt-customize against the imported disk of a VM."""

    def __init__(self, cli: ProxmoxCLI, runner: CommandRunner) -> None:
        self.cli = cli
        self.runner = runner

    def install(self, vmid: int, storage: str, package_manager: str, packages: Sequence[str]) -> bool:
        """
        Install ``packages`` into ``scsi0`` of ``vmid``.

        Returns:
            False when there was nothing to install

        Raises:
            InvalidParameterError: If the package manager is unsupported
            CommandError: If pvesm or virt-customize fails
        """
        packages = normalize_packages(packages)
        if not packages:
            logger.info("No packages selected, skipping package installation")
            return False

        script = build_install_script(package_manager, packages)
        disk = self.cli.storage_path(f"{storage}:vm-{vmid}-disk-0")
        if not disk:
            if not self.runner.dry_run:
                raise CommandError(["pvesm", "path", f"{storage}:vm-{vmid}-disk-0"], 1, "cannot resolve disk path")
            disk = f"<{storage}:vm-{vmid}-disk-0>"
        logger.info(f"📦 Installing {len(packages)} packages into {disk}: {' '.join(packages)}")

        with tempfile.NamedTemporaryFile("w", suffix=".sh", prefix=f"pkg-{vmid}-", delete=False) as f:
            f.write(script)
            local_script = f.name
        try:
            host_script = local_script
            if self.runner.is_remote:
                host_script = os.path.join(Config.WORK_DIR, os.path.basename(local_script))
                self.runner.put_file(local_script, host_script)

            self.runner.run(
                [
                    "virt-customize",
                    "-a", disk,
                    "--run", host_script,
                    "--selinux-relabel",
                ],
                timeout=CUSTOMIZE_TIMEOUT,
            )
        finally:
            os.remove(local_script)
        return True
