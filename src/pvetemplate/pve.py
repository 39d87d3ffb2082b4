"""Thin wrapper over the qm, pct and pvesm command line tools."""

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from pvetemplate.command_runner import CommandRunner
from pvetemplate.models import CommandResult

logger = logging.getLogger(__name__)


def _option_args(options: Dict[str, Any]) -> List[str]:
    """Turn keyword options into ``--key value`` pairs, skipping None."""
    args: List[str] = []
    for key, value in options.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = int(value)
        args += [f"--{key}", str(value)]
    return args


class ProxmoxCLI:
    """Builds and runs Proxmox CLI commands through a CommandRunner."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    # === VM (qm) ===

    def vm_exists(self, vmid: int) -> bool:
        return self.runner.run(["qm", "status", vmid], check=False, readonly=True).ok

    def container_exists(self, ctid: int) -> bool:
        return self.runner.run(["pct", "status", ctid], check=False, readonly=True).ok

    def id_in_use(self, vmid: int) -> bool:
        """True if a VM or a container already uses ``vmid``."""
        return self.vm_exists(vmid) or self.container_exists(vmid)

    def vm_status(self, vmid: int) -> str:
        """Return "running", "stopped" or "unknown"."""
        result = self.runner.run(["qm", "status", vmid], check=False, readonly=True)
        if not result.ok:
            return "unknown"
        # Output looks like "status: running"
        return result.stdout.split(":", 1)[-1].strip() or "unknown"

    def create_vm(self, vmid: int, **options: Any) -> CommandResult:
        logger.info(f"🖥️  Creating VM {vmid} ({options.get('name', '')})")
        return self.runner.run(["qm", "create", vmid] + _option_args(options))

    def set_vm(self, vmid: int, **options: Any) -> CommandResult:
        return self.runner.run(["qm", "set", vmid] + _option_args(options))

    def import_disk(self, vmid: int, image_path: str, storage: str) -> CommandResult:
        logger.info(f"💾 Importing {image_path} → {storage}")
        return self.runner.run(["qm", "importdisk", vmid, image_path, storage])

    def resize_disk(self, vmid: int, disk: str, size: str) -> CommandResult:
        logger.info(f"🔧 Resizing {disk} of VM {vmid} → {size}")
        return self.runner.run(["qm", "resize", vmid, disk, size])

    def start_vm(self, vmid: int) -> CommandResult:
        return self.runner.run(["qm", "start", vmid])

    def stop_vm(self, vmid: int) -> CommandResult:
        logger.info(f"⏹️  Stopping VM {vmid}")
        return self.runner.run(["qm", "stop", vmid])

    def wait_for_vm_stopped(self, vmid: int, timeout: int = 30, interval: float = 1.0) -> bool:
        """Poll until the VM reports stopped; False on timeout."""
        if self.runner.dry_run:
            return True
        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.vm_status(vmid) == "stopped":
                return True
            time.sleep(interval)
        return False

    def destroy_vm(self, vmid: int, purge: bool = True) -> CommandResult:
        logger.info(f"🗑️  Destroying VM {vmid}")
        args: List[object] = ["qm", "destroy", vmid]
        if purge:
            args.append("--purge")
        return self.runner.run(args)

    def convert_to_template(self, vmid: int) -> CommandResult:
        logger.info(f"📦 Converting VM {vmid} to template")
        return self.runner.run(["qm", "template", vmid])

    def vm_config(self, vmid: int) -> Dict[str, str]:
        """Parse ``qm config`` output into a dict."""
        result = self.runner.run(["qm", "config", vmid], check=False, readonly=True)
        config: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            if ":" in line:
                key, value = line.split(":", 1)
                config[key.strip()] = value.strip()
        return config

    def list_vms(self) -> List[Dict[str, str]]:
        """Parse ``qm list`` into dicts keyed by lower-cased column names."""
        result = self.runner.run(["qm", "list"], check=False, readonly=True)
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        if not result.ok or not lines:
            return []

        header = [col.lower() for col in lines[0].split()]
        vms = []
        for line in lines[1:]:
            fields = line.split()
            if len(fields) < len(header):
                continue
            vms.append(dict(zip(header, fields)))
        return vms

    def list_templates(self) -> List[Dict[str, str]]:
        """VMs whose configuration has ``template: 1``."""
        return [vm for vm in self.list_vms() if self.vm_config(int(vm["vmid"])).get("template") == "1"]

    # === Storage (pvesm) ===

    def storage_path(self, volume: str) -> str:
        """Resolve a volume id such as ``local-lvm:vm-100-disk-0`` to a path."""
        result = self.runner.run(["pvesm", "path", volume], check=False, readonly=True)
        return result.stdout.strip() if result.ok else ""

    # === Containers (pct) ===

    def create_container(self, ctid: int, ostemplate: str, **options: Any) -> CommandResult:
        logger.info(f"📦 Creating container {ctid} from {ostemplate}")
        return self.runner.run(["pct", "create", ctid, ostemplate] + _option_args(options))

    def start_container(self, ctid: int) -> CommandResult:
        return self.runner.run(["pct", "start", ctid])

    def container_exec(
        self, ctid: int, command: Sequence[object], check: bool = True, timeout: Optional[int] = None
    ) -> CommandResult:
        return self.runner.run(["pct", "exec", ctid, "--"] + list(command), check=check, timeout=timeout)

    def push_file(self, ctid: int, local_path: str, container_path: str) -> CommandResult:
        return self.runner.run(["pct", "push", ctid, local_path, container_path])

    def stop_container(self, ctid: int) -> CommandResult:
        return self.runner.run(["pct", "stop", ctid], check=False)

    def destroy_container(self, ctid: int) -> CommandResult:
        logger.info(f"🗑️  Destroying container {ctid}")
        return self.runner.run(["pct", "destroy", ctid, "--purge"], check=False)
