"""Disposable LXC containers used as automation sandboxes."""

import logging
import os
import time
from typing import Callable, Optional

from pvetemplate.config import Config
from pvetemplate.models import CommandError, CommandResult, ProvisioningError
from pvetemplate.pve import ProxmoxCLI
from pvetemplate.vmid import VMIDAllocator

logger = logging.getLogger(__name__)


class LXCSandbox:
    """Context manager that creates, starts and finally destroys an LXC container.

    Example:
        with LXCSandbox(cli, allocator, hostname="docker-sandbox") as box:
            box.exec("apt-get update")
    """

    def __init__(
        self,
        cli: ProxmoxCLI,
        allocator: VMIDAllocator,
        hostname: str = "pve-template-sandbox",
        cores: int = 2,
        memory: int = 2048,
        swap: int = 512,
        disk_gb: int = 8,
        bridge: Optional[str] = None,
        ostemplate: Optional[str] = None,
        storage: Optional[str] = None,
        unprivileged: bool = True,
        keep: bool = False,
        ready_timeout: Optional[int] = None,
    ) -> None:
        self.cli = cli
        self.allocator = allocator
        self.hostname = hostname
        self.cores = cores
        self.memory = memory
        self.swap = swap
        self.disk_gb = disk_gb
        self.bridge = bridge or Config.DEFAULT_BRIDGE
        self.ostemplate = ostemplate or Config.LXC_OS_TEMPLATE
        self.storage = storage or Config.LXC_STORAGE
        self.unprivileged = unprivileged
        self.keep = keep
        self.ready_timeout = ready_timeout or Config.LXC_READY_TIMEOUT
        self.ctid: Optional[int] = None
        self._staging_dir: Optional[str] = None

    @property
    def runner(self):
        return self.cli.runner

    def __enter__(self) -> "LXCSandbox":
        self.create()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def create(self) -> int:
        """
        Create and start the container, then wait until it answers.

        Raises:
            ProvisioningError: If the container never becomes ready
        """
        self.ctid = self.allocator.reserve()
        try:
            self.cli.create_container(
                self.ctid,
                self.ostemplate,
                hostname=self.hostname,
                cores=self.cores,
                memory=self.memory,
                swap=self.swap,
                rootfs=f"{self.storage}:{self.disk_gb}",
                net0=f"name=eth0,bridge={self.bridge},ip=dhcp",
                features="nesting=1",
                unprivileged=self.unprivileged,
            )
        except CommandError:
            self.allocator.release(self.ctid)
            self.ctid = None
            raise
        try:
            self.cli.start_container(self.ctid)
            self.wait_ready()
        except Exception:
            self.cleanup()
            raise
        logger.info(f"✅ Sandbox container {self.ctid} ({self.hostname}) ready")
        return self.ctid

    def wait_ready(self, interval: float = 2.0) -> None:
        if self.runner.dry_run:
            return
        deadline = time.time() + self.ready_timeout
        while time.time() < deadline:
            # Ready once DHCP has installed a default route
            result = self.cli.container_exec(self.ctid, ["sh", "-c", "ip route | grep -q default"], check=False)
            if result.ok:
                return
            time.sleep(interval)
        raise ProvisioningError(f"Container {self.ctid} not ready after {self.ready_timeout}s")

    def exec(self, script: str, check: bool = True, timeout: Optional[int] = None) -> CommandResult:
        """Run a shell snippet inside the container with bash -c."""
        if self.ctid is None:
            raise ProvisioningError("Sandbox container has not been created")
        return self.cli.container_exec(self.ctid, ["bash", "-c", script], check=check, timeout=timeout)

    def push(self, local_path: str, container_path: str) -> None:
        """Copy a local file into the container."""
        if self.ctid is None:
            raise ProvisioningError("Sandbox container has not been created")
        host_path = local_path
        if self.runner.is_remote:
            self._staging_dir = os.path.join(Config.WORK_DIR, f"ct{self.ctid}")
            host_path = os.path.join(self._staging_dir, os.path.basename(local_path))
            self.runner.put_file(local_path, host_path)
        self.exec(f"mkdir -p {os.path.dirname(container_path) or '/'}")
        self.cli.push_file(self.ctid, host_path, container_path)

    def cleanup(self) -> None:
        """Stop and destroy the container unless it should be kept. Never raises."""
        if self.ctid is None:
            return
        ctid, self.ctid = self.ctid, None
        if self._staging_dir:
            staging, self._staging_dir = self._staging_dir, None
            try:
                self.runner.run(["rm", "-rf", staging], check=False)
            except CommandError as e:
                logger.warning(f"Failed to remove staged files in {staging}: {e}")
        if self.keep:
            logger.info(f"Keeping sandbox container {ctid} for inspection")
            return
        try:
            self.cli.stop_container(ctid)
            self.cli.destroy_container(ctid)
        except CommandError as e:
            logger.warning(f"Failed to clean up container {ctid}: {e}")
        finally:
            self.allocator.release(ctid)


SandboxFactory = Callable[..., LXCSandbox]


def sandbox_factory(cli: ProxmoxCLI, allocator: VMIDAllocator, keep: bool = False) -> SandboxFactory:
    """Return a callable building sandboxes that share ``cli`` and ``allocator``."""

    def make(**kwargs) -> LXCSandbox:
        kwargs.setdefault("keep", keep)
        return LXCSandbox(cli, allocator, **kwargs)

    return make
