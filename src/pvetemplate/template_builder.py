"""Create Proxmox VM templates from distribution images."""

import logging
import os
import shlex
from typing import Any, Dict, List, Optional, Sequence

from pvetemplate.ansible_runner import AnsibleRunner
from pvetemplate.cloud_init import CloudInitConfigurator
from pvetemplate.command_runner import CommandRunner
from pvetemplate.config import Config
from pvetemplate.customize import PackageInstaller
from pvetemplate.distributions import Distribution
from pvetemplate.docker_provisioner import DockerProvisioner
from pvetemplate.images import ImageManager
from pvetemplate.k8s_provisioner import KubernetesProvisioner
from pvetemplate.lxc_sandbox import sandbox_factory
from pvetemplate.models import CommandError, InvalidParameterError, TemplateCreatorError, TemplateResult
from pvetemplate.proxmox_api import ProxmoxClient
from pvetemplate.pve import ProxmoxCLI
from pvetemplate.template_config import TemplateConfig
from pvetemplate.terraform_generator import TerraformGenerator
from pvetemplate.vmid import VMIDAllocator, allocation_lock

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 30


class TemplateBuilder:
    """Runs the template creation sequence and rolls back on failure.

    Steps, in order: validate, download image, claim VMID and ``qm create``,
    attach disk, resize, cloud-init, packages, Docker and Kubernetes
    templates, ``qm template``, Ansible playbooks, Terraform files.
    Everything after the core steps only produces warnings when it fails.
    """

    def __init__(
        self,
        runner: CommandRunner,
        api: Optional[ProxmoxClient] = None,
        allocator: Optional[VMIDAllocator] = None,
        images: Optional[ImageManager] = None,
        lock_file: Optional[str] = None,
    ) -> None:
        self.runner = runner
        self.cli = ProxmoxCLI(runner)
        self.allocator = allocator or VMIDAllocator(self.cli, api)
        self.images = images or ImageManager(runner)
        self.cloud_init = CloudInitConfigurator(self.cli, runner)
        self.installer = PackageInstaller(self.cli, runner)
        self.lock_file = lock_file
        self._claimed_vmid: Optional[int] = None
        self._created_vmid: Optional[int] = None

    # === Public API ===

    def create(self, config: TemplateConfig, raise_on_error: bool = True) -> TemplateResult:
        """
        Create one template.

        Args:
            config: Template settings
            raise_on_error: Re-raise the failure after rollback instead of
                only recording it in the result

        Returns:
            TemplateResult describing the steps taken

        Raises:
            TemplateCreatorError: If a core step fails and raise_on_error is set
        """
        result = TemplateResult(name=config.template_name, vmid=config.vmid)
        mode = " (dry run)" if self.runner.dry_run else ""
        logger.info(f"🚀 Creating template {config.template_name}{mode}")
        try:
            self._build(config, result)
            result.success = True
            logger.info(f"🎉 Template {result.name} created with VMID {result.vmid}")
        except (Exception, KeyboardInterrupt) as e:
            result.error = str(e) or e.__class__.__name__
            logger.error(f"❌ Template {result.name} failed: {result.error}")
            if "template" in result.steps:
                logger.warning(f"Template {result.vmid} was already converted, leaving it in place")
            else:
                self._rollback()
            if raise_on_error or isinstance(e, KeyboardInterrupt):
                raise
        finally:
            self._cleanup_work_files(self._claimed_vmid)
            self._claimed_vmid = self._created_vmid = None
        return result

    def create_batch(self, configs: Sequence[TemplateConfig]) -> List[TemplateResult]:
        """Create templates one after another, continuing after failures."""
        results = []
        for index, config in enumerate(configs, 1):
            logger.info(f"📋 Batch item {index}/{len(configs)}: {config.template_name}")
            results.append(self.create(config, raise_on_error=False))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Batch complete: {succeeded} succeeded, {len(results) - succeeded} failed")
        return results

    # === Sequence ===

    def _build(self, config: TemplateConfig, result: TemplateResult) -> None:
        config.validate()
        dist = config.resolve_distribution()
        result.steps.append("validate")

        image = self.images.download(dist)
        result.steps.append("download")

        with allocation_lock(self.lock_file):
            vmid = self._claim_vmid(config)
            self._claimed_vmid = result.vmid = vmid
            self._create_vm(vmid, config, dist)
        result.steps.append("create")

        if dist.image_format.is_iso:
            self._attach_iso(vmid, config, image)
            result.steps.append("attach-iso")
            logger.info("Installer ISO attached; cloud-init and packages are skipped")
        else:
            self._attach_disk(vmid, config, image)
            result.steps.append("import-disk")

            try:
                self.cli.resize_disk(vmid, "scsi0", config.disk_size_spec)
                result.steps.append("resize")
            except CommandError as e:
                self._warn(result, f"Disk resize failed, keeping image size: {e}")

            result.warnings += self.cloud_init.configure(vmid, config, dist)
            result.steps.append("cloud-init")

            if config.packages:
                if self.installer.install(vmid, config.storage, dist.package_manager, config.packages):
                    result.steps.append("packages")

        self._provision_containers(config, result)

        self._convert(vmid)
        result.steps.append("template")

        self._run_ansible(vmid, config, result)
        self._generate_terraform(config, result)

    def _claim_vmid(self, config: TemplateConfig) -> int:
        if config.vmid is None:
            vmid = self.allocator.reserve()
            logger.info(f"🔢 Using next available VMID {vmid}")
            return vmid

        vmid = config.vmid
        if not self.allocator.in_use(vmid):
            return self.allocator.reserve(vmid)

        if not config.replace_existing:
            raise InvalidParameterError(f"VMID {vmid} is already in use (use --replace-existing to replace it)")
        if self.cli.container_exists(vmid):
            raise InvalidParameterError(f"VMID {vmid} belongs to a container, refusing to replace it")

        logger.warning(f"⚠️  Replacing existing VM {vmid}")
        if self.cli.vm_status(vmid) == "running":
            self.cli.stop_vm(vmid)
            self.cli.wait_for_vm_stopped(vmid, timeout=STOP_TIMEOUT)
        self.cli.destroy_vm(vmid)
        return self.allocator.reserve(vmid, force=True)

    def _create_vm(self, vmid: int, config: TemplateConfig, dist: Distribution) -> None:
        net0 = f"virtio,bridge={config.bridge}"
        if config.vlan_tag:
            net0 += f",tag={config.vlan_tag}"
        description = config.description or f"{dist.name} template created by pve-template"

        self.cli.create_vm(
            vmid,
            name=config.template_name,
            memory=config.memory,
            cores=config.cores,
            ostype=dist.os_type,
            net0=net0,
            tags=";".join(config.tags) or None,
            description=description,
        )
        self._created_vmid = vmid

    def _attach_disk(self, vmid: int, config: TemplateConfig, image: str) -> None:
        self.cli.import_disk(vmid, image, config.storage)
        self.cli.set_vm(
            vmid,
            scsihw="virtio-scsi-pci",
            scsi0=f"{config.storage}:vm-{vmid}-disk-0",
        )
        self.cli.set_vm(vmid, boot="c", bootdisk="scsi0")
        self.cli.set_vm(vmid, serial0="socket", vga="serial0")
        self.cli.set_vm(vmid, agent=1)

    def _attach_iso(self, vmid: int, config: TemplateConfig, image: str) -> None:
        self.cli.set_vm(
            vmid,
            scsihw="virtio-scsi-pci",
            scsi0=f"{config.storage}:{config.disk_size_gib}",
            ide2=f"{Config.ISO_STORAGE}:iso/{os.path.basename(image)},media=cdrom",
        )
        self.cli.set_vm(vmid, boot="order=ide2;scsi0", agent=1)

    def _convert(self, vmid: int) -> None:
        if self.cli.vm_status(vmid) == "running":
            self.cli.stop_vm(vmid)
            if not self.cli.wait_for_vm_stopped(vmid, timeout=STOP_TIMEOUT):
                raise TemplateCreatorError(f"VM {vmid} did not stop within {STOP_TIMEOUT}s")
        self.cli.convert_to_template(vmid)

    # === Optional integrations ===

    def _sandboxes(self, config: TemplateConfig):
        return sandbox_factory(self.cli, self.allocator, keep=config.keep_containers)

    def _provision_containers(self, config: TemplateConfig, result: TemplateResult) -> None:
        if config.docker_enabled:
            provisioner = DockerProvisioner(self._sandboxes(config), bridge=config.bridge)
            self._optional(result, "docker", lambda: provisioner.provision(config.docker_templates))
        if config.k8s_enabled:
            provisioner = KubernetesProvisioner(self._sandboxes(config), bridge=config.bridge)
            self._optional(result, "kubernetes", lambda: provisioner.provision(config.k8s_templates))

    def _run_ansible(self, vmid: int, config: TemplateConfig, result: TemplateResult) -> None:
        if not config.ansible_enabled:
            return
        ansible = AnsibleRunner(self.runner, sandbox_factory=self._sandboxes(config))
        if not config.ansible_playbooks:
            self._optional(result, "ansible-inventory", ansible.generate_inventory)
            return
        extra_vars: Dict[str, Any] = {"template_vmid": vmid, "template_name": config.template_name}
        extra_vars.update(config.ansible_vars)
        self._optional(result, "ansible", lambda: ansible.run_all(config.ansible_playbooks, extra_vars))

    def _generate_terraform(self, config: TemplateConfig, result: TemplateResult) -> None:
        if not config.terraform_enabled:
            return
        generator = TerraformGenerator()

        def generate():
            generator.generate(config, config.effective_terraform_modules, config.terraform_vars)
            generator.initialize(self.runner)

        self._optional(result, "terraform", generate)

    def _optional(self, result: TemplateResult, step: str, action) -> None:
        """Run an optional step; failures and partial failures become warnings."""
        try:
            outcome = action()
        except (TemplateCreatorError, OSError, ValueError) as e:
            self._warn(result, f"{step} step failed: {e}")
            return
        if getattr(outcome, "failed", None):
            self._warn(result, f"{step} step: {outcome}")
        result.steps.append(step)

    @staticmethod
    def _warn(result: TemplateResult, message: str) -> None:
        logger.warning(f"⚠️  {message}")
        result.warnings.append(message)

    # === Cleanup ===

    def _rollback(self) -> None:
        """Destroy the partially created VM and release its VMID. Never raises."""
        if self._claimed_vmid is not None:
            self.allocator.release(self._claimed_vmid)
        created = self._created_vmid
        if created is None:
            return
        logger.warning(f"↩️  Rolling back VM {created}")
        try:
            if self.cli.vm_status(created) == "running":
                self.cli.stop_vm(created)
                self.cli.wait_for_vm_stopped(created, timeout=STOP_TIMEOUT)
            self.cli.destroy_vm(created)
        except TemplateCreatorError as e:
            logger.error(f"Rollback of VM {created} failed, remove it manually: {e}")

    def _cleanup_work_files(self, vmid: Optional[int]) -> None:
        """Remove files uploaded to WORK_DIR on the Proxmox host for ``vmid``."""
        if vmid is None or not self.runner.is_remote or self.runner.dry_run:
            return
        work_dir = shlex.quote(Config.WORK_DIR)
        self.runner.run(["sh", "-c", f"rm -f {work_dir}/{vmid}-* {work_dir}/pkg-{vmid}-*"], check=False)
