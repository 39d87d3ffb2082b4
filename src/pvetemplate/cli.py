#!/usr/bin/env python3
"""
Proxmox VE template creator.

    pve-template                                   # interactive menu
    pve-template -d ubuntu-22.04 -n ubuntu-tmpl    # one template from flags
    pve-template --batch --config queue.conf       # every [section] in a file
    pve-template list-distributions --category ubuntu
"""

import logging
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from pvetemplate import __version__
from pvetemplate.ansible_runner import AnsibleRunner
from pvetemplate.command_runner import CommandRunner
from pvetemplate.config import Config
from pvetemplate.distributions import categories, list_distributions
from pvetemplate.docker_provisioner import find_compose_templates
from pvetemplate.interactive import InteractiveMenu, distribution_table, results_table
from pvetemplate.k8s_provisioner import find_manifests
from pvetemplate.log_config import configure_logging
from pvetemplate.models import ExitCode, InvalidParameterError, TemplateCreatorError
from pvetemplate.preflight import BASE_TOOLS, check_dependencies, check_root, required_tools
from pvetemplate.proxmox_api import ProxmoxClient
from pvetemplate.pve import ProxmoxCLI
from pvetemplate.template_builder import TemplateBuilder
from pvetemplate.template_config import (
    TemplateConfig,
    export_config,
    load_batch_file,
    load_config_file,
    parse_key_values,
    split_option_values,
)
from pvetemplate.terraform_generator import TerraformGenerator
from pvetemplate.vmid import VMIDAllocator

app = typer.Typer(
    name="pve-template",
    help="Create Proxmox VE VM templates from cloud images",
    add_completion=False,
)
console = Console()
logger = logging.getLogger(__name__)

LOG_LEVELS = ("debug", "info", "warning", "error")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"pve-template {__version__}")
        raise typer.Exit()


def _terminate(signum, frame) -> None:
    # SIGTERM takes the same rollback path as Ctrl-C
    raise KeyboardInterrupt


def _fail(error: TemplateCreatorError) -> None:
    console.print(f"[red]❌ {error}[/red]")
    logger.debug("Failure details", exc_info=error)
    raise typer.Exit(int(error.exit_code))


def _state(ctx: typer.Context) -> Dict[str, Any]:
    return ctx.ensure_object(dict)


def _api() -> Optional[ProxmoxClient]:
    try:
        return ProxmoxClient.from_config()
    except TemplateCreatorError as e:
        logger.warning(f"Proxmox API disabled: {e}")
        return None


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    distribution: Optional[str] = typer.Option(None, "--distribution", "--distro", "-d",
                                               help="Distribution key (see list-distributions)"),
    template_name: Optional[str] = typer.Option(None, "--template-name", "--vm-name", "-n", help="Template name"),
    vmid: Optional[int] = typer.Option(None, "--vmid", help="VMID (default: next available)"),
    cores: Optional[int] = typer.Option(None, "--cores", help="CPU cores"),
    memory: Optional[int] = typer.Option(None, "--memory", help="Memory in MB"),
    disk_size: Optional[str] = typer.Option(None, "--disk-size", help="Disk size, e.g. 20G"),
    storage: Optional[str] = typer.Option(None, "--storage", help="Storage for the template disk"),
    bridge: Optional[str] = typer.Option(None, "--bridge", "--network-bridge", help="Network bridge"),
    vlan: Optional[int] = typer.Option(None, "--vlan", help="VLAN tag"),
    network_mode: Optional[str] = typer.Option(None, "--network-mode", help="dhcp, static or none"),
    static_ip: Optional[str] = typer.Option(None, "--static-ip", help="Address with prefix, e.g. 10.0.0.5/24"),
    gateway: Optional[str] = typer.Option(None, "--gateway", help="Gateway for static mode"),
    dns: Optional[str] = typer.Option(None, "--dns", help="Comma separated DNS servers"),
    ci_user: Optional[str] = typer.Option(None, "--ci-user", help="Cloud-init user"),
    ssh_key: Optional[str] = typer.Option(None, "--ssh-key", help="SSH public key file"),
    packages: Optional[List[str]] = typer.Option(None, "--packages", "-p",
                                                 help="Packages to pre-install (comma list, repeatable)"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", help="Template tag (repeatable)"),
    description: Optional[str] = typer.Option(None, "--description", help="Template description"),
    image_url: Optional[str] = typer.Option(None, "--image-url", help="Custom image URL"),
    image_format: Optional[str] = typer.Option(None, "--image-format", help="auto, qcow2, raw or iso"),
    package_manager: Optional[str] = typer.Option(None, "--package-manager",
                                                  help="Package manager of a custom image"),
    checksum: Optional[str] = typer.Option(None, "--checksum", help="Image checksum, e.g. sha256:<hex>"),
    snippet: bool = typer.Option(False, "--cloud-init-snippet", help="Attach a generated user-data snippet"),
    docker_templates: Optional[List[str]] = typer.Option(None, "--docker-template", help="Docker Compose template"),
    k8s_templates: Optional[List[str]] = typer.Option(None, "--k8s-template", help="Kubernetes manifest"),
    ansible_playbooks: Optional[List[str]] = typer.Option(None, "--ansible-playbook", help="Ansible playbook"),
    ansible_vars: Optional[List[str]] = typer.Option(None, "--ansible-var", help="Ansible extra var key=value"),
    terraform_modules: Optional[List[str]] = typer.Option(None, "--terraform-module",
                                                          help="Terraform module: vm, network, storage"),
    terraform_vars: Optional[List[str]] = typer.Option(None, "--terraform-var", help="Terraform var key=value"),
    enable_docker: bool = typer.Option(False, "--enable-docker", help="Enable Docker integration"),
    enable_k8s: bool = typer.Option(False, "--enable-k8s", help="Enable Kubernetes integration"),
    enable_ansible: bool = typer.Option(False, "--enable-ansible", help="Enable Ansible integration"),
    enable_terraform: bool = typer.Option(False, "--enable-terraform", help="Generate Terraform files"),
    batch: bool = typer.Option(False, "--batch", help="Non-interactive; create every section of --config"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show commands without changing anything"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file"),
    export_path: Optional[Path] = typer.Option(None, "--export-config", help="Write the configuration and exit"),
    replace_existing: bool = typer.Option(False, "--replace-existing", help="Destroy a VM that uses --vmid"),
    keep_containers: bool = typer.Option(False, "--keep-containers", help="Keep sandbox containers"),
    debug: bool = typer.Option(False, "--debug", help="Debug logging"),
    log_level: str = typer.Option(Config.LOG_LEVEL.lower(), "--log-level", help="debug, info, warning or error"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True,
                                 help="Show version and exit"),
) -> None:
    """Create a template from flags or a configuration file, or start the interactive menu."""
    configure_logging("DEBUG" if debug else log_level)
    signal.signal(signal.SIGTERM, _terminate)

    state = _state(ctx)
    runner = CommandRunner(host=Config.PVE_HOST or None, dry_run=dry_run)
    ctx.call_on_close(runner.close)
    state["runner"] = runner
    if dry_run:
        console.print("🔍 DRY RUN MODE - No changes will be made")

    try:
        if log_level.lower() not in LOG_LEVELS:
            raise InvalidParameterError(f"Invalid log level {log_level!r}. Choose from: {', '.join(LOG_LEVELS)}")

        overrides = dict(
            distribution=distribution,
            name=template_name,
            vmid=vmid,
            cores=cores,
            memory=memory,
            disk_size=disk_size,
            storage=storage,
            bridge=bridge,
            vlan_tag=vlan,
            network_mode=network_mode,
            static_ip=static_ip,
            gateway=gateway,
            dns=dns,
            ci_user=ci_user,
            ssh_key_file=ssh_key,
            packages=split_option_values(packages),
            tags=split_option_values(tags),
            description=description,
            custom_image_url=image_url,
            custom_image_format=image_format,
            custom_package_manager=package_manager,
            image_checksum=checksum,
            user_data_snippet=snippet or None,
            docker_enabled=enable_docker or None,
            docker_templates=split_option_values(docker_templates),
            k8s_enabled=enable_k8s or None,
            k8s_templates=split_option_values(k8s_templates),
            ansible_enabled=enable_ansible or None,
            ansible_playbooks=split_option_values(ansible_playbooks),
            ansible_vars=parse_key_values(ansible_vars or []),
            terraform_enabled=enable_terraform or None,
            terraform_modules=split_option_values(terraform_modules),
            terraform_vars=parse_key_values(terraform_vars or []),
            keep_containers=keep_containers or None,
            replace_existing=replace_existing or None,
        )
        if image_url and not distribution:
            overrides["distribution"] = "custom"

        if batch and config_file:
            configs = [c.with_overrides(**overrides) for c in load_batch_file(config_file)]
        elif config_file:
            configs = [load_config_file(config_file).with_overrides(**overrides)]
        else:
            configs = [TemplateConfig().with_overrides(**overrides)]
        state["config"] = configs[0]

        if ctx.invoked_subcommand is not None:
            return

        if export_path is not None:
            if len(configs) > 1:
                raise InvalidParameterError("--export-config writes a single configuration, not a batch file")
            export_config(configs[0], export_path)
            console.print(f"💾 Configuration exported to {export_path}")
            raise typer.Exit(ExitCode.SUCCESS)

        builder = TemplateBuilder(runner, api=_api())
        selected = any(v not in (None, [], {}) for v in overrides.values())
        check_root(runner)
        if not (batch or selected or config_file):
            check_dependencies(runner, BASE_TOOLS)
            InteractiveMenu(builder, config=configs[0], console=console).run()
            return

        tools: List[str] = []
        for config in configs:
            tools += required_tools(config)
        check_dependencies(runner, tools)

        if len(configs) == 1 and not batch:
            results = [builder.create(configs[0])]
        else:
            results = builder.create_batch(configs)
    except TemplateCreatorError as e:
        _fail(e)
    except KeyboardInterrupt:
        console.print("\n⚠️  Interrupted, partial resources were cleaned up")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    console.print(results_table(results))
    if not all(r.success for r in results):
        raise typer.Exit(ExitCode.GENERAL_ERROR)
    console.print("✅ All templates created")


@app.command("list-distributions")
def list_distributions_command(
    category: Optional[str] = typer.Option(None, "--category", help="Only this category"),
) -> None:
    """List supported distributions."""
    try:
        distributions = list_distributions(category)
    except TemplateCreatorError as e:
        _fail(e)
    title = categories().get(category, "Supported Distributions") if category else "Supported Distributions"
    console.print(distribution_table(distributions, title=title))
    console.print(f"Categories: {', '.join(categories())}")


@app.command("list-templates")
def list_templates_command(ctx: typer.Context) -> None:
    """List existing VM templates."""
    runner: CommandRunner = _state(ctx)["runner"]
    api = _api()
    try:
        if api is not None:
            templates = [
                {"vmid": str(t.get("vmid")), "name": t.get("name", ""), "node": t.get("node", "")}
                for t in api.list_templates()
            ]
        else:
            templates = ProxmoxCLI(runner).list_templates()
    except TemplateCreatorError as e:
        _fail(e)

    if not templates:
        console.print("No templates found")
        return
    table = Table(title="VM Templates")
    table.add_column("VMID", justify="right", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Node")
    for template in templates:
        table.add_row(template.get("vmid", ""), template.get("name", ""), template.get("node", Config.PVE_NODE))
    console.print(table)


@app.command("next-vmid")
def next_vmid_command(ctx: typer.Context) -> None:
    """Print the next free VMID."""
    runner: CommandRunner = _state(ctx)["runner"]
    try:
        vmid = VMIDAllocator(ProxmoxCLI(runner), _api()).next_available()
    except TemplateCreatorError as e:
        _fail(e)
    console.print(vmid)


@app.command("generate-terraform")
def generate_terraform_command(
    ctx: typer.Context,
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="Output directory"),
    modules: Optional[List[str]] = typer.Option(None, "--module", "-m", help="vm, network, storage"),
    variables: Optional[List[str]] = typer.Option(None, "--var", help="Variable key=value"),
    init: bool = typer.Option(False, "--init", help="Run terraform init, validate and fmt"),
) -> None:
    """Generate Terraform files for deploying VMs from the template."""
    state = _state(ctx)
    config: TemplateConfig = state["config"]
    try:
        generator = TerraformGenerator(str(output_dir) if output_dir else None)
        generator.generate(
            config,
            split_option_values(modules) or config.effective_terraform_modules,
            parse_key_values(variables or []) or config.terraform_vars,
        )
        if init:
            generator.initialize(state["runner"])
    except TemplateCreatorError as e:
        _fail(e)
    console.print(f"✅ Terraform configuration written to {generator.output_dir}")


@app.command("generate-inventory")
def generate_inventory_command(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Inventory path"),
) -> None:
    """Write the Proxmox dynamic inventory for Ansible."""
    runner: CommandRunner = _state(ctx)["runner"]
    try:
        path = AnsibleRunner(runner).generate_inventory(output)
    except TemplateCreatorError as e:
        _fail(e)
    console.print(f"✅ Inventory written to {path}")


@app.command("list-docker-templates")
def list_docker_templates_command(
    directory: Optional[str] = typer.Option(None, "--dir", help="Templates directory"),
) -> None:
    """List Docker Compose templates."""
    directory = directory or Config.DOCKER_TEMPLATES_DIR
    templates = find_compose_templates(directory)
    if not templates:
        console.print(f"No Docker templates found in {directory}")
        return
    for name in templates:
        console.print(f"🐳 {name}")


@app.command("list-k8s-templates")
def list_k8s_templates_command(
    directory: Optional[str] = typer.Option(None, "--dir", help="Templates directory"),
) -> None:
    """List Kubernetes manifest templates."""
    directory = directory or Config.K8S_TEMPLATES_DIR
    templates = find_manifests(directory)
    if not templates:
        console.print(f"No Kubernetes templates found in {directory}")
        return
    for name in templates:
        console.print(f"☸️  {name}")


if __name__ == "__main__":
    app()
