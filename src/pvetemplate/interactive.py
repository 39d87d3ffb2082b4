"""Menu-driven wizard for creating templates."""

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.prompt import Confirm, IntPrompt, Prompt
from rich.table import Table

from pvetemplate.ansible_runner import AnsibleRunner
from pvetemplate.distributions import CUSTOM_KEY, Distribution, categories, list_distributions
from pvetemplate.lxc_sandbox import sandbox_factory
from pvetemplate.models import NetworkMode, TemplateCreatorError, TemplateResult
from pvetemplate.packages import PACKAGE_CATEGORIES, packages_in
from pvetemplate.preflight import check_dependencies, required_tools
from pvetemplate.template_builder import TemplateBuilder
from pvetemplate.template_config import (
    TemplateConfig,
    export_config,
    load_batch_file,
    load_config_file,
    split_option_values,
)
from pvetemplate.terraform_generator import SUPPORTED_MODULES, TerraformGenerator

logger = logging.getLogger(__name__)

MAIN_MENU = [
    ("1", "Create single template"),
    ("2", "Batch create from file"),
    ("3", "Load configuration file"),
    ("4", "View existing templates"),
    ("5", "Generate Terraform configuration"),
    ("6", "Run Ansible playbook"),
    ("7", "Settings"),
    ("0", "Exit"),
]

SETTINGS_MENU = [
    ("1", "View current configuration"),
    ("2", "Export configuration"),
    ("3", "Import configuration"),
    ("4", "Reset to defaults"),
    ("0", "Back"),
]


# === Tables shared with the CLI ===


def distribution_table(distributions: Sequence[Distribution], title: str = "Distributions") -> Table:
    table = Table(title=title)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Key", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Format")
    table.add_column("Packages")
    table.add_column("Notes", style="dim")
    for index, dist in enumerate(distributions, 1):
        table.add_row(
            str(index), dist.key, dist.name, dist.image_format.value, dist.package_manager or "-", dist.notes
        )
    return table


def results_table(results: Sequence[TemplateResult]) -> Table:
    table = Table(title="Template Results")
    table.add_column("Template", style="cyan")
    table.add_column("VMID", justify="right")
    table.add_column("Status")
    table.add_column("Details", style="dim")
    for result in results:
        status = "✅" if result.success else "❌"
        details = result.error or "; ".join(result.warnings) or ", ".join(result.steps)
        table.add_row(result.name, str(result.vmid or "-"), status, details)
    return table


def config_table(config: TemplateConfig) -> Table:
    table = Table(title="Template Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in config.to_mapping().items():
        if value not in ("", "()", "false"):
            table.add_row(key, value)
    return table


class InteractiveMenu:
    """Prompts for template settings and runs the chosen action."""

    def __init__(self, builder: TemplateBuilder, config: Optional[TemplateConfig] = None,
                 console: Optional[Console] = None) -> None:
        self.builder = builder
        self.runner = builder.runner
        self.config = config or TemplateConfig()
        self.console = console or Console()

    # === Menus ===

    def _menu(self, title: str, options: List[Tuple[str, str]]) -> str:
        table = Table(title=title, show_header=False)
        table.add_column("Key", style="cyan", justify="right")
        table.add_column("Action")
        for key, label in options:
            table.add_row(key, label)
        self.console.print(table)
        return Prompt.ask("Select an option", choices=[key for key, _ in options], console=self.console)

    def run(self) -> None:
        """Show the main menu until the user exits."""
        actions: Dict[str, Callable[[], None]] = {
            "1": self.create_single,
            "2": self.batch_from_file,
            "3": self.load_configuration,
            "4": self.view_templates,
            "5": self.generate_terraform,
            "6": self.run_ansible,
            "7": self.settings,
        }
        mode = " [yellow](dry run)[/yellow]" if self.runner.dry_run else ""
        self.console.print(f"[bold]🏗️  Proxmox Template Creator[/bold]{mode}")
        while True:
            choice = self._menu("Main Menu", MAIN_MENU)
            if choice == "0":
                self.console.print("👋 Goodbye")
                return
            try:
                actions[choice]()
            except TemplateCreatorError as e:
                self.console.print(f"[red]❌ {e}[/red]")

    # === Single template flow ===

    def create_single(self) -> Optional[TemplateResult]:
        dist = self.choose_distribution()
        self.configure_vm()
        self.choose_packages(dist)
        self.configure_network()

        self.console.print(config_table(self.config))
        if not Confirm.ask("Create this template?", default=True, console=self.console):
            self.console.print("Cancelled")
            return None

        check_dependencies(self.runner, required_tools(self.config))
        result = self.builder.create(self.config, raise_on_error=False)
        self.console.print(results_table([result]))
        return result

    def choose_distribution(self) -> Distribution:
        cats = categories()
        options = [(str(i), label) for i, label in enumerate(cats.values(), 1)]
        options.append(("c", "Custom image URL"))
        choice = self._menu("Distribution Category", options)

        if choice == "c":
            url = Prompt.ask("Image URL", console=self.console)
            fmt = Prompt.ask("Image format", choices=["auto", "qcow2", "raw", "iso"], default="auto",
                             console=self.console)
            pkg = Prompt.ask("Package manager (empty for none)", default="", console=self.console)
            self.config = self.config.with_overrides(
                distribution=CUSTOM_KEY, custom_image_url=url, custom_image_format=fmt,
                custom_package_manager=pkg or None,
            )
            return self.config.resolve_distribution()

        category = list(cats)[int(choice) - 1]
        distributions = list_distributions(category)
        self.console.print(distribution_table(distributions, title=cats[category]))
        index = IntPrompt.ask("Distribution number", choices=[str(i) for i in range(1, len(distributions) + 1)],
                              console=self.console)
        dist = distributions[index - 1]
        self.config = self.config.with_overrides(distribution=dist.key)
        return dist

    def configure_vm(self) -> None:
        try:
            suggested = str(self.builder.allocator.next_available())
        except TemplateCreatorError as e:
            logger.warning(f"Could not suggest a VMID: {e}")
            suggested = ""
        name = Prompt.ask("Template name", default=self.config.template_name, console=self.console)
        vmid = Prompt.ask("VMID", default=suggested or None, console=self.console)
        self.config = self.config.with_overrides(
            name=name,
            vmid=int(vmid) if vmid and vmid.isdigit() else None,
            cores=IntPrompt.ask("CPU cores", default=self.config.cores, console=self.console),
            memory=IntPrompt.ask("Memory (MB)", default=self.config.memory, console=self.console),
            disk_size=Prompt.ask("Disk size", default=self.config.disk_size, console=self.console),
            storage=Prompt.ask("Storage", default=self.config.storage, console=self.console),
        )

    def choose_packages(self, dist: Distribution) -> None:
        if not dist.supports_packages:
            self.console.print(f"[dim]{dist.name} does not support package pre-installation[/dim]")
            self.config = replace(self.config, packages=[])
            return
        if not Confirm.ask("Pre-install packages?", default=bool(self.config.packages), console=self.console):
            self.config = replace(self.config, packages=[])
            return

        selected: List[str] = list(self.config.packages)
        for category, label in PACKAGE_CATEGORIES.items():
            available = packages_in(category)
            if not available:
                continue
            self.console.print(f"[bold]{label}[/bold]: " + ", ".join(
                f"[cyan]{i}[/cyan] {pkg}" for i, pkg in enumerate(available, 1)
            ))
            answer = Prompt.ask("Numbers to install (comma separated, empty to skip)", default="",
                                console=self.console)
            for item in split_option_values([answer]):
                if item.isdigit() and 1 <= int(item) <= len(available):
                    selected.append(available[int(item) - 1])
        self.config = replace(self.config, packages=list(dict.fromkeys(selected)))

    def configure_network(self) -> None:
        mode = Prompt.ask("Network mode", choices=[m.value for m in NetworkMode],
                          default=self.config.network_mode, console=self.console)
        overrides = {"network_mode": mode,
                     "bridge": Prompt.ask("Bridge", default=self.config.bridge, console=self.console)}
        if mode == NetworkMode.STATIC.value:
            overrides["static_ip"] = Prompt.ask("IP address with prefix (e.g. 192.168.1.50/24)",
                                                console=self.console)
            overrides["gateway"] = Prompt.ask("Gateway", default=self.config.gateway or "", console=self.console)
        if mode != NetworkMode.NONE.value:
            overrides["dns"] = Prompt.ask("DNS servers", default=self.config.dns, console=self.console)
        vlan = Prompt.ask("VLAN tag (empty for none)", default="", console=self.console)
        if vlan.isdigit():
            overrides["vlan_tag"] = int(vlan)
        self.config = self.config.with_overrides(**overrides)

    # === Other actions ===

    def batch_from_file(self) -> List[TemplateResult]:
        path = Prompt.ask("Batch file", console=self.console)
        configs = load_batch_file(path, base=self.config)
        check_dependencies(self.runner, [tool for config in configs for tool in required_tools(config)])
        results = self.builder.create_batch(configs)
        self.console.print(results_table(results))
        return results

    def load_configuration(self) -> None:
        path = Prompt.ask("Configuration file", console=self.console)
        self.config = load_config_file(path, base=self.config)
        self.console.print(f"✅ Loaded configuration from {path}")

    def view_templates(self) -> None:
        templates = self.builder.cli.list_templates()
        if not templates:
            self.console.print("No templates found")
            return
        table = Table(title="Templates")
        table.add_column("VMID", justify="right", style="cyan")
        table.add_column("Name")
        for template in templates:
            table.add_row(template.get("vmid", ""), template.get("name", ""))
        self.console.print(table)

    def generate_terraform(self) -> None:
        modules = Prompt.ask(f"Modules ({', '.join(SUPPORTED_MODULES)})",
                             default=",".join(self.config.effective_terraform_modules), console=self.console)
        directory = Prompt.ask("Output directory", default=str(TerraformGenerator().output_dir),
                               console=self.console)
        generator = TerraformGenerator(directory)
        generator.generate(self.config, split_option_values([modules]))
        self.console.print(f"✅ Terraform configuration written to {directory}")

    def run_ansible(self) -> None:
        ansible = AnsibleRunner(self.runner, sandbox_factory=sandbox_factory(self.builder.cli, self.builder.allocator))
        playbooks = ansible.discover_playbooks()
        if not playbooks:
            self.console.print(f"No playbooks found in {ansible.playbooks_dir}")
            return
        options = [(str(i), name) for i, name in enumerate(playbooks, 1)] + [("0", "Back")]
        choice = self._menu("Ansible Playbooks", options)
        if choice == "0":
            return
        summary = ansible.run_all([playbooks[int(choice) - 1]], self.config.ansible_vars)
        self.console.print(f"Ansible: {summary}")

    def settings(self) -> None:
        while True:
            choice = self._menu("Settings", SETTINGS_MENU)
            if choice == "0":
                return
            if choice == "1":
                self.console.print(config_table(self.config))
            elif choice == "2":
                path = Prompt.ask("Export to", default="template-config.conf", console=self.console)
                export_config(self.config, path)
                self.console.print(f"💾 Saved to {path}")
            elif choice == "3":
                self.load_configuration()
            elif choice == "4":
                if Confirm.ask("Reset all settings to defaults?", default=False, console=self.console):
                    self.config = TemplateConfig()
