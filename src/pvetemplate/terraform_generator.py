"""Generate a Terraform module tree for deploying VMs from a template."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from pvetemplate.command_runner import CommandRunner
from pvetemplate.config import Config
from pvetemplate.models import CommandError, InvalidParameterError, TemplateCreatorError
from pvetemplate.template_config import TERRAFORM_MODULES, TemplateConfig

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates" / "terraform"
SUPPORTED_MODULES = TERRAFORM_MODULES
ENVIRONMENTS = {
    "dev": {"vm_count": 1, "vm_id_start": 1000},
    "staging": {"vm_count": 2, "vm_id_start": 2000},
    "prod": {"vm_count": 3, "vm_id_start": 3000},
}

# Module name -> (output file, template)
_MODULE_FILES = {
    "vm": [("modules/vm/main.tf", "vm_main.tf.j2"),
           ("modules/vm/variables.tf", "vm_variables.tf.j2"),
           ("modules/vm/outputs.tf", "vm_outputs.tf.j2")],
    "network": [("modules/network/main.tf", "network_main.tf.j2"),
                ("modules/network/variables.tf", "network_variables.tf.j2"),
                ("modules/network/outputs.tf", "network_outputs.tf.j2")],
    "storage": [("modules/storage/main.tf", "storage_main.tf.j2")],
}


class TerraformRenderError(TemplateCreatorError):
    """Raised when a Terraform template cannot be rendered."""

    pass


def hcl_value(value: Any) -> str:
    """Render a Python value as an HCL literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return "null"
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = "\n".join(f"  {k} = {hcl_value(v)}" for k, v in value.items())
        return "{\n" + items + "\n}"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(hcl_value(v) for v in value) + "]"
    # JSON string escaping is valid HCL; interpolation markers must be doubled
    return json.dumps(str(value)).replace("${", "$${").replace("%{", "%%{")


def coerce_value(raw: str) -> Any:
    """Interpret a ``--terraform-var`` string as bool, number or string."""
    lowered = raw.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


class TerraformGenerator:
    """Renders the Terraform tree from Jinja2 templates shipped with the package."""

    def __init__(self, output_dir: Optional[str] = None) -> None:
        self.output_dir = Path(output_dir or Config.TERRAFORM_DIR)
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["hcl"] = hcl_value

    @staticmethod
    def check_modules(modules: Sequence[str]) -> List[str]:
        """
        Raises:
            InvalidParameterError: If a module is not supported
        """
        unknown = [m for m in modules if m not in SUPPORTED_MODULES]
        if unknown:
            raise InvalidParameterError(
                f"Unsupported Terraform module(s): {', '.join(unknown)}. Supported: {', '.join(SUPPORTED_MODULES)}"
            )
        # Keep a stable order regardless of how they were given
        return [m for m in SUPPORTED_MODULES if m in modules]

    def build_variables(self, config: TemplateConfig) -> Dict[str, Any]:
        """Default variable values derived from the template configuration."""
        return {
            "proxmox_api_url": f"https://{Config.PVE_API_HOST or Config.PVE_HOST or 'your-proxmox-host'}:8006/api2/json",
            "proxmox_api_token_id": "terraform@pve!terraform",
            "proxmox_api_token_secret": "your-secret-token-here",
            "environment": "dev",
            "project_name": "homelab",
            "vm_count": 1,
            "vm_name_prefix": "vm",
            "vm_id_start": 1000,
            "target_node": Config.PVE_NODE or "proxmox",
            "template_name": config.template_name,
            "vm_cores": config.cores,
            "vm_memory": config.memory,
            "vm_disk_size": config.disk_size_spec,
            "vm_storage": config.storage,
            "vm_user": config.ci_user or "ubuntu",
            "network_bridge": config.bridge,
            "dns_servers": config.dns.replace(",", " "),
        }

    def _render(self, template_name: str, context: Dict[str, Any]) -> str:
        try:
            return self.env.get_template(template_name).render(**context)
        except TemplateError as e:
            raise TerraformRenderError(f"Error rendering {template_name}: {e}")

    def generate(self, config: TemplateConfig, modules: Optional[Sequence[str]] = None,
                 variables: Optional[Dict[str, str]] = None) -> List[Path]:
        """
        Write the Terraform tree to the output directory.

        Args:
            config: Template the VMs will be cloned from
            modules: Subset of vm, network, storage
            variables: User values overriding the example variables

        Returns:
            Paths of the files written

        Raises:
            InvalidParameterError: If a module is not supported
            TerraformRenderError: If a template fails to render
        """
        modules = self.check_modules(modules or config.effective_terraform_modules)
        user_vars = {k: coerce_value(v) for k, v in (variables or config.terraform_vars).items()}
        defaults = self.build_variables(config)
        example = dict(defaults)
        example.update(user_vars)

        context = {
            "generated": f"{datetime.now():%Y-%m-%d %H:%M:%S}",
            "modules": modules,
            "defaults": defaults,
            "example": example,
        }

        files = [
            ("main.tf", "main.tf.j2", context),
            ("variables.tf", "variables.tf.j2", context),
            ("outputs.tf", "outputs.tf.j2", context),
            ("terraform.tfvars.example", "tfvars.example.j2", context),
            ("Makefile", "Makefile.j2", context),
        ]
        for module in modules:
            files += [(target, template, context) for target, template in _MODULE_FILES[module]]
        for env_name, values in ENVIRONMENTS.items():
            env_context = dict(context, env=env_name, values=values)
            files.append((f"environments/{env_name}/terraform.tfvars", "env.tfvars.j2", env_context))

        written = []
        for target, template, ctx in files:
            path = self.output_dir / target
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self._render(template, ctx))
            written.append(path)

        if user_vars:
            path = self.output_dir / "terraform.tfvars"
            lines = [f"{key} = {hcl_value(value)}" for key, value in user_vars.items()]
            path.write_text("# Values supplied on the command line\n" + "\n".join(lines) + "\n")
            written.append(path)

        logger.info(f"🏗️  Terraform configuration ({', '.join(modules)}) generated in {self.output_dir}")
        return written

    def initialize(self, runner: CommandRunner) -> bool:
        """Run terraform init, validate and fmt locally. Failures only warn."""
        if runner.dry_run:
            logger.info(f"[DRY RUN] Would run terraform init/validate/fmt in {self.output_dir}")
            return True
        local = CommandRunner(dry_run=False)
        if not local.which("terraform"):
            logger.warning("Terraform not installed, skipping workspace initialization")
            return False

        chdir = f"-chdir={self.output_dir}"
        ok = True
        for step in (["init", "-input=false"], ["validate"], ["fmt", "-recursive"]):
            try:
                local.run(["terraform", chdir] + step, timeout=600)
            except CommandError as e:
                logger.warning(f"terraform {step[0]} failed: {e}")
                ok = False
                if step[0] == "init":
                    break
        if ok:
            logger.info("✅ Terraform workspace initialized")
        return ok
