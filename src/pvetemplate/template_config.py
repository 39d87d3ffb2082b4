"""Per-template configuration and the KEY="value" file formats.

A configuration file is a shell-style ``KEY="value"`` file. List values may be
written as shell arrays ``(a b c)`` or comma separated. A batch file holds
several configurations in ``[section]`` blocks; keys before the first section
apply to every section.
"""

import io
import ipaddress
import logging
import re
import shlex
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from dotenv import dotenv_values

from pvetemplate.config import Config
from pvetemplate.distributions import (
    CUSTOM_KEY,
    Distribution,
    custom_distribution,
    find_by_name,
    get_distribution,
    with_checksum,
)
from pvetemplate.models import InvalidParameterError, NetworkMode
from pvetemplate.vmid import validate_vmid

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_SECTION_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")
_DISK_SIZE_RE = re.compile(r"^\d+[KMGT]?$")
_UNIT_POWERS = {"K": 1, "M": 2, "G": 3, "T": 4}
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.-]*$")
_TRUE = ("1", "true", "yes", "on", "y")

TERRAFORM_MODULES = ("vm", "network", "storage")
TERRAFORM_DEFAULT_MODULES = ["vm", "network"]


def _key(name: str, kind: str = "str") -> Dict[str, str]:
    return {"key": name, "kind": kind}


@dataclass
class TemplateConfig:
    """Everything needed to build one template."""

    distribution: str = field(default_factory=lambda: Config.DEFAULT_DISTRIBUTION,
                              metadata=_key("SELECTED_DISTRIBUTION"))
    name: str = field(default="", metadata=_key("VM_NAME"))
    vmid: Optional[int] = field(default=None, metadata=_key("VMID_DEFAULT", "optint"))
    cores: int = field(default_factory=lambda: Config.DEFAULT_CORES, metadata=_key("VM_CORES", "int"))
    memory: int = field(default_factory=lambda: Config.DEFAULT_MEMORY, metadata=_key("VM_MEMORY", "int"))
    disk_size: str = field(default_factory=lambda: Config.DEFAULT_DISK_SIZE, metadata=_key("VM_DISK_SIZE"))
    storage: str = field(default_factory=lambda: Config.DEFAULT_STORAGE, metadata=_key("VM_STORAGE"))

    network_mode: str = field(default=NetworkMode.DHCP.value, metadata=_key("NETWORK_MODE"))
    static_ip: str = field(default="", metadata=_key("STATIC_IP"))
    gateway: str = field(default="", metadata=_key("STATIC_GATEWAY"))
    dns: str = field(default_factory=lambda: Config.DEFAULT_DNS, metadata=_key("STATIC_DNS"))
    bridge: str = field(default_factory=lambda: Config.DEFAULT_BRIDGE, metadata=_key("NETWORK_BRIDGE"))
    vlan_tag: Optional[int] = field(default=None, metadata=_key("VLAN_TAG", "optint"))

    ci_user: str = field(default="", metadata=_key("CLOUD_USER"))
    ssh_key_file: str = field(default_factory=lambda: Config.SSH_PUBKEY_PATH, metadata=_key("SSH_PUBLIC_KEY_FILE"))
    user_data_snippet: bool = field(default=False, metadata=_key("CLOUD_INIT_SNIPPET", "bool"))
    packages: List[str] = field(default_factory=list, metadata=_key("SELECTED_PACKAGES", "list"))
    tags: List[str] = field(default_factory=Config.template_tags, metadata=_key("TEMPLATE_TAGS", "list"))
    description: str = field(default="", metadata=_key("TEMPLATE_DESCRIPTION"))

    custom_image_url: str = field(default="", metadata=_key("CUSTOM_IMAGE_URL"))
    custom_image_format: str = field(default="auto", metadata=_key("CUSTOM_IMAGE_FORMAT"))
    custom_package_manager: str = field(default="", metadata=_key("CUSTOM_PACKAGE_MANAGER"))
    image_checksum: str = field(default="", metadata=_key("IMAGE_CHECKSUM"))

    docker_enabled: bool = field(default=False, metadata=_key("DOCKER_INTEGRATION", "bool"))
    docker_templates: List[str] = field(default_factory=list, metadata=_key("DOCKER_TEMPLATES", "list"))
    k8s_enabled: bool = field(default=False, metadata=_key("K8S_INTEGRATION", "bool"))
    k8s_templates: List[str] = field(default_factory=list, metadata=_key("K8S_TEMPLATES", "list"))
    ansible_enabled: bool = field(default=False, metadata=_key("ANSIBLE_ENABLED", "bool"))
    ansible_playbooks: List[str] = field(default_factory=list, metadata=_key("ANSIBLE_PLAYBOOKS", "list"))
    ansible_vars: Dict[str, str] = field(default_factory=dict, metadata=_key("ANSIBLE_VARS", "dict"))
    terraform_enabled: bool = field(default=False, metadata=_key("TERRAFORM_ENABLED", "bool"))
    terraform_modules: List[str] = field(default_factory=list, metadata=_key("TERRAFORM_MODULES", "list"))
    terraform_vars: Dict[str, str] = field(default_factory=dict, metadata=_key("TERRAFORM_VARS", "dict"))

    keep_containers: bool = field(default=False, metadata=_key("KEEP_CONTAINERS", "bool"))
    replace_existing: bool = field(default=False, metadata=_key("REPLACE_EXISTING", "bool"))

    def __post_init__(self) -> None:
        # Selecting templates or playbooks implies the integration
        self.docker_enabled = self.docker_enabled or bool(self.docker_templates)
        self.k8s_enabled = self.k8s_enabled or bool(self.k8s_templates)
        self.ansible_enabled = self.ansible_enabled or bool(self.ansible_playbooks)
        self.terraform_enabled = self.terraform_enabled or bool(self.terraform_modules)

    # === Derived values ===

    @property
    def template_name(self) -> str:
        return self.name or f"{self.distribution}-template"

    @property
    def mode(self) -> NetworkMode:
        return NetworkMode(self.network_mode)

    @property
    def disk_size_spec(self) -> str:
        """Disk size with a unit suffix, a bare number meaning GiB."""
        return self.disk_size if self.disk_size[-1:].isalpha() else f"{self.disk_size}G"

    @property
    def disk_size_bytes(self) -> int:
        size = self.disk_size_spec
        return int(size[:-1]) * 1024 ** _UNIT_POWERS[size[-1]]

    @property
    def disk_size_gib(self) -> int:
        """Disk size rounded up to whole GiB, as used by ``storage:N`` allocations."""
        return -(-self.disk_size_bytes // 1024 ** 3)

    @property
    def effective_terraform_modules(self) -> List[str]:
        return self.terraform_modules or list(TERRAFORM_DEFAULT_MODULES)

    def resolve_distribution(self) -> Distribution:
        """Catalog entry (or custom image entry) for this configuration."""
        if self.distribution == CUSTOM_KEY or (self.custom_image_url and not self.distribution):
            if not self.custom_image_url:
                raise InvalidParameterError("Distribution 'custom' requires CUSTOM_IMAGE_URL")
            return custom_distribution(
                self.custom_image_url,
                image_format=self.custom_image_format,
                package_manager=self.custom_package_manager or None,
                default_user=self.ci_user or "root",
                checksum=self.image_checksum or None,
            )
        return with_checksum(get_distribution(self.distribution), self.image_checksum or None)

    def cloud_user(self, distribution: Optional[Distribution] = None) -> str:
        if self.ci_user:
            return self.ci_user
        return (distribution or self.resolve_distribution()).default_user

    # === Validation ===

    def validate(self) -> None:
        """
        Check value ranges and combinations.

        Raises:
            InvalidParameterError: On the first invalid value found
        """
        dist = self.resolve_distribution()

        if not _NAME_RE.match(self.template_name):
            raise InvalidParameterError(
                f"Invalid template name {self.template_name!r}: use letters, digits, '-' and '.'"
            )
        if self.vmid is not None:
            validate_vmid(self.vmid)
        if not 1 <= self.cores <= 512:
            raise InvalidParameterError(f"Cores must be between 1 and 512, got {self.cores}")
        if self.memory < 128:
            raise InvalidParameterError(f"Memory must be at least 128 MB, got {self.memory}")
        if not _DISK_SIZE_RE.match(self.disk_size):
            raise InvalidParameterError(f"Invalid disk size {self.disk_size!r} (examples: 20G, 1536M, 32)")
        if self.disk_size_bytes < 1024 ** 3:
            raise InvalidParameterError(f"Disk size must be at least 1G, got {self.disk_size}")
        if not self.storage:
            raise InvalidParameterError("Storage must not be empty")
        if self.vlan_tag is not None and not 1 <= self.vlan_tag <= 4094:
            raise InvalidParameterError(f"VLAN tag must be between 1 and 4094, got {self.vlan_tag}")

        try:
            mode = self.mode
        except ValueError:
            raise InvalidParameterError(
                f"Invalid network mode {self.network_mode!r}. Choose from: "
                f"{', '.join(m.value for m in NetworkMode)}"
            )
        if mode is NetworkMode.STATIC:
            if not self.static_ip:
                raise InvalidParameterError("Static network mode requires STATIC_IP (e.g. 192.168.1.50/24)")
            try:
                ipaddress.ip_interface(self.static_ip)
                if self.gateway:
                    ipaddress.ip_address(self.gateway)
            except ValueError as e:
                raise InvalidParameterError(f"Invalid static network settings: {e}")

        if self.packages and not dist.supports_packages:
            raise InvalidParameterError(
                f"{dist.name} does not support package pre-installation (installer ISO or no package manager)"
            )
        if self.docker_enabled and not self.docker_templates:
            raise InvalidParameterError("Docker integration requires at least one Docker template")
        if self.k8s_enabled and not self.k8s_templates:
            raise InvalidParameterError("Kubernetes integration requires at least one Kubernetes template")
        unknown = [m for m in self.terraform_modules if m not in TERRAFORM_MODULES]
        if unknown:
            raise InvalidParameterError(
                f"Unsupported Terraform module(s): {', '.join(unknown)}. Supported: {', '.join(TERRAFORM_MODULES)}"
            )

    # === Mapping conversion ===

    @classmethod
    def from_mapping(cls, values: Dict[str, Optional[str]], base: Optional["TemplateConfig"] = None) -> "TemplateConfig":
        """
        Build a configuration from ``KEY -> value`` strings.

        Args:
            values: Parsed file contents
            base: Configuration whose values are kept for missing keys

        Raises:
            InvalidParameterError: If a value cannot be converted
        """
        by_key = {f.metadata["key"]: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, raw in values.items():
            f = by_key.get(key)
            if f is None:
                logger.debug(f"Ignoring unknown configuration key {key}")
                continue
            kwargs[f.name] = _convert(key, f.metadata["kind"], raw or "")

        if "distribution" in kwargs:
            kwargs["distribution"] = _distribution_key(kwargs["distribution"])

        if base is None:
            return cls(**kwargs)
        return replace(base, **kwargs)

    def to_mapping(self) -> Dict[str, str]:
        """Inverse of from_mapping, as strings ready to be written."""
        values = {}
        for f in fields(self):
            values[f.metadata["key"]] = _format(f.metadata["kind"], getattr(self, f.name))
        return values

    def with_overrides(self, **overrides: Any) -> "TemplateConfig":
        """Copy with every override that is not None (or an empty list/dict)."""
        changes = {k: v for k, v in overrides.items() if v is not None and v != [] and v != {}}
        if "distribution" in changes:
            changes["distribution"] = _distribution_key(changes["distribution"])
        return replace(self, **changes)


# === Value conversion ===


def _convert(key: str, kind: str, raw: str) -> Any:
    raw = raw.strip()
    if kind == "int":
        if not raw.lstrip("-").isdigit():
            raise InvalidParameterError(f"{key} must be a number, got {raw!r}")
        return int(raw)
    if kind == "optint":
        if raw in ("", "auto"):
            return None
        if not raw.isdigit():
            raise InvalidParameterError(f"{key} must be a number, got {raw!r}")
        return int(raw)
    if kind == "bool":
        return raw.lower() in _TRUE
    if kind == "list":
        return split_list(raw)
    if kind == "dict":
        return parse_key_values(split_list(raw))
    return raw


def _format(kind: str, value: Any) -> str:
    if kind == "optint":
        return "" if value is None else str(value)
    if kind == "bool":
        return "true" if value else "false"
    if kind == "list":
        return "(" + " ".join(shlex.quote(v) for v in value) + ")"
    if kind == "dict":
        return "(" + " ".join(shlex.quote(f"{k}={v}") for k, v in value.items()) + ")"
    return str(value)


def split_list(raw: str) -> List[str]:
    """Split ``(a b c)``, ``a,b,c`` or ``a b c`` into items."""
    raw = raw.strip()
    if raw.startswith("(") and raw.endswith(")"):
        try:
            return shlex.split(raw[1:-1])
        except ValueError as e:
            raise InvalidParameterError(f"Cannot parse list {raw!r}: {e}")
    return [item for item in re.split(r"[,\s]+", raw) if item]


def split_option_values(values: Optional[Iterable[str]]) -> List[str]:
    """Flatten repeated and comma-separated CLI values."""
    items: List[str] = []
    for value in values or []:
        items.extend(v.strip() for v in value.split(",") if v.strip())
    return items


def parse_key_values(pairs: Iterable[str]) -> Dict[str, str]:
    """
    Parse ``key=value`` strings into a dict.

    Raises:
        InvalidParameterError: If an entry has no '=' or an empty key
    """
    result: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise InvalidParameterError(f"Expected key=value, got {pair!r}")
        result[key.strip()] = value
    return result


def _distribution_key(value: str) -> str:
    """Accept a catalog key or the exported ``Display Name|URL|...`` form."""
    if "|" not in value:
        return value
    dist = find_by_name(value.split("|", 1)[0])
    if dist is None:
        raise InvalidParameterError(f"Cannot match distribution {value.split('|', 1)[0]!r} to the catalog")
    return dist.key


# === Files ===


def _parse_text(text: str) -> Dict[str, Optional[str]]:
    return dict(dotenv_values(stream=io.StringIO(text), interpolate=False))


def load_config_file(path: PathLike, base: Optional[TemplateConfig] = None) -> TemplateConfig:
    """
    Load a single ``KEY="value"`` configuration file.

    Raises:
        InvalidParameterError: If the file does not exist or a value is invalid
    """
    path = Path(path)
    if not path.is_file():
        raise InvalidParameterError(f"Configuration file not found: {path}")
    logger.info(f"📄 Loading configuration from {path}")
    return TemplateConfig.from_mapping(_parse_text(path.read_text()), base=base)


def load_batch_file(path: PathLike, base: Optional[TemplateConfig] = None) -> List[TemplateConfig]:
    """
    Load a batch queue file into one configuration per ``[section]``.

    A section without VM_NAME is named after the section. A file without
    sections yields a single configuration.

    Raises:
        InvalidParameterError: If the file does not exist or a value is invalid
    """
    path = Path(path)
    if not path.is_file():
        raise InvalidParameterError(f"Batch file not found: {path}")

    header: List[str] = []
    sections: List[List[str]] = []
    names: List[str] = []
    for line in path.read_text().splitlines():
        match = _SECTION_RE.match(line)
        if match:
            names.append(match.group(1).strip())
            sections.append([])
        elif sections:
            sections[-1].append(line)
        else:
            header.append(line)

    defaults = _parse_text("\n".join(header))
    if not sections:
        return [TemplateConfig.from_mapping(defaults, base=base)]

    configs = []
    for name, lines in zip(names, sections):
        own = _parse_text("\n".join(lines))
        values = dict(defaults)
        values.update(own)
        if not own.get("VM_NAME"):
            values["VM_NAME"] = name
        configs.append(TemplateConfig.from_mapping(values, base=base))
    logger.info(f"📄 Loaded {len(configs)} template configurations from {path}")
    return configs


_SECTIONS = [
    ("Distribution", ["SELECTED_DISTRIBUTION", "CUSTOM_IMAGE_URL", "CUSTOM_IMAGE_FORMAT",
                      "CUSTOM_PACKAGE_MANAGER", "IMAGE_CHECKSUM"]),
    ("VM Settings", ["VM_NAME", "VMID_DEFAULT", "VM_CORES", "VM_MEMORY", "VM_DISK_SIZE", "VM_STORAGE",
                     "TEMPLATE_TAGS", "TEMPLATE_DESCRIPTION"]),
    ("Network Settings", ["NETWORK_MODE", "STATIC_IP", "STATIC_GATEWAY", "STATIC_DNS", "NETWORK_BRIDGE",
                          "VLAN_TAG"]),
    ("Cloud-init", ["CLOUD_USER", "SSH_PUBLIC_KEY_FILE", "CLOUD_INIT_SNIPPET"]),
    ("Package Settings", ["SELECTED_PACKAGES"]),
    ("Automation Settings", ["ANSIBLE_ENABLED", "ANSIBLE_PLAYBOOKS", "ANSIBLE_VARS", "TERRAFORM_ENABLED",
                             "TERRAFORM_MODULES", "TERRAFORM_VARS", "DOCKER_INTEGRATION", "DOCKER_TEMPLATES",
                             "K8S_INTEGRATION", "K8S_TEMPLATES", "KEEP_CONTAINERS", "REPLACE_EXISTING"]),
]


def render_config(config: TemplateConfig) -> str:
    """Render a configuration file that load_config_file reads back unchanged."""
    values = config.to_mapping()
    lines = [
        "# Proxmox Template Creator Configuration",
        f"# Generated on {datetime.now():%Y-%m-%d %H:%M:%S}",
    ]
    for title, keys in _SECTIONS:
        lines += ["", f"# {title}"]
        for key in keys:
            value = values[key]
            if value.startswith("("):
                lines.append(f"{key}={value}")
            else:
                escaped = value.replace("\\", "\\\\").replace('"', '\\"')
                lines.append(f'{key}="{escaped}"')
    return "\n".join(lines) + "\n"


def export_config(config: TemplateConfig, path: PathLike) -> Path:
    """Write ``config`` to ``path``, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_config(config))
    logger.info(f"💾 Configuration exported to {path}")
    return path
