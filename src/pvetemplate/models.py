"""Data models and exceptions for template creation."""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List, Optional, Sequence


class ExitCode(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    GENERAL_ERROR = 1
    INVALID_PARAMETERS = 2
    MISSING_DEPENDENCIES = 3
    INSUFFICIENT_PERMISSIONS = 4


class NetworkMode(Enum):
    """How the first NIC of the template gets its address."""

    DHCP = "dhcp"
    STATIC = "static"
    NONE = "none"


class ImageFormat(Enum):
    """Disk formats that can be turned into a template disk."""

    QCOW2 = "qcow2"
    RAW = "raw"
    ISO = "iso"

    @classmethod
    def from_filename(cls, filename: str) -> "ImageFormat":
        """Guess the format from an image name, ignoring compression suffixes."""
        name = filename.lower()
        for suffix in (".xz", ".gz", ".bz2"):
            if name.endswith(suffix):
                name = name[: -len(suffix)]
        if name.endswith(".iso"):
            return cls.ISO
        if name.endswith((".raw", ".img")):
            return cls.RAW
        return cls.QCOW2

    @property
    def is_iso(self) -> bool:
        return self is ImageFormat.ISO


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    args: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class ProvisionSummary:
    """Applied/failed counts for a batch of Docker, Kubernetes or Ansible items."""

    applied: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    def __str__(self) -> str:
        return f"{len(self.applied)} applied, {len(self.failed)} failed"


@dataclass
class TemplateResult:
    """Result of creating one template."""

    name: str
    vmid: Optional[int] = None
    success: bool = False
    steps: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None


class TemplateCreatorError(Exception):
    """Base exception for template creation errors."""

    exit_code = ExitCode.GENERAL_ERROR


class InvalidParameterError(TemplateCreatorError):
    """Raised when a flag or configuration value is invalid."""

    exit_code = ExitCode.INVALID_PARAMETERS


class UnknownDistributionError(InvalidParameterError):
    """Raised when a distribution key is not in the catalog."""

    pass


class MissingDependencyError(TemplateCreatorError):
    """Raised when a required external tool is not installed."""

    exit_code = ExitCode.MISSING_DEPENDENCIES


class InsufficientPermissionsError(TemplateCreatorError):
    """Raised when the tool is not run with enough privileges."""

    exit_code = ExitCode.INSUFFICIENT_PERMISSIONS


class ProvisioningError(TemplateCreatorError):
    """Raised when an optional provisioning step cannot proceed."""

    pass


class CommandError(TemplateCreatorError):
    """Raised when an external command exits non-zero or times out."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.cmd = list(args)
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"Command '{' '.join(self.cmd)}' failed with exit code {returncode}{detail}")
