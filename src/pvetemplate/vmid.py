"""VMID validation and allocation."""

import fcntl
import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional, Set

from pvetemplate.config import Config
from pvetemplate.models import InvalidParameterError, TemplateCreatorError
from pvetemplate.proxmox_api import ProxmoxClient
from pvetemplate.pve import ProxmoxCLI

logger = logging.getLogger(__name__)

MIN_VMID = 100
MAX_VMID = 999999999


def validate_vmid(value: object) -> int:
    """
    Check that ``value`` is a usable Proxmox VMID.

    Raises:
        InvalidParameterError: If it is not numeric or out of range
    """
    text = str(value).strip()
    if not text.isdigit():
        raise InvalidParameterError(f"VMID must be numeric, got {value!r}")
    vmid = int(text)
    if not MIN_VMID <= vmid <= MAX_VMID:
        raise InvalidParameterError(f"VMID {vmid} out of range ({MIN_VMID}-{MAX_VMID})")
    return vmid


class VMIDAllocator:
    """Hands out VMIDs not used by any VM or container.

    IDs handed out during this process are remembered, so a batch never gets
    the same ID twice even before the VM exists.
    """

    def __init__(self, cli: ProxmoxCLI, api: Optional[ProxmoxClient] = None, start: Optional[int] = None) -> None:
        self.cli = cli
        self.api = api
        self.start = start if start is not None else Config.VMID_SEARCH_START
        self._reserved: Set[int] = set()

    def in_use(self, vmid: int) -> bool:
        if vmid in self._reserved:
            return True
        return self.cli.id_in_use(vmid)

    def next_available(self) -> int:
        """Lowest free VMID at or above the search start."""
        used: Set[int] = set(self._reserved)
        if self.api is not None:
            try:
                used |= self.api.used_vmids()
                for candidate in range(self.start, MAX_VMID + 1):
                    if candidate not in used:
                        return candidate
            except Exception as e:
                logger.warning(f"API VMID lookup failed ({e}), probing with qm/pct")

        candidate = self.start
        while candidate <= MAX_VMID:
            if not self.in_use(candidate):
                return candidate
            candidate += 1
        raise TemplateCreatorError("No available VMIDs found")

    def reserve(self, vmid: Optional[int] = None, force: bool = False) -> int:
        """Allocate ``vmid`` (or the next free one) for this process.

        ``force`` skips the in-use check, for an ID whose VM is being replaced.
        """
        if vmid is None:
            vmid = self.next_available()
        elif force:
            validate_vmid(vmid)
        else:
            self.ensure_available(vmid)
        self._reserved.add(vmid)
        logger.debug(f"Reserved VMID {vmid}")
        return vmid

    def release(self, vmid: int) -> None:
        self._reserved.discard(vmid)

    def ensure_available(self, vmid: int) -> None:
        """
        Raises:
            InvalidParameterError: If ``vmid`` is already in use
        """
        validate_vmid(vmid)
        if self.in_use(vmid):
            raise InvalidParameterError(f"VMID {vmid} is already in use")


@contextmanager
def allocation_lock(path: Optional[str] = None) -> Iterator[None]:
    """Hold an exclusive advisory lock while VMIDs are checked and claimed.

    Two creator processes on the same node serialize on this file, so the
    check-then-create sequence cannot hand one VMID to both.
    """
    path = path or Config.LOCK_FILE
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        handle = open(path, "w")
    except OSError as e:
        logger.warning(f"Cannot open lock file {path} ({e}), continuing without lock")
        yield
        return

    with handle:
        logger.debug(f"Waiting for lock {path}")
        fcntl.flock(handle, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
