from typing import Any, Dict, List, Optional, Set
import logging

from proxmoxer import ProxmoxAPI

from pvetemplate.config import Config
from pvetemplate.models import InvalidParameterError

logger = logging.getLogger(__name__)


class ProxmoxClient:
    """Wrapper around the Proxmox REST API using token authentication."""

    def __init__(self, host: str, verify_ssl: Optional[bool] = None) -> None:
        self.host = host
        if not Config.API_TOKEN:
            raise InvalidParameterError("API_TOKEN environment variable is not set")

        # Extract API token components: user@realm!tokenname=secret
        try:
            user_token, self.api_token = Config.API_TOKEN.split("=", 1)
            self.user, self.token_name = user_token.split("!", 1)
        except ValueError:
            raise InvalidParameterError("API_TOKEN must look like 'user@realm!tokenname=secret'")

        self.proxmox = ProxmoxAPI(
            host,
            user=self.user,
            token_name=self.token_name,
            token_value=self.api_token,
            verify_ssl=Config.PVE_VERIFY_SSL if verify_ssl is None else verify_ssl,
        )

    @classmethod
    def from_config(cls) -> Optional["ProxmoxClient"]:
        """Build a client when API_TOKEN is configured, else None."""
        if not Config.API_TOKEN:
            return None
        host = Config.PVE_API_HOST or Config.PVE_HOST or "localhost"
        return cls(host)

    def _vm_resources(self) -> List[Dict[str, Any]]:
        return self.proxmox.cluster.resources.get(type="vm")  # type: ignore[no-any-return]

    def used_vmids(self) -> Set[int]:
        """All VM and container IDs in the cluster, including offline nodes."""
        used = set()
        try:
            for resource in self._vm_resources():
                used.add(int(resource["vmid"]))
        except Exception as e:
            logger.warning(f"Cluster resource query failed ({e}), querying nodes one by one")
            for n in self.proxmox.nodes.get():
                if n.get("status", "unknown") != "online":
                    continue
                nodename = n["node"]
                for vm in self.proxmox.nodes(nodename).qemu.get():
                    used.add(int(vm["vmid"]))
                for ct in self.proxmox.nodes(nodename).lxc.get():
                    used.add(int(ct["vmid"]))
        return used

    def list_templates(self) -> List[Dict[str, Any]]:
        """Template VMs across the cluster, sorted by VMID."""
        templates = [r for r in self._vm_resources() if r.get("type") == "qemu" and r.get("template") == 1]
        return sorted(templates, key=lambda r: int(r["vmid"]))

    def get_node_status(self, node: str) -> Dict[str, Any]:
        """Retrieve node status information."""
        return self.proxmox.nodes(node).status.get()  # type: ignore[no-any-return]
