"""Ansible playbook discovery, dynamic inventory and execution."""

import json
import logging
import os
import shlex
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from pvetemplate.command_runner import CommandRunner
from pvetemplate.config import Config
from pvetemplate.lxc_sandbox import LXCSandbox, SandboxFactory
from pvetemplate.models import CommandError, CommandResult, MissingDependencyError, ProvisionSummary

logger = logging.getLogger(__name__)

PLAYBOOK_SUFFIXES = (".yml", ".yaml")
SKIP_DIRS = {"roles", "group_vars", "host_vars", "inventory", "templates", "files", "vars"}
SANDBOX_PLAYBOOK_DIR = "/srv/ansible"
SANDBOX_INVENTORY = "/srv/ansible/inventory/proxmox.yml"

INSTALL_ANSIBLE = " && ".join([
    "apt-get update",
    "DEBIAN_FRONTEND=noninteractive apt-get install -y ansible python3-proxmoxer python3-requests",
    "ansible-galaxy collection install community.general ansible.posix",
])


def render_inventory(api_host: Optional[str] = None, api_token: Optional[str] = None,
                     verify_ssl: Optional[bool] = None) -> str:
    """Dynamic inventory for the community.general.proxmox plugin.

    Without an API token the plugin falls back to the PROXMOX_URL, PROXMOX_USER,
    PROXMOX_TOKEN_ID and PROXMOX_TOKEN_SECRET environment variables.
    """
    host = api_host or Config.PVE_API_HOST or Config.PVE_HOST or "localhost"
    inventory: Dict[str, Any] = {
        "plugin": "community.general.proxmox",
        "url": host if host.startswith("http") else f"https://{host}:8006",
        "validate_certs": Config.PVE_VERIFY_SSL if verify_ssl is None else verify_ssl,
    }

    token = api_token if api_token is not None else Config.API_TOKEN
    if token and "!" in token and "=" in token:
        user_token, secret = token.split("=", 1)
        user, token_id = user_token.split("!", 1)
        inventory.update({"user": user, "token_id": token_id, "token_secret": secret})

    inventory.update({
        "want_facts": True,
        "want_proxmox_nodes_ansible_host": False,
        "keyed_groups": [
            {"key": "proxmox_tags_parsed", "separator": "", "prefix": "tag_"},
            {"key": "proxmox_ostype", "prefix": "os"},
        ],
        "groups": {
            "templates": "proxmox_template | default(0) | int == 1",
            "running": "proxmox_status == 'running'",
        },
        "compose": {
            "ansible_host": "proxmox_ipconfig0.ip | default(proxmox_net0.ip) | ansible.utils.ipaddr('address')",
        },
    })
    return "---\n" + yaml.safe_dump(inventory, default_flow_style=False, sort_keys=False)


class AnsibleRunner:
    """Runs playbooks where the Proxmox tools run, or in a sandbox container."""

    def __init__(
        self,
        runner: CommandRunner,
        playbooks_dir: Optional[str] = None,
        inventory_path: Optional[str] = None,
        sandbox_factory: Optional[SandboxFactory] = None,
    ) -> None:
        self.runner = runner
        self.playbooks_dir = playbooks_dir or Config.ANSIBLE_PLAYBOOKS_DIR
        self.inventory_path = inventory_path or Config.ANSIBLE_INVENTORY_PATH
        self.sandbox_factory = sandbox_factory

    def discover_playbooks(self) -> List[str]:
        """Playbook paths relative to the playbooks directory."""
        root = Path(self.playbooks_dir)
        if not root.is_dir():
            logger.debug(f"Playbook directory {root} does not exist")
            return []
        found = []
        for path in sorted(root.rglob("*")):
            if path.suffix not in PLAYBOOK_SUFFIXES or not path.is_file():
                continue
            if SKIP_DIRS.intersection(path.relative_to(root).parts[:-1]):
                continue
            found.append(str(path.relative_to(root)))
        return found

    def resolve_playbook(self, name: str) -> Optional[Path]:
        candidates = [Path(name), Path(self.playbooks_dir) / name]
        candidates += [Path(self.playbooks_dir) / f"{name}{suffix}" for suffix in PLAYBOOK_SUFFIXES]
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    def generate_inventory(self, path: Optional[str] = None) -> str:
        """Write the dynamic inventory on the command host and return its path."""
        path = path or self.inventory_path
        self.runner.write_text(path, render_inventory())
        logger.info(f"📋 Ansible inventory written to {path}")
        return path

    @staticmethod
    def _command(playbook: str, inventory: str, extra_vars: Dict[str, Any], mode: Optional[str]) -> List[str]:
        args = ["ansible-playbook", "-i", inventory]
        if mode == "syntax":
            args.append("--syntax-check")
        elif mode == "check":
            args.append("--check")
        if extra_vars:
            args += ["--extra-vars", json.dumps(extra_vars)]
        args.append(playbook)
        return args

    def syntax_check(self, playbook: str, inventory: Optional[str] = None) -> bool:
        result = self.runner.run(
            self._command(playbook, inventory or self.inventory_path, {}, "syntax"), check=False
        )
        if not result.ok:
            logger.error(f"Syntax check failed for {playbook}: {result.stderr.strip()}")
        return result.ok

    def run_playbook(self, playbook: str, inventory: Optional[str] = None,
                     extra_vars: Optional[Dict[str, Any]] = None, check: bool = False) -> CommandResult:
        """
        Run one playbook with ansible-playbook.

        Raises:
            CommandError: If ansible-playbook exits non-zero
        """
        logger.info(f"▶️  Running playbook {playbook}")
        return self.runner.run(
            self._command(playbook, inventory or self.inventory_path, extra_vars or {}, "check" if check else None)
        )

    def run_all(self, playbooks: Sequence[str], extra_vars: Optional[Dict[str, Any]] = None,
                check: bool = False) -> ProvisionSummary:
        """
        Run ``playbooks`` in order against the generated inventory.

        Raises:
            MissingDependencyError: If ansible-playbook is unavailable and no sandbox can be used
        """
        summary = ProvisionSummary()
        resolved = []
        for name in playbooks:
            path = self.resolve_playbook(name)
            if path is None:
                logger.error(f"Playbook not found: {name} (looked in {self.playbooks_dir})")
                summary.failed.append(name)
            else:
                resolved.append((name, path))

        if not resolved:
            return summary

        extra_vars = dict(extra_vars or {})
        if self.runner.which("ansible-playbook"):
            self._run_on_host(resolved, extra_vars, check, summary)
        elif self.sandbox_factory is not None:
            logger.info("ansible-playbook not installed, running playbooks in a sandbox container")
            self._run_in_sandbox(resolved, extra_vars, check, summary)
        else:
            raise MissingDependencyError("ansible-playbook is not installed")

        logger.info(f"Ansible summary: {summary}")
        return summary

    def _run_on_host(self, resolved, extra_vars, check, summary) -> None:
        inventory = self.generate_inventory()
        uploaded: List[str] = []
        try:
            for name, path in resolved:
                host_path = str(path)
                if self.runner.is_remote:
                    host_path = os.path.join(Config.WORK_DIR, "ansible", path.name)
                    self.runner.put_file(str(path), host_path)
                    uploaded.append(host_path)
                try:
                    self.run_playbook(host_path, inventory, extra_vars, check)
                    summary.applied.append(name)
                except CommandError as e:
                    logger.error(f"Playbook {name} failed: {e}")
                    summary.failed.append(name)
        finally:
            if uploaded:
                self.runner.run(["rm", "-f"] + uploaded, check=False)

    def _run_in_sandbox(self, resolved, extra_vars, check, summary) -> None:
        with self.sandbox_factory(hostname="ansible-runner", cores=1, memory=1024) as box:
            box.exec(INSTALL_ANSIBLE, timeout=1200)
            self._push_text(box, render_inventory(), SANDBOX_INVENTORY)
            for name, path in resolved:
                remote = f"{SANDBOX_PLAYBOOK_DIR}/{path.name}"
                try:
                    box.push(str(path), remote)
                    args = self._command(remote, SANDBOX_INVENTORY, extra_vars, "check" if check else None)
                    box.exec(" ".join(shlex.quote(a) for a in args), timeout=3600)
                    summary.applied.append(name)
                except CommandError as e:
                    logger.error(f"Playbook {name} failed: {e}")
                    summary.failed.append(name)

    @staticmethod
    def _push_text(box: LXCSandbox, content: str, container_path: str) -> None:
        with tempfile.NamedTemporaryFile("w", suffix=".yml", delete=False) as f:
            f.write(content)
        try:
            box.push(f.name, container_path)
        finally:
            os.remove(f.name)
