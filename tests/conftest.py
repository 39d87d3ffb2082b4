"""Shared test fixtures for pve-template tests."""

from typing import List
from unittest import mock

import pytest

from pvetemplate.config import Config
from pvetemplate.models import CommandError, CommandResult


def make_runner(dry_run: bool = False, is_remote: bool = False) -> mock.MagicMock:
    """CommandRunner stand-in that records commands.

    ``runner.responses`` maps an argv prefix tuple to ``(returncode, stdout)``;
    unmatched commands succeed with empty output.
    """
    runner = mock.MagicMock()
    runner.dry_run = dry_run
    runner.is_remote = is_remote
    runner.responses = {}
    runner.which.return_value = True

    def run(args, check=True, readonly=False, input_text=None, timeout=None):
        argv = [str(a) for a in args]
        returncode, stdout = 0, ""
        best = -1
        for prefix, response in runner.responses.items():
            if tuple(argv[: len(prefix)]) == prefix and len(prefix) > best:
                returncode, stdout = response
                best = len(prefix)
        if check and returncode != 0:
            raise CommandError(argv, returncode, "mock failure")
        return CommandResult(argv, returncode, stdout)

    runner.run.side_effect = run
    return runner


def commands(runner: mock.MagicMock) -> List[List[str]]:
    """Every argv passed to ``runner.run`` as lists of strings."""
    return [[str(a) for a in c.args[0]] for c in runner.run.call_args_list]


@pytest.fixture(autouse=True)
def isolated_paths(tmp_path, monkeypatch):
    """Keep logs, locks, caches and work files inside the test's tmp dir."""
    monkeypatch.setattr(Config, "LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(Config, "LOCK_FILE", str(tmp_path / "pve-template.lock"))
    monkeypatch.setattr(Config, "IMAGE_DIR", str(tmp_path / "images"))
    monkeypatch.setattr(Config, "WORK_DIR", str(tmp_path / "work"))
    monkeypatch.setattr(Config, "SNIPPETS_DIR", str(tmp_path / "snippets"))
    monkeypatch.setattr(Config, "TERRAFORM_DIR", str(tmp_path / "terraform"))
    monkeypatch.setattr(Config, "ANSIBLE_INVENTORY_PATH", str(tmp_path / "inventory" / "proxmox.yml"))
    monkeypatch.setattr(Config, "API_TOKEN", None)
    monkeypatch.setattr(Config, "PVE_HOST", "")
    return tmp_path


@pytest.fixture
def mock_runner():
    """Local, non dry-run runner stand-in."""
    return make_runner()


@pytest.fixture
def dry_runner():
    return make_runner(dry_run=True)


@pytest.fixture
def temp_ssh_key(tmp_path, monkeypatch):
    """Create temporary SSH key for testing."""
    key_file = tmp_path / "id_rsa.pub"
    key_file.write_text("ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAItest test@example.com\n")
    monkeypatch.setattr(Config, "SSH_PUBKEY_PATH", str(key_file))
    return str(key_file)


@pytest.fixture
def mock_env(monkeypatch, temp_ssh_key):
    """Test defaults for template settings."""
    monkeypatch.delenv("TEMPLATE_TAGS", raising=False)
    monkeypatch.setattr(Config, "DEFAULT_DISTRIBUTION", "ubuntu-22.04")
    monkeypatch.setattr(Config, "DEFAULT_STORAGE", "local-lvm")
    monkeypatch.setattr(Config, "DEFAULT_BRIDGE", "vmbr0")
    monkeypatch.setattr(Config, "VMID_SEARCH_START", 1000)
    return Config


@pytest.fixture
def mock_proxmox():
    """Mock proxmoxer client."""
    with mock.patch("pvetemplate.proxmox_api.ProxmoxAPI") as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox
        proxmox.cluster.resources.get.return_value = []
        proxmox.nodes.get.return_value = [{"node": "pve", "status": "online"}]
        proxmox.nodes.return_value.qemu.get.return_value = []
        proxmox.nodes.return_value.lxc.get.return_value = []
        yield proxmox


@pytest.fixture
def mock_sandbox():
    """Sandbox factory returning one MagicMock sandbox, usable as a context manager."""
    box = mock.MagicMock()
    box.__enter__.return_value = box
    box.__exit__.return_value = False
    box.exec.return_value = CommandResult(["pct"], 0, "")
    box.runner.dry_run = False
    factory = mock.MagicMock(return_value=box)
    return factory, box
