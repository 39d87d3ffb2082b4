import os
from typing import List

from dotenv import load_dotenv


def _getbool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Loads tool-wide settings from environment variables and .env."""

    load_dotenv()

    # Empty means the Proxmox tools run on this machine
    PVE_HOST = os.getenv("PVE_HOST", "").strip()
    SSH_USER = os.getenv("SSH_USER", "root")
    SSH_KEY_PATH = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))

    # "user@realm!tokenname=secret"; enables the REST API for VMID lookups
    API_TOKEN = os.getenv("API_TOKEN")
    PVE_API_HOST = os.getenv("PVE_API_HOST", "")
    PVE_NODE = os.getenv("PVE_NODE", "")
    PVE_VERIFY_SSL = _getbool("PVE_VERIFY_SSL")

    IMAGE_DIR = os.getenv("IMAGE_DIR", "/var/lib/vz/template/iso")
    # Storage whose iso/ content directory is IMAGE_DIR
    ISO_STORAGE = os.getenv("ISO_STORAGE", "local")
    WORK_DIR = os.getenv("WORK_DIR", "/tmp/pve-template")
    SNIPPETS_DIR = os.getenv("SNIPPETS_DIR", "/var/lib/vz/snippets")
    SNIPPETS_STORAGE = os.getenv("SNIPPETS_STORAGE", "")
    LOG_DIR = os.getenv("LOG_DIR", os.path.expanduser("~/.local/state/pve-template/logs"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_KEEP = int(os.getenv("LOG_KEEP", "10"))

    DOCKER_TEMPLATES_DIR = os.getenv("DOCKER_TEMPLATES_DIR", "docker/templates")
    K8S_TEMPLATES_DIR = os.getenv("K8S_TEMPLATES_DIR", "kubernetes/templates")
    KUBECONFIG = os.path.expanduser(os.getenv("KUBECONFIG", "~/.kube/config"))
    ANSIBLE_PLAYBOOKS_DIR = os.getenv("ANSIBLE_PLAYBOOKS_DIR", "ansible/playbooks")
    ANSIBLE_INVENTORY_PATH = os.getenv("ANSIBLE_INVENTORY_PATH", "/opt/ansible/inventory/proxmox.yml")
    TERRAFORM_DIR = os.getenv("TERRAFORM_DIR", "terraform")

    LXC_OS_TEMPLATE = os.getenv("LXC_OS_TEMPLATE", "local:vztmpl/ubuntu-22.04-standard_22.04-1_amd64.tar.zst")
    LXC_STORAGE = os.getenv("LXC_STORAGE", "local-lvm")
    LXC_READY_TIMEOUT = int(os.getenv("LXC_READY_TIMEOUT", "60"))

    VMID_SEARCH_START = int(os.getenv("VMID_SEARCH_START", "1000"))
    MAX_RETRY_ATTEMPTS = int(os.getenv("MAX_RETRY_ATTEMPTS", "3"))
    COMMAND_TIMEOUT = int(os.getenv("COMMAND_TIMEOUT", "1800"))
    LOCK_FILE = os.getenv("LOCK_FILE", "/run/lock/pve-template.lock")

    # Defaults for a new template configuration
    DEFAULT_DISTRIBUTION = os.getenv("DEFAULT_DISTRIBUTION", "ubuntu-22.04")
    DEFAULT_CORES = int(os.getenv("DEFAULT_CORES", "2"))
    DEFAULT_MEMORY = int(os.getenv("DEFAULT_MEMORY", "2048"))
    DEFAULT_DISK_SIZE = os.getenv("DEFAULT_DISK_SIZE", "20G")
    DEFAULT_STORAGE = os.getenv("DEFAULT_STORAGE", "local-lvm")
    DEFAULT_BRIDGE = os.getenv("DEFAULT_BRIDGE", "vmbr0")
    DEFAULT_DNS = os.getenv("DEFAULT_DNS", "1.1.1.1,8.8.8.8")
    SSH_PUBKEY_PATH = os.path.expanduser(os.getenv("SSH_PUBKEY_PATH", "~/.ssh/id_rsa.pub"))

    @staticmethod
    def template_tags() -> List[str]:
        """Tags applied to every template, from comma-separated TEMPLATE_TAGS."""
        raw = os.getenv("TEMPLATE_TAGS", "template")
        return [tag.strip() for tag in raw.split(",") if tag.strip()]
