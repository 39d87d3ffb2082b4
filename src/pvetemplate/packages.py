"""Package catalog and package-manager install commands."""

import shlex
from typing import Dict, List, Sequence

from pvetemplate.models import InvalidParameterError

GUEST_AGENT = "qemu-guest-agent"

PACKAGE_CATEGORIES: Dict[str, str] = {
    "essential": "Essential System Tools",
    "development": "Development Tools",
    "programming": "Programming Languages & Runtimes",
    "monitoring": "System Monitoring & Performance",
    "security": "Network & Security Tools",
    "webserver": "Web Servers & Proxies",
    "database": "Databases",
    "containers": "Containers & Orchestration",
    "infrastructure": "Infrastructure & DevOps Tools",
    "backup": "Backup & Recovery",
    "sysadmin": "System Administration",
    "filesystem": "File Systems & Storage",
    "recovery": "Recovery & Forensics",
    "mail": "Mail & Messaging",
    "multimedia": "Multimedia & Graphics",
    "specialized": "Specialized Tools",
}

# Packages available from the distribution's own repositories (Debian naming)
PACKAGES: Dict[str, List[str]] = {
    "essential": [
        "openssh-server", "net-tools", "iputils-ping", "rsync", "unzip", "zip",
        "git", "vim", "nano", "less", "htop", "tree", "jq", "curl", "wget",
    ],
    "development": [
        "build-essential", "tmux", "screen", "zsh", "fzf", "ripgrep", "fd-find",
        "bat", "neovim", "emacs", "git-lfs", "micro",
    ],
    "programming": [
        "python3", "python3-pip", "python3-venv", "python3-dev", "pipx", "nodejs",
        "npm", "golang-go", "rustc", "cargo", "openjdk-17-jdk", "php-cli", "ruby", "perl",
    ],
    "monitoring": [
        "btop", "iotop", "nethogs", "iftop", "ncdu", "duf", "glances", "nmon", "atop",
        "sysstat", "lsof", "strace", "tcpdump", "prometheus-node-exporter", "collectd",
    ],
    "security": [
        "fail2ban", "ufw", "nmap", "nftables", "wireguard", "openvpn", "lynis",
        "rkhunter", "chkrootkit", "clamav", "aide",
    ],
    "webserver": ["nginx", "apache2", "haproxy", "squid", "varnish"],
    "database": ["mariadb-server", "postgresql", "redis-server", "sqlite3"],
    "containers": ["docker.io", "docker-compose", "podman", "buildah", "skopeo", "containerd", "runc"],
    "infrastructure": ["ansible", "vagrant"],
    "backup": ["rsnapshot", "borgbackup", "rclone", "restic", "duplicity", "rdiff-backup"],
    "sysadmin": [
        "chrony", "cron", "anacron", "logrotate", "rsyslog", "auditd", "acct",
        "etckeeper", "debsums", "apt-file",
    ],
    "filesystem": [
        "nfs-common", "cifs-utils", "sshfs", "lvm2", "cryptsetup", "btrfs-progs",
        "xfsprogs", "e2fsprogs", "ntfs-3g", "dosfstools",
    ],
    "recovery": ["testdisk", "ddrescue", "foremost", "sleuthkit", "binwalk"],
    "mail": ["postfix", "dovecot-core", "msmtp", "mutt", "mailutils"],
    "multimedia": ["ffmpeg", "imagemagick", "graphicsmagick", "vlc", "mpv"],
    "specialized": [
        "qemu-guest-agent", "cloud-init", "cloud-utils", "libguestfs-tools", "kpartx",
        "open-vm-tools", "spice-vdagent",
    ],
}

_INSTALL_COMMANDS = {
    "apt": "apt-get update && DEBIAN_FRONTEND=noninteractive apt-get install -y {pkgs}",
    "apt-get": "apt-get update && DEBIAN_FRONTEND=noninteractive apt-get install -y {pkgs}",
    "dnf": "dnf -y install {pkgs}",
    "yum": "yum -y install {pkgs}",
    "pacman": "pacman -Sy --noconfirm {pkgs}",
    "apk": "apk update && apk add {pkgs}",
    "zypper": "zypper --non-interactive install {pkgs}",
    "emerge": "emerge --noreplace {pkgs}",
    "pkg": "env ASSUME_ALWAYS_YES=yes pkg install -y {pkgs}",
    "pkg_add": "pkg_add -I {pkgs}",
    "xbps": "xbps-install -Sy {pkgs}",
}


def supported_package_managers() -> List[str]:
    return sorted(_INSTALL_COMMANDS)


def packages_in(category: str) -> List[str]:
    if category not in PACKAGES:
        raise InvalidParameterError(f"Unknown package category {category!r}")
    return list(PACKAGES[category])


def normalize_packages(packages: Sequence[str], with_agent: bool = True) -> List[str]:
    """De-duplicate preserving order and append the guest agent when missing."""
    seen: List[str] = []
    for pkg in packages:
        pkg = pkg.strip()
        if pkg and pkg not in seen:
            seen.append(pkg)
    if with_agent and seen and GUEST_AGENT not in seen:
        seen.append(GUEST_AGENT)
    return seen


def build_install_command(package_manager: str, packages: Sequence[str]) -> str:
    """
    Shell command installing ``packages`` with ``package_manager``.

    Raises:
        InvalidParameterError: If the package manager is not supported
    """
    try:
        template = _INSTALL_COMMANDS[package_manager]
    except KeyError:
        raise InvalidParameterError(
            f"Unsupported package manager {package_manager!r}. "
            f"Supported: {', '.join(supported_package_managers())}"
        )
    return template.format(pkgs=" ".join(shlex.quote(p) for p in packages))
