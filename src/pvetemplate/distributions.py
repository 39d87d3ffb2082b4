"""Catalog of distributions with downloadable cloud or install images."""

import difflib
import logging
import os
from dataclasses import dataclass, replace
from typing import Dict, List, Optional
from urllib.parse import urlparse

from pvetemplate.models import ImageFormat, InvalidParameterError, UnknownDistributionError

logger = logging.getLogger(__name__)

CUSTOM_KEY = "custom"


@dataclass(frozen=True)
class Distribution:
    """One entry of the distribution catalog."""

    key: str
    name: str
    url: str
    image_format: ImageFormat
    package_manager: Optional[str]
    os_type: str
    default_user: str
    default_disk: str
    category: str
    notes: str = ""
    checksum: Optional[str] = None

    @property
    def filename(self) -> str:
        """Basename of the image URL, used as the cache file name."""
        return os.path.basename(urlparse(self.url).path) or f"{self.key}.{self.image_format.value}"

    @property
    def supports_packages(self) -> bool:
        return self.package_manager is not None and not self.image_format.is_iso


def _d(key, name, url, fmt, pkg, ostype, user, disk, category, notes=""):
    return Distribution(key, name, url, ImageFormat(fmt), pkg, ostype, user, disk, category, notes)


_CATALOG = [
    _d("ubuntu-20.04", "Ubuntu 20.04 LTS (Focal)",
       "https://cloud-images.ubuntu.com/focal/current/focal-server-cloudimg-amd64.img",
       "qcow2", "apt", "l26", "ubuntu", "10G", "ubuntu", "LTS release"),
    _d("ubuntu-22.04", "Ubuntu 22.04 LTS (Jammy)",
       "https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-amd64.img",
       "qcow2", "apt", "l26", "ubuntu", "10G", "ubuntu", "LTS release"),
    _d("ubuntu-24.04", "Ubuntu 24.04 LTS (Noble)",
       "https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img",
       "qcow2", "apt", "l26", "ubuntu", "10G", "ubuntu", "LTS release"),
    _d("ubuntu-24.10", "Ubuntu 24.10 (Oracular)",
       "https://cloud-images.ubuntu.com/oracular/current/oracular-server-cloudimg-amd64.img",
       "qcow2", "apt", "l26", "ubuntu", "10G", "ubuntu", "Interim release"),
    _d("ubuntu-minimal", "Ubuntu Minimal 22.04",
       "https://cloud-images.ubuntu.com/minimal/releases/jammy/release/ubuntu-22.04-minimal-cloudimg-amd64.img",
       "qcow2", "apt", "l26", "ubuntu", "5G", "minimal", "Minimal image"),
    _d("debian-11", "Debian 11 (Bullseye)",
       "https://cloud.debian.org/images/cloud/bullseye/latest/debian-11-generic-amd64.qcow2",
       "qcow2", "apt", "l26", "debian", "8G", "debian", "Stable"),
    _d("debian-12", "Debian 12 (Bookworm)",
       "https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-generic-amd64.qcow2",
       "qcow2", "apt", "l26", "debian", "8G", "debian", "Stable"),
    _d("debian-testing", "Debian Testing",
       "https://cloud.debian.org/images/cloud/testing/latest/debian-testing-generic-amd64.qcow2",
       "qcow2", "apt", "l26", "debian", "8G", "debian", "Rolling"),
    _d("centos-7", "CentOS 7",
       "https://cloud.centos.org/centos/7/images/CentOS-7-x86_64-GenericCloud.qcow2",
       "qcow2", "yum", "l26", "centos", "8G", "rhel", "Legacy"),
    _d("centos-stream-9", "CentOS Stream 9",
       "https://cloud.centos.org/centos/9-stream/x86_64/images/CentOS-Stream-GenericCloud-9-latest.x86_64.qcow2",
       "qcow2", "dnf", "l26", "centos", "8G", "rhel", "Rolling"),
    _d("rhel-8", "Red Hat Enterprise Linux 8",
       "https://access.redhat.com/downloads/content/479/ver=8.0/rhel---8.0-x86_64-kvm.qcow2",
       "qcow2", "dnf", "l26", "cloud-user", "8G", "rhel", "Subscription required"),
    _d("rhel-9", "Red Hat Enterprise Linux 9",
       "https://access.redhat.com/downloads/content/479/ver=9.0/rhel---9.0-x86_64-kvm.qcow2",
       "qcow2", "dnf", "l26", "cloud-user", "8G", "rhel", "Subscription required"),
    _d("rocky-8", "Rocky Linux 8",
       "https://dl.rockylinux.org/pub/rocky/8/images/x86_64/Rocky-8-GenericCloud.latest.x86_64.qcow2",
       "qcow2", "dnf", "l26", "rocky", "8G", "rhel", "RHEL rebuild"),
    _d("rocky-9", "Rocky Linux 9",
       "https://dl.rockylinux.org/pub/rocky/9/images/x86_64/Rocky-9-GenericCloud.latest.x86_64.qcow2",
       "qcow2", "dnf", "l26", "rocky", "8G", "rhel", "RHEL rebuild"),
    _d("almalinux-8", "AlmaLinux 8",
       "https://repo.almalinux.org/almalinux/8/cloud/x86_64/images/AlmaLinux-8-GenericCloud-latest.x86_64.qcow2",
       "qcow2", "dnf", "l26", "almalinux", "8G", "rhel", "RHEL rebuild"),
    _d("almalinux-9", "AlmaLinux 9",
       "https://repo.almalinux.org/almalinux/9/cloud/x86_64/images/AlmaLinux-9-GenericCloud-latest.x86_64.qcow2",
       "qcow2", "dnf", "l26", "almalinux", "8G", "rhel", "RHEL rebuild"),
    _d("oracle-8", "Oracle Linux 8",
       "https://yum.oracle.com/ISOS/OracleLinux/OL8/u8/x86_64/OracleLinux-R8-U8-x86_64-cloud.qcow2",
       "qcow2", "dnf", "l26", "oracle", "8G", "rhel", "Enterprise"),
    _d("oracle-9", "Oracle Linux 9",
       "https://yum.oracle.com/ISOS/OracleLinux/OL9/u3/x86_64/OracleLinux-R9-U3-x86_64-cloud.qcow2",
       "qcow2", "dnf", "l26", "oracle", "8G", "rhel", "Enterprise"),
    _d("fedora-39", "Fedora 39",
       "https://download.fedoraproject.org/pub/fedora/linux/releases/39/Cloud/x86_64/images/Fedora-Cloud-Base-39-1.5.x86_64.qcow2",
       "qcow2", "dnf", "l26", "fedora", "8G", "fedora", "Stable"),
    _d("fedora-40", "Fedora 40",
       "https://download.fedoraproject.org/pub/fedora/linux/releases/40/Cloud/x86_64/images/Fedora-Cloud-Base-Generic.x86_64-40-1.14.qcow2",
       "qcow2", "dnf", "l26", "fedora", "8G", "fedora", "Latest"),
    _d("opensuse-leap-15.5", "openSUSE Leap 15.5",
       "https://download.opensuse.org/distribution/leap/15.5/appliances/openSUSE-Leap-15.5.x86_64-Cloud.qcow2",
       "qcow2", "zypper", "l26", "opensuse", "8G", "suse", "Stable"),
    _d("opensuse-tumbleweed", "openSUSE Tumbleweed",
       "https://download.opensuse.org/tumbleweed/appliances/openSUSE-Tumbleweed.x86_64-Cloud.qcow2",
       "qcow2", "zypper", "l26", "opensuse", "8G", "suse", "Rolling"),
    _d("archlinux", "Arch Linux (Latest)",
       "https://geo.mirror.pkgbuild.com/images/latest/Arch-Linux-x86_64-cloudimg.qcow2",
       "qcow2", "pacman", "l26", "arch", "8G", "arch", "Rolling"),
    _d("alpine-3.18", "Alpine Linux 3.18",
       "https://dl-cdn.alpinelinux.org/alpine/v3.18/releases/x86_64/alpine-virt-3.18.6-x86_64.iso",
       "iso", "apk", "l26", "alpine", "2G", "minimal", "Installer ISO"),
    _d("alpine-3.19", "Alpine Linux 3.19",
       "https://dl-cdn.alpinelinux.org/alpine/v3.19/releases/x86_64/alpine-virt-3.19.1-x86_64.iso",
       "iso", "apk", "l26", "alpine", "2G", "minimal", "Installer ISO"),
    _d("freebsd-13", "FreeBSD 13",
       "https://download.freebsd.org/ftp/releases/VM-IMAGES/13.3-RELEASE/amd64/Latest/FreeBSD-13.3-RELEASE-amd64.qcow2.xz",
       "qcow2", "pkg", "other", "freebsd", "8G", "bsd", "General purpose"),
    _d("freebsd-14", "FreeBSD 14",
       "https://download.freebsd.org/ftp/releases/VM-IMAGES/14.0-RELEASE/amd64/Latest/FreeBSD-14.0-RELEASE-amd64.qcow2.xz",
       "qcow2", "pkg", "other", "freebsd", "8G", "bsd", "General purpose"),
    _d("openbsd-7.4", "OpenBSD 7.4",
       "https://cdn.openbsd.org/pub/OpenBSD/7.4/amd64/install74.iso",
       "iso", "pkg_add", "other", "openbsd", "8G", "bsd", "Installer ISO"),
    _d("netbsd-10", "NetBSD 10",
       "https://cdn.netbsd.org/pub/NetBSD/NetBSD-10.0/images/NetBSD-10.0-amd64.iso",
       "iso", "pkg_add", "other", "netbsd", "8G", "bsd", "Installer ISO"),
    _d("kali-linux", "Kali Linux",
       "https://cdimage.kali.org/kali-2024.2/kali-linux-2024.2-cloud-amd64.qcow2",
       "qcow2", "apt", "l26", "kali", "20G", "security", "Security testing"),
    _d("parrot-os", "Parrot Security OS",
       "https://download.parrot.sh/parrot/iso/5.3/Parrot-security-5.3_amd64.iso",
       "iso", "apt", "l26", "parrot", "20G", "security", "Installer ISO"),
    _d("talos-linux", "Talos Linux",
       "https://github.com/siderolabs/talos/releases/download/v1.7.2/metal-amd64.iso",
       "iso", None, "l26", "talos", "10G", "container", "Kubernetes OS, API managed"),
    _d("flatcar", "Flatcar Container Linux",
       "https://stable.release.flatcar-linux.net/amd64-usr/current/flatcar_production_qemu_image.img.bz2",
       "qcow2", None, "l26", "core", "8G", "container", "Immutable, configured by Ignition"),
    _d("nixos-24.05", "NixOS 24.05",
       "https://channels.nixos.org/nixos-24.05/latest-nixos-minimal-x86_64-linux.iso",
       "iso", None, "l26", "nixos", "8G", "specialized", "Declarative configuration"),
]

DISTRIBUTIONS: Dict[str, Distribution] = {d.key: d for d in _CATALOG}

# Ordered for menus
CATEGORIES = {
    "ubuntu": "Ubuntu",
    "debian": "Debian",
    "rhel": "RHEL family",
    "fedora": "Fedora",
    "suse": "openSUSE",
    "arch": "Arch",
    "minimal": "Minimal",
    "bsd": "BSD",
    "security": "Security",
    "container": "Container OS",
    "specialized": "Specialized",
}


def categories() -> Dict[str, str]:
    """Categories that have at least one distribution."""
    present = {d.category for d in DISTRIBUTIONS.values()}
    return {key: label for key, label in CATEGORIES.items() if key in present}


def list_distributions(category: Optional[str] = None) -> List[Distribution]:
    if category and category not in CATEGORIES:
        raise InvalidParameterError(f"Unknown category {category!r}. Choose from: {', '.join(CATEGORIES)}")
    return [d for d in DISTRIBUTIONS.values() if category is None or d.category == category]


def get_distribution(key: str) -> Distribution:
    """
    Look up a distribution by key.

    Raises:
        UnknownDistributionError: If the key is not in the catalog
    """
    try:
        return DISTRIBUTIONS[key]
    except KeyError:
        close = difflib.get_close_matches(key, DISTRIBUTIONS.keys(), n=3)
        hint = f" Did you mean: {', '.join(close)}?" if close else ""
        raise UnknownDistributionError(f"Unknown distribution {key!r}.{hint}")


def find_by_name(display_name: str) -> Optional[Distribution]:
    """Match a catalog entry by its display name (case-insensitive)."""
    wanted = display_name.strip().lower()
    for dist in DISTRIBUTIONS.values():
        if dist.name.lower() == wanted:
            return dist
    return None


def custom_distribution(
    url: str,
    image_format: Optional[str] = None,
    package_manager: Optional[str] = None,
    default_user: str = "root",
    os_type: str = "l26",
    checksum: Optional[str] = None,
) -> Distribution:
    """Build a catalog-style entry for a user-supplied image URL."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https", "file"):
        raise InvalidParameterError(f"Custom image URL must be http(s) or file://, got {url!r}")

    if image_format in (None, "", "auto"):
        fmt = ImageFormat.from_filename(parsed.path)
    else:
        try:
            fmt = ImageFormat(image_format)
        except ValueError:
            raise InvalidParameterError(
                f"Unknown image format {image_format!r}. Choose from: {', '.join(f.value for f in ImageFormat)}"
            )

    logger.debug(f"Custom image {url} detected as {fmt.value}")
    return Distribution(
        key=CUSTOM_KEY,
        name="Custom image",
        url=url,
        image_format=fmt,
        package_manager=package_manager or None,
        os_type=os_type,
        default_user=default_user,
        default_disk="10G",
        category="custom",
        notes="User supplied",
        checksum=checksum,
    )


def with_checksum(dist: Distribution, checksum: Optional[str]) -> Distribution:
    return replace(dist, checksum=checksum) if checksum else dist
