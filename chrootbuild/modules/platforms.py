# chrootbuild/modules/platforms.py
"""
Static knowledge of the platforms chroot-build can provision.

Platform ids are family + version ("centos7", "ubuntu14"). rpm-family entries
carry the mirrors used to find the release and extension (EPEL) packages;
deb-family entries carry the debootstrap codename and the extra repository
line appended to sources.list.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from chrootbuild.modules.errors import ConfigurationError


@dataclass(frozen=True)
class FamilyTraits:
    package_type: str  # fpm target and package file extension
    update_commands: Tuple[Tuple[str, ...], ...]
    install_command: Tuple[str, ...]


FAMILIES: Mapping[str, FamilyTraits] = MappingProxyType({
    "centos": FamilyTraits(
        package_type="rpm",
        update_commands=(
            ("yum", "-y", "--nogpgcheck", "update"),
            ("yum", "clean", "all"),
        ),
        install_command=("yum", "install", "-y"),
    ),
    "ubuntu": FamilyTraits(
        package_type="deb",
        update_commands=(
            ("apt-get", "update"),
            ("apt-get", "-y", "dist-upgrade"),
            ("apt-get", "autoremove", "-y"),
            ("apt-get", "autoclean"),
        ),
        install_command=("apt-get", "install", "-y"),
    ),
})


@dataclass(frozen=True)
class PlatformEntry:
    family: str
    version: str
    codename: Optional[str] = None
    release_mirror: Optional[str] = None
    extension_mirror: Optional[str] = None
    extra_repository: Optional[str] = None
    base_packages: Tuple[str, ...] = ()

    @property
    def platform_id(self) -> str:
        return f"{self.family}{self.version}"

    @property
    def traits(self) -> FamilyTraits:
        return FAMILIES[self.family]

    @property
    def package_type(self) -> str:
        return self.traits.package_type

    @property
    def release_prefix(self) -> str:
        return f"centos-release-{self.version}"

    @property
    def extension_prefix(self) -> str:
        return f"epel-release-{self.version}"


# urls used to download the centos-release rpm (base system) and the epel rpm (extended repositories)
_CENTOS_RELEASE_BASE = {
    "5": "http://mirror.centos.org/centos/5/os/x86_64/CentOS/",
    "6": "http://mirror.centos.org/centos/6/os/x86_64/Packages/",
    "7": "http://mirror.centos.org/centos/7/os/x86_64/Packages/",
}
_EPEL_BASE = {
    "5": "http://dl.fedoraproject.org/pub/epel/5/x86_64/",
    "6": "http://dl.fedoraproject.org/pub/epel/6/x86_64/",
    "7": "http://dl.fedoraproject.org/pub/epel/7/x86_64/e/",
}
_UBUNTU_CODENAMES = {
    "10": "lucid",
    "12": "precise",
    "14": "trusty",
    "16": "xenial",
}
_UBUNTU_ARCHIVE = "http://us.archive.ubuntu.com/ubuntu/"


def _build_registry() -> Dict[str, PlatformEntry]:
    entries: List[PlatformEntry] = []
    for version, release in _CENTOS_RELEASE_BASE.items():
        entries.append(PlatformEntry(
            family="centos",
            version=version,
            release_mirror=release,
            extension_mirror=_EPEL_BASE[version],
            base_packages=("bash", "yum", "python-hashlib"),
        ))
    for version, codename in _UBUNTU_CODENAMES.items():
        entries.append(PlatformEntry(
            family="ubuntu",
            version=version,
            codename=codename,
            extra_repository=f"deb {_UBUNTU_ARCHIVE} {codename} universe",
        ))
    return {e.platform_id: e for e in entries}


REGISTRY: Mapping[str, PlatformEntry] = MappingProxyType(_build_registry())


def platform_id(family: str, version: str) -> str:
    return f"{family}{version}"


def is_supported(pid: str) -> bool:
    return pid in REGISTRY


def lookup(pid: str) -> PlatformEntry:
    try:
        return REGISTRY[pid]
    except KeyError:
        raise ConfigurationError(f"Platform {pid} not supported") from None


def all_platforms() -> List[PlatformEntry]:
    return list(REGISTRY.values())
