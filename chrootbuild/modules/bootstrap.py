# chrootbuild/modules/bootstrap.py
"""
bootstrap.py - environment provisioner

Produces the provisioning steps of one platform:
- reset the environment root (stable path per platform, reused every run)
- cache hit: restore the cached image, then the family's full update
- cache miss: bootstrap from scratch (rpm: release/epel packages + yum
  --installroot; deb: debootstrap + universe line), full update, snapshot
- install the platform build dependencies

Cache hit/miss is decided when the plan runs, not when it is generated.
"""

from __future__ import annotations

import os
import stat
import shutil
from dataclasses import dataclass
from typing import ClassVar, List

from chrootbuild.modules import sandbox
from chrootbuild.modules.config import Settings
from chrootbuild.modules.errors import StepError
from chrootbuild.modules.fetcher import FetchMirrorPackage
from chrootbuild.modules.logging import get_logger
from chrootbuild.modules.meta import PlatformSpec
from chrootbuild.modules.plan import CacheBranch, RunContext, Step, register_step
from chrootbuild.modules.platforms import PlatformEntry

logger = get_logger("bootstrap")

RPM_LAYOUT = ["var/lib/rpm", "etc", "opt", "dev"]


def cache_archive(cache_dir: str, platform: str, compression: str = "gz") -> str:
    ext = "txz" if compression == "xz" else "tgz"
    return os.path.join(cache_dir, f"{platform}.{ext}")


def _fetched(ctx: RunContext, key: str) -> str:
    try:
        return ctx.fetched[key]
    except KeyError:
        raise StepError(f"package '{key}' was not fetched before use") from None


# ----------------------------
# rpm family steps
# ----------------------------
@register_step
@dataclass
class InstallFetchedRpm(Step):
    """Force-install a downloaded rpm into root (cross-distribution, no dep checks)."""
    op: ClassVar[str] = "install_fetched_rpm"
    root: str
    key: str

    def run(self, ctx: RunContext) -> None:
        path = _fetched(ctx, self.key)
        sandbox.check_command(["rpm", "-ivh", "--force-debian", "--nodeps", "--root", self.root, path])

    def describe(self) -> str:
        return f"rpm -ivh --force-debian --nodeps --root {self.root} <{self.key}>"


@register_step
@dataclass
class RegisterReleasePackage(Step):
    """Install the release package again from inside the chroot so its database knows it."""
    op: ClassVar[str] = "register_release_package"
    root: str
    key: str

    def run(self, ctx: RunContext) -> None:
        path = _fetched(ctx, self.key)
        name = os.path.basename(path)
        tmp_copy = os.path.join(self.root, "tmp", name)
        os.makedirs(os.path.dirname(tmp_copy), exist_ok=True)
        shutil.copy2(path, tmp_copy)
        urandom = os.path.join(self.root, "dev", "urandom")
        if not os.path.lexists(urandom):
            os.makedirs(os.path.dirname(urandom), exist_ok=True)
            os.mknod(urandom, 0o666 | stat.S_IFCHR, os.makedev(1, 9))
        sandbox.check_command(["rpm", "--nodeps", "-i", f"/tmp/{name}"], root=self.root, env=dict(sandbox.CHROOT_ENV))
        os.unlink(tmp_copy)

    def describe(self) -> str:
        return f"register <{self.key}> inside {self.root}"


# ----------------------------
# Provisioner
# ----------------------------
class Provisioner:
    def __init__(self, settings: Settings, auto_install: bool = False):
        self.settings = settings
        self.auto_install = auto_install

    def ensure_tool(self, tool: str) -> sandbox.EnsureTool:
        return sandbox.EnsureTool(
            tool=tool,
            install=[list(c) for c in self.settings.tools.install.get(tool, [])],
            auto_install=self.auto_install,
        )

    def _mirrors(self, entry: PlatformEntry, kind: str, primary: str) -> List[str]:
        extra = self.settings.fetcher.mirrors.get(entry.platform_id, {}).get(kind, [])
        return [primary] + [m for m in extra if m != primary]

    def update_steps(self, entry: PlatformEntry, root: str) -> List[Step]:
        return [sandbox.ChrootCommand(root=root, argv=list(c)) for c in entry.traits.update_commands]

    def _rpm_bootstrap(self, entry: PlatformEntry, root: str) -> List[Step]:
        pid = entry.platform_id
        cache_dir = self.settings.paths.cache_dir
        timeout = self.settings.fetcher.http_timeout
        release_key, extension_key = f"{pid}:release", f"{pid}:extension"
        return [
            self.ensure_tool("rpm"),
            self.ensure_tool("yum"),
            FetchMirrorPackage(key=release_key, prefix=entry.release_prefix, dest_dir=cache_dir,
                               mirrors=self._mirrors(entry, "release", entry.release_mirror), timeout=timeout),
            FetchMirrorPackage(key=extension_key, prefix=entry.extension_prefix, dest_dir=cache_dir,
                               mirrors=self._mirrors(entry, "extension", entry.extension_mirror), timeout=timeout),
            sandbox.MakeDirs(root=root, paths=list(RPM_LAYOUT)),
            sandbox.CopyFile(source="/etc/resolv.conf", dest=os.path.join(root, "etc", "resolv.conf")),
            sandbox.HostCommand(argv=["rpm", "--root", root, "--initdb"]),
            InstallFetchedRpm(root=root, key=release_key),
            InstallFetchedRpm(root=root, key=extension_key),
            sandbox.HostCommand(argv=["yum", "-y", "--nogpgcheck", f"--installroot={root}", "install",
                                      *entry.base_packages]),
            RegisterReleasePackage(root=root, key=release_key),
        ]

    def _deb_bootstrap(self, entry: PlatformEntry, root: str) -> List[Step]:
        return [
            self.ensure_tool("debootstrap"),
            sandbox.HostCommand(argv=["debootstrap", "--variant=buildd", "--verbose", entry.codename, root]),
            sandbox.AppendLine(path=os.path.join(root, "etc", "apt", "sources.list"), line=entry.extra_repository),
        ]

    def bootstrap_steps(self, entry: PlatformEntry, root: str) -> List[Step]:
        if entry.package_type == "rpm":
            return self._rpm_bootstrap(entry, root)
        return self._deb_bootstrap(entry, root)

    def steps(self, entry: PlatformEntry, spec: PlatformSpec, build_dir: str, root: str) -> List[Step]:
        """Provision phase of one platform unit."""
        out: List[Step] = [sandbox.ResetRoot(path=root)]
        update = self.update_steps(entry, root)
        miss = self.bootstrap_steps(entry, root) + update
        if self.settings.cache.enabled:
            archive = cache_archive(self.settings.paths.cache_dir, entry.platform_id, self.settings.cache.compression)
            miss = miss + [sandbox.SnapshotRoot(root=root, archive=archive, compression=self.settings.cache.compression)]
            hit = [sandbox.RestoreRoot(archive=archive, dest=build_dir)] + self.update_steps(entry, root)
            out.append(CacheBranch(archive=archive, hit=hit, miss=miss))
        else:
            out.extend(miss)
        if spec.build_deps:
            out.append(sandbox.ChrootCommand(root=root, argv=list(entry.traits.install_command) + list(spec.build_deps)))
        return out
