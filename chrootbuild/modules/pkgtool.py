# chrootbuild/modules/pkgtool.py
"""
pkgtool.py - package assembler interface (fpm)

Features:
- fpm_arguments(): the full argument list for one platform
- Assemble step: run fpm in the build dir, locate the produced artifact
- RelocateArtifact step: move the artifact into <build_dir>/<platform>/
  once the environment has been torn down
"""

from __future__ import annotations

import os
import glob
import shlex
import shutil
from dataclasses import dataclass, field
from typing import ClassVar, List, Optional

from chrootbuild.modules import sandbox
from chrootbuild.modules.config import PackageSettings
from chrootbuild.modules.errors import AssemblerError, StepError
from chrootbuild.modules.logging import get_logger
from chrootbuild.modules.meta import LIFECYCLE_SCRIPTS, BuildDescriptor, PlatformSpec
from chrootbuild.modules.plan import RunContext, Step, register_step
from chrootbuild.modules.platforms import PlatformEntry

logger = get_logger("pkgtool")


def fpm_arguments(descriptor: BuildDescriptor, spec: PlatformSpec, entry: PlatformEntry, *,
                  build_dir: str, root: str, inputs: str, settings: PackageSettings,
                  script_base: Optional[str] = None) -> List[str]:
    """
    Arguments (without the tool name) producing one package of the platform's
    native type from the files listed in inputs, relative to root.
    Relative lifecycle script paths resolve against script_base.
    """
    pkg_type = entry.package_type
    args: List[str] = []
    for name in LIFECYCLE_SCRIPTS:
        path = spec.scripts.get(name)
        if path:
            if script_base and not os.path.isabs(path):
                path = os.path.join(script_base, path)
            args += [f"--{name}", path]
    args += ["--description", descriptor.description]
    for p in spec.replaces:
        args += ["--replaces", p]
    for p in spec.conflicts:
        args += ["--conflicts", p]
    for d in spec.runtime_deps:
        args += ["-d", d]
    args += [
        "--epoch", str(settings.epoch),
        f"--{pkg_type}-user", settings.user,
        f"--{pkg_type}-group", settings.group,
        "--workdir", build_dir,
        "-s", "dir",
        "-t", pkg_type,
        "-v", descriptor.version,
        "-n", descriptor.name,
        "-C", root,
        "--inputs", inputs,
    ]
    return args


def find_artifact(directory: str, name: str, pkg_type: str) -> Optional[str]:
    candidates = [p for p in glob.glob(os.path.join(directory, f"{glob.escape(name)}*.{pkg_type}")) if os.path.isfile(p)]
    if not candidates:
        return None
    return max(candidates, key=os.path.getmtime)


@register_step
@dataclass
class Assemble(Step):
    op: ClassVar[str] = "assemble"
    platform: str
    name: str
    package_type: str
    build_dir: str
    argv: List[str] = field(default_factory=list)

    def run(self, ctx: RunContext) -> None:
        rc = sandbox.run_command(self.argv, cwd=self.build_dir)
        if rc != 0:
            raise AssemblerError(f"{self.argv[0]} exited with code {rc}")
        artifact = find_artifact(self.build_dir, self.name, self.package_type)
        if artifact is None:
            raise AssemblerError(f"no {self.name}*.{self.package_type} produced in {self.build_dir}")
        ctx.assembled[self.platform] = artifact
        logger.info("%s: assembled %s", self.platform, os.path.basename(artifact))

    def describe(self) -> str:
        return shlex.join(self.argv)


@register_step
@dataclass
class RelocateArtifact(Step):
    op: ClassVar[str] = "relocate_artifact"
    platform: str
    dest_dir: str

    def run(self, ctx: RunContext) -> None:
        src = ctx.assembled.get(self.platform)
        if not src:
            raise StepError(f"no assembled artifact recorded for {self.platform}")
        os.makedirs(self.dest_dir, exist_ok=True)
        target = os.path.join(self.dest_dir, os.path.basename(src))
        shutil.move(src, target)
        ctx.artifacts[self.platform] = target

    def describe(self) -> str:
        return f"move artifact into {self.dest_dir}"


class Assembler:
    def __init__(self, settings: PackageSettings):
        self.settings = settings

    def package_steps(self, descriptor: BuildDescriptor, spec: PlatformSpec, entry: PlatformEntry,
                      build_dir: str, root: str, script_base: Optional[str] = None) -> List[Step]:
        inputs = os.path.join(build_dir, f"{spec.platform}.fpm.list")
        argv = [self.settings.tool] + fpm_arguments(descriptor, spec, entry, build_dir=build_dir, root=root,
                                                    inputs=inputs, settings=self.settings, script_base=script_base)
        return [Assemble(platform=spec.platform, name=descriptor.name, package_type=entry.package_type,
                         build_dir=build_dir, argv=argv)]

    def finalize_steps(self, spec: PlatformSpec, build_dir: str, root: str) -> List[Step]:
        pid = spec.platform
        return [
            RelocateArtifact(platform=pid, dest_dir=root),
            sandbox.RemoveFiles(paths=[os.path.join(build_dir, f"{pid}.list"),
                                       os.path.join(build_dir, f"{pid}.fpm.list")]),
        ]
