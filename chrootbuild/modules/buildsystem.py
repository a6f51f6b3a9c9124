# chrootbuild/modules/buildsystem.py
# -*- coding: utf-8 -*-
"""
buildsystem.py - build executor

Build phase of one platform unit:
  capture pre-build manifest -> copy project into the environment ->
  run the build script (chroot, bash -e -u) -> capture post-build manifest
  and write the delta (new paths only) for the assembler

Manifests list files and symlinks (never directories) under the declared
package directories, as absolute in-environment paths, sorted, so the delta
is a plain set difference. Files that existed before the build and were only
modified are not part of the delta.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from typing import ClassVar, Iterable, List

from chrootbuild.modules import sandbox
from chrootbuild.modules.logging import get_logger
from chrootbuild.modules.meta import PlatformSpec
from chrootbuild.modules.plan import RunContext, Step, register_step

logger = get_logger("buildsystem")

VCS_DIRS = (".git",)


def project_excludes(build_dir_name: str = "build") -> List[str]:
    """Names skipped at any depth when the project tree is copied or shipped."""
    return list(VCS_DIRS) + [build_dir_name]


# ----------------------------
# Manifests
# ----------------------------
def capture_manifest(root: str, directories: Iterable[str]) -> List[str]:
    found = set()
    for d in directories:
        base = os.path.join(root, d.strip("/"))
        if os.path.islink(base) or os.path.isfile(base):
            found.add("/" + os.path.relpath(base, root))
            continue
        for dirpath, dirnames, filenames in os.walk(base):
            for name in filenames:
                found.add("/" + os.path.relpath(os.path.join(dirpath, name), root))
            for name in dirnames:
                full = os.path.join(dirpath, name)
                if os.path.islink(full):
                    found.add("/" + os.path.relpath(full, root))
    return sorted(found)


def compute_delta(pre: Iterable[str], post: Iterable[str]) -> List[str]:
    """Paths present after the build but not before, sorted."""
    before = set(pre)
    return sorted(set(post) - before)


def write_manifest(path: str, entries: Iterable[str], strip_leading_slash: bool = False):
    with open(path, "w", encoding="utf-8") as f:
        for e in entries:
            f.write((e.lstrip("/") if strip_leading_slash else e) + "\n")


def read_manifest(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as f:
        return [line.rstrip("\n") for line in f if line.strip()]


# ----------------------------
# Steps
# ----------------------------
@register_step
@dataclass
class CaptureManifest(Step):
    op: ClassVar[str] = "capture_manifest"
    root: str
    output: str
    directories: List[str] = field(default_factory=list)

    def run(self, ctx: RunContext) -> None:
        entries = capture_manifest(self.root, self.directories)
        write_manifest(self.output, entries)
        logger.debug("pre-build manifest: %d entries", len(entries))

    def describe(self) -> str:
        return f"manifest of {' '.join(self.directories)} -> {self.output}"


@register_step
@dataclass
class CopyProject(Step):
    """Copy the project tree into the environment, skipping .git and build output."""
    op: ClassVar[str] = "copy_project"
    source: str
    dest: str
    excludes: List[str] = field(default_factory=project_excludes)

    def run(self, ctx: RunContext) -> None:
        if os.path.lexists(self.dest):
            shutil.rmtree(self.dest)
        shutil.copytree(self.source, self.dest, symlinks=True, ignore=shutil.ignore_patterns(*self.excludes))

    def describe(self) -> str:
        return f"copy {self.source} -> {self.dest}"


@register_step
@dataclass
class DiffManifest(Step):
    op: ClassVar[str] = "diff_manifest"
    platform: str
    root: str
    before: str
    output: str
    directories: List[str] = field(default_factory=list)

    def run(self, ctx: RunContext) -> None:
        post = capture_manifest(self.root, self.directories)
        delta = compute_delta(read_manifest(self.before), post)
        # fpm reads --inputs relative to -C <root>
        write_manifest(self.output, delta, strip_leading_slash=True)
        ctx.deltas[self.platform] = delta
        if not delta:
            logger.warning("%s: the build added no files under %s", self.platform, " ".join(self.directories))
        else:
            logger.info("%s: %d new files", self.platform, len(delta))

    def describe(self) -> str:
        return f"delta of {' '.join(self.directories)} -> {self.output}"


# ----------------------------
# Executor
# ----------------------------
class Executor:
    def __init__(self, directories: Iterable[str], trace: bool = False, build_dir_name: str = "build"):
        self.directories = list(directories)
        self.trace = trace
        self.excludes = project_excludes(build_dir_name)

    def steps(self, spec: PlatformSpec, build_dir: str, root: str,
              project_root: str, project_name: str, subdir: str) -> List[Step]:
        pid = spec.platform
        pre = os.path.join(build_dir, f"{pid}.list")
        inner_project = f"/tmp/{project_name}"
        cwd = inner_project + ("/" + subdir.strip("/") if subdir.strip("/") else "")
        return [
            CaptureManifest(root=root, output=pre, directories=list(self.directories)),
            CopyProject(source=project_root, dest=os.path.join(root, inner_project.lstrip("/")),
                        excludes=list(self.excludes)),
            sandbox.ChrootScript(root=root, script=spec.build_script or "", cwd=cwd, trace=self.trace),
            DiffManifest(platform=pid, root=root, before=pre, output=os.path.join(build_dir, f"{pid}.fpm.list"),
                         directories=list(self.directories)),
        ]
