# chrootbuild/modules/dispatcher.py
# -*- coding: utf-8 -*-
"""
dispatcher.py - execution dispatcher

validate -> generate -> (preview-exit | run) -> collect -> cleanup

Features:
- Validation before any side effect (descriptor, platform filter, registry,
  build scripts, execution mode, clean git working tree)
- Plan generation: preflight tool check, then one unit per target platform
  in the requested order; written to generated-chroot-build-<pid>.yaml next
  to the descriptor
- Local execution in-process through PlanRunner
- Remote execution over ssh (project streamed as tar.gz, plan run with
  `chroot-build run-plan`), results retrieved with scp
- Generated plans removed only after a fully successful run
"""

from __future__ import annotations

import os
import getpass
import shlex
import tarfile
import tempfile
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional

from chrootbuild.modules import platforms, sandbox
from chrootbuild.modules.bootstrap import Provisioner
from chrootbuild.modules.buildsystem import Executor, project_excludes
from chrootbuild.modules.config import Settings, get_settings
from chrootbuild.modules.errors import ConfigurationError, PreconditionError, StepError
from chrootbuild.modules.logging import get_logger
from chrootbuild.modules.meta import BuildDescriptor
from chrootbuild.modules.pkgtool import Assembler, find_artifact
from chrootbuild.modules.plan import (
    BuildResult, Plan, PlanRunner, PlatformUnit, remove_generated_plans, write_plan,
)

logger = get_logger("dispatcher")


# ----------------------------
# git
# ----------------------------
def _git(args: List[str], cwd: str) -> str:
    try:
        proc = subprocess.run(["git"] + args, cwd=cwd, capture_output=True, text=True)
    except OSError as e:
        raise PreconditionError(f"cannot run git: {e}") from e
    if proc.returncode != 0:
        raise PreconditionError(f"git {' '.join(args)} failed in {cwd}: {proc.stderr.strip()}")
    return proc.stdout


@dataclass(frozen=True)
class GitContext:
    root: str
    subdir: str = ""

    @property
    def project(self) -> str:
        return os.path.basename(self.root.rstrip("/"))

    @classmethod
    def probe(cls, directory: str) -> "GitContext":
        top = os.path.realpath(_git(["rev-parse", "--show-toplevel"], directory).strip())
        rel = os.path.relpath(os.path.realpath(directory), top)
        return cls(root=top, subdir="" if rel == "." else rel)

    def is_clean(self) -> bool:
        return _git(["status", "--porcelain"], self.root).strip() == ""


# ----------------------------
# Layout
# ----------------------------
@dataclass(frozen=True)
class PathLayout:
    project_root: str
    project_name: str
    subdir: str = ""
    build_dir_name: str = "build"

    @property
    def work_dir(self) -> str:
        return os.path.join(self.project_root, self.subdir) if self.subdir else self.project_root

    @property
    def build_dir(self) -> str:
        return os.path.join(self.work_dir, self.build_dir_name)

    def env_root(self, platform: str) -> str:
        return os.path.join(self.build_dir, platform)

    @classmethod
    def local(cls, git: GitContext, build_dir_name: str = "build") -> "PathLayout":
        return cls(git.root, git.project, git.subdir, build_dir_name)

    @classmethod
    def remote(cls, git: GitContext, base_dir: str, user: str, build_dir_name: str = "build") -> "PathLayout":
        return cls(os.path.join(base_dir, user, git.project), git.project, git.subdir, build_dir_name)


# ----------------------------
# Remote transport
# ----------------------------
def _exclude_filter(excludes: List[str]):
    def accept(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        if os.path.basename(info.name) in excludes:
            return None
        return info
    return accept


class SshTransport:
    def __init__(self, host: str, settings: Settings):
        self.host = host
        self.settings = settings

    def remote_script(self, layout: PathLayout, plan_name: str, debug: bool = False) -> str:
        q = shlex.quote
        base = self.settings.paths.base_dir
        cache = self.settings.paths.cache_dir
        command = " ".join(q(c) for c in self.settings.remote.command)
        lines = [
            "set -u -e",
            f"[ -d {q(base)} ] || {{ sudo mkdir -p {q(cache)}; sudo chmod 1777 {q(base)}; }}",
            f"sudo rm -rf {q(layout.project_root)}",
            f"mkdir -p {q(layout.project_root)}",
            f"cd {q(layout.project_root)}",
            "tar xzf -",
            f"cd {q(layout.work_dir)}",
            f"{command} run-plan ./{q(plan_name)}" + (" --debug" if debug else ""),
        ]
        return "\n".join(lines)

    def run_plan(self, source_root: str, layout: PathLayout, plan_name: str, debug: bool = False):
        script = self.remote_script(layout, plan_name, debug)
        with tempfile.TemporaryFile() as buf:
            with tarfile.open(fileobj=buf, mode="w:gz") as tar:
                excludes = project_excludes(self.settings.paths.build_dir_name)
                tar.add(source_root, arcname=".", filter=_exclude_filter(excludes))
            buf.seek(0)
            logger.info("running plan on %s:%s", self.host, layout.work_dir)
            rc = sandbox.run_command(list(self.settings.remote.ssh) + [self.host, script], stdin=buf)
        if rc != 0:
            raise StepError(f"remote run on {self.host} failed with exit code {rc}")

    def collect(self, layout: PathLayout, dest_dir: str):
        argv = list(self.settings.remote.scp) + ["-r", f"{self.host}:{layout.build_dir}", "."]
        rc = sandbox.run_command(argv, cwd=dest_dir)
        if rc != 0:
            raise StepError(f"retrieving {layout.build_dir} from {self.host} failed with exit code {rc}")


# ----------------------------
# Dispatcher
# ----------------------------
@dataclass
class BuildOptions:
    platforms: List[str] = field(default_factory=list)
    local: bool = False
    server: Optional[str] = None
    install_dependencies: bool = False
    debug: bool = False
    preview: bool = False
    ignore_uncommitted: bool = False


class Dispatcher:
    def __init__(self, descriptor: BuildDescriptor, options: BuildOptions,
                 settings: Optional[Settings] = None, git: Optional[GitContext] = None,
                 user: Optional[str] = None):
        self.descriptor = descriptor
        self.options = options
        self.settings = settings or get_settings()
        self._git = git
        self.user = user or getpass.getuser()
        self.plan: Optional[Plan] = None
        self.plan_file: Optional[str] = None

    @property
    def git(self) -> GitContext:
        if self._git is None:
            self._git = GitContext.probe(self.descriptor.base_dir)
        return self._git

    @property
    def remote(self) -> bool:
        return bool(self.options.server)

    # ---- validate ----
    def validate(self) -> List[str]:
        """Target platform ids, in run order. Raises before any side effect."""
        d = self.descriptor
        missing = [f for f in ("name", "version", "description", "directories") if not getattr(d, f)]
        if missing:
            raise ConfigurationError(f"descriptor is missing mandatory fields: {', '.join(missing)}")
        if not d.platforms:
            raise ConfigurationError("descriptor declares no platform")

        targets: List[str] = []
        for pid in self.options.platforms or d.platform_ids:
            if pid not in targets:
                targets.append(pid)
        for pid in targets:
            if not platforms.is_supported(pid):
                raise ConfigurationError(f"Platform {pid} not supported")
            if pid not in d.platform_ids:
                raise ConfigurationError(f"platform {pid} is not declared in the descriptor")
            if not d.platform(pid).build_script:
                raise ConfigurationError(f"build script not defined for platform {pid}")

        if bool(self.options.local) == bool(self.options.server):
            raise ConfigurationError("exactly one of --local or --server must be given")

        if not self.options.ignore_uncommitted and not self.git.is_clean():
            raise PreconditionError(
                f"uncommitted changes in {self.git.root}; commit them or use --ignore-uncommitted")
        return targets

    # ---- generate ----
    def layout(self) -> PathLayout:
        name = self.settings.paths.build_dir_name
        if self.remote:
            return PathLayout.remote(self.git, self.settings.paths.base_dir, self.user, name)
        return PathLayout.local(self.git, name)

    def generate(self, targets: List[str]) -> Plan:
        layout = self.layout()
        provisioner = Provisioner(self.settings, auto_install=self.options.install_dependencies)
        executor = Executor(self.descriptor.directories, trace=self.options.debug,
                            build_dir_name=self.settings.paths.build_dir_name)
        assembler = Assembler(self.settings.package)
        plan = Plan(project=self.descriptor.name, preflight=[provisioner.ensure_tool(self.settings.package.tool)])
        for pid in targets:
            entry = platforms.lookup(pid)
            spec = self.descriptor.platform(pid)
            root = layout.env_root(pid)
            build_dir = layout.build_dir
            plan.units.append(PlatformUnit(
                platform=pid,
                provision=provisioner.steps(entry, spec, build_dir, root),
                build=executor.steps(spec, build_dir, root, layout.project_root, layout.project_name, layout.subdir),
                package=assembler.package_steps(self.descriptor, spec, entry, build_dir, root,
                                                script_base=layout.work_dir),
                teardown=[sandbox.ClearRoot(path=root)],
                finalize=assembler.finalize_steps(spec, build_dir, root),
            ))
        return plan

    # ---- run / collect ----
    def run_local(self, plan: Plan) -> List[BuildResult]:
        if hasattr(os, "geteuid") and os.geteuid() != 0:
            logger.warning("not running as root; chroot and device creation will likely fail")
        return PlanRunner(plan).run()

    def run_remote(self, plan: Plan) -> List[BuildResult]:
        local = PathLayout.local(self.git, self.settings.paths.build_dir_name)
        transport = SshTransport(self.options.server, self.settings)
        transport.run_plan(self.git.root, self.layout(), os.path.basename(self.plan_file), self.options.debug)
        transport.collect(self.layout(), local.work_dir)
        results = []
        for unit in plan.units:
            entry = platforms.lookup(unit.platform)
            artifact = find_artifact(local.env_root(unit.platform), self.descriptor.name, entry.package_type)
            results.append(BuildResult(unit.platform, artifact, ()))
        return results

    def execute(self) -> List[BuildResult]:
        targets = self.validate()
        self.plan = self.generate(targets)
        self.plan_file = str(write_plan(self.plan, self.descriptor.base_dir))
        logger.info("plan for %s written to %s", ", ".join(targets), self.plan_file)
        if self.options.preview:
            for line in self.plan.summary():
                logger.info("%s", line)
            return []
        results = self.run_remote(self.plan) if self.remote else self.run_local(self.plan)
        # a failed run keeps its plan for inspection; reaching here means every platform succeeded
        remove_generated_plans(self.descriptor.base_dir)
        return results
