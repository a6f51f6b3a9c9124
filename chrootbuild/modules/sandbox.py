# chrootbuild/modules/sandbox.py
"""
sandbox.py - privileged primitives for chroot environments

Features:
- run_command: the single process execution seam (host or chroot), output
  streamed line by line into the build log
- Host and chroot command steps, build script execution under bash -e -u
- Tool presence checks with optional one-shot auto install
- Environment reset/clear and small filesystem steps
- Snapshot / restore of an environment root (tar-based, atomic snapshot)
"""

from __future__ import annotations

import os
import shlex
import shutil
import tarfile
import uuid
import subprocess
from dataclasses import dataclass, field
from typing import BinaryIO, ClassVar, Dict, List, Optional, Sequence

from chrootbuild.modules.errors import BuildStepError, StepError, ToolingMissingError
from chrootbuild.modules.logging import get_logger, stream_build_output
from chrootbuild.modules.plan import RunContext, Step, register_step

logger = get_logger("sandbox")

CHROOT_ENV: Dict[str, str] = {
    "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
    "HOME": "/root",
    "LANG": "C",
    "DEBIAN_FRONTEND": "noninteractive",
}


# ----------------------------
# Utilities
# ----------------------------
def _ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)


def _guard_root(path: str):
    if os.path.realpath(path) == "/":
        raise StepError(f"refusing to operate on host root ({path})")


def _inside(root: str, path: str) -> str:
    """Host path of an absolute in-environment path."""
    return os.path.join(root, path.lstrip("/"))


# ----------------------------
# Process execution
# ----------------------------
def run_command(argv: Sequence[str], *, root: Optional[str] = None, cwd: Optional[str] = None,
                env: Optional[Dict[str, str]] = None, stdin: Optional[BinaryIO] = None) -> int:
    """
    Run argv and return its exit code. With root, the child chroots into it
    and cwd is interpreted inside the environment.
    """
    argv = [str(a) for a in argv]
    preexec = None
    popen_cwd = cwd
    if root:
        def preexec():
            os.chroot(root)
            os.chdir(cwd or "/")
        popen_cwd = None
        logger.debug("exec [chroot %s] %s", root, shlex.join(argv))
    else:
        logger.debug("exec %s", shlex.join(argv))
    try:
        proc = subprocess.Popen(
            argv,
            cwd=popen_cwd,
            env=env,
            stdin=stdin if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            preexec_fn=preexec,
            text=True,
            errors="replace",
        )
    except OSError as e:
        raise StepError(f"cannot execute {argv[0]}: {e}") from e
    with proc.stdout:
        for line in proc.stdout:
            stream_build_output("build", line)
    return proc.wait()


def check_command(argv: Sequence[str], *, error=StepError, **kwargs) -> None:
    rc = run_command(argv, **kwargs)
    if rc != 0:
        raise error(f"command failed with exit code {rc}: {shlex.join([str(a) for a in argv])}")


# ----------------------------
# Filesystem steps
# ----------------------------
@register_step
@dataclass
class ResetRoot(Step):
    """Remove whatever is at path and recreate it empty."""
    op: ClassVar[str] = "reset_root"
    path: str

    def run(self, ctx: RunContext) -> None:
        _guard_root(self.path)
        if os.path.lexists(self.path):
            shutil.rmtree(self.path)
        _ensure_dir(self.path)

    def describe(self) -> str:
        return f"reset {self.path}"


@register_step
@dataclass
class ClearRoot(Step):
    """Tear an environment down, leaving an empty world-writable directory."""
    op: ClassVar[str] = "clear_root"
    path: str

    def run(self, ctx: RunContext) -> None:
        _guard_root(self.path)
        if os.path.isdir(self.path):
            for entry in os.scandir(self.path):
                if entry.is_dir(follow_symlinks=False):
                    shutil.rmtree(entry.path)
                else:
                    os.unlink(entry.path)
        _ensure_dir(self.path)
        os.chmod(self.path, 0o777)

    def describe(self) -> str:
        return f"tear down {self.path}"


@register_step
@dataclass
class MakeDirs(Step):
    op: ClassVar[str] = "make_dirs"
    root: str
    paths: List[str] = field(default_factory=list)

    def run(self, ctx: RunContext) -> None:
        for p in self.paths:
            _ensure_dir(_inside(self.root, p))

    def describe(self) -> str:
        return f"mkdir {' '.join(self.paths)} in {self.root}"


@register_step
@dataclass
class CopyFile(Step):
    op: ClassVar[str] = "copy_file"
    source: str
    dest: str

    def run(self, ctx: RunContext) -> None:
        _ensure_dir(os.path.dirname(self.dest))
        shutil.copy2(self.source, self.dest)

    def describe(self) -> str:
        return f"copy {self.source} -> {self.dest}"


@register_step
@dataclass
class AppendLine(Step):
    op: ClassVar[str] = "append_line"
    path: str
    line: str

    def run(self, ctx: RunContext) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(self.line.rstrip("\n") + "\n")

    def describe(self) -> str:
        return f"append '{self.line}' to {self.path}"


@register_step
@dataclass
class RemoveFiles(Step):
    op: ClassVar[str] = "remove_files"
    paths: List[str] = field(default_factory=list)

    def run(self, ctx: RunContext) -> None:
        for p in self.paths:
            if os.path.lexists(p):
                os.unlink(p)

    def describe(self) -> str:
        return f"remove {' '.join(self.paths)}"


# ----------------------------
# Command steps
# ----------------------------
@register_step
@dataclass
class HostCommand(Step):
    op: ClassVar[str] = "host_command"
    argv: List[str]
    cwd: Optional[str] = None

    def run(self, ctx: RunContext) -> None:
        check_command(self.argv, cwd=self.cwd)

    def describe(self) -> str:
        return shlex.join(self.argv)


@register_step
@dataclass
class ChrootCommand(Step):
    op: ClassVar[str] = "chroot_command"
    root: str
    argv: List[str]

    def run(self, ctx: RunContext) -> None:
        check_command(self.argv, root=self.root, env=dict(CHROOT_ENV))

    def describe(self) -> str:
        return f"chroot {self.root} {shlex.join(self.argv)}"


@register_step
@dataclass
class ChrootScript(Step):
    """
    Run an opaque script body inside root with bash -e -u (-x when tracing).
    The body is written verbatim to a file in the environment, never
    interpolated. A failure keeps the environment and the script file.
    """
    op: ClassVar[str] = "chroot_script"
    root: str
    script: str
    cwd: str = "/"
    trace: bool = False

    def run(self, ctx: RunContext) -> None:
        name = f".chroot-build-{uuid.uuid4().hex}.sh"
        host_path = _inside(self.root, f"/tmp/{name}")
        _ensure_dir(os.path.dirname(host_path))
        with open(host_path, "w", encoding="utf-8") as f:
            f.write(self.script)
            if not self.script.endswith("\n"):
                f.write("\n")
        argv = ["/bin/bash", "-e", "-u"] + (["-x"] if self.trace else []) + [f"/tmp/{name}"]
        rc = run_command(argv, root=self.root, cwd=self.cwd, env=dict(CHROOT_ENV))
        if rc != 0:
            raise BuildStepError(f"build script failed with exit code {rc}; environment kept at {self.root}")
        os.unlink(host_path)

    def describe(self) -> str:
        first = self.script.strip().splitlines()[0] if self.script.strip() else ""
        return f"build script in {self.root} (cwd {self.cwd}): {first}"


@register_step
@dataclass
class EnsureTool(Step):
    op: ClassVar[str] = "ensure_tool"
    tool: str
    install: List[List[str]] = field(default_factory=list)
    auto_install: bool = False

    def _manual_hint(self) -> str:
        cmds = "\n".join("sudo " + shlex.join(c) for c in self.install) or f"(install {self.tool} manually)"
        return (f"{self.tool} not installed. Please specify --install-dependencies\n"
                f"You also can run manually following command:\n{cmds}")

    def run(self, ctx: RunContext) -> None:
        if shutil.which(self.tool):
            return
        if not self.auto_install:
            raise ToolingMissingError(self._manual_hint())
        logger.warning("%s not found, installing", self.tool)
        for argv in self.install:
            rc = run_command(argv)
            if rc != 0:
                raise ToolingMissingError(f"installing {self.tool} failed: {shlex.join(argv)} exited {rc}")
        if not shutil.which(self.tool):
            raise ToolingMissingError(f"{self.tool} still not available after installation")

    def describe(self) -> str:
        return f"ensure {self.tool}" + (" (auto install)" if self.auto_install else "")


# ----------------------------
# Snapshot / restore
# ----------------------------
@register_step
@dataclass
class SnapshotRoot(Step):
    """Archive root into the cache: written under a temporary name, then renamed."""
    op: ClassVar[str] = "snapshot_root"
    root: str
    archive: str
    compression: str = "gz"

    def run(self, ctx: RunContext) -> None:
        _ensure_dir(os.path.dirname(self.archive))
        tmp = f"{self.archive}.{os.getpid()}"
        arcname = os.path.basename(os.path.normpath(self.root))
        try:
            with tarfile.open(tmp, f"w:{self.compression}") as tar:
                tar.add(self.root, arcname=arcname)
            os.replace(tmp, self.archive)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info("cached %s", self.archive)

    def describe(self) -> str:
        return f"snapshot {self.root} -> {self.archive}"


@register_step
@dataclass
class RestoreRoot(Step):
    """Unpack a cached environment into dest (the build dir)."""
    op: ClassVar[str] = "restore_root"
    archive: str
    dest: str

    def run(self, ctx: RunContext) -> None:
        with tarfile.open(self.archive, "r:*") as tar:
            # images hold absolute symlinks and device nodes
            if hasattr(tarfile, "data_filter"):
                tar.extractall(self.dest, numeric_owner=True, filter="fully_trusted")
            else:
                tar.extractall(self.dest, numeric_owner=True)

    def describe(self) -> str:
        return f"restore {self.archive} into {self.dest}"
