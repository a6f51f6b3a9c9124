"""Shared fixtures: isolated config, recorded process execution."""

from __future__ import annotations

import os
import shutil
import tarfile
import tempfile
from typing import Any, Callable, Dict, List, Optional

import pytest
import yaml

from chrootbuild.modules import config, sandbox


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, tmp_path_factory, monkeypatch):
    """Every test gets its own base dir and config file; nothing from the host is read."""
    base = tmp_path / "base"
    cfg_file = tmp_path_factory.mktemp("config") / "chroot-build-test.yaml"
    cfg_file.write_text(yaml.safe_dump({
        "paths": {"base_dir": str(base)},
        "logging": {"color": False},
    }))
    monkeypatch.setenv(config.ENV_VAR, str(cfg_file))
    monkeypatch.chdir(tmp_path)
    config.reset()
    config.load(str(cfg_file))
    yield cfg_file
    config.reset()


@pytest.fixture
def settings():
    return config.get_settings()


class CommandRecorder:
    """Stands in for sandbox.run_command; handlers may simulate side effects."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.handlers: List[Callable[..., Optional[int]]] = []

    def __call__(self, argv, *, root=None, cwd=None, env=None, stdin=None) -> int:
        argv = [str(a) for a in argv]
        self.calls.append({"argv": argv, "root": root, "cwd": cwd, "env": env,
                           "stdin": stdin.read() if stdin is not None else None})
        for handler in self.handlers:
            rc = handler(argv, root=root, cwd=cwd)
            if rc is not None:
                return rc
        return 0

    def argvs(self) -> List[List[str]]:
        return [c["argv"] for c in self.calls]

    def programs(self) -> List[str]:
        return [c["argv"][0] for c in self.calls]


@pytest.fixture
def commands(monkeypatch) -> CommandRecorder:
    recorder = CommandRecorder()
    monkeypatch.setattr(sandbox, "run_command", recorder)
    return recorder


@pytest.fixture
def tools_present(monkeypatch):
    monkeypatch.setattr(sandbox.shutil, "which", lambda tool: f"/usr/bin/{tool}")


def make_image(cache_dir: str, platform: str, files: Dict[str, str]) -> str:
    """Write a cached base image <cache_dir>/<platform>.tgz holding files."""
    staging = os.path.join(tempfile.mkdtemp(prefix="image-"), platform)
    for rel, content in files.items():
        path = os.path.join(staging, rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            f.write(content)
    os.makedirs(os.path.join(staging, "tmp"), exist_ok=True)
    os.makedirs(cache_dir, exist_ok=True)
    archive = os.path.join(cache_dir, f"{platform}.tgz")
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(staging, arcname=platform)
    shutil.rmtree(os.path.dirname(staging))
    return archive


@pytest.fixture
def cached_image():
    return make_image
