# chrootbuild/modules/config.py
# -*- coding: utf-8 -*-
"""
chroot-build configuration loader

Features:
- Read YAML/JSON config from the first existing candidate (explicit path, env
  override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize paths and human sizes
- Validate structure and types with pydantic (unknown keys are errors)
- Typed access through Config.settings and dotted access through Config.get()
"""

from __future__ import annotations

import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from chrootbuild.modules.errors import ConfigurationError

logger = logging.getLogger("chrootbuild.config")

ENV_VAR = "CHROOT_BUILD_CONFIG"

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "format": None,
        "datefmt": "%H:%M:%S",
        "module_levels": {},
    },
    "paths": {
        "base_dir": "/var/chroot-build",
        "cache_dir": None,  # <base_dir>/.cache
        "build_dir_name": "build",
    },
    "cache": {
        "enabled": True,
        "compression": "gz",
    },
    "remote": {
        "ssh": ["ssh"],
        "scp": ["scp"],
        "command": ["sudo", "chroot-build"],
    },
    "fetcher": {
        "http_timeout": 30,
        # platform id -> {"release": [urls], "extension": [urls]}, tried after the registry mirror
        "mirrors": {},
    },
    "tools": {
        "install": {
            "fpm": [
                ["apt-get", "install", "-y", "ruby", "ruby-dev", "build-essential"],
                ["gem", "install", "--no-document", "fpm"],
            ],
            "debootstrap": [["apt-get", "install", "-y", "debootstrap"]],
            "rpm": [["apt-get", "install", "-y", "rpm"]],
            "yum": [["apt-get", "install", "-y", "yum"]],
        },
    },
    "package": {
        "tool": "fpm",
        "epoch": 1,
        "user": "root",
        "group": "root",
    },
}


# ----------------------------
# Schema
# ----------------------------
class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LoggingSettings(_Section):
    level: str = "INFO"
    file: Optional[str] = None
    color: bool = True
    max_size: Union[str, int] = "10M"
    max_size_bytes: Optional[int] = None
    backups: int = 5
    format: Optional[str] = None
    datefmt: str = "%H:%M:%S"
    module_levels: Dict[str, str] = {}


class PathSettings(_Section):
    base_dir: str
    cache_dir: str
    build_dir_name: str = "build"


class CacheSettings(_Section):
    enabled: bool = True
    compression: Literal["gz", "xz"] = "gz"


class RemoteSettings(_Section):
    ssh: List[str]
    scp: List[str]
    command: List[str]


class FetcherSettings(_Section):
    http_timeout: int = 30
    mirrors: Dict[str, Dict[str, List[str]]] = {}


class ToolSettings(_Section):
    install: Dict[str, List[List[str]]] = {}


class PackageSettings(_Section):
    tool: str = "fpm"
    epoch: int = 1
    user: str = "root"
    group: str = "root"


class Settings(_Section):
    logging: LoggingSettings
    paths: PathSettings
    cache: CacheSettings
    remote: RemoteSettings
    fetcher: FetcherSettings
    tools: ToolSettings
    package: PackageSettings


# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    settings: Optional[Settings] = None
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)


_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()


# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "MB": 1024**2, "GB": 1024**3, "K": 1024, "M": 1024**2, "G": 1024**3}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                return int(float(s[: -len(suffix)].strip()) * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None


def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(val)))


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res


def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get(ENV_VAR)
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "chroot-build.yaml",
        Path.cwd() / "chroot-build.yml",
        Path.cwd() / "chroot-build.json",
        Path.home() / ".config" / "chroot-build" / "config.yaml",
        Path("/etc") / "chroot-build" / "config.yaml",
    ])
    return candidates


def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"cannot read config file {path}: {e}") from e
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"cannot parse config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a mapping")
    return data


def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields and convert human sizes."""
    out = deepcopy(cfg)
    paths = out.setdefault("paths", {})
    paths["base_dir"] = _expand_path(paths.get("base_dir"))
    if not paths.get("cache_dir") and paths.get("base_dir"):
        paths["cache_dir"] = os.path.join(paths["base_dir"], ".cache")
    paths["cache_dir"] = _expand_path(paths.get("cache_dir"))

    log_cfg = out.setdefault("logging", {})
    if log_cfg.get("file"):
        log_cfg["file"] = _expand_path(log_cfg["file"])
    if "max_size" in log_cfg:
        ms = _human_size_to_bytes(log_cfg["max_size"])
        if ms is not None:
            log_cfg["max_size_bytes"] = ms
    return out


def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigurationError(f"config file {explicit} does not exist")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None


# ----------------------------
# Loading
# ----------------------------
def load(explicit_path: Optional[str] = None) -> Config:
    """Load, merge and validate config. Invalid config raises ConfigurationError."""
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = _load_file(cfg_path) if cfg_path else {}
        merged = _normalize_and_coerce(_deep_merge(DEFAULTS, raw))
        try:
            settings = Settings.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(f"invalid configuration ({cfg_path or '<defaults>'}): {e}") from e
        _CONFIG = Config(raw=raw, merged=merged, settings=settings, path=cfg_path)
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return _CONFIG


def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG


def get_settings() -> Settings:
    return get_config().settings


def reset() -> None:
    """Forget the loaded config; the next get_config() reloads it."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = None
