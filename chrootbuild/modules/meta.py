# chrootbuild/modules/meta.py
"""
meta.py - build descriptor model and loader

Features:
- DescriptorBuilder applies directives in order; platform-scoped directives
  mutate the most recently declared platform
- Frozen BuildDescriptor / PlatformSpec once built
- Build scripts accepted inline or as a lazily read block, stored verbatim
- Lifecycle scripts matched by file name (before/after install/remove)
- YAML descriptor files, either a directive list (file order) or a mapping
"""

from __future__ import annotations

import os
import re
import glob
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml

from chrootbuild.modules import platforms
from chrootbuild.modules.errors import ConfigurationError
from chrootbuild.modules.logging import get_logger

logger = get_logger("meta")

LIFECYCLE_SCRIPTS = ("before-install", "after-install", "before-remove", "after-remove")
MANDATORY_FIELDS = ("name", "version", "description", "directories")

ScriptSource = Union[str, Callable[[], str], Any]


# ----------------------------
# Frozen model
# ----------------------------
@dataclass(frozen=True)
class PlatformSpec:
    family: str
    version: str
    replaces: Tuple[str, ...] = ()
    conflicts: Tuple[str, ...] = ()
    build_deps: Tuple[str, ...] = ()
    runtime_deps: Tuple[str, ...] = ()
    scripts: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    build_script: Optional[str] = None

    @property
    def platform(self) -> str:
        return platforms.platform_id(self.family, self.version)


@dataclass(frozen=True)
class BuildDescriptor:
    name: str
    version: str
    description: str
    directories: Tuple[str, ...]
    platforms: Tuple[PlatformSpec, ...]
    base_dir: str = "."

    @property
    def platform_ids(self) -> List[str]:
        return [p.platform for p in self.platforms]

    def platform(self, pid: str) -> PlatformSpec:
        for p in self.platforms:
            if p.platform == pid:
                return p
        raise ConfigurationError(f"platform {pid} is not declared in the descriptor")


# ----------------------------
# Helpers
# ----------------------------
def _words(value: Any) -> List[str]:
    """Lists may be given as YAML sequences or whitespace separated strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    if isinstance(value, (list, tuple)):
        out: List[str] = []
        for v in value:
            out.extend(_words(v))
        return out
    return [str(value)]


def _read_block(source: ScriptSource) -> str:
    if isinstance(source, str):
        return source
    if callable(source):
        return source()
    if hasattr(source, "read"):
        return source.read()
    raise ConfigurationError(f"build_script: unsupported source {type(source).__name__}")


@dataclass
class _PlatformDraft:
    family: str
    version: str
    replaces: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    build_deps: List[str] = field(default_factory=list)
    runtime_deps: List[str] = field(default_factory=list)
    scripts: Dict[str, str] = field(default_factory=dict)
    build_script: Optional[str] = None

    def freeze(self) -> PlatformSpec:
        return PlatformSpec(
            family=self.family,
            version=self.version,
            replaces=tuple(self.replaces),
            conflicts=tuple(self.conflicts),
            build_deps=tuple(self.build_deps),
            runtime_deps=tuple(self.runtime_deps),
            scripts=MappingProxyType(dict(self.scripts)),
            build_script=self.build_script,
        )


# ----------------------------
# Builder
# ----------------------------
class DescriptorBuilder:
    """Mutable while directives are applied; build() returns the frozen descriptor."""

    DIRECTIVES = (
        "pkg_name", "pkg_version", "pkg_description", "pkg_directories", "pkg_platform",
        "pkg_replaces", "pkg_conflicts", "build_deps", "runtime_deps", "build_script", "pkg_scripts",
    )

    def __init__(self, base_dir: str = "."):
        self.base_dir = os.path.abspath(base_dir)
        self.name: Optional[str] = None
        self.version: Optional[str] = None
        self.description: Optional[str] = None
        self.directories: List[str] = []
        self._platforms: Dict[str, _PlatformDraft] = {}
        self._current: Optional[_PlatformDraft] = None

    def _open_platform(self, directive: str) -> _PlatformDraft:
        if self._current is None:
            raise ConfigurationError(f"{directive} should be used in pkg_platform context")
        return self._current

    # global directives
    def pkg_name(self, name: Any):
        self.name = "" if name is None else str(name).strip()

    def pkg_version(self, version: Any):
        self.version = "" if version is None else str(version).strip()

    def pkg_description(self, description: Any):
        self.description = "" if description is None else str(description)

    def pkg_directories(self, *dirs: Any):
        out: List[str] = []
        for d in _words(list(dirs)):
            if d.startswith("/"):
                raise ConfigurationError(f"pkg_directories: '{d}' must be relative (no leading /)")
            d = d.rstrip("/")
            if d and d not in out:
                out.append(d)
        self.directories = out

    def pkg_platform(self, family: Any, version: Any):
        family, version = str(family).strip(), str(version).strip()
        pid = platforms.platform_id(family, version)
        if pid in self._platforms:
            raise ConfigurationError(f"platform {pid} declared twice")
        draft = _PlatformDraft(family=family, version=version)
        self._platforms[pid] = draft
        self._current = draft

    # platform-scoped directives
    def pkg_replaces(self, *pkgs: Any):
        self._open_platform("pkg_replaces").replaces = _words(list(pkgs))

    def pkg_conflicts(self, *pkgs: Any):
        self._open_platform("pkg_conflicts").conflicts = _words(list(pkgs))

    def build_deps(self, *pkgs: Any):
        self._open_platform("build_deps").build_deps = _words(list(pkgs))

    def runtime_deps(self, *pkgs: Any):
        self._open_platform("runtime_deps").runtime_deps = _words(list(pkgs))

    def build_script(self, source: ScriptSource):
        draft = self._open_platform("build_script")
        text = _read_block(source)
        if not text or not text.strip():
            raise ConfigurationError("build_script has no input data")
        draft.build_script = text

    def pkg_scripts(self, *patterns: Any):
        draft = self._open_platform("pkg_scripts")
        found: Dict[str, str] = {}
        for pattern in _words(list(patterns)):
            full = pattern if os.path.isabs(pattern) else os.path.join(self.base_dir, pattern)
            for path in sorted(glob.glob(full)):
                if not (os.path.isfile(path) and os.access(path, os.R_OK)):
                    continue
                option = os.path.splitext(os.path.basename(path))[0]
                if option not in LIFECYCLE_SCRIPTS:
                    logger.warning("pkg_scripts: skipping %s (not one of %s)", path, ", ".join(LIFECYCLE_SCRIPTS))
                    continue
                found[option] = path if os.path.isabs(pattern) else os.path.relpath(path, self.base_dir)
        draft.scripts = found

    def apply(self, directive: str, *args: Any):
        if directive not in self.DIRECTIVES:
            raise ConfigurationError(f"unknown directive '{directive}'")
        getattr(self, directive)(*args)

    def build(self) -> BuildDescriptor:
        missing = [f for f in MANDATORY_FIELDS if not getattr(self, f)]
        if missing:
            raise ConfigurationError(f"descriptor is missing mandatory fields: {', '.join(missing)}")
        if not self._platforms:
            raise ConfigurationError("descriptor declares no platform")
        return BuildDescriptor(
            name=self.name,
            version=self.version,
            description=self.description,
            directories=tuple(self.directories),
            platforms=tuple(d.freeze() for d in self._platforms.values()),
            base_dir=self.base_dir,
        )


# ----------------------------
# YAML surface
# ----------------------------
_PID_RE = re.compile(r"^([A-Za-z]+)(\d+)$")


def _platform_args(value: Any) -> Tuple[str, str]:
    words = _words(value)
    if len(words) == 1:
        m = _PID_RE.match(words[0])
        if m:
            return m.group(1), m.group(2)
    if len(words) != 2:
        raise ConfigurationError(f"pkg_platform expects family and version, got {value!r}")
    return words[0], words[1]


def _script_source(value: Any, base_dir: str) -> ScriptSource:
    if isinstance(value, dict) and set(value) == {"file"}:
        path = os.path.join(base_dir, str(value["file"]))

        def read() -> str:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return f.read()
            except OSError as e:
                raise ConfigurationError(f"build_script: cannot read {path}: {e}") from e
        return read
    if not isinstance(value, str):
        raise ConfigurationError(f"build_script must be text or {{file: path}}, got {value!r}")
    return value


def _apply_entry(builder: DescriptorBuilder, directive: str, value: Any):
    if directive == "pkg_platform":
        builder.pkg_platform(*_platform_args(value))
    elif directive == "build_script":
        builder.build_script(_script_source(value, builder.base_dir))
    elif directive in ("pkg_name", "pkg_version"):
        # YAML turns 1.10 into the float 1.1
        if value is not None and not isinstance(value, str):
            raise ConfigurationError(
                f"{directive} must be a quoted string in YAML (read as {type(value).__name__} {value!r})")
        builder.apply(directive, value)
    elif directive == "pkg_description":
        builder.apply(directive, value)
    else:
        builder.apply(directive, _words(value))


def _apply_directive_list(builder: DescriptorBuilder, items: Iterable[Any]):
    for item in items:
        if not isinstance(item, dict) or len(item) != 1:
            raise ConfigurationError(f"directive entries must be single-key mappings, got {item!r}")
        (directive, value), = item.items()
        _apply_entry(builder, directive, value)


_MAPPING_PLATFORM_KEYS = {
    "replaces": "pkg_replaces",
    "conflicts": "pkg_conflicts",
    "build_deps": "build_deps",
    "runtime_deps": "runtime_deps",
    "build_script": "build_script",
    "scripts": "pkg_scripts",
}


def _apply_mapping(builder: DescriptorBuilder, data: Dict[str, Any]):
    unknown = set(data) - {"name", "version", "description", "directories", "platforms"}
    if unknown:
        raise ConfigurationError(f"unknown descriptor keys: {', '.join(sorted(unknown))}")
    for key in ("name", "version", "description"):
        if data.get(key) is not None:
            _apply_entry(builder, f"pkg_{key}", data[key])
    builder.pkg_directories(*_words(data.get("directories")))
    for entry in data.get("platforms") or []:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"platform entries must be mappings, got {entry!r}")
        if "platform" in entry:
            builder.pkg_platform(*_platform_args(entry["platform"]))
        elif "family" in entry and "version" in entry:
            builder.pkg_platform(entry["family"], entry["version"])
        else:
            raise ConfigurationError(f"platform entry needs 'platform' or 'family'+'version': {entry!r}")
        for key, value in entry.items():
            if key in ("platform", "family", "version"):
                continue
            if key not in _MAPPING_PLATFORM_KEYS:
                raise ConfigurationError(f"unknown platform key '{key}'")
            _apply_entry(builder, _MAPPING_PLATFORM_KEYS[key], value)


def load_descriptor(path: str) -> BuildDescriptor:
    """Read a YAML descriptor file; relative paths resolve against its directory."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"cannot read descriptor {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse descriptor {path}: {e}") from e
    builder = DescriptorBuilder(base_dir=os.path.dirname(os.path.abspath(path)))
    if isinstance(data, list):
        _apply_directive_list(builder, data)
    elif isinstance(data, dict):
        _apply_mapping(builder, data)
    else:
        raise ConfigurationError(f"descriptor {path} must be a directive list or a mapping")
    descriptor = builder.build()
    logger.debug("loaded descriptor %s: %s %s for %s", path, descriptor.name, descriptor.version,
                 ", ".join(descriptor.platform_ids))
    return descriptor
