# chrootbuild/modules/plan.py
# -*- coding: utf-8 -*-
"""
Build plan: the ordered, typed step list executed for one run.

Features:
- Step base class; concrete steps live in the module owning their concern
  (sandbox, fetcher, buildsystem, pkgtool) and register by op name
- PlatformUnit groups one platform's steps into phases
  provision -> build -> package -> teardown -> finalize
- CacheBranch decides between restore and bootstrap when it runs
- YAML plan file (generated-chroot-build-<pid>.yaml) written next to the
  descriptor; kept on failure, removed after a fully successful run
- PlanRunner executes sequentially, fail-fast, attaching platform/phase/step
  context to every error
"""

from __future__ import annotations

import os
import glob
import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Tuple, Type

import yaml

from chrootbuild.modules.errors import ChrootBuildError, ConfigurationError, StepError
from chrootbuild.modules.logging import get_logger

logger = get_logger("plan")

PLAN_PREFIX = "generated-chroot-build-"
PLAN_SUFFIX = ".yaml"
PLAN_FORMAT = 1
PHASES = ("provision", "build", "package", "teardown", "finalize")


# ----------------------------
# Run context
# ----------------------------
@dataclass
class RunContext:
    """Mutable state shared by the steps of one run."""
    fetched: Dict[str, str] = field(default_factory=dict)        # fetch key -> local path
    artifacts: Dict[str, str] = field(default_factory=dict)      # platform -> artifact path
    deltas: Dict[str, List[str]] = field(default_factory=dict)   # platform -> delta manifest
    assembled: Dict[str, str] = field(default_factory=dict)      # platform -> artifact before relocation


@dataclass(frozen=True)
class BuildResult:
    platform: str
    artifact: Optional[str]
    manifest: Tuple[str, ...]


# ----------------------------
# Steps
# ----------------------------
STEP_TYPES: Dict[str, Type["Step"]] = {}


def register_step(cls):
    """Class decorator: make a step type loadable from a plan file."""
    if cls.op in STEP_TYPES and STEP_TYPES[cls.op] is not cls:
        raise ValueError(f"duplicate step op {cls.op}")
    STEP_TYPES[cls.op] = cls
    return cls


def _plain(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, Path):
        return str(value)
    return value


class Step:
    op: ClassVar[str] = ""

    def run(self, ctx: RunContext) -> None:
        raise NotImplementedError

    def describe(self) -> str:
        return self.op

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"op": self.op}
        for f in dataclasses.fields(self):
            data[f.name] = _plain(getattr(self, f.name))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        names = {f.name for f in dataclasses.fields(cls)}
        params = {k: v for k, v in data.items() if k != "op"}
        unknown = set(params) - names
        if unknown:
            raise ConfigurationError(f"step {cls.op}: unknown parameters {sorted(unknown)}")
        return cls(**params)


def step_from_dict(data: Dict[str, Any]) -> Step:
    if not isinstance(data, dict) or "op" not in data:
        raise ConfigurationError(f"malformed plan step: {data!r}")
    cls = STEP_TYPES.get(data["op"])
    if cls is None:
        raise ConfigurationError(f"unknown plan step '{data['op']}'")
    return cls.from_dict(data)


def _steps_from(items: Optional[List[Dict[str, Any]]]) -> List[Step]:
    return [step_from_dict(d) for d in (items or [])]


@register_step
@dataclass
class CacheBranch(Step):
    """Restore from the cache archive when it exists, bootstrap otherwise."""
    op: ClassVar[str] = "cache_branch"
    archive: str
    hit: List[Step] = field(default_factory=list)
    miss: List[Step] = field(default_factory=list)

    def chosen(self) -> Tuple[str, List[Step]]:
        if os.path.isfile(self.archive):
            return "hit", self.hit
        return "miss", self.miss

    def run(self, ctx: RunContext) -> None:
        branch, steps = self.chosen()
        logger.info("cache %s: %s", branch, self.archive)
        for step in steps:
            logger.info("  %s", step.describe())
            step.run(ctx)

    def describe(self) -> str:
        return f"cache {self.archive} (hit: {len(self.hit)} steps, miss: {len(self.miss)} steps)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op": self.op,
            "archive": self.archive,
            "hit": [s.to_dict() for s in self.hit],
            "miss": [s.to_dict() for s in self.miss],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheBranch":
        return cls(archive=data["archive"], hit=_steps_from(data.get("hit")), miss=_steps_from(data.get("miss")))


# ----------------------------
# Plan structure
# ----------------------------
@dataclass
class PlatformUnit:
    platform: str
    provision: List[Step] = field(default_factory=list)
    build: List[Step] = field(default_factory=list)
    package: List[Step] = field(default_factory=list)
    teardown: List[Step] = field(default_factory=list)
    finalize: List[Step] = field(default_factory=list)

    def phases(self) -> Iterator[Tuple[str, List[Step]]]:
        for name in PHASES:
            yield name, getattr(self, name)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"platform": self.platform}
        for name, steps in self.phases():
            data[name] = [s.to_dict() for s in steps]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlatformUnit":
        return cls(platform=data["platform"], **{name: _steps_from(data.get(name)) for name in PHASES})


@dataclass
class Plan:
    project: str
    preflight: List[Step] = field(default_factory=list)
    units: List[PlatformUnit] = field(default_factory=list)

    @property
    def platforms(self) -> List[str]:
        return [u.platform for u in self.units]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": PLAN_FORMAT,
            "project": self.project,
            "preflight": [s.to_dict() for s in self.preflight],
            "units": [u.to_dict() for u in self.units],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        if not isinstance(data, dict) or data.get("format") != PLAN_FORMAT:
            raise ConfigurationError("not a chroot-build plan (missing or unsupported format)")
        return cls(
            project=data.get("project", ""),
            preflight=_steps_from(data.get("preflight")),
            units=[PlatformUnit.from_dict(u) for u in data.get("units") or []],
        )

    def summary(self) -> List[str]:
        """One line per step, in execution order."""
        lines = [f"preflight: {s.describe()}" for s in self.preflight]
        for unit in self.units:
            for phase, steps in unit.phases():
                for s in steps:
                    lines.append(f"{unit.platform}/{phase}: {s.describe()}")
        return lines


# ----------------------------
# Plan file
# ----------------------------
def plan_path(directory: str, pid: Optional[int] = None) -> Path:
    return Path(directory) / f"{PLAN_PREFIX}{pid if pid is not None else os.getpid()}{PLAN_SUFFIX}"


def write_plan(plan: Plan, directory: str, pid: Optional[int] = None) -> Path:
    path = plan_path(directory, pid)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        yaml.safe_dump(plan.to_dict(), f, sort_keys=False, default_flow_style=False)
    os.replace(tmp, path)
    logger.debug("plan written to %s", path)
    return path


def load_plan(path: str) -> Plan:
    # importing the concern modules registers their step types
    from chrootbuild.modules import bootstrap, buildsystem, fetcher, pkgtool, sandbox  # noqa: F401
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"cannot read plan {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse plan {path}: {e}") from e
    return Plan.from_dict(data)


def remove_generated_plans(directory: str) -> List[str]:
    removed = sorted(glob.glob(os.path.join(directory, f"{PLAN_PREFIX}*{PLAN_SUFFIX}")))
    for p in removed:
        os.remove(p)
        logger.debug("removed plan %s", p)
    return removed


# ----------------------------
# Runner
# ----------------------------
class PlanRunner:
    def __init__(self, plan: Plan, ctx: Optional[RunContext] = None):
        self.plan = plan
        self.ctx = ctx or RunContext()

    def _run_steps(self, steps: List[Step], platform: Optional[str], phase: str):
        for step in steps:
            label = step.describe()
            logger.info("[%s/%s] %s", platform or "-", phase, label)
            try:
                step.run(self.ctx)
            except ChrootBuildError as e:
                raise e.with_context(platform, phase, step.op)
            except Exception as e:
                raise StepError(f"{label}: {e}", platform=platform, phase=phase, step=step.op) from e

    def run_unit(self, unit: PlatformUnit) -> BuildResult:
        logger.info("platform %s: starting", unit.platform)
        self._run_steps(unit.provision, unit.platform, "provision")
        self._run_steps(unit.build, unit.platform, "build")
        try:
            self._run_steps(unit.package, unit.platform, "package")
        except ChrootBuildError:
            try:
                self._run_steps(unit.teardown, unit.platform, "teardown")
            except ChrootBuildError as e:
                logger.error("teardown after failed packaging also failed: %s", e)
            raise
        self._run_steps(unit.teardown, unit.platform, "teardown")
        self._run_steps(unit.finalize, unit.platform, "finalize")
        result = BuildResult(
            platform=unit.platform,
            artifact=self.ctx.artifacts.get(unit.platform),
            manifest=tuple(self.ctx.deltas.get(unit.platform, [])),
        )
        logger.info("platform %s: done (%s)", unit.platform, result.artifact)
        return result

    def run(self) -> List[BuildResult]:
        self._run_steps(self.plan.preflight, None, "preflight")
        return [self.run_unit(unit) for unit in self.plan.units]
