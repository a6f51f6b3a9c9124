# chrootbuild/modules/errors.py
"""
Error taxonomy for chroot-build.

Every failure surfaced to the user derives from ChrootBuildError. The plan
runner attaches platform/phase/step context so a diagnostic always says where
the run stopped.
"""

from __future__ import annotations

from typing import Optional


class ChrootBuildError(Exception):
    def __init__(self, message: str, *, platform: Optional[str] = None,
                 phase: Optional[str] = None, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.platform = platform
        self.phase = phase
        self.step = step

    def with_context(self, platform: Optional[str] = None, phase: Optional[str] = None,
                     step: Optional[str] = None) -> "ChrootBuildError":
        """Fill in missing context; context set closer to the failure wins."""
        if self.platform is None:
            self.platform = platform
        if self.phase is None:
            self.phase = phase
        if self.step is None:
            self.step = step
        return self

    def __str__(self) -> str:
        where = [p for p in (self.platform, self.phase, self.step) if p]
        if where:
            return f"[{'/'.join(where)}] {self.message}"
        return self.message


class ConfigurationError(ChrootBuildError):
    """Descriptor, CLI or config file problem. Raised before any side effect."""


class PreconditionError(ChrootBuildError):
    """Host state forbids the run (e.g. uncommitted changes)."""


class ToolingMissingError(ChrootBuildError):
    pass


class FetchError(ChrootBuildError):
    """Network or download failure. Fatal, never retried."""


class ResolverError(FetchError):
    """Mirror listing did not contain the expected entry (format drift)."""


class StepError(ChrootBuildError):
    pass


class BuildStepError(StepError):
    """The platform build script exited non-zero; the environment is kept."""


class AssemblerError(StepError):
    pass
