# cellar/modules/errors.py
"""
Error taxonomy shared by every stage.

Resolution errors (raised before any build starts):
  NotFoundError, ParseError, InvalidOptionError, CycleError,
  UnsatisfiedRequirementError, OptionConflictError

Build errors (scoped to one task, attached to it by the scheduler):
  FetchError, IntegrityError, PatchError, BuildError,
  DependencyFailedError, CancelledError
"""

from __future__ import annotations
from typing import List, Optional


class CellarError(Exception):
    """Base class; `remediation` is shown to the user when present."""

    remediation: Optional[str] = None

    def __init__(self, message: str, formula: Optional[str] = None, remediation: Optional[str] = None):
        super().__init__(message)
        self.formula = formula
        if remediation is not None:
            self.remediation = remediation


class ResolutionError(CellarError):
    pass


class NotFoundError(ResolutionError):
    pass


class ParseError(ResolutionError):
    pass


class InvalidOptionError(ResolutionError):
    def __init__(self, formula: str, option: str, supported: List[str]):
        supported_txt = ", ".join(supported) if supported else "none"
        super().__init__(f"{formula}: unsupported option '{option}' (supported: {supported_txt})",
                         formula=formula)
        self.option = option
        self.supported = list(supported)


class CycleError(ResolutionError):
    def __init__(self, cycle: List[str]):
        super().__init__("Dependency cycle detected: " + " -> ".join(cycle))
        self.cycle = list(cycle)

    @property
    def members(self):
        return set(self.cycle)


class UnsatisfiedRequirementError(ResolutionError):
    def __init__(self, formula: str, requirement: str, message: str = ""):
        super().__init__(f"{formula}: unsatisfied requirement '{requirement}'",
                         formula=formula, remediation=message or None)
        self.requirement = requirement


class OptionConflictError(ResolutionError):
    def __init__(self, formula: str, option: str, requested_by: List[str]):
        super().__init__(
            f"{formula}: conflicting requests for option '{option}' from {', '.join(requested_by)}",
            formula=formula)
        self.option = option
        self.requested_by = list(requested_by)


class TaskError(CellarError):
    pass


class FetchError(TaskError):
    """Network or transport failure; the only retried error."""

    def __init__(self, message: str, url: Optional[str] = None, formula: Optional[str] = None,
                 transient: bool = True):
        super().__init__(message, formula=formula)
        self.url = url
        self.transient = transient


class IntegrityError(TaskError):
    def __init__(self, url: str, expected: str, actual: str, formula: Optional[str] = None):
        super().__init__(f"Checksum mismatch for {url}: expected {expected}, got {actual}",
                         formula=formula)
        self.url = url
        self.expected = expected
        self.actual = actual


class PatchError(TaskError):
    def __init__(self, patch: str, output: str = "", formula: Optional[str] = None):
        super().__init__(f"Patch failed to apply: {patch}", formula=formula)
        self.patch = patch
        self.output = output


class BuildError(TaskError):
    def __init__(self, message: str, output: str = "", formula: Optional[str] = None,
                 returncode: Optional[int] = None):
        super().__init__(message, formula=formula)
        self.output = output
        self.returncode = returncode


class DependencyFailedError(TaskError):
    def __init__(self, formula: str, failed_dependency: str):
        super().__init__(f"{formula}: skipped because dependency {failed_dependency} failed",
                         formula=formula)
        self.failed_dependency = failed_dependency


class CancelledError(TaskError):
    def __init__(self, formula: str, reason: str = "interrupted"):
        super().__init__(f"{formula}: not started ({reason})", formula=formula)
        self.reason = reason
