# cellar/modules/report.py
"""
Final install report: one line per formula with what happened to it.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from cellar.modules.errors import BuildError, CancelledError, DependencyFailedError, PatchError
from cellar.modules.resolver import SKIPPED, SUCCEEDED, BuildPlan, BuildTask

EXIT_OK = 0
EXIT_RESOLUTION = 2
EXIT_BUILD = 3
EXIT_PARTIAL = 4
EXIT_INTERRUPTED = 130

ALREADY_INSTALLED = "already installed"
INSTALLED = "installed"
BUILD_FAILED = "failed"
DEPENDENCY_FAILED = "skipped (dependency failed)"
NOT_STARTED = "not started"

STYLES = {
    ALREADY_INSTALLED: "cyan",
    INSTALLED: "green",
    BUILD_FAILED: "red",
    DEPENDENCY_FAILED: "yellow",
    NOT_STARTED: "yellow",
}

OUTPUT_TAIL = 20


def _tail(text: str, lines: int = OUTPUT_TAIL) -> str:
    return "\n".join((text or "").rstrip().splitlines()[-lines:])


class Outcome:
    def __init__(self, task: BuildTask):
        self.identity = task.identity
        self.version = task.formula.effective_version
        self.requested = task.requested
        self.build_only = task.build_only
        self.reason: Optional[str] = None
        self.remediation: Optional[str] = None
        self.output: str = ""
        self.caveats = task.formula.caveats if task.status == SUCCEEDED else ""

        error = task.error
        if task.status == SKIPPED:
            self.status = ALREADY_INSTALLED
        elif task.status == SUCCEEDED:
            self.status = INSTALLED
        elif isinstance(error, DependencyFailedError):
            self.status = DEPENDENCY_FAILED
            self.reason = f"dependency {error.failed_dependency} failed"
        elif isinstance(error, CancelledError):
            self.status = NOT_STARTED
            self.reason = error.reason
        else:
            self.status = BUILD_FAILED
            self.reason = str(error) if error else "unknown error"
            self.remediation = getattr(error, "remediation", None)
            if isinstance(error, (BuildError, PatchError)):
                self.output = _tail(error.output)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formula": self.identity,
            "version": self.version,
            "status": self.status,
            "reason": self.reason,
            "remediation": self.remediation,
        }


class InstallReport:
    def __init__(self, plan: BuildPlan, interrupted: bool = False):
        self.plan = plan
        self.interrupted = interrupted
        self.outcomes: List[Outcome] = [Outcome(t) for t in plan]
        by_id = {o.identity: o for o in self.outcomes}
        self.requested: List[Outcome] = [by_id[r] for r in plan.roots if r in by_id]

    @property
    def built(self) -> List[Outcome]:
        return [o for o in self.outcomes if o.status == INSTALLED]

    @property
    def failures(self) -> List[Outcome]:
        return [o for o in self.outcomes if o.status not in (INSTALLED, ALREADY_INSTALLED)]

    def exit_code(self) -> int:
        if self.interrupted:
            return EXIT_INTERRUPTED
        if not self.failures:
            return EXIT_OK
        if self.built:
            return EXIT_PARTIAL
        return EXIT_BUILD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested": [o.to_dict() for o in self.requested],
            "formulae": [o.to_dict() for o in self.outcomes],
            "exit_code": self.exit_code(),
        }

    def render(self, console: Console, verbose: bool = False):
        table = Table(title="Install report")
        table.add_column("Formula", style="bold")
        table.add_column("Version")
        table.add_column("Result")
        table.add_column("Details", overflow="fold")
        for o in self.outcomes:
            if not (o.requested or verbose or o.status != ALREADY_INSTALLED):
                continue
            name = o.identity + (" *" if o.requested else "")
            style = STYLES.get(o.status, "")
            table.add_row(name, o.version, f"[{style}]{o.status}[/{style}]", escape(o.reason or ""))
        console.print(table)

        for o in self.outcomes:
            if o.status == BUILD_FAILED and (o.remediation or o.output):
                body = o.remediation or ""
                if o.output:
                    body = (body + "\n\n" if body else "") + o.output
                console.print(Panel(escape(body), title=escape(f"{o.identity}: {o.reason}"), style="red"))
        for o in self.outcomes:
            if o.caveats:
                console.print(Panel(escape(o.caveats), title=f"{o.identity} caveats", style="cyan"))
