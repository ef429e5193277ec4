# cellar/modules/installer.py
"""
Installer: wires repository -> graph builder -> resolver -> scheduler -> report.

  inst = Installer()
  plan = inst.resolve(["qgis"], ["--without-postgresql"])
  report = inst.install(["qgis"])
"""

from __future__ import annotations
import os
import shutil
from typing import Iterable, List, Optional

from cellar.modules.build import BuildExecutor
from cellar.modules.errors import CellarError
from cellar.modules.formula import FormulaRepository
from cellar.modules.graph import GraphBuilder, SelectedOptions
from cellar.modules.report import InstallReport
from cellar.modules.requirement import EnvironmentProbe, RequirementChecker
from cellar.modules.resolver import BuildPlan, Resolver
from cellar.modules.scheduler import EventCallback, Scheduler
from cellar.modules.state import InstalledRecord, InstalledStateStore
from cellar.modules import logger as _logger


class UninstallError(CellarError):
    pass


class Installer:
    def __init__(self,
                 repository: Optional[FormulaRepository] = None,
                 store: Optional[InstalledStateStore] = None,
                 executor: Optional[BuildExecutor] = None,
                 probe: Optional[EnvironmentProbe] = None,
                 jobs: Optional[int] = None,
                 keep_going: bool = True,
                 grace_period: Optional[float] = None):
        self.repository = repository or FormulaRepository()
        self.store = store or InstalledStateStore()
        self.executor = executor or BuildExecutor(self.store)
        self.probe = probe
        self.jobs = jobs
        self.keep_going = keep_going
        self.grace_period = grace_period
        self.scheduler: Optional[Scheduler] = None
        self.log = _logger.Logger("installer")

    def resolve(self, formulae: Iterable[str], selected_options: SelectedOptions = None,
                include_test: bool = False, exclude: Iterable[str] = (),
                reinstall: Iterable[str] = ()) -> BuildPlan:
        """Build the graph and plan it against the installed state. Nothing is built."""
        # fresh checker each resolution: requirement checks run once per resolution
        checker = RequirementChecker(self.probe)
        builder = GraphBuilder(self.repository, checker, include_test=include_test, exclude=exclude)
        graph = builder.build_graph(list(formulae), selected_options)
        return Resolver(self.store, reinstall=reinstall).plan(graph)

    def execute(self, plan: BuildPlan, on_event: Optional[EventCallback] = None) -> InstallReport:
        self.scheduler = Scheduler(self.executor, jobs=self.jobs, grace_period=self.grace_period,
                                   keep_going=self.keep_going, on_event=on_event)
        self.scheduler.run(plan)
        report = InstallReport(plan, interrupted=self.scheduler.interrupted)
        self.log.info(f"Install finished: {len(report.built)} built, {len(report.failures)} not installed")
        return report

    def install(self, formulae: Iterable[str], selected_options: SelectedOptions = None,
                include_test: bool = False, exclude: Iterable[str] = (),
                reinstall: Iterable[str] = (), on_event: Optional[EventCallback] = None) -> InstallReport:
        plan = self.resolve(formulae, selected_options, include_test=include_test,
                            exclude=exclude, reinstall=reinstall)
        return self.execute(plan, on_event=on_event)

    def cancel(self):
        if self.scheduler:
            self.scheduler.cancel()

    # ---------------------------
    # Uninstall
    # ---------------------------
    def _installed_identity(self, name: str) -> str:
        if "/" in name:
            return name
        for record in self.store.all():
            if record.name.rsplit("/", 1)[-1] == name:
                return record.name
        raise UninstallError(f"{name} is not installed", formula=name)

    def uninstall(self, name: str, force: bool = False) -> InstalledRecord:
        identity = self._installed_identity(name)
        record = self.store.get(identity)
        if record is None:
            raise UninstallError(f"{identity} is not installed", formula=identity)
        dependents = [r.name for r in self.store.dependents(identity)]
        if dependents and not force:
            raise UninstallError(f"{identity} is required by {', '.join(dependents)}",
                                 formula=identity,
                                 remediation="Uninstall those first or pass --force.")
        if record.prefix and os.path.isdir(record.prefix):
            shutil.rmtree(record.prefix)
            parent = os.path.dirname(record.prefix)
            if os.path.isdir(parent) and not os.listdir(parent):
                os.rmdir(parent)
        self.store.remove(identity)
        self.log.info(f"Uninstalled {identity}")
        return record

    def removable_build_dependencies(self) -> List[InstalledRecord]:
        """Installed build-only formulae nothing installed depends on at runtime."""
        return [r for r in self.store.all() if r.build_only and not self.store.dependents(r.name)]
