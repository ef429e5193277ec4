# cellar/modules/resolver.py
"""
Build planner: turns a DependencyGraph into an ordered list of BuildTasks.

 - a node is `skipped` when an installed record matches its source hash and options
 - order is Kahn's algorithm; among equally ready nodes the one discovered first wins,
   so the same request always yields the same plan
 - dependencies reached only through build/test edges carry an advisory `build_only` flag
"""

from __future__ import annotations
import heapq
from typing import Dict, Iterable, Iterator, List, Optional, Set

from cellar.modules.errors import CycleError
from cellar.modules.formula import BUILD, TEST, Formula
from cellar.modules.graph import DependencyGraph
from cellar.modules.options import BuildOptions
from cellar.modules.state import InstalledStateStore
from cellar.modules import logger as _logger

PENDING = "pending"
READY = "ready"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"

STATUSES = (PENDING, READY, RUNNING, SUCCEEDED, FAILED, SKIPPED)
DONE = (SUCCEEDED, SKIPPED)


class BuildTask:
    def __init__(self, formula: Formula, options: BuildOptions, order: int,
                 prerequisites: List[str], runtime_dependencies: List[str],
                 requested: bool = False, build_only: bool = False):
        self.formula = formula
        self.options = options
        self.order = order
        self.prerequisites = list(prerequisites)
        self.runtime_dependencies = list(runtime_dependencies)
        self.dependents: List[str] = []
        self.requested = requested
        self.build_only = build_only
        self.status = PENDING
        self.error: Optional[Exception] = None
        self.result = None

    @property
    def identity(self) -> str:
        return self.formula.full_name

    @property
    def name(self) -> str:
        return self.formula.name

    def to_dict(self):
        return {
            "formula": self.identity,
            "version": self.formula.effective_version,
            "options": self.options.as_flags(),
            "status": self.status,
            "prerequisites": self.prerequisites,
            "build_only": self.build_only,
            "requested": self.requested,
            "error": str(self.error) if self.error else None,
        }

    def __repr__(self):
        return f"BuildTask({self.identity!r}, {self.status})"


class BuildPlan:
    def __init__(self, tasks: List[BuildTask], roots: List[str], warnings=None):
        self.tasks = tasks
        self.roots = list(roots)
        self.warnings = list(warnings or [])
        self._by_id: Dict[str, BuildTask] = {t.identity: t for t in tasks}

    def get(self, identity: str) -> BuildTask:
        return self._by_id[identity]

    def index_of(self, identity: str) -> int:
        return self.tasks.index(self._by_id[identity])

    def names(self) -> List[str]:
        return [t.name for t in self.tasks]

    def identities(self) -> List[str]:
        return [t.identity for t in self.tasks]

    def with_status(self, *statuses: str) -> List[BuildTask]:
        return [t for t in self.tasks if t.status in statuses]

    def transitive_dependents(self, identity: str) -> List[BuildTask]:
        seen: Set[str] = set()
        stack = list(self._by_id[identity].dependents)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._by_id[current].dependents)
        return [t for t in self.tasks if t.identity in seen]

    def __iter__(self) -> Iterator[BuildTask]:
        return iter(self.tasks)

    def __len__(self):
        return len(self.tasks)

    def __getitem__(self, index):
        return self.tasks[index]

    def __contains__(self, identity):
        return identity in self._by_id


class Resolver:
    def __init__(self, store: Optional[InstalledStateStore] = None, reinstall: Iterable[str] = ()):
        self.store = store
        self.reinstall = set(reinstall)
        self.log = _logger.Logger("resolver")

    def _wants_reinstall(self, formula: Formula) -> bool:
        return formula.full_name in self.reinstall or formula.name in self.reinstall

    def plan(self, graph: DependencyGraph, installed_state: Optional[InstalledStateStore] = None) -> BuildPlan:
        store = installed_state or self.store
        tasks: Dict[str, BuildTask] = {}

        for node in graph.ordered():
            incoming = graph.incoming(node.identity)
            build_only = (not node.root and bool(incoming)
                          and all(q in (BUILD, TEST) for _, q in incoming))
            runtime = [dep for dep, q in node.edges if q not in (BUILD, TEST)]
            task = BuildTask(node.formula, node.options, node.order, node.dependencies, runtime,
                             requested=node.root, build_only=build_only)
            if store is not None and not self._wants_reinstall(node.formula):
                record = store.get(node.identity)
                if record and record.matches(node.formula.source_hash, node.options.as_flags()):
                    task.status = SKIPPED
            tasks[node.identity] = task

        for task in tasks.values():
            for dep in task.prerequisites:
                tasks[dep].dependents.append(task.identity)

        # Kahn's algorithm, ties broken by discovery order
        remaining = {identity: len(t.prerequisites) for identity, t in tasks.items()}
        heap = [(t.order, identity) for identity, t in tasks.items() if remaining[identity] == 0]
        heapq.heapify(heap)
        ordered: List[BuildTask] = []
        while heap:
            _, identity = heapq.heappop(heap)
            task = tasks[identity]
            ordered.append(task)
            for dependent in task.dependents:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(heap, (tasks[dependent].order, dependent))

        if len(ordered) != len(tasks):
            stuck = [identity for identity, count in remaining.items() if count > 0]
            raise CycleError(stuck)

        plan = BuildPlan(ordered, graph.roots, graph.warnings)
        self.log.info("Plan: " + ", ".join(f"{t.identity}[{t.status}]" for t in ordered))
        return plan
