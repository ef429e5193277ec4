# cellar/modules/graph.py
"""
Dependency graph builder.

Breadth-first expansion from the requested formulae:
 - required / build dependencies are always followed
 - recommended dependencies are followed unless --without-<dep>
 - optional dependencies only with --with-<dep>
 - test dependencies only when include_test is set
Option requests arriving at the same formula from different parents are merged.
A re-expanded parent withdraws the requests of its previous expansion, so only
parents still in the final graph count; contradicting requests between them raise
OptionConflictError. Requirements are evaluated once
per check; cycles are detected with a white/gray/black depth-first walk.
"""

from __future__ import annotations
from collections import deque
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from cellar.modules.errors import (CycleError, OptionConflictError, ResolutionError,
                                   UnsatisfiedRequirementError)
from cellar.modules.formula import (BUILD, OPTIONAL, RECOMMENDED, REQUIRED, TEST, Formula,
                                    FormulaRepository)
from cellar.modules.options import BuildOptions, flags_to_requests, to_flag
from cellar.modules.requirement import RequirementChecker, RequirementSpec
from cellar.modules import logger as _logger

CALLER = "command line"

WHITE, GRAY, BLACK = 0, 1, 2


class GraphWarning:
    def __init__(self, formula: str, requirement: str, message: str):
        self.formula = formula
        self.requirement = requirement
        self.message = message

    def __str__(self):
        text = f"{self.formula}: requirement '{self.requirement}' not satisfied"
        if self.message:
            text += f"\n{self.message}"
        return text

    def __repr__(self):
        return f"GraphWarning({self.formula!r}, {self.requirement!r})"


class GraphNode:
    def __init__(self, formula: Formula, options: BuildOptions, order: int):
        self.formula = formula
        self.options = options
        self.order = order
        self.edges: List[Tuple[str, str]] = []   # (dependency identity, qualifier)
        self.root = False

    @property
    def identity(self) -> str:
        return self.formula.full_name

    @property
    def dependencies(self) -> List[str]:
        return [dep for dep, _ in self.edges]

    def __repr__(self):
        return f"GraphNode({self.identity!r}, {self.options.as_flags()})"


class DependencyGraph:
    def __init__(self):
        self.nodes: Dict[str, GraphNode] = {}
        self.roots: List[str] = []
        self.warnings: List[GraphWarning] = []

    def add(self, node: GraphNode):
        self.nodes[node.identity] = node

    def dependencies(self, identity: str) -> List[str]:
        return self.nodes[identity].dependencies

    def dependents(self, identity: str) -> List[str]:
        return [n.identity for n in self.ordered() if identity in n.dependencies]

    def incoming(self, identity: str) -> List[Tuple[str, str]]:
        """[(dependent, qualifier)] for every edge pointing at identity."""
        found = []
        for node in self.ordered():
            for dep, qualifier in node.edges:
                if dep == identity:
                    found.append((node.identity, qualifier))
        return found

    def edges(self) -> Iterable[Tuple[str, str, str]]:
        """Yield (dependency, dependent, qualifier)."""
        for node in self.ordered():
            for dep, qualifier in node.edges:
                yield dep, node.identity, qualifier

    def ordered(self) -> List[GraphNode]:
        return sorted(self.nodes.values(), key=lambda n: n.order)

    def to_dot(self) -> str:
        lines = ["digraph dependencies {"]
        for node in self.ordered():
            if not node.edges:
                lines.append(f'  "{node.identity}";')
            for dep, qualifier in node.edges:
                style = ' [style=dashed]' if qualifier in (BUILD, TEST) else ""
                lines.append(f'  "{dep}" -> "{node.identity}"{style};')
        lines.append("}")
        return "\n".join(lines)

    def __contains__(self, identity):
        return identity in self.nodes

    def __len__(self):
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)


SelectedOptions = Union[Mapping[str, Iterable[str]], Iterable[str], None]


class GraphBuilder:
    def __init__(self, repository: Optional[FormulaRepository] = None,
                 checker: Optional[RequirementChecker] = None,
                 include_test: bool = False, exclude: Iterable[str] = ()):
        self.repository = repository or FormulaRepository()
        self.checker = checker or RequirementChecker()
        self.include_test = include_test
        self.exclude = set(exclude)
        self.log = _logger.Logger("graph")

    # ---------------------------
    # Inclusion policy
    # ---------------------------
    def _included(self, dep, options: BuildOptions) -> bool:
        if dep.name in self.exclude or dep.short_name in self.exclude:
            return False
        if dep.qualifier in (REQUIRED, BUILD):
            return True
        if dep.qualifier in (RECOMMENDED, OPTIONAL):
            return options.with_(dep.short_name)
        if dep.qualifier == TEST:
            return self.include_test
        return False

    @staticmethod
    def _root_flags(selected: SelectedOptions, formula: Formula, requested_as: str) -> List[str]:
        if selected is None:
            return []
        if isinstance(selected, Mapping):
            for key in (requested_as, formula.full_name, formula.name):
                if key in selected:
                    return list(selected[key])
            return []
        return list(selected)

    # ---------------------------
    # Expansion
    # ---------------------------
    def build_graph(self, roots: Iterable[str], selected_options: SelectedOptions = None) -> DependencyGraph:
        formulas: Dict[str, Formula] = {}
        order: Dict[str, int] = {}
        # requests[dependency][requester] -> {option: value}; only the requester's latest expansion counts
        requests: Dict[str, Dict[str, Dict[str, bool]]] = {}
        wanted_at: Dict[str, Dict[str, bool]] = {}
        resolved: Dict[str, BuildOptions] = {}
        edges: Dict[str, List[Tuple[str, str]]] = {}
        fatal: Dict[str, List[RequirementSpec]] = {}
        soft: Dict[str, List[RequirementSpec]] = {}
        expansions: Dict[str, int] = {}
        queue = deque()
        queued: Set[str] = set()

        def register(formula: Formula) -> str:
            identity = formula.full_name
            if identity not in formulas:
                formulas[identity] = formula
                order[identity] = len(order)
            return identity

        def enqueue(identity: str):
            if identity not in queued:
                queued.add(identity)
                queue.append(identity)

        def rank(requester: str) -> int:
            return -1 if requester == CALLER else order[requester]

        def merged(identity: str) -> Dict[str, bool]:
            # earliest requester wins until the final conflict check
            wanted: Dict[str, bool] = {}
            by_requester = requests.get(identity, {})
            for requester in sorted(by_requester, key=rank):
                for name, value in by_requester[requester].items():
                    wanted.setdefault(name, value)
            return wanted

        def request(identity: str, requester: str, incoming: Mapping[str, bool]):
            current = requests.setdefault(identity, {}).setdefault(requester, {})
            for name, value in incoming.items():
                if current.get(name, value) != value:
                    raise OptionConflictError(identity, name, [requester])
                current[name] = value

        def retract(requester: str) -> Set[str]:
            touched = set()
            for identity, by_requester in requests.items():
                if by_requester.pop(requester, None) is not None:
                    touched.add(identity)
            return touched

        def stale(identity: str) -> bool:
            return identity not in edges or merged(identity) != wanted_at.get(identity)

        def expand(identity: str):
            formula = formulas[identity]
            wanted = merged(identity)
            options = BuildOptions.resolve(identity, formula.options, wanted)
            wanted_at[identity] = wanted
            resolved[identity] = options
            touched = retract(identity)

            node_edges: List[Tuple[str, str]] = []
            for dep in formula.dependencies:
                if not self._included(dep, options):
                    continue
                dep_formula = self.repository.load(dep.name, prefer_tap=formula.tap)
                dep_id = register(dep_formula)
                node_edges.append((dep_id, dep.qualifier))
                request(dep_id, identity, dep.requests())
                touched.add(dep_id)

            fatal[identity], soft[identity] = [], []
            for req in formula.requirements:
                if self.checker.satisfied(req):
                    continue
                if req.default_formula and not (req.default_formula in self.exclude):
                    dep_formula = self.repository.load(req.default_formula, prefer_tap=formula.tap)
                    dep_id = register(dep_formula)
                    if dep_id not in [d for d, _ in node_edges]:
                        node_edges.append((dep_id, REQUIRED))
                        request(dep_id, identity, {})
                        touched.add(dep_id)
                    soft[identity].append(req)
                elif req.fatal:
                    fatal[identity].append(req)
                else:
                    soft[identity].append(req)

            edges[identity] = node_edges
            self.log.debug(f"expanded {identity} {options.as_flags()} -> {[d for d, _ in node_edges]}")
            for dep_id in sorted(touched, key=rank):
                if stale(dep_id):
                    enqueue(dep_id)

        root_ids: List[str] = []
        for requested in roots:
            formula = self.repository.load(requested)
            identity = register(formula)
            if identity not in root_ids:
                root_ids.append(identity)
            flags = self._root_flags(selected_options, formula, requested)
            request(identity, CALLER, flags_to_requests(flags))
            enqueue(identity)

        while queue:
            while queue:
                identity = queue.popleft()
                queued.discard(identity)
                expansions[identity] = expansions.get(identity, 0) + 1
                if expansions[identity] > len(formulas) + 1:
                    # options only keep changing when they feed back through a cycle
                    self._check_cycles(sorted(edges, key=rank),
                                       lambda i: [d for d, _ in edges.get(i, [])])
                    raise ResolutionError(f"{identity}: options did not settle", formula=identity)
                expand(identity)

            # nodes cut off by later option changes no longer request anything
            reachable = self._reachable(root_ids, edges)
            touched = set()
            for identity in [i for i in edges if i not in reachable]:
                del edges[identity]
                touched |= retract(identity)
            for identity in sorted(touched & reachable, key=rank):
                if stale(identity):
                    enqueue(identity)

        reachable = self._reachable(root_ids, edges)
        graph = DependencyGraph()
        graph.roots = root_ids
        for identity in sorted(reachable, key=lambda i: order[i]):
            node = GraphNode(formulas[identity], resolved[identity], order[identity])
            node.edges = list(edges.get(identity, []))
            node.root = identity in root_ids
            graph.add(node)

        self._check_cycles(graph, graph.dependencies)
        for node in graph.ordered():
            self._check_conflicts(node.identity, requests.get(node.identity, {}), rank)

        for node in graph.ordered():
            for req in fatal.get(node.identity, []):
                raise UnsatisfiedRequirementError(node.identity, req.name, req.message)
            for req in soft.get(node.identity, []):
                message = req.message
                if req.default_formula:
                    message = (message + "\n" if message else "") + \
                        f"Adding {req.default_formula} to satisfy it."
                graph.warnings.append(GraphWarning(node.identity, req.name, message))

        self.log.info(f"Resolved graph for {', '.join(root_ids)}: {len(graph)} formulae")
        return graph

    @staticmethod
    def _reachable(roots: Iterable[str], edges: Mapping[str, List[Tuple[str, str]]]) -> Set[str]:
        reachable: Set[str] = set()
        stack = list(roots)
        while stack:
            identity = stack.pop()
            if identity in reachable:
                continue
            reachable.add(identity)
            stack.extend(dep for dep, _ in edges.get(identity, []))
        return reachable

    @staticmethod
    def _check_conflicts(identity: str, by_requester: Mapping[str, Mapping[str, bool]], rank):
        seen: Dict[str, Tuple[bool, str]] = {}
        for requester in sorted(by_requester, key=rank):
            for name, value in by_requester[requester].items():
                if name in seen and seen[name][0] != value:
                    raise OptionConflictError(identity, name, [seen[name][1], requester])
                seen.setdefault(name, (value, requester))

    # ---------------------------
    # Cycle detection
    # ---------------------------
    @staticmethod
    def _check_cycles(identities: Iterable[str], dependencies: Callable[[str], List[str]]):
        color: Dict[str, int] = {}

        for start in identities:
            if color.get(start, WHITE) != WHITE:
                continue
            color[start] = GRAY
            path = [start]
            pending = [iter(dependencies(start))]
            while pending:
                dep = next(pending[-1], None)
                if dep is None:
                    pending.pop()
                    color[path.pop()] = BLACK
                    continue
                state = color.get(dep, WHITE)
                if state == GRAY:
                    raise CycleError(path[path.index(dep):] + [dep])
                if state == WHITE:
                    color[dep] = GRAY
                    path.append(dep)
                    pending.append(iter(dependencies(dep)))


def describe_options(options: BuildOptions, defaults: Mapping) -> List[str]:
    """Only the flags that differ from the formula's defaults."""
    return [to_flag(name, options.with_(name)) for name in options
            if name in defaults and defaults[name].default != options.with_(name)]
