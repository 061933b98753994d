"""Dependency graph for template resources.

Nodes are resource indices in declaration order. An edge A -> B means
"A must be materialized before B can be evaluated". Edges come from:

- implicit references: B's name, location or property bag mentions A
  (directly, or through a variable)
- parent relations: a child depends on its parent
- explicit dependsOn hints
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Any, Optional

from common import CycleError, UnresolvedReferenceError
from expressions import iter_expressions, references
from template import Resource, Template

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    """A dependency edge: `source` is materialized before `target`."""
    source: str
    target: str
    reason: str  # 'reference', 'parent' or 'dependsOn'

    def __repr__(self) -> str:
        return f"Edge({self.source} -> {self.target}, {self.reason})"


class DependencyGraph:
    """Explicit dependency graph over a template's resources.

    Construction scans every resource for references and raises
    UnresolvedReferenceError for unknown names and CycleError for cycles
    between variables. Resource cycles surface from topological_order().
    """

    def __init__(self, template: Template):
        self.template = template
        self._symbols: list[str] = list(template.resources)
        self._index: dict[str, int] = {s: i for i, s in enumerate(self._symbols)}
        self._successors: dict[int, set[int]] = {i: set() for i in range(len(self._symbols))}
        self._predecessors: dict[int, set[int]] = {i: set() for i in range(len(self._symbols))}
        self._edges: dict[tuple[int, int], Edge] = {}
        self._variable_refs: dict[str, list[str]] = {}
        self._build()

    def _build(self) -> None:
        for name in self.template.variables:
            self._variable_resources(name, [])
        for res in self.template.resource_list:
            for dep in self._resource_dependencies(res):
                self._add_edge(*dep)
        logger.debug(f"Built dependency graph: {len(self._symbols)} resources, "
                     f"{len(self._edges)} edges")

    def _add_edge(self, source: str, target: str, reason: str) -> None:
        key = (self._index[source], self._index[target])
        if key in self._edges:
            return
        self._edges[key] = Edge(source, target, reason)
        self._successors[key[0]].add(key[1])
        self._predecessors[key[1]].add(key[0])

    def _resource_dependencies(self, res: Resource) -> list[tuple[str, str, str]]:
        deps: list[tuple[str, str, str]] = []

        if res.parent is not None:
            if res.parent not in self.template.resources:
                raise UnresolvedReferenceError(res.symbol, res.parent, 'parent is not a resource')
            deps.append((res.parent, res.symbol, 'parent'))

        for target in res.depends_on:
            if target not in self.template.resources:
                raise UnresolvedReferenceError(res.symbol, target, 'dependsOn entry is not a resource')
            deps.append((target, res.symbol, 'dependsOn'))

        values: list[Any] = [res.name, res.body]
        if res.location is not None:
            values.append(res.location)
        for source in self.scan(values, res.symbol):
            deps.append((source, res.symbol, 'reference'))

        return deps

    def scan(self, value: Any, owner: str) -> list[str]:
        """Resources referenced by a compiled value, in first-use order.

        Variables are expanded. Unknown identifiers raise
        UnresolvedReferenceError naming `owner`.
        """
        found: list[str] = []
        for expr in iter_expressions(value):
            for ref in references(expr.node):
                kind = self.template.symbol_kind(ref.name)
                if kind is None:
                    raise UnresolvedReferenceError(owner, ref.name)
                if kind == 'resource':
                    names = [ref.name]
                elif kind == 'variable':
                    names = self._variable_resources(ref.name, [])
                else:
                    names = []
                for name in names:
                    if name not in found:
                        found.append(name)
        return found

    def _variable_resources(self, name: str, stack: list[str]) -> list[str]:
        if name in self._variable_refs:
            return self._variable_refs[name]
        if name in stack:
            raise CycleError(stack[stack.index(name):] + [name])
        stack.append(name)
        found: list[str] = []
        owner = f'variables.{name}'
        for expr in iter_expressions(self.template.variables[name]):
            for ref in references(expr.node):
                kind = self.template.symbol_kind(ref.name)
                if kind is None:
                    raise UnresolvedReferenceError(owner, ref.name)
                if kind == 'resource':
                    names = [ref.name]
                elif kind == 'variable':
                    names = self._variable_resources(ref.name, stack)
                else:
                    names = []
                for n in names:
                    if n not in found:
                        found.append(n)
        stack.pop()
        self._variable_refs[name] = found
        return found

    @property
    def symbols(self) -> list[str]:
        """Resource symbolic names in declaration order."""
        return list(self._symbols)

    @property
    def edges(self) -> list[Edge]:
        """All edges, sorted by (source, target) declaration index."""
        return [self._edges[k] for k in sorted(self._edges)]

    def dependencies(self, symbol: str) -> list[str]:
        """Resources that must precede `symbol`, in declaration order."""
        return [self._symbols[i] for i in sorted(self._predecessors[self._index[symbol]])]

    def dependents(self, symbol: str) -> list[str]:
        """Resources that wait on `symbol`, in declaration order."""
        return [self._symbols[i] for i in sorted(self._successors[self._index[symbol]])]

    def find_cycle(self) -> Optional[list[str]]:
        """Return one cycle as [a, b, ..., a], or None if the graph is acyclic.

        Depth-first search starting from the earliest-declared resource, so
        the reported cycle is stable across runs.
        """
        WHITE, GREY, BLACK = 0, 1, 2
        color = [WHITE] * len(self._symbols)

        for start in range(len(self._symbols)):
            if color[start] != WHITE:
                continue
            path: list[int] = [start]
            iters = [iter(sorted(self._successors[start]))]
            color[start] = GREY
            while iters:
                nxt = next(iters[-1], None)
                if nxt is None:
                    color[path.pop()] = BLACK
                    iters.pop()
                    continue
                if color[nxt] == GREY:
                    cycle = path[path.index(nxt):] + [nxt]
                    return [self._symbols[i] for i in cycle]
                if color[nxt] == WHITE:
                    color[nxt] = GREY
                    path.append(nxt)
                    iters.append(iter(sorted(self._successors[nxt])))
        return None

    def topological_order(self) -> list[str]:
        """Return all resources in dependency order.

        Kahn's algorithm with a min-heap on declaration index: whenever
        several resources are ready, the earliest-declared goes first.

        Raises:
            CycleError: If the graph has a cycle (no partial order is returned)
        """
        indegree = {i: len(p) for i, p in self._predecessors.items()}
        ready = [i for i, d in indegree.items() if d == 0]
        heapq.heapify(ready)
        ordered: list[int] = []

        while ready:
            node = heapq.heappop(ready)
            ordered.append(node)
            for succ in self._successors[node]:
                indegree[succ] -= 1
                if indegree[succ] == 0:
                    heapq.heappush(ready, succ)

        if len(ordered) != len(self._symbols):
            cycle = self.find_cycle()
            # Kahn leaving nodes unprocessed guarantees find_cycle succeeds
            raise CycleError(cycle or [self._symbols[i] for i in range(len(self._symbols))
                                       if i not in ordered])

        return [self._symbols[i] for i in ordered]
