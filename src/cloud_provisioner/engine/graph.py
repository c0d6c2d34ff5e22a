"""Attribute graph and dependency graph utilities."""

from __future__ import annotations

import heapq
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from cloud_provisioner.engine.errors import (
    CyclicDependencyError,
    DuplicateNodeError,
    UnknownReferenceError,
)
from cloud_provisioner.engine.expressions import (
    UNKNOWN,
    Expression,
    Reference,
    SelfRef,
    index_value,
    iter_expressions,
    parse_value,
    transform,
)
from cloud_provisioner.engine.types import Lifecycle, ProvisionerSpec

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping

logger = logging.getLogger(__name__)

AttributeLookup = Callable[[str], "Mapping[str, Any] | None"]


def node_address(kind: str, name: str, module_path: tuple[str, ...] = ()) -> str:
    prefix = "".join(f"module.{m}." for m in module_path)
    return f"{prefix}{kind}.{name}"


@dataclass
class Node:
    """One declared resource instance.

    ``attributes`` hold parsed values: literals mixed with expressions.
    """

    kind: str
    name: str
    attributes: dict[str, Any]
    module_path: tuple[str, ...] = ()
    depends_on: list[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    provisioners: list[ProvisionerSpec] = field(default_factory=list)
    index: int = 0

    @property
    def address(self) -> str:
        return node_address(self.kind, self.name, self.module_path)

    def expressions(self) -> list[Expression]:
        """Every expression in attributes and provisioner connections."""
        found = list(iter_expressions(self.attributes))
        for prov in self.provisioners:
            found.extend(iter_expressions(parse_value(prov.connection)))
        return found

    def references(self) -> list[Reference]:
        return [e for e in self.expressions() if isinstance(e, Reference)]


class DependencyGraph:
    """A directed graph where nodes depend on other nodes."""

    def __init__(
        self,
        nodes: Iterable[str],
        dependencies: Mapping[str, Iterable[str]],
        priorities: Mapping[str, int] | None = None,
    ) -> None:
        self._nodes = set(nodes)
        self._priorities = priorities or {}
        # node -> filtered deps within graph
        self._deps: dict[str, set[str]] = {}
        for node in self._nodes:
            deps = set(dependencies.get(node, []))
            self._deps[node] = {d for d in deps if d in self._nodes}

    def _key(self, node: str) -> tuple[int, str]:
        return (self._priorities.get(node, 0), node)

    def topological_order(self) -> list[str]:
        """Return deterministic topo order (priority, then lexicographic tie-break)."""
        indegree: dict[str, int] = dict.fromkeys(self._nodes, 0)
        dependents: dict[str, set[str]] = {n: set() for n in self._nodes}

        for node, deps in self._deps.items():
            indegree[node] = len(deps)
            for dep in deps:
                dependents[dep].add(node)

        ready: list[tuple[int, str]] = [self._key(n) for n, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for child in sorted(dependents[node]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, self._key(child))

        if len(order) != len(self._nodes):
            raise CyclicDependencyError(self._find_cycle(self._nodes - set(order)))

        return order

    def _find_cycle(self, remaining: set[str]) -> list[str]:
        # Every unordered node still waits on another unordered node, so
        # following those edges must eventually revisit a node.
        node = min(remaining, key=self._key)
        position: dict[str, int] = {}
        path: list[str] = []
        while node not in position:
            position[node] = len(path)
            path.append(node)
            node = min((d for d in self._deps[node] if d in remaining), key=self._key)
        return [*path[position[node] :], node]

    def reverse_topological_order(self) -> list[str]:
        order = self.topological_order()
        order.reverse()
        return order


class AttributeGraph:
    """Declared nodes, their attribute expressions and root outputs."""

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self.outputs: dict[str, Any] = {}

    def add_node(
        self,
        kind: str,
        name: str,
        attributes: Mapping[str, Any],
        *,
        module_path: tuple[str, ...] = (),
        depends_on: Iterable[str] = (),
        lifecycle: Lifecycle | None = None,
        provisioners: Iterable[ProvisionerSpec] = (),
    ) -> Node:
        node = Node(
            kind=kind,
            name=name,
            attributes=dict(attributes),
            module_path=tuple(module_path),
            depends_on=list(depends_on),
            lifecycle=lifecycle or Lifecycle(),
            provisioners=list(provisioners),
            index=len(self._nodes),
        )
        if node.address in self._nodes:
            raise DuplicateNodeError(node.address)
        self._nodes[node.address] = node
        return node

    def __contains__(self, address: object) -> bool:
        return address in self._nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, address: str) -> Node:
        return self._nodes[address]

    @property
    def addresses(self) -> list[str]:
        return list(self._nodes)

    def _module_members(self, prefix: str) -> list[str]:
        return [a for a in self._nodes if a.startswith(prefix + ".")]

    def _check_references(self, source: str, value: Any) -> list[str]:
        targets: list[str] = []
        for expr in iter_expressions(value):
            if not isinstance(expr, Reference):
                # self/var/module expressions cannot survive module expansion here
                raise UnknownReferenceError(source, str(expr))
            if expr.address not in self._nodes:
                raise UnknownReferenceError(source, expr.address)
            targets.append(expr.address)
        return targets

    def resolve_references(self) -> dict[str, list[str]]:
        """Validate every reference and return ``address -> dependencies``.

        Dependencies come from attribute references, provisioner connection
        references (other than ``self``) and explicit ``depends_on`` entries.
        ``depends_on`` may name a module instance, meaning all of its nodes.
        """
        dep_map: dict[str, list[str]] = {}
        for addr, node in self._nodes.items():
            targets = self._check_references(addr, node.attributes)

            for prov in node.provisioners:
                for expr in iter_expressions(parse_value(prov.connection)):
                    if not isinstance(expr, SelfRef):
                        targets.extend(self._check_references(addr, expr))

            for entry in node.depends_on:
                if entry in self._nodes:
                    targets.append(entry)
                    continue
                members = self._module_members(entry) if entry.startswith("module.") else []
                if not members:
                    raise UnknownReferenceError(addr, entry)
                targets.extend(members)

            dep_map[addr] = [t for t in dict.fromkeys(targets) if t != addr]

        for name, value in self.outputs.items():
            self._check_references(f"output.{name}", value)

        logger.debug("Resolved references for %d nodes", len(dep_map))
        return dep_map

    def topological_order(self, dep_map: Mapping[str, Iterable[str]] | None = None) -> list[str]:
        """Deterministic apply order; declaration order breaks ties."""
        if dep_map is None:
            dep_map = self.resolve_references()
        priorities = {addr: node.index for addr, node in self._nodes.items()}
        return DependencyGraph(self._nodes, dep_map, priorities=priorities).topological_order()


def evaluate(
    value: Any,
    lookup: AttributeLookup,
    *,
    self_attributes: Mapping[str, Any] | None = None,
) -> Any:
    """Resolve references in *value* against known attribute values.

    *lookup* returns the attribute mapping known for an address, or ``None``
    when nothing is known yet. Missing attributes evaluate to ``UNKNOWN``.
    Values looked up may themselves contain ``UNKNOWN``, which propagates.
    """

    def _resolve(expr: Expression) -> Any:
        if isinstance(expr, SelfRef):
            attrs = self_attributes
        elif isinstance(expr, Reference):
            attrs = lookup(expr.address)
        else:
            raise UnknownReferenceError("<evaluate>", str(expr))
        if attrs is None or expr.path[0] not in attrs:
            return UNKNOWN
        return index_value(attrs[expr.path[0]], expr.path[1:])

    return transform(value, _resolve)
