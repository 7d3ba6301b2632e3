"""Resource dependency graph builder."""

import copy
import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from graphlib import CycleError, TopologicalSorter
from typing import Any, Dict, Iterator, List, Set, Tuple, Union

import structlog

from auroralab.exceptions import InvalidGraph


logger = structlog.get_logger()


class ResourceKind(str, Enum):
    """Types of resource nodes the stack knows how to realize."""

    NETWORK = "network"
    DATABASE_CLUSTER = "database_cluster"
    CLUSTER_INSTANCE = "cluster_instance"
    SCALING_PATCH = "scaling_patch"
    SERVERLESS_INSTANCE = "serverless_instance"
    COMPUTE_FLEET = "compute_fleet"
    ACCESS_GRANT = "access_grant"


@dataclass(frozen=True)
class ResourceNode:
    """
    A declared resource: stable logical id, type tag and opaque config payload.

    The payload is owned by the graph. Reading ``config`` returns a fresh copy,
    so a handle cannot be used to rewrite a declared node.
    """

    logical_id: str
    kind: ResourceKind
    _config: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def config(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)

    def to_dict(self) -> Dict[str, Any]:
        return {"logical_id": self.logical_id, "kind": self.kind.value, "config": self.config}


NodeRef = Union[ResourceNode, str]


class ResourceGraph:
    """
    Directed acyclic graph of resource declarations.

    An edge ``dependency -> dependent`` means the dependent must not begin
    provisioning until the dependency has finished. Edges are only ever added
    through :meth:`add_dependency`; nothing is inferred from config payloads.
    """

    def __init__(self, name: str = "default"):
        self.name = name
        self._nodes: Dict[str, ResourceNode] = {}
        self._order: Dict[str, int] = {}
        # dependent -> set of dependencies
        self._dependencies: Dict[str, Set[str]] = {}

    def __contains__(self, ref: object) -> bool:
        if isinstance(ref, ResourceNode):
            return ref.logical_id in self._nodes
        return ref in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    @property
    def nodes(self) -> List[ResourceNode]:
        """Nodes in declaration order."""
        return list(self._nodes.values())

    @property
    def edges(self) -> Set[Tuple[str, str]]:
        """All edges as ``(dependency, dependent)`` pairs of logical ids."""
        return {
            (dependency, dependent)
            for dependent, dependencies in self._dependencies.items()
            for dependency in dependencies
        }

    def declare(
        self, logical_id: str, kind: ResourceKind, config: Dict[str, Any] | None = None
    ) -> ResourceNode:
        """
        Register a typed resource node.

        Declaring the same id again with an equal kind and config is a no-op
        that returns the existing handle. Any other re-declaration is rejected.

        Args:
            logical_id: Stable identifier of the resource
            kind: Resource type tag
            config: Configuration payload, passed through untouched

        Returns:
            Handle of the declared node

        Raises:
            InvalidGraph: If the id is already declared differently
        """
        if not logical_id:
            raise InvalidGraph("Resource logical id must not be empty")

        kind = ResourceKind(kind)
        payload = copy.deepcopy(config) if config else {}

        existing = self._nodes.get(logical_id)
        if existing is not None:
            if existing.kind == kind and existing._config == payload:
                return existing
            raise InvalidGraph(
                f"Resource {logical_id!r} is already declared as {existing.kind.value} "
                "with a different configuration"
            )

        node = ResourceNode(logical_id=logical_id, kind=kind, _config=payload)
        self._nodes[logical_id] = node
        self._order[logical_id] = len(self._order)
        self._dependencies[logical_id] = set()

        logger.debug("Resource declared", graph=self.name, logical_id=logical_id, kind=kind.value)

        return node

    def add_dependency(self, dependent: NodeRef, dependency: NodeRef) -> None:
        """
        Record that ``dependent`` must wait for ``dependency``.

        Args:
            dependent: Node (or logical id) that is provisioned later
            dependency: Node (or logical id) that must finish first

        Raises:
            InvalidGraph: If either node is undeclared or the edge closes a cycle
        """
        dependent_id = self._resolve(dependent)
        dependency_id = self._resolve(dependency)

        if dependent_id == dependency_id:
            raise InvalidGraph(f"Resource {dependent_id!r} cannot depend on itself")

        if dependency_id in self._dependencies[dependent_id]:
            return

        if self._reaches(dependency_id, dependent_id):
            raise InvalidGraph(
                f"Dependency {dependency_id!r} -> {dependent_id!r} would create a cycle"
            )

        self._dependencies[dependent_id].add(dependency_id)

        logger.debug(
            "Dependency added",
            graph=self.name,
            dependent=dependent_id,
            dependency=dependency_id,
        )

    def get(self, logical_id: str) -> ResourceNode:
        """Return the node declared under ``logical_id``."""
        return self._nodes[self._resolve(logical_id)]

    def dependencies_of(self, ref: NodeRef) -> Set[str]:
        """Logical ids the given node directly depends on."""
        return set(self._dependencies[self._resolve(ref)])

    def dependents_of(self, ref: NodeRef) -> Set[str]:
        """Logical ids that directly depend on the given node."""
        logical_id = self._resolve(ref)
        return {
            dependent
            for dependent, dependencies in self._dependencies.items()
            if logical_id in dependencies
        }

    def nodes_of_kind(self, kind: ResourceKind) -> List[ResourceNode]:
        return [node for node in self._nodes.values() if node.kind == kind]

    def validate(self) -> None:
        """
        Check the whole graph for dangling references and cycles.

        Raises:
            InvalidGraph: If the graph is malformed
        """
        for dependent, dependencies in self._dependencies.items():
            dangling = dependencies - set(self._nodes)
            if dangling:
                raise InvalidGraph(
                    f"Resource {dependent!r} depends on undeclared resources: {sorted(dangling)}"
                )

        self.topological_order()

    def topological_order(self) -> List[ResourceNode]:
        """
        Order nodes so every dependency precedes its dependents.

        Nodes that become ready at the same time keep their declaration order.

        Raises:
            InvalidGraph: If the graph contains a cycle
        """
        sorter = TopologicalSorter(self._dependencies)

        try:
            sorter.prepare()
        except CycleError as e:
            raise InvalidGraph(f"Resource graph contains a cycle: {e.args[1]}") from e

        ordered: List[ResourceNode] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready(), key=self._order.__getitem__)
            ordered.extend(self._nodes[logical_id] for logical_id in ready)
            sorter.done(*ready)

        return ordered

    def to_dict(self) -> Dict[str, Any]:
        """Render nodes and edges as plain data."""
        return {
            "name": self.name,
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "edges": [
                {"dependency": dependency, "dependent": dependent}
                for dependency, dependent in sorted(self.edges)
            ],
        }

    def fingerprint(self) -> str:
        """SHA-256 of the canonical JSON rendering of nodes and edges."""
        rendered = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(rendered.encode()).hexdigest()

    def _resolve(self, ref: NodeRef) -> str:
        logical_id = ref.logical_id if isinstance(ref, ResourceNode) else ref
        if logical_id not in self._nodes:
            raise InvalidGraph(f"Resource {logical_id!r} has not been declared")
        return logical_id

    def _reaches(self, start: str, target: str) -> bool:
        """Whether ``start`` transitively depends on ``target``."""
        stack = [start]
        seen: Set[str] = set()

        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependencies.get(current, ()))

        return False
