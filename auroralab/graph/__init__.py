"""Resource dependency graph."""

from .builder import ResourceGraph, ResourceNode, ResourceKind
from .deployment import build_deployment_graph

__all__ = [
    "ResourceGraph",
    "ResourceNode",
    "ResourceKind",
    "build_deployment_graph",
]
