"""
Resource graph planning.

- builder: collects resource nodes and materializes reference edges
- resolver: deterministic topological ordering and teardown order
- diff: desired-vs-state classification with replacement propagation
- kinds: per-kind immutable attribute registry
"""

from stackplan.graph.builder import DependencyGraph, GraphBuilder
from stackplan.graph.diff import DiffEngine
from stackplan.graph.kinds import KindRegistry, ResourceKind, default_registry
from stackplan.graph.resolver import PlanResolver, topological_order

__all__ = [
    "DependencyGraph",
    "DiffEngine",
    "GraphBuilder",
    "KindRegistry",
    "PlanResolver",
    "ResourceKind",
    "default_registry",
    "topological_order",
]
