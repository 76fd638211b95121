"""Unit tests for plan resolution and topological ordering."""

import pytest

from stackplan.core.exceptions import CyclicDependencyError, UnresolvedReferenceError
from stackplan.graph.builder import GraphBuilder
from stackplan.graph.resolver import PlanResolver, topological_order
from stackplan.models.resources import DeploymentUnit, ResourceNode, ref
from stackplan.models.state import NodeState, StateSnapshot


@pytest.fixture
def resolver() -> PlanResolver:
    return PlanResolver()


class TestTopologicalOrder:
    """Test the ordering primitive."""

    def test_dependencies_come_first(self):
        order = topological_order(["service", "storage", "net"], {
            "service": ["storage"],
            "storage": ["net"],
        })

        assert order == ["net", "storage", "service"]

    def test_independent_nodes_keep_insertion_order(self):
        assert topological_order(["c", "a", "b"], {}) == ["c", "a", "b"]

    def test_two_node_cycle_named(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            topological_order(["a", "b"], {"a": ["b"], "b": ["a"]})

        assert exc_info.value.node_ids == ["a", "b", "a"]
        assert "a -> b -> a" in str(exc_info.value)

    def test_self_cycle(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            topological_order(["a"], {"a": ["a"]})

        assert exc_info.value.node_ids == ["a", "a"]

    def test_cycle_path_excludes_entry_nodes(self):
        """Only the members of the cycle are reported."""
        with pytest.raises(CyclicDependencyError) as exc_info:
            topological_order(
                ["root", "x", "y", "z"],
                {"root": ["x"], "x": ["y"], "y": ["z"], "z": ["x"]},
            )

        assert exc_info.value.node_ids == ["x", "y", "z", "x"]

    def test_unknown_edge_target(self):
        with pytest.raises(UnresolvedReferenceError):
            topological_order(["a"], {"a": ["ghost"]})

    def test_deep_chain_does_not_recurse(self):
        """Chains far beyond the recursion limit still resolve."""
        ids = [f"n{i}" for i in range(5000)]
        edges = {ids[i]: [ids[i - 1]] for i in range(1, len(ids))}

        order = topological_order(list(reversed(ids)), edges)

        assert order == ids


class TestPlanResolver:
    """Test plan construction."""

    def test_sample_unit_order(self, resolver, sample_unit):
        plan = resolver.resolve(GraphBuilder.from_unit(sample_unit).build())

        assert plan.unit == "app"
        assert plan.steps == ("net", "storage", "service")

    def test_declaration_order_does_not_break_dependencies(self, resolver):
        unit = DeploymentUnit(name="app")
        unit.add("service", "compute-service", file_system_id=ref("storage.id"))
        unit.add("storage", "file-system", network_id=ref("net.id"))
        unit.add("net", "network")

        plan = resolver.resolve(GraphBuilder.from_unit(unit).build())

        assert plan.steps == ("net", "storage", "service")

    def test_resolution_is_deterministic(self, resolver, sample_unit):
        sample_unit.add("logs", "log-group", name="/app")
        sample_unit.add("alarm", "log-group", target=ref("net.id"))
        graph = GraphBuilder.from_unit(sample_unit).build()

        plans = {resolver.resolve(graph).steps for _ in range(5)}

        assert len(plans) == 1

    def test_cycle_through_references(self, resolver):
        builder = GraphBuilder("app")
        builder.add_node(ResourceNode(id="a", kind="network", attributes={"x": ref("b.id")}))
        builder.add_node(ResourceNode(id="b", kind="network", attributes={"x": ref("a.id")}))

        with pytest.raises(CyclicDependencyError):
            resolver.resolve(builder.build())

    def test_order_of_arbitrary_ids(self, resolver):
        order = resolver.order(["compute", "filesystem", "network"], {
            "compute": ["network", "filesystem"],
            "filesystem": ["network"],
        })

        assert order == ["network", "filesystem", "compute"]

    def test_reverse(self, resolver, sample_unit):
        plan = resolver.resolve(GraphBuilder.from_unit(sample_unit).build())

        assert resolver.reverse(plan).steps == ("service", "storage", "net")

    def test_resolve_state_uses_recorded_dependencies(self, resolver):
        snapshot = StateSnapshot(
            unit="app",
            resources={
                "service": NodeState(kind="compute-service", depends_on=["storage", "gone"]),
                "storage": NodeState(kind="file-system", depends_on=["net"]),
                "net": NodeState(kind="network"),
            },
        )

        plan = resolver.resolve_state(snapshot)

        assert plan.steps == ("net", "storage", "service")
