"""Dependency graph resolution tests.

No blockchain needed, constructors return plain values.
"""

import pytest

from melon_deploy.graph import CircularDependency, DependencyGraph, DeploymentNode, UnknownDependency, resolve_all


class Recorder:
    """Graph config that records constructor calls."""

    def __init__(self):
        self.calls = []


def _leaf(name):
    def _construct(config: Recorder, graph):
        config.calls.append(name)
        return f"{name}-instance"

    return _construct


def _depends(name, *deps):
    def _construct(config: Recorder, graph):
        resolved = [graph[d] for d in deps]
        # Every dependency is complete before we run
        assert all(graph.is_resolved(d) for d in deps)
        config.calls.append(name)
        return f"{name}({', '.join(resolved)})"

    return _construct


@pytest.fixture()
def graph() -> DependencyGraph:
    return DependencyGraph(
        Recorder(),
        [
            DeploymentNode("FundFactory", _depends("FundFactory", "Registry", "VaultFactory"), ("Registry", "VaultFactory")),
            DeploymentNode("Engine", _depends("Engine", "Registry"), ("Registry",)),
            DeploymentNode("Registry", _leaf("Registry")),
            DeploymentNode("VaultFactory", _leaf("VaultFactory")),
        ],
    )


def test_dependency_resolved_first(graph: DependencyGraph):
    """Reading a node deploys what it needs first, even if nothing asked for it before."""
    assert not graph.is_resolved("Registry")
    engine = graph["Engine"]
    assert engine == "Engine(Registry-instance)"
    assert graph.resolution_order == ["Registry", "Engine"]
    assert not graph.is_resolved("VaultFactory")


def test_memoised(graph: DependencyGraph):
    """Every constructor runs at most once."""
    graph["Engine"]
    graph["FundFactory"]
    graph["Registry"]
    assert graph.config.calls.count("Registry") == 1


def test_resolve_all(graph: DependencyGraph):
    deployment = resolve_all(graph)
    assert set(deployment) == {"FundFactory", "Engine", "Registry", "VaultFactory"}
    assert deployment["FundFactory"] == "FundFactory(Registry-instance, VaultFactory-instance)"
    assert len(graph.config.calls) == 4
    assert graph.resolution_order.index("Registry") < graph.resolution_order.index("Engine")


def test_static_cycle():
    """Declared cycles are refused when the graph is built."""
    with pytest.raises(CircularDependency) as exc_info:
        DependencyGraph(
            Recorder(),
            [
                DeploymentNode("A", _depends("A", "B"), ("B",)),
                DeploymentNode("B", _depends("B", "C"), ("C",)),
                DeploymentNode("C", _depends("C", "A"), ("A",)),
            ],
        )
    assert exc_info.value.cycle == ["A", "B", "C", "A"]
    assert "A -> B -> C -> A" in str(exc_info.value)


def test_dynamic_cycle():
    """Undeclared reads that loop back are caught while resolving."""
    graph = DependencyGraph(
        Recorder(),
        [
            DeploymentNode("A", _depends("A", "B")),
            DeploymentNode("B", _depends("B", "A")),
        ],
    )
    with pytest.raises(CircularDependency) as exc_info:
        graph["A"]
    assert exc_info.value.cycle == ["A", "B", "A"]
    assert not graph.is_resolved("A")


def test_unknown_dependency():
    with pytest.raises(UnknownDependency):
        DependencyGraph(Recorder(), [DeploymentNode("Engine", _depends("Engine", "Registry"), ("Registry",))])


def test_unknown_node(graph: DependencyGraph):
    with pytest.raises(UnknownDependency):
        graph["Nope"]
    assert "Nope" not in graph


def test_override(graph: DependencyGraph):
    """Overrides replace a constructor and keep the rest of the graph."""
    graph = DependencyGraph(
        Recorder(),
        [graph.nodes[name] for name in graph],
        overrides={"Registry": lambda config, graph: "existing-registry"},
    )
    assert graph["Engine"] == "Engine(existing-registry)"
    assert graph.config.calls == ["Engine"]


def test_override_unknown(graph: DependencyGraph):
    with pytest.raises(UnknownDependency):
        DependencyGraph(Recorder(), list(graph.nodes.values()), overrides={"Nope": _leaf("Nope")})
