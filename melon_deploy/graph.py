"""Lazily resolved deployment dependency graph.

Each contract is a named node with a constructor function. A constructor asks the graph
for the contracts it depends on, which deploys (or adopts) them first, on demand.
Every node is resolved at most once per graph and the result is memoised,
so nothing needs to be sorted topologically up front.

Example:

.. code-block:: python

    def deploy_registry(config, graph):
        return config.nab("Registry", [config.deployer])

    def deploy_engine(config, graph):
        return config.nab("Engine", [30 * 24 * 3600, graph["Registry"].address])

    graph = DependencyGraph(config, [
        DeploymentNode("Registry", deploy_registry),
        DeploymentNode("Engine", deploy_engine, dependencies=("Registry",)),
    ])

    # Deploys Registry first, then Engine
    engine = graph["Engine"]

    deployment = resolve_all(graph)
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Optional

logger = logging.getLogger(__name__)


#: ``constructor(config, graph) -> instance``
NodeConstructor = Callable[[Any, "DependencyGraph"], Any]

#: Fully resolved graph, node name -> instance
Deployment = dict[str, Any]


class CircularDependency(Exception):
    """Deployment nodes depend on each other in a loop."""

    def __init__(self, cycle: list[str]):
        super().__init__(f"Circular deployment dependency: {' -> '.join(cycle)}")
        self.cycle = cycle


class UnknownDependency(KeyError):
    """A node name that was never declared in the graph."""


@dataclass(frozen=True, slots=True)
class DeploymentNode:
    """A deployable contract in the graph."""

    #: Name of the node, usually the manifest key of the contract
    name: str

    #: Function producing the instance, called once
    constructor: NodeConstructor

    #: Names of the nodes the constructor reads.
    #:
    #: Used for static cycle detection. Constructors may read undeclared nodes too,
    #: cycles through those are caught when resolving.
    dependencies: tuple[str, ...] = ()


class DependencyGraph(Mapping):
    """Memoised get-or-start resolution of deployment nodes.

    The graph is a read-only mapping over the declared node names.
    Reading a name resolves it.

    .. note ::

        This class is not thread safe.
    """

    def __init__(
        self,
        config: Any,
        nodes: Iterable[DeploymentNode],
        overrides: Optional[dict[str, NodeConstructor]] = None,
    ):
        """
        :param config:
            Passed to every constructor as is

        :param nodes:
            Declared nodes

        :param overrides:
            Replace the constructor of some nodes by name, keeping their declared dependencies

        :raise UnknownDependency:
            If a node depends on, or an override names, an undeclared node

        :raise CircularDependency:
            If the declared dependencies have a cycle
        """
        self.config = config
        self.nodes: dict[str, DeploymentNode] = {}
        for node in nodes:
            assert node.name not in self.nodes, f"Node {node.name} declared twice"
            self.nodes[node.name] = node

        for name, constructor in (overrides or {}).items():
            if name not in self.nodes:
                raise UnknownDependency(f"Override given for undeclared node {name}")
            node = self.nodes[name]
            self.nodes[name] = DeploymentNode(name, constructor, node.dependencies)

        for node in self.nodes.values():
            for dep in node.dependencies:
                if dep not in self.nodes:
                    raise UnknownDependency(f"Node {node.name} depends on undeclared node {dep}")

        check_cycles(self.nodes)

        self._resolved: dict[str, Any] = {}
        self._in_progress: list[str] = []

        #: Node names in the order their resolution finished
        self.resolution_order: list[str] = []

    def __repr__(self):
        return f"<DependencyGraph nodes:{len(self.nodes)} resolved:{len(self._resolved)}>"

    def __getitem__(self, name: str) -> Any:
        return self.get_node(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name) -> bool:
        return name in self.nodes

    def is_resolved(self, name: str) -> bool:
        return name in self._resolved

    def get_node(self, name: str) -> Any:
        """Resolve a node, deploying its dependencies on the way.

        :raise UnknownDependency:
            If the name was not declared

        :raise CircularDependency:
            If the node is read again while its own constructor is still running
        """
        if name in self._resolved:
            return self._resolved[name]

        node = self.nodes.get(name)
        if node is None:
            raise UnknownDependency(f"No deployment node named {name}")

        if name in self._in_progress:
            start = self._in_progress.index(name)
            raise CircularDependency(self._in_progress[start:] + [name])

        self._in_progress.append(name)
        try:
            logger.debug("Resolving %s", name)
            instance = node.constructor(self.config, self)
        finally:
            self._in_progress.pop()

        self._resolved[name] = instance
        self.resolution_order.append(name)
        return instance


def check_cycles(nodes: dict[str, DeploymentNode]):
    """Depth first search for a cycle in the declared dependencies.

    :raise CircularDependency:
        Naming the first cycle found
    """
    done: set[str] = set()

    def _visit(name: str, path: list[str]):
        if name in done:
            return
        if name in path:
            raise CircularDependency(path[path.index(name) :] + [name])
        path.append(name)
        for dep in nodes[name].dependencies:
            _visit(dep, path)
        path.pop()
        done.add(name)

    for name in nodes:
        _visit(name, [])


def resolve_all(graph: DependencyGraph) -> Deployment:
    """Resolve every node of the graph.

    :return:
        Flat mapping of node name -> instance
    """
    return {name: graph[name] for name in graph}
