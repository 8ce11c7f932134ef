"""Node/edge graph assembled from resolved connections."""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .bsky_client import Account
from .errors import GraphInconsistencyError


logger = logging.getLogger(__name__)

EDGE_WEIGHTS = {
    "follows": 1,
    "mutual": 2,
}

@dataclass
class Connection:
    """Directed relationship from owner to another account, with its snapshot."""
    owner_id: str
    other: Account
    kind: str = "mutual"

    @property
    def connection_id(self) -> Optional[str]:
        return self.other.did if self.other else None


@dataclass
class GraphNode:
    id: str
    display_name: Optional[str] = None
    handle: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "handle": self.handle,
        }


@dataclass(frozen=True)
class GraphEdge:
    source: str
    target: str
    kind: str = "mutual"

    @property
    def weight(self) -> int:
        return EDGE_WEIGHTS.get(self.kind, 1)

    def to_dict(self) -> dict:
        return {"source": self.source, "target": self.target, "type": self.kind}


@dataclass
class Graph:
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }


def _check_endpoints(edge: GraphEdge, nodes: dict) -> GraphEdge:
    if edge.source not in nodes or edge.target not in nodes:
        raise GraphInconsistencyError(edge.source, edge.target)
    return edge


def build_graph(
    subject_id: str,
    connections: Iterable[Connection],
    extra_edges: Iterable[GraphEdge] = None,
    subject: Account = None,
) -> Graph:
    """
    Build the graph centred on subject_id.

    Nodes keep insertion order (subject first, then connections as listed),
    which is the order community detection visits them in.
    """
    nodes: dict[str, GraphNode] = {
        subject_id: GraphNode(
            id=subject_id,
            display_name=(subject.display_name if subject else None) or subject_id,
            handle=(subject.handle if subject else None) or subject_id,
        )
    }

    connections = list(connections)
    skipped = 0
    for connection in connections:
        connection_id = connection.connection_id
        if not connection_id:
            skipped += 1
            continue
        if connection_id not in nodes:
            nodes[connection_id] = GraphNode(
                id=connection_id,
                display_name=connection.other.display_name or connection.other.handle,
                handle=connection.other.handle,
            )
    if skipped:
        logger.warning(f"Skipped {skipped} connections without an id")

    edges: list[GraphEdge] = []
    seen: set[GraphEdge] = set()

    def add_edge(edge: GraphEdge) -> None:
        if edge.source == edge.target or edge in seen:
            return
        seen.add(edge)
        edges.append(edge)

    for connection in connections:
        connection_id = connection.connection_id
        if connection.kind == "mutual" and connection_id in nodes:
            add_edge(GraphEdge(subject_id, connection_id, "mutual"))

    dropped = 0
    for edge in extra_edges or ():
        try:
            add_edge(_check_endpoints(edge, nodes))
        except GraphInconsistencyError as e:
            dropped += 1
            logger.debug(f"Dropping extra edge: {e}")
    if dropped:
        logger.info(f"Dropped {dropped} extra edges with unknown endpoints")

    graph = Graph(
        nodes=list(nodes.values()),
        edges=[edge for edge in edges if edge.source in nodes and edge.target in nodes],
    )
    logger.info(f"Created graph with {len(graph.nodes)} nodes and {len(graph.edges)} edges")
    return graph
