"""
Community detection by greedy modularity optimisation.

Single-level Louvain-style local search:
- every node starts in its own community (slot = its index in graph.nodes)
- each pass visits nodes in graph order and moves a node to the neighbouring
  community with the strictly highest positive gain
- passes stop after MAX_PASSES, after a pass without moves, or as soon as global
  modularity stops improving; the best partition seen is kept

Adjacency is a multiset: an edge of weight w counts w times toward the
neighbour weights and the weighted degree. A_ij in the modularity sum is still
0/1 (whether any edge joins i and j).
"""
import logging
from collections import Counter
from dataclasses import dataclass, field

from .graph import Graph, GraphEdge


logger = logging.getLogger(__name__)

MAX_PASSES = 10
CENTRAL_NODE_COUNT = 3


@dataclass
class Community:
    id: str
    members: list[str]
    central_nodes: list[str] = field(default_factory=list)
    density: float = 0.0
    cohesion: float = 0.0

    @property
    def size(self) -> int:
        return len(self.members)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "size": self.size,
            "members": list(self.members),
            "centralNodes": list(self.central_nodes),
            "metrics": {
                "density": self.density,
                "cohesion": self.cohesion,
            },
        }


def modularity(
    slots: list[list[str]],
    adjacency: dict[str, Counter],
    degrees: dict[str, int],
    total_edges: int,
) -> float:
    """Q = (1/2E) * sum over ordered pairs i != j sharing a community of (A_ij - k_i*k_j/2E)."""
    two_e = 2 * total_edges
    q = 0.0
    for members in slots:
        for i in members:
            neighbours = adjacency[i]
            for j in members:
                if i == j:
                    continue
                actual = 1 if neighbours[j] else 0
                q += actual - degrees[i] * degrees[j] / two_e
    return q / two_e


def modularity_gain(
    weight_to: int,
    weight_from: int,
    size_from: int,
    size_to: int,
    total_edges: int,
) -> float:
    """Local gain of moving a node from its community into a candidate.

    size_from is the current community's size without the node and size_to the
    candidate's size with it.
    """
    return (
        weight_to / total_edges
        - (weight_from / total_edges) * (size_from * size_to / (2 * total_edges) ** 2)
    )


def _build_adjacency(graph: Graph) -> tuple[dict[str, Counter], list[GraphEdge]]:
    adjacency = {node.id: Counter() for node in graph.nodes}
    edges = []
    for edge in graph.edges:
        if edge.source not in adjacency or edge.target not in adjacency:
            logger.warning(f"Edge {edge.source} -> {edge.target} has no node, skipping")
            continue
        adjacency[edge.source][edge.target] += edge.weight
        adjacency[edge.target][edge.source] += edge.weight
        edges.append(edge)
    return adjacency, edges


def _local_moves(
    node_ids: list[str],
    assignment: dict[str, int],
    slots: list[list[str]],
    adjacency: dict[str, Counter],
    total_edges: int,
) -> int:
    """One pass over all nodes; returns how many nodes moved."""
    moves = 0
    for node_id in node_ids:
        current = assignment[node_id]

        weights: dict[int, int] = {}
        for neighbour, weight in adjacency[node_id].items():
            if neighbour == node_id:
                continue
            slot = assignment[neighbour]
            weights[slot] = weights.get(slot, 0) + weight

        weight_from = weights.get(current, 0)
        size_from = len(slots[current]) - 1
        best_slot, best_gain = current, 0.0
        for slot, weight_to in weights.items():
            if slot == current:
                continue
            gain = modularity_gain(
                weight_to, weight_from, size_from, len(slots[slot]) + 1, total_edges
            )
            if gain > best_gain:
                best_slot, best_gain = slot, gain

        if best_slot != current:
            slots[current].remove(node_id)
            slots[best_slot].append(node_id)
            assignment[node_id] = best_slot
            moves += 1
    return moves


def _describe(
    slot: int,
    members: list[str],
    assignment: dict[str, int],
    adjacency: dict[str, Counter],
    edges: list[GraphEdge],
) -> Community:
    intra = [
        edge for edge in edges
        if assignment[edge.source] == slot and assignment[edge.target] == slot
    ]

    size = len(members)
    possible_pairs = size * (size - 1) / 2
    connected_pairs = {
        frozenset((edge.source, edge.target)) for edge in intra if edge.source != edge.target
    }
    density = len(connected_pairs) / possible_pairs if possible_pairs else 0.0

    mutual = sum(1 for edge in intra if edge.kind == "mutual")
    cohesion = mutual / len(intra) if intra else 0.0

    intra_degree = {
        member: sum(
            weight for neighbour, weight in adjacency[member].items()
            if neighbour != member and assignment[neighbour] == slot
        )
        for member in members
    }
    central = sorted(members, key=lambda member: -intra_degree[member])[:CENTRAL_NODE_COUNT]

    return Community(
        id=f"community-{slot}",
        members=list(members),
        central_nodes=central,
        density=density,
        cohesion=cohesion,
    )


def detect_communities(graph: Graph) -> list[Community]:
    """Partition graph.nodes into communities; empty list without nodes or edges."""
    if not graph.nodes or not graph.edges:
        logger.info("No nodes or edges in graph, returning empty communities")
        return []

    node_ids = []
    seen = set()
    for node in graph.nodes:
        if node.id not in seen:
            seen.add(node.id)
            node_ids.append(node.id)

    adjacency, edges = _build_adjacency(graph)
    if not edges:
        return []

    total_edges = len(edges)
    degrees = {node_id: sum(adjacency[node_id].values()) for node_id in node_ids}
    assignment = {node_id: index for index, node_id in enumerate(node_ids)}
    slots = [[node_id] for node_id in node_ids]

    best_q = modularity(slots, adjacency, degrees, total_edges)
    best_assignment = dict(assignment)
    best_slots = [list(members) for members in slots]

    for iteration in range(1, MAX_PASSES + 1):
        moves = _local_moves(node_ids, assignment, slots, adjacency, total_edges)
        q = modularity(slots, adjacency, degrees, total_edges)
        logger.debug(f"Pass {iteration}: {moves} moves, modularity = {q:.6f}")

        if q <= best_q:
            assignment, slots = best_assignment, best_slots
            break
        best_q = q
        best_assignment = dict(assignment)
        best_slots = [list(members) for members in slots]

    communities = [
        _describe(slot, members, assignment, adjacency, edges)
        for slot, members in enumerate(slots)
        if members
    ]
    logger.info(f"Detected {len(communities)} communities (modularity {best_q:.4f})")
    return communities
