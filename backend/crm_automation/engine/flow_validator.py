"""Flow Validator - Structural checks run before a flow can be published"""
from collections import deque
from typing import Dict, List, Set

from ..domain.models import FlowGraph
from ..domain.enums import NodeType


def validate_flow(graph: FlowGraph) -> List[str]:
    """
    Validate a flow graph and return every violation found

    Checks:
    - exactly one start node
    - at least one end node
    - every edge references existing nodes
    - every node is reachable from start

    An empty list means the graph can be published.
    """
    errors: List[str] = []
    node_ids = {node.id for node in graph.nodes}

    starts = graph.nodes_of_type(NodeType.START)
    if not starts:
        errors.append("Flow must have at least one start node")
    elif len(starts) > 1:
        names = ", ".join(f'"{node.label}" ({node.id})' for node in starts)
        errors.append(f"Flow can only have one start node, found {len(starts)}: {names}")

    if not graph.nodes_of_type(NodeType.END):
        errors.append("Flow must have at least one end node")

    for edge in graph.edges:
        if edge.source not in node_ids:
            errors.append(f"Edge references non-existent source node: {edge.source}")
        if edge.target not in node_ids:
            errors.append(f"Edge references non-existent target node: {edge.target}")

    # Reachability only makes sense from a single start
    if len(starts) == 1:
        reachable = _find_reachable_nodes(graph, starts[0].id, node_ids)
        for node in graph.nodes:
            if node.id not in reachable:
                errors.append(f'Node "{node.label}" ({node.id}) is not reachable from start')

    return errors


def _find_reachable_nodes(graph: FlowGraph, start_id: str, node_ids: Set[str]) -> Set[str]:
    """Forward BFS over edges; goto nodes also reach their configured target"""
    adjacency: Dict[str, List[str]] = {}
    for edge in graph.edges:
        if edge.source in node_ids and edge.target in node_ids:
            adjacency.setdefault(edge.source, []).append(edge.target)
    for node in graph.nodes_of_type(NodeType.GOTO):
        target = node.config.get("target_node_id")
        if target in node_ids:
            adjacency.setdefault(node.id, []).append(target)

    reachable = {start_id}
    to_visit = deque([start_id])
    while to_visit:
        current = to_visit.popleft()
        for target in adjacency.get(current, []):
            if target not in reachable:
                reachable.add(target)
                to_visit.append(target)
    return reachable
