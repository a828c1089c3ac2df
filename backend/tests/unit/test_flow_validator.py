"""Tests for flow graph validation"""
from crm_automation.domain.models import FlowGraph
from crm_automation.engine.flow_validator import validate_flow
from tests.factories import node, edge


def graph(nodes, edges) -> FlowGraph:
    return FlowGraph.model_validate({"nodes": nodes, "edges": edges})


def test_valid_linear_flow():
    flow = graph(
        [node("s", "start"), node("m", "message", message="hi"), node("e", "end")],
        [edge("s", "m"), edge("m", "e")],
    )
    assert validate_flow(flow) == []


def test_two_start_nodes_are_named():
    flow = graph(
        [node("s1", "start", "Entry A"), node("s2", "start", "Entry B"), node("e", "end")],
        [edge("s1", "e"), edge("s2", "e")],
    )
    errors = validate_flow(flow)
    assert len(errors) == 1
    assert "found 2" in errors[0]
    assert '"Entry A" (s1)' in errors[0]
    assert '"Entry B" (s2)' in errors[0]


def test_missing_start_and_end():
    errors = validate_flow(graph([node("m", "message")], []))
    assert "Flow must have at least one start node" in errors
    assert "Flow must have at least one end node" in errors


def test_unreachable_node_is_named():
    flow = graph(
        [node("s", "start"), node("e", "end"), node("orphan", "message", "Lonely message")],
        [edge("s", "e")],
    )
    assert validate_flow(flow) == ['Node "Lonely message" (orphan) is not reachable from start']


def test_dangling_edges_are_reported():
    flow = graph([node("s", "start"), node("e", "end")], [edge("s", "e"), edge("s", "ghost")])
    assert validate_flow(flow) == ["Edge references non-existent target node: ghost"]


def test_goto_target_counts_as_reachable():
    flow = graph(
        [
            node("s", "start"),
            node("g", "goto", target_node_id="loop"),
            node("loop", "message", message="again"),
            node("e", "end"),
        ],
        [edge("s", "g"), edge("loop", "e")],
    )
    assert validate_flow(flow) == []


def test_every_problem_is_reported_at_once():
    flow = graph(
        [node("s", "start"), node("x", "message")],
        [edge("ghost", "x")],
    )
    errors = validate_flow(flow)
    assert "Flow must have at least one end node" in errors
    assert "Edge references non-existent source node: ghost" in errors
    assert 'Node "x" (x) is not reachable from start' in errors
