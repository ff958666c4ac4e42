"""Tests for workflow graph parsing and structural validation."""

import pytest

from core.exceptions import StructuralError
from workflow.graph import NodeKind, WorkflowGraph


def node(node_id, kind, **config):
    return {"id": node_id, "kind": kind, "config": config}


def edge(source, target, handle=None):
    data = {"sourceNodeId": source, "targetNodeId": target}
    if handle is not None:
        data["sourceHandle"] = handle
    return data


def graph(nodes, edges=()):
    return WorkflowGraph.parse({"nodes": nodes, "edges": list(edges)})


# ─── Parsing ─────────────────────────────────────────────────────

@pytest.mark.unit
class TestParsing:

    def test_native_shape(self):
        g = graph([node("t", "trigger"), node("a", "action", actionType="send_email")], [edge("t", "a")])
        assert g.get_node("a").kind == NodeKind.ACTION
        assert g.get_node("a").config == {"actionType": "send_email"}
        assert [e.target_node_id for e in g.outgoing("t")] == ["a"]

    def test_editor_shape(self):
        g = WorkflowGraph.parse(
            {
                "nodes": [
                    {"id": "t", "type": "trigger", "position": {"x": 0, "y": 0}, "data": {"label": "Start"}},
                    {
                        "id": "c",
                        "type": "condition",
                        "data": {"label": "Adult?", "config": {"expression": "{{ trigger.age }} > 18"}},
                    },
                ],
                "edges": [{"id": "e1", "source": "t", "target": "c"}],
            }
        )
        cond = g.get_node("c")
        assert cond.kind == NodeKind.CONDITION
        assert cond.config["expression"] == "{{ trigger.age }} > 18"
        assert cond.display_name == "Adult?"
        assert g.outgoing("t")[0].edge_id == "e1"

    def test_unknown_kind_is_structural_error(self):
        with pytest.raises(StructuralError, match="nodes"):
            graph([node("t", "trigger"), node("x", "teleport")])

    def test_empty_handle_is_none(self):
        g = graph([node("t", "trigger"), node("a", "action")], [edge("t", "a", "")])
        assert g.outgoing("t")[0].handle is None

    def test_to_dict_round_trips(self):
        g = graph([node("t", "trigger"), node("a", "action")], [edge("t", "a")])
        assert WorkflowGraph.parse(g.to_dict()).to_dict() == g.to_dict()


# ─── Validation ──────────────────────────────────────────────────

@pytest.mark.unit
class TestValidateStructure:

    def test_returns_trigger(self):
        g = graph([node("a", "action"), node("start", "trigger")], [edge("start", "a")])
        assert g.validate_structure().id == "start"

    def test_missing_trigger(self):
        with pytest.raises(StructuralError, match="no trigger"):
            graph([node("a", "action")]).validate_structure()

    def test_two_triggers(self):
        with pytest.raises(StructuralError, match="more than one trigger"):
            graph([node("t1", "trigger"), node("t2", "trigger")]).validate_structure()

    def test_duplicate_ids(self):
        with pytest.raises(StructuralError, match="Duplicate node id 'a'"):
            graph([node("t", "trigger"), node("a", "action"), node("a", "api")]).validate_structure()

    def test_dangling_edge(self):
        with pytest.raises(StructuralError, match="unknown node 'ghost'"):
            graph([node("t", "trigger")], [edge("t", "ghost")]).validate_structure()

    def test_edge_into_trigger(self):
        with pytest.raises(StructuralError, match="into trigger"):
            graph([node("t", "trigger"), node("a", "action")], [edge("t", "a"), edge("a", "t")]).validate_structure()

    def test_cycle_rejected(self):
        g = graph(
            [node("t", "trigger"), node("a", "action"), node("b", "api"), node("c", "transform")],
            [edge("t", "a"), edge("a", "b"), edge("b", "c"), edge("c", "a")],
        )
        with pytest.raises(StructuralError, match="Cycle detected"):
            g.validate_structure()

    def test_loop_body_back_edge_rejected(self):
        g = graph(
            [node("t", "trigger"), node("l", "loop"), node("a", "action")],
            [edge("t", "l"), edge("l", "a", "body"), edge("a", "l")],
        )
        with pytest.raises(StructuralError, match="Cycle detected"):
            g.validate_structure()

    def test_diamond_is_acyclic(self):
        g = graph(
            [node("t", "trigger"), node("a", "action"), node("b", "action"), node("j", "transform")],
            [edge("t", "a"), edge("t", "b"), edge("a", "j"), edge("b", "j")],
        )
        assert g.validate_structure().id == "t"

    def test_condition_handles(self):
        g = graph(
            [node("t", "trigger"), node("c", "condition"), node("a", "action")],
            [edge("t", "c"), edge("c", "a", "maybe")],
        )
        with pytest.raises(StructuralError, match="handle 'true' or 'false'"):
            g.validate_structure()

    def test_condition_duplicate_branch(self):
        g = graph(
            [node("t", "trigger"), node("c", "condition"), node("a", "action"), node("b", "action")],
            [edge("t", "c"), edge("c", "a", "true"), edge("c", "b", "true")],
        )
        with pytest.raises(StructuralError, match="more than one edge"):
            g.validate_structure()

    def test_switch_unlabelled_edge_counts_as_default(self):
        g = graph(
            [node("t", "trigger"), node("s", "switch"), node("a", "action"), node("b", "action")],
            [edge("t", "s"), edge("s", "a"), edge("s", "b", "default")],
        )
        with pytest.raises(StructuralError, match="more than one edge"):
            g.validate_structure()

    def test_loop_handles(self):
        g = graph(
            [node("t", "trigger"), node("l", "loop"), node("a", "action")],
            [edge("t", "l"), edge("l", "a", "next")],
        )
        with pytest.raises(StructuralError, match="'body', 'after' or 'out'"):
            g.validate_structure()

    def test_loop_editor_out_handle_is_exit(self):
        g = graph(
            [node("t", "trigger"), node("l", "loop"), node("a", "action"), node("b", "action")],
            [edge("t", "l"), edge("l", "a", "body"), edge("l", "b", "out")],
        )
        assert g.validate_structure().id == "t"

    def test_reserved_handle_on_plain_node(self):
        g = graph(
            [node("t", "trigger"), node("a", "action"), node("b", "action")],
            [edge("t", "a"), edge("a", "b", "true")],
        )
        with pytest.raises(StructuralError, match="cannot branch"):
            g.validate_structure()
