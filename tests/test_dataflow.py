from __future__ import annotations

from autoflow.context import ExecutionContext
from autoflow.dataflow import (
    is_control_flow_edge,
    outgoing_control_edges,
    param_key_from_handle,
    resolve_edge_source_value,
    resolve_node_inputs,
)
from autoflow.script_model import NodeKind
from fakes import make_edge, make_graph, make_node


def test_control_edge_classification() -> None:
    assert is_control_flow_edge(make_edge("a", "b"))
    assert is_control_flow_edge(make_edge("a", "b", "done", "in"))
    assert not is_control_flow_edge(make_edge("a", "b", "value", "param:x:in"))
    assert not is_control_flow_edge(make_edge("a", "b", "param:x", None))
    assert not is_control_flow_edge(make_edge("a", "b", "value"))
    assert not is_control_flow_edge(make_edge("a", "b", None, "other"))


def test_param_key_from_handle() -> None:
    assert param_key_from_handle("param:text:in") == "text"
    assert param_key_from_handle("param::in") is None
    assert param_key_from_handle("param:text") is None
    assert param_key_from_handle(None) is None


def test_outgoing_control_edges_skip_data_edges() -> None:
    graph = make_graph(
        [make_node("a", NodeKind.DELAY), make_node("b", NodeKind.DELAY)],
        [make_edge("a", "b"), make_edge("a", "b", "ms", "param:ms:in")],
    )
    assert [e.id for e in outgoing_control_edges(graph, "a")] == ["a-next-b-in"]


def test_recorded_outputs_win_over_params() -> None:
    graph = make_graph(
        [make_node("src", NodeKind.MOUSE_MOVE, x=1), make_node("dst", NodeKind.MOUSE_CLICK, x=0)],
        [make_edge("src", "dst", "x", "param:x:in")],
    )
    ctx = ExecutionContext()
    ctx.set_output("src", "x", 42)

    resolved = resolve_node_inputs(graph.nodes[1], graph, ctx)

    assert resolved.params["x"] == 42
    assert graph.nodes[1].params["x"] == 0


def test_fallbacks_for_nodes_that_have_not_run() -> None:
    graph = make_graph(
        [
            make_node("const", NodeKind.CONST_VALUE, valueType="number", valueNumber=3),
            make_node("get", NodeKind.VAR_GET, name="greeting"),
            make_node("move", NodeKind.MOUSE_MOVE, x=7),
            make_node("dst", NodeKind.DELAY),
        ],
        [
            make_edge("const", "dst", "value", "param:ms:in"),
            make_edge("get", "dst", "value", "param:label:in"),
            make_edge("move", "dst", "x", "param:x:in"),
            make_edge("move", "dst", "nothing", "param:y:in"),
        ],
    )
    ctx = ExecutionContext(variables={"greeting": "hi"})

    resolved = resolve_node_inputs(graph.find_node("dst"), graph, ctx)

    assert resolved.params == {"ms": 3.0, "label": "hi", "x": 7}


def test_edge_without_source_handle_carries_nothing() -> None:
    graph = make_graph([make_node("a", NodeKind.DELAY, ms=5), make_node("b", NodeKind.DELAY)])
    assert resolve_edge_source_value(make_edge("a", "b", None, "param:ms:in"), graph, ExecutionContext()) == (False, None)
    assert resolve_edge_source_value(make_edge("ghost", "b", "ms", "param:ms:in"), graph, ExecutionContext()) == (
        False,
        None,
    )
