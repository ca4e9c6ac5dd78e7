"""
Edge classification and data-flow resolution.

Control edges decide which node runs next; data edges (target handle
`param:<key>:in`) inject a value into parameter `<key>` of their target just
before it runs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Optional, Tuple

from .params import get_str, resolve_typed_value
from .script_model import NodeKind, WorkflowEdge, WorkflowGraph, WorkflowNode

if TYPE_CHECKING:
    from .context import ExecutionContext

PARAM_PREFIX = "param:"
PARAM_INPUT_SUFFIX = ":in"

CONTROL_SOURCE_HANDLES = frozenset({"next", "true", "false", "loop", "done"})

_MISSING = object()


def _is_param_handle(handle: Optional[str]) -> bool:
    return handle is not None and handle.startswith(PARAM_PREFIX)


def is_control_flow_edge(edge: WorkflowEdge) -> bool:
    source, target = edge.source_handle, edge.target_handle
    if _is_param_handle(source) or _is_param_handle(target):
        return False
    if source is not None and source not in CONTROL_SOURCE_HANDLES:
        return False
    return target is None or target == "in"


def param_key_from_handle(handle: Optional[str]) -> Optional[str]:
    """`param:<key>:in` -> `<key>`; anything else -> None."""
    if handle is None:
        return None
    if not handle.startswith(PARAM_PREFIX) or not handle.endswith(PARAM_INPUT_SUFFIX):
        return None
    key = handle[len(PARAM_PREFIX):len(handle) - len(PARAM_INPUT_SUFFIX)]
    return key or None


def outgoing_control_edges(graph: WorkflowGraph, node_id: str) -> List[WorkflowEdge]:
    return [edge for edge in graph.edges if edge.source == node_id and is_control_flow_edge(edge)]


def _fallback_value(source: WorkflowNode, handle: str, ctx: "ExecutionContext") -> Any:
    if handle == "value":
        if source.kind in (NodeKind.CONST_VALUE, NodeKind.VAR_DEFINE, NodeKind.VAR_SET):
            return resolve_typed_value(source, "value")
        if source.kind is NodeKind.VAR_GET:
            name = get_str(source, "name", "")
            if not name.strip():
                return None
            return ctx.variables.get(name)
    return source.params.get(handle, _MISSING)


def resolve_edge_source_value(
    edge: WorkflowEdge, graph: WorkflowGraph, ctx: "ExecutionContext"
) -> Tuple[bool, Any]:
    """Return (found, value) for the value a data edge carries."""
    handle = edge.source_handle
    if handle is None:
        return False, None

    outputs = ctx.node_outputs.get(edge.source)
    if outputs is not None and handle in outputs:
        return True, outputs[handle]

    source = graph.find_node(edge.source)
    if source is None:
        return False, None
    value = _fallback_value(source, handle, ctx)
    if value is _MISSING:
        return False, None
    return True, value


def resolve_node_inputs(node: WorkflowNode, graph: WorkflowGraph, ctx: "ExecutionContext") -> WorkflowNode:
    """The effective node: static params overlaid with incoming data values."""
    params = dict(node.params)
    for edge in graph.edges:
        if edge.target != node.id:
            continue
        key = param_key_from_handle(edge.target_handle)
        if key is None:
            continue
        found, value = resolve_edge_source_value(edge, graph, ctx)
        if found:
            params[key] = value
    return node.with_params(params)
