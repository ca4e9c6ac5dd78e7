"""
Graph data model and JSON (de)serialization.

A document looks like::

    {"id": "...", "name": "...",
     "nodes": [{"id", "label", "kind", "position_x", "position_y", "params"}],
     "edges": [{"id", "source", "target", "source_handle", "target_handle"}]}
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import IoError, ValidationError


class NodeKind(Enum):
    """Closed set of node kinds. Values are the wire names."""

    HOTKEY_TRIGGER = "hotkeyTrigger"
    TIMER_TRIGGER = "timerTrigger"
    MANUAL_TRIGGER = "manualTrigger"
    WINDOW_TRIGGER = "windowTrigger"
    MOUSE_CLICK = "mouseClick"
    MOUSE_MOVE = "mouseMove"
    MOUSE_DRAG = "mouseDrag"
    MOUSE_WHEEL = "mouseWheel"
    MOUSE_DOWN = "mouseDown"
    MOUSE_UP = "mouseUp"
    KEYBOARD_KEY = "keyboardKey"
    KEYBOARD_INPUT = "keyboardInput"
    KEYBOARD_DOWN = "keyboardDown"
    KEYBOARD_UP = "keyboardUp"
    SHORTCUT = "shortcut"
    SCREENSHOT = "screenshot"
    GUI_AGENT = "guiAgent"
    WINDOW_ACTIVATE = "windowActivate"
    FILE_COPY = "fileCopy"
    FILE_MOVE = "fileMove"
    FILE_DELETE = "fileDelete"
    RUN_COMMAND = "runCommand"
    PYTHON_CODE = "pythonCode"
    CLIPBOARD_READ = "clipboardRead"
    CLIPBOARD_WRITE = "clipboardWrite"
    FILE_READ_TEXT = "fileReadText"
    FILE_WRITE_TEXT = "fileWriteText"
    SHOW_MESSAGE = "showMessage"
    DELAY = "delay"
    CONDITION = "condition"
    LOOP = "loop"
    WHILE_LOOP = "whileLoop"
    IMAGE_MATCH = "imageMatch"
    VAR_DEFINE = "varDefine"
    VAR_SET = "varSet"
    VAR_MATH = "varMath"
    VAR_GET = "varGet"
    CONST_VALUE = "constValue"

    @property
    def is_trigger(self) -> bool:
        return self in _TRIGGER_KINDS

    @property
    def is_manual_trigger(self) -> bool:
        return self is NodeKind.MANUAL_TRIGGER

    @property
    def is_loop(self) -> bool:
        return self in (NodeKind.LOOP, NodeKind.WHILE_LOOP)


_TRIGGER_KINDS = frozenset(
    {
        NodeKind.HOTKEY_TRIGGER,
        NodeKind.TIMER_TRIGGER,
        NodeKind.MANUAL_TRIGGER,
        NodeKind.WINDOW_TRIGGER,
    }
)


@dataclass
class WorkflowNode:
    id: str
    label: str
    kind: NodeKind
    params: Dict[str, Any] = field(default_factory=dict)
    position_x: float = 0.0
    position_y: float = 0.0

    def with_params(self, params: Dict[str, Any]) -> "WorkflowNode":
        """Copy of this node carrying a different parameter mapping."""
        return WorkflowNode(
            id=self.id,
            label=self.label,
            kind=self.kind,
            params=params,
            position_x=self.position_x,
            position_y=self.position_y,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "kind": self.kind.value,
            "position_x": self.position_x,
            "position_y": self.position_y,
            "params": copy.deepcopy(self.params),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "WorkflowNode":
        node_id = data.get("id")
        if not isinstance(node_id, str) or not node_id:
            raise ValidationError("node is missing an 'id'")
        raw_kind = str(data.get("kind", ""))
        try:
            kind = NodeKind(raw_kind)
        except ValueError:
            raise ValidationError(f"node '{node_id}' has unknown kind '{raw_kind}'") from None
        params = data.get("params") or {}
        if not isinstance(params, dict):
            raise ValidationError(f"node '{node_id}' params must be an object")
        return WorkflowNode(
            id=node_id,
            label=str(data.get("label", "") or ""),
            kind=kind,
            params=dict(params),
            position_x=_position(data, "position_x", node_id),
            position_y=_position(data, "position_y", node_id),
        )


def _position(data: Dict[str, Any], key: str, node_id: str) -> float:
    try:
        return float(data.get(key, 0.0) or 0.0)
    except (TypeError, ValueError):
        raise ValidationError(f"node '{node_id}' has a non-numeric {key}") from None


@dataclass
class WorkflowEdge:
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "source_handle": self.source_handle,
            "target_handle": self.target_handle,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "WorkflowEdge":
        source_handle = data.get("source_handle")
        target_handle = data.get("target_handle")
        return WorkflowEdge(
            id=str(data.get("id", "")),
            source=str(data.get("source", "")),
            target=str(data.get("target", "")),
            source_handle=str(source_handle) if source_handle is not None else None,
            target_handle=str(target_handle) if target_handle is not None else None,
        )


@dataclass
class WorkflowGraph:
    id: str
    name: str
    nodes: List[WorkflowNode] = field(default_factory=list)
    edges: List[WorkflowEdge] = field(default_factory=list)

    def find_node(self, node_id: str) -> Optional[WorkflowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "WorkflowGraph":
        if not isinstance(data, dict):
            raise ValidationError("graph document must be a JSON object")
        nodes_data = data.get("nodes", []) or []
        edges_data = data.get("edges", []) or []
        if not isinstance(nodes_data, list) or not isinstance(edges_data, list):
            raise ValidationError("graph 'nodes' and 'edges' must be arrays")

        nodes: List[WorkflowNode] = []
        seen: set[str] = set()
        for raw in nodes_data:
            if not isinstance(raw, dict):
                raise ValidationError("every node must be a JSON object")
            node = WorkflowNode.from_dict(raw)
            if node.id in seen:
                raise ValidationError(f"duplicate node id '{node.id}'")
            seen.add(node.id)
            nodes.append(node)

        edges = [WorkflowEdge.from_dict(raw) for raw in edges_data if isinstance(raw, dict)]
        return WorkflowGraph(
            id=str(data.get("id", "")),
            name=str(data.get("name", "Unnamed Workflow")),
            nodes=nodes,
            edges=edges,
        )


def graph_from_json(raw: str) -> WorkflowGraph:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(str(exc)) from exc
    return WorkflowGraph.from_dict(data)


def graph_to_json(graph: WorkflowGraph) -> str:
    return json.dumps(graph.to_dict(), indent=2, ensure_ascii=False)


def load_graph(path: Path) -> WorkflowGraph:
    """Read a graph document from disk."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise IoError(f"failed to read graph '{path}': {exc}") from exc
    return graph_from_json(raw)


def save_graph(graph: WorkflowGraph, path: Path) -> None:
    """Persist a graph document atomically."""
    path = Path(path)
    tmp_path = path.with_suffix(".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(graph_to_json(graph), encoding="utf-8")
        tmp_path.replace(path)
    except OSError as exc:
        raise IoError(f"failed to write graph '{path}': {exc}") from exc
