"""
Per-run mutable state shared by the engine and the node handlers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class ExecutionContext:
    variables: Dict[str, Any] = field(default_factory=dict)
    # Present only while the corresponding loop node is active.
    loop_remaining: Dict[str, int] = field(default_factory=dict)
    while_iterations: Dict[str, int] = field(default_factory=dict)
    # Outputs of each node's latest run, keyed by node id then handle.
    node_outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def reset_outputs(self, node_id: str) -> None:
        self.node_outputs[node_id] = {}

    def set_output(self, node_id: str, handle: str, value: Any) -> None:
        self.node_outputs.setdefault(node_id, {})[handle] = value
