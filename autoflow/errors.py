"""
Error taxonomy for graph execution.

Every failure raised while running a graph derives from FlowError so callers
can tell a run that failed apart from a bug in the engine itself.
"""

from __future__ import annotations

from typing import Optional


class FlowError(Exception):
    """Base class for run failures. May carry the node it happened in."""

    prefix = "Execution failed"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.node_id: Optional[str] = None
        self.node_label: Optional[str] = None

    def attach_node(self, node_id: str, label: str) -> "FlowError":
        """Record the offending node unless an inner frame already did."""
        if self.node_id is None:
            self.node_id = node_id
            self.node_label = label
        return self

    def __str__(self) -> str:
        text = f"{self.prefix}: {self.message}" if self.message else self.prefix
        if self.node_id is not None:
            text += f" [node '{self.node_label}' ({self.node_id})]"
        return text


class ValidationError(FlowError):
    """Malformed graph, missing parameter, unsupported operator."""

    prefix = "Workflow validation failed"


class AutomationError(FlowError):
    """An external capability (input, capture, window, HTTP, process) failed."""

    prefix = "Automation failed"


class IoError(FlowError):
    """Filesystem failure; the message carries the OS error text."""

    prefix = "I/O error"


class CanceledError(FlowError):
    prefix = "Execution canceled"
