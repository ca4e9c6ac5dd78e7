"""
autoflow: run desktop-automation graphs.

Key parts
---------
- script_model: graph data classes and JSON load/save
- dataflow:     data-edge resolution into node parameters
- dispatcher:   one coroutine handler per node kind
- engine:       graph walker (async) and threaded runner
- image_match:  template matching against screenshots and live frames
- frame_stream: live monitor capture service
- gui_agent:    vision-language model action parsing and execution
"""

from .engine import AutomationEngine, WorkflowExecutor
from .errors import AutomationError, CanceledError, FlowError, IoError, ValidationError
from .models import EngineSettings
from .script_model import NodeKind, WorkflowEdge, WorkflowGraph, WorkflowNode, load_graph, save_graph
from .settings_manager import SettingsManager

__all__ = [
    "AutomationEngine",
    "WorkflowExecutor",
    "AutomationError",
    "CanceledError",
    "FlowError",
    "IoError",
    "ValidationError",
    "EngineSettings",
    "NodeKind",
    "WorkflowEdge",
    "WorkflowGraph",
    "WorkflowNode",
    "load_graph",
    "save_graph",
    "SettingsManager",
]
