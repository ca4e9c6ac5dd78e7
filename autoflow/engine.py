"""
Execution engine: walks a WorkflowGraph node by node.

WorkflowExecutor is the async interpreter. AutomationEngine runs it on a
worker thread for hosts that are not async themselves (CLI, GUI).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .actions import DesktopBackend, RunContext
from .context import ExecutionContext
from .dataflow import is_control_flow_edge, outgoing_control_edges, resolve_node_inputs
from .dispatcher import NodeDispatcher, loop_step, while_step
from .errors import CanceledError, FlowError, ValidationError
from .frame_stream import FrameStreamManager
from .logger import ExecutionLogger, LogSink
from .models import EngineSettings
from .params import get_uint
from .script_model import NodeKind, WorkflowGraph, WorkflowNode

logger = logging.getLogger(__name__)

NodeCallback = Callable[[WorkflowNode], None]
VariablesCallback = Callable[[Dict[str, Any]], None]
CancelPredicate = Callable[[], bool]


def select_entries(graph: WorkflowGraph) -> List[str]:
    """Ids of the nodes a run starts from, in declaration order."""
    if not graph.nodes:
        raise ValidationError("workflow has no executable nodes")

    manual = [n.id for n in graph.nodes if n.kind.is_manual_trigger]
    if manual:
        return manual

    automatic = [n.id for n in graph.nodes if n.kind.is_trigger]
    if len(automatic) == 1:
        return automatic
    if len(automatic) > 1:
        raise ValidationError(
            "workflow has multiple non-manual triggers; direct run requires exactly one trigger "
            "or at least one manual trigger"
        )

    incoming: Dict[str, int] = {n.id: 0 for n in graph.nodes}
    for edge in graph.edges:
        if edge.target in incoming and is_control_flow_edge(edge):
            incoming[edge.target] += 1
    roots = [n.id for n in graph.nodes if incoming[n.id] == 0]
    return roots or [graph.nodes[0].id]


class WorkflowExecutor:
    """Runs graphs against a NodeDispatcher.

    Args:
        dispatcher: node handlers; built from `desktop` and `settings` when omitted
        settings: step budget, default post-node delay, sleep slice
        desktop: passed to the dispatcher it builds
    """

    def __init__(
        self,
        dispatcher: Optional[NodeDispatcher] = None,
        settings: Optional[EngineSettings] = None,
        desktop: Optional[DesktopBackend] = None,
    ) -> None:
        self.settings = settings or (dispatcher.settings if dispatcher else EngineSettings())
        self.dispatcher = dispatcher or NodeDispatcher(desktop=desktop, settings=self.settings)
        self.logger = ExecutionLogger()

    async def execute(self, graph: WorkflowGraph) -> ExecutionContext:
        return await self.execute_with_progress(graph)

    async def execute_with_progress(
        self,
        graph: WorkflowGraph,
        on_node_start: Optional[NodeCallback] = None,
        on_variables_update: Optional[VariablesCallback] = None,
        on_log: Optional[LogSink] = None,
        should_cancel: Optional[CancelPredicate] = None,
    ) -> ExecutionContext:
        """Run `graph` from every entry node and return the final context."""
        starts = select_entries(graph)

        self.logger.clear_logs()
        self.logger.set_sink(on_log)
        run = RunContext(self.logger.log, should_cancel, self.settings.sleep_slice)
        ctx = ExecutionContext()
        visited = set()
        for start in starts:
            if start in visited:
                continue
            visited.add(start)
            await self._walk(start, graph, ctx, run, on_node_start, on_variables_update)
        return ctx

    async def _walk(
        self,
        start_id: str,
        graph: WorkflowGraph,
        ctx: ExecutionContext,
        run: RunContext,
        on_node_start: Optional[NodeCallback],
        on_variables_update: Optional[VariablesCallback],
    ) -> None:
        current_id = start_id
        loop_stack: List[str] = []

        for _ in range(self.settings.max_steps):
            run.check_cancel()

            node = graph.find_node(current_id)
            if node is None:
                raise ValidationError(f"node '{current_id}' not found")
            effective = resolve_node_inputs(node, graph, ctx)
            if on_node_start:
                on_node_start(effective)

            try:
                if effective.kind.is_loop:
                    next_id = await self._step_loop(effective, graph, ctx, run, loop_stack, on_variables_update)
                    if next_id is None:
                        return
                    current_id = next_id
                    continue

                directive = await self.dispatcher.dispatch(effective, ctx, run)
                await self._post_delay(effective, run)
            except FlowError as exc:
                raise exc.attach_node(effective.id, effective.label)

            if on_variables_update:
                on_variables_update(ctx.variables)

            outgoing = outgoing_control_edges(graph, current_id)
            if directive.branch is None:
                edge = outgoing[0] if outgoing else None
            else:
                edge = next((e for e in outgoing if e.source_handle == directive.branch), None)

            if edge is not None:
                current_id = edge.target
            elif loop_stack:
                current_id = loop_stack[-1]
            else:
                return

        raise ValidationError(f"possible infinite loop detected near node '{current_id}'")

    async def _step_loop(
        self,
        node: WorkflowNode,
        graph: WorkflowGraph,
        ctx: ExecutionContext,
        run: RunContext,
        loop_stack: List[str],
        on_variables_update: Optional[VariablesCallback],
    ) -> Optional[str]:
        """Advance a loop/whileLoop node; returns the next node id or None to end the walk."""
        outgoing = outgoing_control_edges(graph, node.id)
        loop_edge = next((e for e in outgoing if e.source_handle == "loop"), outgoing[0] if outgoing else None)
        done_edge = next((e for e in outgoing if e.source_handle == "done"), None)
        if done_edge is None:
            done_edge = next((e for e in outgoing if e.source_handle != "loop"), None)

        if on_variables_update:
            on_variables_update(ctx.variables)

        if node.kind is NodeKind.LOOP:
            again = loop_step(node, ctx, can_loop=loop_edge is not None)
        else:
            again = while_step(node, ctx, run, can_loop=loop_edge is not None)

        if again:
            assert loop_edge is not None
            if not loop_stack or loop_stack[-1] != node.id:
                loop_stack.append(node.id)
            await self._post_delay(node, run)
            return loop_edge.target

        if loop_stack and loop_stack[-1] == node.id:
            loop_stack.pop()
        await self._post_delay(node, run)
        if done_edge is not None:
            return done_edge.target
        if loop_stack:
            return loop_stack[-1]
        return None

    async def _post_delay(self, node: WorkflowNode, run: RunContext) -> None:
        delay_ms = get_uint(node, "postDelayMs", self.settings.default_post_delay_ms)
        if delay_ms > 0:
            await run.sleep_ms(delay_ms)


class AutomationEngine:
    """Runs a graph on a worker thread and reports the outcome via callbacks."""

    def __init__(
        self,
        graph: WorkflowGraph,
        settings: Optional[EngineSettings] = None,
        desktop: Optional[DesktopBackend] = None,
        streams: Optional[FrameStreamManager] = None,
    ):
        self._graph = graph
        self._settings = settings or EngineSettings()
        self._streams = streams or FrameStreamManager(self._settings)
        self._executor = WorkflowExecutor(
            NodeDispatcher(desktop=desktop, streams=self._streams, settings=self._settings),
            settings=self._settings,
        )
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._on_log: Optional[LogSink] = None
        self._on_done: Optional[Callable[[bool, str], None]] = None
        self._on_node: Optional[NodeCallback] = None
        self._on_variables: Optional[VariablesCallback] = None

    @property
    def logger(self) -> ExecutionLogger:
        return self._executor.logger

    def on_log(self, cb: LogSink) -> None:
        self._on_log = cb

    def on_done(self, cb: Callable[[bool, str], None]) -> None:
        self._on_done = cb

    def on_node(self, cb: NodeCallback) -> None:
        self._on_node = cb

    def on_variables(self, cb: VariablesCallback) -> None:
        self._on_variables = cb

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._worker, name="autoflow-run", daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread:
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _worker(self) -> None:
        try:
            asyncio.run(
                self._executor.execute_with_progress(
                    self._graph,
                    on_node_start=self._on_node,
                    on_variables_update=self._on_variables,
                    on_log=self._on_log,
                    should_cancel=self._stop.is_set,
                )
            )
            self._finish(True, "Completed")
        except CanceledError:
            self._finish(False, "Canceled")
        except Exception as e:
            logger.debug("run failed", exc_info=True)
            self._finish(False, f"Error: {e}")
        finally:
            self._streams.close()

    def _finish(self, ok: bool, msg: str) -> None:
        if ok:
            self.logger.log_info(msg)
        else:
            self.logger.log_error(msg)
        if self._on_done:
            try:
                self._on_done(ok, msg)
            except Exception:
                logger.exception("on_done callback raised")
