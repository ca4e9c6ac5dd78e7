"""
Node operation dispatcher: one handler per NodeKind.

A handler performs the node's side effect, records its outputs in the
ExecutionContext and returns a NextDirective telling the engine which
outgoing control edge to follow.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

from . import file_ops, process_ops
from .actions import DesktopBackend, RunContext, SystemDesktop, split_hotkey
from .conditions import evaluate_condition
from .context import ExecutionContext
from .debug_overlay import (
    encode_png_base64,
    prepare_debug_dir,
    sanitize_file_segment,
    save_gray_with_box,
    save_image,
    unix_ms,
)
from .errors import AutomationError, CanceledError, FlowError, IoError, ValidationError
from .frame_stream import FrameStreamManager
from .gui_agent import run_gui_agent
from .hotkeys import DEFAULT_HOTKEY, wait_for_hotkey
from .image_match import MatchEvaluation, TemplateMatcher, load_gray
from .models import EngineSettings
from .params import (
    as_float,
    get_bool,
    get_float,
    get_int,
    get_str,
    get_str_list,
    get_uint,
    render_template,
    resolve_text_input,
    resolve_typed_value,
)
from .script_model import NodeKind, WorkflowNode
from . import var_math

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NextDirective:
    """`branch` None follows the first outgoing control edge."""

    branch: Optional[str] = None


DEFAULT = NextDirective()
BRANCH_TRUE = NextDirective("true")
BRANCH_FALSE = NextDirective("false")
BRANCH_LOOP = NextDirective("loop")
BRANCH_DONE = NextDirective("done")

Handler = Callable[[WorkflowNode, ExecutionContext, RunContext], Awaitable[NextDirective]]


# --- loop counters (shared with the engine) -----------------------------------

def loop_step(node: WorkflowNode, ctx: ExecutionContext, can_loop: bool = True) -> bool:
    """Advance a `loop` node. True means take the loop branch once more.

    The counter is seeded from `times` on first entry and removed when the
    loop exits, so re-entering the node later starts a fresh count.
    """
    remaining = ctx.loop_remaining.setdefault(node.id, get_uint(node, "times", 1))
    if remaining > 0 and can_loop:
        ctx.loop_remaining[node.id] = remaining - 1
        return True
    ctx.loop_remaining.pop(node.id, None)
    return False


def while_step(node: WorkflowNode, ctx: ExecutionContext, run: RunContext, can_loop: bool = True) -> bool:
    """Advance a `whileLoop` node. True means take the loop branch once more."""
    max_iterations = max(get_uint(node, "maxIterations", 1000), 1)
    condition_true = evaluate_condition(node, ctx.variables)
    iterations = ctx.while_iterations.setdefault(node.id, 0)

    if condition_true and iterations < max_iterations:
        if can_loop:
            ctx.while_iterations[node.id] = iterations + 1
            return True
    elif condition_true:
        run.warn(f"while node '{node.label}' reached its maximum of {max_iterations} iterations; leaving via done.")

    ctx.while_iterations.pop(node.id, None)
    return False


# --- helpers ------------------------------------------------------------------

def screenshot_output_path(node: WorkflowNode, default_root: str) -> Optional[str]:
    """Where a screenshot node saves its image, or None when it does not save."""
    if not get_bool(node, "shouldSave", True):
        return None

    save_dir = get_str(node, "saveDir", "").strip()
    if not save_dir:
        # older documents stored a full file path under `path`
        legacy = get_str(node, "path", "").strip()
        if legacy:
            legacy_path = Path(legacy)
            if legacy_path.suffix:
                parent = str(legacy_path.parent)
                if parent not in ("", "."):
                    save_dir = parent
            else:
                save_dir = legacy

    directory = Path(save_dir) if save_dir else Path(default_root)
    name = (
        f"autoflow_screenshot_{sanitize_file_segment(node.label)}_"
        f"{sanitize_file_segment(node.id)}_{unix_ms()}.png"
    )
    return str(directory / name)


def check_handler_table(handlers: Dict[NodeKind, Handler]) -> None:
    """Every NodeKind must have a handler."""
    missing = [kind.value for kind in NodeKind if kind not in handlers]
    if missing:
        raise RuntimeError(f"no handler registered for node kinds: {', '.join(missing)}")


def _require(node: WorkflowNode, message: str, *values: str) -> None:
    if any(not value.strip() for value in values):
        raise ValidationError(f"node '{node.id}' {message}")


class NodeDispatcher:
    """Maps every NodeKind to a coroutine handler.

    Args:
        desktop: OS capabilities; SystemDesktop when omitted
        streams: frame stream service for live image matching; the
            dispatcher creates its own when omitted
        settings: engine tunables
    """

    def __init__(
        self,
        desktop: Optional[DesktopBackend] = None,
        streams: Optional[FrameStreamManager] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.desktop: DesktopBackend = desktop if desktop is not None else SystemDesktop()
        self.streams = streams if streams is not None else FrameStreamManager(self.settings)
        self._handlers: Dict[NodeKind, Handler] = {
            NodeKind.HOTKEY_TRIGGER: self._hotkey_trigger,
            NodeKind.TIMER_TRIGGER: self._timer_trigger,
            NodeKind.MANUAL_TRIGGER: self._manual_trigger,
            NodeKind.WINDOW_TRIGGER: self._window_trigger,
            NodeKind.MOUSE_CLICK: self._mouse_click,
            NodeKind.MOUSE_MOVE: self._mouse_move,
            NodeKind.MOUSE_DRAG: self._mouse_drag,
            NodeKind.MOUSE_WHEEL: self._mouse_wheel,
            NodeKind.MOUSE_DOWN: self._mouse_down,
            NodeKind.MOUSE_UP: self._mouse_up,
            NodeKind.KEYBOARD_KEY: self._keyboard_key,
            NodeKind.KEYBOARD_INPUT: self._keyboard_input,
            NodeKind.KEYBOARD_DOWN: self._keyboard_down,
            NodeKind.KEYBOARD_UP: self._keyboard_up,
            NodeKind.SHORTCUT: self._shortcut,
            NodeKind.SCREENSHOT: self._screenshot,
            NodeKind.GUI_AGENT: self._gui_agent,
            NodeKind.WINDOW_ACTIVATE: self._window_activate,
            NodeKind.FILE_COPY: self._file_copy,
            NodeKind.FILE_MOVE: self._file_move,
            NodeKind.FILE_DELETE: self._file_delete,
            NodeKind.RUN_COMMAND: self._run_command,
            NodeKind.PYTHON_CODE: self._python_code,
            NodeKind.CLIPBOARD_READ: self._clipboard_read,
            NodeKind.CLIPBOARD_WRITE: self._clipboard_write,
            NodeKind.FILE_READ_TEXT: self._file_read_text,
            NodeKind.FILE_WRITE_TEXT: self._file_write_text,
            NodeKind.SHOW_MESSAGE: self._show_message,
            NodeKind.DELAY: self._delay,
            NodeKind.CONDITION: self._condition,
            NodeKind.LOOP: self._loop,
            NodeKind.WHILE_LOOP: self._while_loop,
            NodeKind.IMAGE_MATCH: self._image_match,
            NodeKind.VAR_DEFINE: self._var_define,
            NodeKind.VAR_SET: self._var_set,
            NodeKind.VAR_MATH: self._var_math,
            NodeKind.VAR_GET: self._var_get,
            NodeKind.CONST_VALUE: self._const_value,
        }
        check_handler_table(self._handlers)

    def handler_for(self, kind: NodeKind) -> Handler:
        return self._handlers[kind]

    async def dispatch(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        ctx.reset_outputs(node.id)
        return await self._handlers[node.kind](node, ctx, run)

    # --- triggers -------------------------------------------------------
    async def _hotkey_trigger(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        hotkey = get_str(node, "hotkey", DEFAULT_HOTKEY)
        timeout_ms = get_uint(node, "timeoutMs", 30_000)
        poll_ms = get_uint(node, "pollMs", 50)
        await wait_for_hotkey(self.desktop, hotkey, timeout_ms, poll_ms, run)
        return DEFAULT

    async def _timer_trigger(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        await run.sleep_ms(get_uint(node, "intervalMs", 1000))
        return DEFAULT

    async def _manual_trigger(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        return DEFAULT

    async def _window_trigger(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        title = get_str(node, "title", "")
        match_mode = get_str(node, "matchMode", "contains")
        timeout_ms = get_uint(node, "timeoutMs", 30_000)
        poll_ms = max(get_uint(node, "pollMs", 250), 10)
        _require(node, "window trigger title is empty", title)

        started = time.monotonic()
        while True:
            run.check_cancel()
            if self.desktop.window_title_exists(title, match_mode):
                break
            if (time.monotonic() - started) * 1000.0 >= timeout_ms:
                raise AutomationError(
                    f"window trigger timed out after {timeout_ms} ms waiting for foreground window title '{title}'"
                )
            await run.sleep_ms(poll_ms)

        ctx.set_output(node.id, "title", title)
        return DEFAULT

    # --- mouse ----------------------------------------------------------
    async def _mouse_click(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        x, y = get_int(node, "x", 0), get_int(node, "y", 0)
        self.desktop.click(x, y, max(get_uint(node, "times", 1), 1))
        ctx.set_output(node.id, "x", x)
        ctx.set_output(node.id, "y", y)
        return DEFAULT

    async def _mouse_move(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        x, y = get_int(node, "x", 0), get_int(node, "y", 0)
        self.desktop.move_to(x, y)
        ctx.set_output(node.id, "x", x)
        ctx.set_output(node.id, "y", y)
        return DEFAULT

    async def _mouse_drag(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        to_x, to_y = get_int(node, "toX", 0), get_int(node, "toY", 0)
        self.desktop.drag(get_int(node, "fromX", 0), get_int(node, "fromY", 0), to_x, to_y)
        ctx.set_output(node.id, "toX", to_x)
        ctx.set_output(node.id, "toY", to_y)
        return DEFAULT

    async def _mouse_wheel(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        vertical = get_int(node, "vertical", -1)
        self.desktop.wheel(vertical)
        ctx.set_output(node.id, "vertical", vertical)
        return DEFAULT

    async def _mouse_button(self, node: WorkflowNode, ctx: ExecutionContext, down: bool) -> NextDirective:
        x, y = get_int(node, "x", 0), get_int(node, "y", 0)
        button = get_str(node, "button", "left")
        if down:
            self.desktop.button_down(x, y, button)
        else:
            self.desktop.button_up(x, y, button)
        ctx.set_output(node.id, "x", x)
        ctx.set_output(node.id, "y", y)
        ctx.set_output(node.id, "button", button)
        return DEFAULT

    async def _mouse_down(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        return await self._mouse_button(node, ctx, True)

    async def _mouse_up(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        return await self._mouse_button(node, ctx, False)

    # --- keyboard -------------------------------------------------------
    async def _keyboard_key(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        key = get_str(node, "key", "Enter")
        self.desktop.key_tap(key)
        ctx.set_output(node.id, "key", key)
        return DEFAULT

    async def _keyboard_input(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        text = get_str(node, "text", "")
        self.desktop.type_text(text)
        ctx.set_output(node.id, "text", text)
        return DEFAULT

    async def _keyboard_down(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        key = get_str(node, "key", "Shift")
        if get_bool(node, "simulateRepeat", False):
            repeat_count = max(get_uint(node, "repeatCount", 8), 1)
            interval_ms = max(get_uint(node, "repeatIntervalMs", 35), 1)
            for i in range(repeat_count):
                run.check_cancel()
                self.desktop.key_tap(key)
                if i + 1 < repeat_count:
                    await run.sleep_ms(interval_ms)
        else:
            self.desktop.key_down(key)
        ctx.set_output(node.id, "key", key)
        return DEFAULT

    async def _keyboard_up(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        key = get_str(node, "key", "Shift")
        self.desktop.key_up(key)
        ctx.set_output(node.id, "key", key)
        return DEFAULT

    async def _shortcut(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        key = get_str(node, "key", "S")
        self.desktop.shortcut(get_str_list(node, "modifiers", ["Ctrl"]), key)
        ctx.set_output(node.id, "key", key)
        return DEFAULT

    # --- system ---------------------------------------------------------
    async def _screenshot(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        output_path = screenshot_output_path(node, self.settings.screenshot_root)
        if get_bool(node, "fullscreen", False):
            frame = await asyncio.to_thread(self.desktop.capture_fullscreen)
        else:
            width = max(get_uint(node, "width", 320), 1)
            height = max(get_uint(node, "height", 240), 1)
            frame = await asyncio.to_thread(self.desktop.capture_region, width, height)

        ctx.set_output(node.id, "screenshot", encode_png_base64(frame))
        if output_path is not None:
            await asyncio.to_thread(save_image, output_path, frame)
            run.info(f"Screenshot saved to {output_path}")
        ctx.set_output(node.id, "path", output_path or "")
        return DEFAULT

    async def _gui_agent(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        await run_gui_agent(node, self.desktop, run, self.settings)
        return DEFAULT

    async def _window_activate(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        if get_str(node, "switchMode", "title").lower() == "shortcut":
            shortcut = get_str(node, "shortcut", "Alt+Tab")
            times = max(get_uint(node, "shortcutTimes", 1), 1)
            interval_ms = max(get_uint(node, "shortcutIntervalMs", 120), 1)
            tokens = split_hotkey(shortcut)
            if not tokens:
                raise ValidationError(f"node '{node.id}' shortcut is empty")
            for i in range(times):
                run.check_cancel()
                self.desktop.shortcut(tokens[:-1], tokens[-1])
                if i + 1 < times:
                    await run.sleep_ms(interval_ms)
            ctx.set_output(node.id, "title", shortcut)
        else:
            title = get_str(node, "title", "")
            self.desktop.activate_window(title)
            ctx.set_output(node.id, "title", title)
        return DEFAULT

    async def _file_copy(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        source, target = get_str(node, "sourcePath", ""), get_str(node, "targetPath", "")
        _require(node, "sourcePath/targetPath cannot be empty", source, target)
        await asyncio.to_thread(
            file_ops.copy_path, source, target, get_bool(node, "overwrite", False), get_bool(node, "recursive", True)
        )
        ctx.set_output(node.id, "targetPath", target)
        return DEFAULT

    async def _file_move(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        source, target = get_str(node, "sourcePath", ""), get_str(node, "targetPath", "")
        _require(node, "sourcePath/targetPath cannot be empty", source, target)
        await asyncio.to_thread(file_ops.move_path, source, target, get_bool(node, "overwrite", False))
        ctx.set_output(node.id, "targetPath", target)
        return DEFAULT

    async def _file_delete(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        path = get_str(node, "path", "")
        _require(node, "path cannot be empty", path)
        await asyncio.to_thread(file_ops.delete_path, path, get_bool(node, "recursive", True))
        ctx.set_output(node.id, "path", path)
        return DEFAULT

    async def _run_command(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        command = get_str(node, "command", "")
        _require(node, "command is empty", command)
        await asyncio.to_thread(process_ops.run_system_command, command, get_bool(node, "shell", True))
        ctx.set_output(node.id, "command", command)
        return DEFAULT

    async def _python_code(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        await asyncio.to_thread(process_ops.run_python_code, get_str(node, "code", ""), node.label, run.log)
        return DEFAULT

    async def _clipboard_read(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        text = self.desktop.clipboard_get()
        ctx.set_output(node.id, "text", text)
        output_var = get_str(node, "outputVar", "clipboardText").strip()
        if output_var:
            ctx.variables[output_var] = text
            run.info(f"Clipboard read node '{node.label}' stored {len(text)} chars in variable '{output_var}'.")
        else:
            run.info(f"Clipboard read node '{node.label}' read {len(text)} chars (no output variable).")
        return DEFAULT

    async def _clipboard_write(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        text = resolve_text_input(node, ctx.variables)
        self.desktop.clipboard_set(text)
        run.info(f"Clipboard write node '{node.label}' wrote {len(text)} chars.")
        return DEFAULT

    async def _file_read_text(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        path = render_template(get_str(node, "path", ""), ctx.variables)
        _require(node, "path cannot be empty", path)
        content = await asyncio.to_thread(file_ops.read_text_file, path)
        ctx.set_output(node.id, "text", content)
        output_var = get_str(node, "outputVar", "fileText").strip()
        if output_var:
            ctx.variables[output_var] = content
            run.info(f"Text read node '{node.label}' stored {len(content)} chars in variable '{output_var}'.")
        else:
            run.info(f"Text read node '{node.label}' read {len(content)} chars (no output variable).")
        return DEFAULT

    async def _file_write_text(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        path = render_template(get_str(node, "path", ""), ctx.variables)
        _require(node, "path cannot be empty", path)
        text = resolve_text_input(node, ctx.variables)
        append = get_bool(node, "append", False)
        await asyncio.to_thread(
            file_ops.write_text_file, path, text, append, get_bool(node, "createParentDir", True)
        )
        ctx.set_output(node.id, "path", path)
        run.info(
            f"Text write node '{node.label}' {'appended' if append else 'wrote'} {len(text)} chars to '{path}'."
        )
        return DEFAULT

    async def _show_message(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        title = render_template(get_str(node, "title", "autoflow"), ctx.variables)
        message = resolve_text_input(node, ctx.variables)
        level = get_str(node, "level", "info")
        ctx.set_output(node.id, "message", message)
        await asyncio.to_thread(self.desktop.show_message, title, message, level)
        run.info(f"Message node '{node.label}' shown (level={level}, {len(message)} chars).")
        return DEFAULT

    async def _delay(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        ms = get_uint(node, "ms", 100)
        await run.sleep_ms(ms)
        ctx.set_output(node.id, "ms", ms)
        return DEFAULT

    # --- control --------------------------------------------------------
    async def _condition(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        return BRANCH_TRUE if evaluate_condition(node, ctx.variables) else BRANCH_FALSE

    async def _loop(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        return BRANCH_LOOP if loop_step(node, ctx) else BRANCH_DONE

    async def _while_loop(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        return BRANCH_LOOP if while_step(node, ctx, run) else BRANCH_DONE

    async def _image_match(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        template_path = get_str(node, "templatePath", "")
        _require(node, "templatePath cannot be empty", template_path)

        source_path = get_str(node, "sourcePath", "")
        threshold = min(max(get_float(node, "threshold", 0.99), 0.0), 1.0)
        click_on_match = get_bool(node, "clickOnMatch", False)
        click_times = max(get_uint(node, "clickTimes", 1), 1)

        matcher = await asyncio.to_thread(TemplateMatcher.from_path, template_path, threshold)
        debug_dir = prepare_debug_dir(self.settings.debug_root, node.id, node.label)

        if source_path.strip():
            source = await asyncio.to_thread(load_gray, source_path)
            evaluation = await asyncio.to_thread(matcher.evaluate, source)
            ctx.set_output(node.id, "similarity", evaluation.best_similarity)
            run.info(
                f"Image match node '{node.label}': static source, "
                f"bestSimilarity={evaluation.best_similarity:.4f}, threshold={threshold:.2f}."
            )
            if evaluation.matched_point is not None:
                x, y = evaluation.matched_point
                ctx.set_output(node.id, "matchX", x)
                ctx.set_output(node.id, "matchY", y)
                run.info(f"Image match node '{node.label}' hit at ({x}, {y}), threshold={threshold}.")
                if click_on_match:
                    self.desktop.click(x, y, click_times)
                return BRANCH_TRUE

            self._save_overlay(debug_dir / "static-source-gray.png", source, evaluation, False)
            run.warn(
                f"Image match node '{node.label}' missed on the static source "
                f"(bestSimilarity={evaluation.best_similarity:.4f}); taking the false branch."
            )
            return BRANCH_FALSE

        found = await self._watch_stream(node, ctx, run, matcher, debug_dir)
        if found is None:
            return BRANCH_FALSE

        evaluation, frame, attempts = found
        assert evaluation.matched_point is not None
        x, y = evaluation.matched_point
        ctx.set_output(node.id, "matchX", x)
        ctx.set_output(node.id, "matchY", y)
        confirm_frames = max(get_uint(node, "confirmFrames", 2), 1)
        run.info(
            f"Image match node '{node.label}' matched {confirm_frames} consecutive frames at ({x}, {y}), "
            f"threshold={threshold}; confirmed."
        )
        self._save_overlay(
            debug_dir / f"match-{attempts:05d}-sim-{evaluation.best_similarity:.4f}.png", frame, evaluation, True
        )
        if click_on_match:
            self.desktop.click(x, y, click_times)
        return BRANCH_TRUE

    async def _watch_stream(self, node, ctx, run, matcher, debug_dir):
        """Evaluate live frames until a confirmed match, a timeout or cancellation.

        Returns (evaluation, frame, attempts) for a confirmed match and None on
        timeout. The frame stream is stopped before this returns or raises.
        """
        threshold = matcher.threshold
        timeout_ms = get_uint(node, "timeoutMs", 10_000)
        poll_s = max(get_uint(node, "pollMs", 16), 1) / 1000.0
        confirm_frames = max(get_uint(node, "confirmFrames", 2), 1)
        debug_every = self.settings.image_match_debug_every

        try:
            await asyncio.to_thread(self.streams.ensure)
        except FlowError as exc:
            raise AutomationError(f"imageMatch stream init failed at node '{node.label}': {exc.message}") from exc
        run.info(f"Image match node '{node.label}' is matching against the live frame stream.")

        started = time.monotonic()
        attempts = 0
        streak = 0
        best_seen = 0.0
        recovered = False
        try:
            while True:
                if run.is_canceled():
                    raise CanceledError()

                confirming = 0 < streak < confirm_frames
                try:
                    frame = await asyncio.to_thread(self.streams.recv_timeout, 0.001 if confirming else poll_s)
                except FlowError as exc:
                    if recovered:
                        raise AutomationError(
                            f"imageMatch stream recv failed at node '{node.label}': {exc.message}"
                        ) from exc
                    recovered = True
                    run.warn(f"Image match node '{node.label}' frame receive failed, rebuilding the stream: {exc.message}")
                    try:
                        await asyncio.to_thread(self.streams.reset, "image_match_recv_failed")
                        await asyncio.to_thread(self.streams.ensure)
                    except FlowError as reinit:
                        raise AutomationError(
                            f"imageMatch stream recover failed at node '{node.label}': "
                            f"recv_error={exc.message}, reinit_error={reinit.message}"
                        ) from reinit
                    continue

                elapsed_ms = (time.monotonic() - started) * 1000.0
                if frame is None:
                    if elapsed_ms >= timeout_ms:
                        run.warn(
                            f"Image match node '{node.label}' found no match within {timeout_ms} ms "
                            f"(bestSimilarity={best_seen:.4f}); taking the false branch."
                        )
                        return None
                    continue

                attempts += 1
                evaluation = await asyncio.to_thread(matcher.evaluate, frame)
                best_seen = max(best_seen, evaluation.best_similarity)

                if attempts % debug_every == 0:
                    self._save_overlay(
                        debug_dir / f"frame-{attempts:05d}-sim-{evaluation.best_similarity:.4f}.png",
                        frame,
                        evaluation,
                        evaluation.matched,
                    )

                run.info(
                    f"Image match node '{node.label}' frame {attempts}, elapsed={int(elapsed_ms)}ms, "
                    f"bestSimilarity={evaluation.best_similarity:.4f}, threshold={threshold:.2f}, "
                    f"confirm={streak}/{confirm_frames}."
                )

                streak = streak + 1 if evaluation.matched else 0
                ctx.set_output(node.id, "similarity", evaluation.best_similarity)

                if streak >= confirm_frames:
                    return evaluation, frame, attempts

                if (time.monotonic() - started) * 1000.0 >= timeout_ms:
                    run.warn(
                        f"Image match node '{node.label}' found no match within {timeout_ms} ms "
                        f"(peakSimilarity={best_seen:.4f}); taking the false branch."
                    )
                    return None
        finally:
            self._release_stream()

    def _release_stream(self) -> None:
        try:
            self.streams.stop()
        except FlowError as exc:
            logger.warning("failed to stop frame stream: %s", exc)

    @staticmethod
    def _save_overlay(path: Path, gray, evaluation: MatchEvaluation, matched: bool) -> None:
        try:
            save_gray_with_box(path, gray, evaluation.box(), matched)
        except (AutomationError, IoError) as exc:
            logger.warning("could not save image match overlay %s: %s", path, exc)

    # --- variables ------------------------------------------------------
    async def _var_define(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        name = get_str(node, "name", "")
        if name.strip():
            value = resolve_typed_value(node, "value")
            ctx.set_output(node.id, "value", value)
            ctx.variables.setdefault(name, value)
        return DEFAULT

    async def _var_set(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        name = get_str(node, "name", "")
        if name.strip():
            value = resolve_typed_value(node, "value")
            ctx.set_output(node.id, "value", value)
            ctx.variables[name] = value
        return DEFAULT

    async def _var_math(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        name = get_str(node, "name", "")
        _require(node, "variable name cannot be empty", name)

        operation = get_str(node, "operation", "add")
        operand = as_float(resolve_typed_value(node, "operand"))
        current = ctx.variables.get(name)
        current_value = 0.0 if isinstance(current, bool) else as_float(current)

        result = var_math.evaluate(operation, current_value, operand)
        if get_bool(node, "assignToVariable", True):
            ctx.variables[name] = result
        ctx.set_output(node.id, "result", result)
        return DEFAULT

    async def _var_get(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        name = get_str(node, "name", "").strip()
        ctx.set_output(node.id, "value", ctx.variables.get(name) if name else None)
        return DEFAULT

    async def _const_value(self, node: WorkflowNode, ctx: ExecutionContext, run: RunContext) -> NextDirective:
        ctx.set_output(node.id, "value", resolve_typed_value(node, "value"))
        return DEFAULT
