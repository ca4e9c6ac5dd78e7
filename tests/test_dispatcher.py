from __future__ import annotations

import asyncio
import base64
import sys
from pathlib import Path

import cv2
import pytest

from autoflow.actions import RunContext
from autoflow.context import ExecutionContext
from autoflow.dispatcher import (
    BRANCH_DONE,
    BRANCH_FALSE,
    BRANCH_LOOP,
    BRANCH_TRUE,
    DEFAULT,
    NodeDispatcher,
    check_handler_table,
    screenshot_output_path,
)
from autoflow.errors import AutomationError, CanceledError, IoError, ValidationError
from autoflow.frame_stream import FrameStreamManager
from autoflow.script_model import NodeKind
from fakes import FakeStream, make_node

MONITOR = {"x": 0, "y": 0, "width": 200, "height": 160, "name": "fake"}


def _dispatch(dispatcher, node, ctx=None, log=None, should_cancel=None):
    ctx = ctx if ctx is not None else ExecutionContext()
    run = RunContext(log, should_cancel, sleep_slice=0.005)
    directive = asyncio.run(dispatcher.dispatch(node, ctx, run))
    return directive, ctx


class ScriptedStreams:
    """Stream factory handing out one FakeStream per scripted frame list."""

    def __init__(self, *scripts, fail_start: int = 0) -> None:
        self.scripts = [list(s) for s in scripts]
        self.fail_start = fail_start
        self.made = []

    def __call__(self, monitor):
        script = self.scripts.pop(0) if self.scripts else []
        stream = FakeStream(script, fail_start=self.fail_start)
        self.made.append(stream)
        return stream


@pytest.fixture
def dispatcher(desktop, settings) -> NodeDispatcher:
    return NodeDispatcher(desktop=desktop, settings=settings)


def _live_dispatcher(desktop, settings, factory) -> NodeDispatcher:
    streams = FrameStreamManager(settings, factory, monitor_provider=lambda: [MONITOR], sleep=lambda s: None)
    return NodeDispatcher(desktop=desktop, streams=streams, settings=settings)


@pytest.fixture
def template_file(tmp_path, frames) -> str:
    path = tmp_path / "template.png"
    cv2.imwrite(str(path), frames["template"])
    return str(path)


def test_every_kind_has_a_handler(dispatcher) -> None:
    for kind in NodeKind:
        assert callable(dispatcher.handler_for(kind))


def test_partial_handler_table_is_rejected() -> None:
    async def _noop(node, ctx, run):
        return DEFAULT

    with pytest.raises(RuntimeError, match="windowTrigger"):
        check_handler_table({NodeKind.DELAY: _noop})


def test_dispatch_clears_previous_outputs(dispatcher) -> None:
    ctx = ExecutionContext()
    ctx.set_output("k", "stale", 1)

    _dispatch(dispatcher, make_node("k", NodeKind.KEYBOARD_KEY, key="Tab"), ctx)

    assert ctx.node_outputs["k"] == {"key": "Tab"}


# --- triggers -------------------------------------------------------------------

def test_window_trigger_contains_match(dispatcher, desktop) -> None:
    desktop.windows = ["Untitled - Notepad"]
    node = make_node("w", NodeKind.WINDOW_TRIGGER, title="notepad", timeoutMs=1000)

    directive, ctx = _dispatch(dispatcher, node)

    assert directive == DEFAULT
    assert ctx.node_outputs["w"] == {"title": "notepad"}


def test_window_trigger_exact_mismatch_times_out(dispatcher, desktop) -> None:
    desktop.windows = ["Untitled - Notepad"]
    node = make_node("w", NodeKind.WINDOW_TRIGGER, title="notepad", matchMode="exact", timeoutMs=0)

    with pytest.raises(AutomationError, match="timed out"):
        _dispatch(dispatcher, node)


def test_window_trigger_requires_title(dispatcher) -> None:
    with pytest.raises(ValidationError, match="title is empty"):
        _dispatch(dispatcher, make_node("w", NodeKind.WINDOW_TRIGGER, title="  "))


def test_hotkey_trigger_returns_once_pressed(dispatcher, desktop) -> None:
    desktop.fire_hotkey = True
    lines = []

    _dispatch(dispatcher, make_node("h", NodeKind.HOTKEY_TRIGGER, hotkey="Ctrl+Alt+H"), log=lambda level, msg: lines.append(msg))

    assert ("listen_hotkey", "Ctrl+Alt+H") in desktop.calls
    assert desktop.hotkey_stopped
    assert lines == ["Waiting for hotkey Ctrl+Alt+H", "Hotkey Ctrl+Alt+H pressed"]


def test_hotkey_trigger_timeout_stops_listener(dispatcher, desktop) -> None:
    with pytest.raises(AutomationError, match="was not pressed within 0 ms"):
        _dispatch(dispatcher, make_node("h", NodeKind.HOTKEY_TRIGGER, timeoutMs=0))
    assert desktop.hotkey_stopped


# --- input ----------------------------------------------------------------------

def test_mouse_nodes_drive_the_desktop(dispatcher, desktop) -> None:
    _dispatch(dispatcher, make_node("d", NodeKind.MOUSE_DRAG, fromX=1, fromY=2, toX=30, toY=40))
    _dispatch(dispatcher, make_node("w", NodeKind.MOUSE_WHEEL, vertical=3))
    _, ctx = _dispatch(dispatcher, make_node("down", NodeKind.MOUSE_DOWN, x=5, y=6, button="right"))

    assert desktop.calls == [("drag", 1, 2, 30, 40), ("wheel", 3), ("button_down", 5, 6, "right")]
    assert ctx.node_outputs["down"] == {"x": 5, "y": 6, "button": "right"}


def test_keyboard_down_simulates_repeat(dispatcher, desktop) -> None:
    node = make_node(
        "k", NodeKind.KEYBOARD_DOWN, key="a", simulateRepeat=True, repeatCount=3, repeatIntervalMs=1
    )

    _dispatch(dispatcher, node)

    assert desktop.calls == [("key_tap", "a")] * 3


def test_keyboard_down_without_repeat_holds_the_key(dispatcher, desktop) -> None:
    _dispatch(dispatcher, make_node("k", NodeKind.KEYBOARD_DOWN))
    assert desktop.calls == [("key_down", "Shift")]


def test_shortcut_uses_default_modifiers(dispatcher, desktop) -> None:
    _dispatch(dispatcher, make_node("s", NodeKind.SHORTCUT, key="C"))
    assert desktop.calls == [("shortcut", ["Ctrl"], "C")]


def test_window_activate_shortcut_mode(dispatcher, desktop) -> None:
    node = make_node(
        "a", NodeKind.WINDOW_ACTIVATE, switchMode="shortcut", shortcut="Alt+Tab", shortcutTimes=2, shortcutIntervalMs=1
    )

    _, ctx = _dispatch(dispatcher, node)

    assert desktop.calls == [("shortcut", ["Alt"], "Tab")] * 2
    assert ctx.node_outputs["a"] == {"title": "Alt+Tab"}


def test_window_activate_by_title(dispatcher, desktop) -> None:
    _dispatch(dispatcher, make_node("a", NodeKind.WINDOW_ACTIVATE, title="Calculator"))
    assert desktop.calls == [("activate_window", "Calculator")]


# --- screenshots ----------------------------------------------------------------

def test_screenshot_region_is_saved_and_encoded(dispatcher, desktop, tmp_path) -> None:
    node = make_node("s1", NodeKind.SCREENSHOT, label="Shot", width=20, height=10, saveDir=str(tmp_path / "out"))

    _, ctx = _dispatch(dispatcher, node)

    assert desktop.calls == [("capture_region", 20, 10)]
    outputs = ctx.node_outputs["s1"]
    saved = Path(outputs["path"])
    assert saved.parent == tmp_path / "out"
    assert saved.name.startswith("autoflow_screenshot_shot_s1_")
    assert saved.exists()
    assert base64.b64decode(outputs["screenshot"]).startswith(b"\x89PNG")


def test_screenshot_without_saving(dispatcher, desktop, settings) -> None:
    node = make_node("s1", NodeKind.SCREENSHOT, fullscreen=True, shouldSave=False)

    _, ctx = _dispatch(dispatcher, node)

    assert desktop.calls == [("capture_fullscreen",)]
    assert ctx.node_outputs["s1"]["path"] == ""
    assert not Path(settings.screenshot_root).exists()


def test_screenshot_legacy_path_uses_its_directory(tmp_path) -> None:
    node = make_node("s1", NodeKind.SCREENSHOT, path=str(tmp_path / "legacy" / "x.png"))
    assert Path(screenshot_output_path(node, "unused")).parent == tmp_path / "legacy"

    bare = make_node("s1", NodeKind.SCREENSHOT, path=str(tmp_path / "folder"))
    assert Path(screenshot_output_path(bare, "unused")).parent == tmp_path / "folder"

    default = make_node("s1", NodeKind.SCREENSHOT)
    assert Path(screenshot_output_path(default, str(tmp_path))).parent == tmp_path


# --- clipboard, files, messages -------------------------------------------------

def test_clipboard_read_stores_variable(dispatcher, desktop) -> None:
    desktop.clipboard = "copied"

    _, ctx = _dispatch(dispatcher, make_node("c", NodeKind.CLIPBOARD_READ))

    assert ctx.variables == {"clipboardText": "copied"}
    assert ctx.node_outputs["c"] == {"text": "copied"}


def test_clipboard_write_renders_template(dispatcher, desktop) -> None:
    ctx = ExecutionContext(variables={"name": "Ada"})

    _dispatch(dispatcher, make_node("c", NodeKind.CLIPBOARD_WRITE, inputText="hi {{ name }}"), ctx)

    assert desktop.clipboard == "hi Ada"


def test_file_read_text_into_variable(dispatcher, tmp_path) -> None:
    source = tmp_path / "notes.txt"
    source.write_text("line one\nline two", encoding="utf-8")
    ctx = ExecutionContext(variables={"dir": str(tmp_path)})

    _dispatch(dispatcher, make_node("r", NodeKind.FILE_READ_TEXT, path="{{dir}}/notes.txt", outputVar="notes"), ctx)

    assert ctx.variables["notes"] == "line one\nline two"
    assert ctx.node_outputs["r"]["text"] == "line one\nline two"


def test_file_read_text_missing_file(dispatcher, tmp_path) -> None:
    with pytest.raises(IoError, match="failed to read text file"):
        _dispatch(dispatcher, make_node("r", NodeKind.FILE_READ_TEXT, path=str(tmp_path / "nope.txt")))


def test_file_write_text_appends(dispatcher, tmp_path) -> None:
    target = tmp_path / "log.txt"
    target.write_text("a", encoding="utf-8")

    _dispatch(dispatcher, make_node("w", NodeKind.FILE_WRITE_TEXT, path=str(target), inputText="b", append=True))

    assert target.read_text(encoding="utf-8") == "ab"


def test_show_message_renders_title(dispatcher, desktop) -> None:
    ctx = ExecutionContext(variables={"who": "Bob", "count": 3})
    node = make_node(
        "m", NodeKind.SHOW_MESSAGE, title="Hello {{who}}", inputMode="var", inputVar="count", level="warning"
    )

    _, ctx = _dispatch(dispatcher, node, ctx)

    assert desktop.calls == [("show_message", "Hello Bob", "3", "warning")]
    assert ctx.node_outputs["m"] == {"message": "3"}


def test_file_nodes_validate_paths(dispatcher) -> None:
    with pytest.raises(ValidationError, match="sourcePath/targetPath cannot be empty"):
        _dispatch(dispatcher, make_node("c", NodeKind.FILE_COPY, sourcePath="a", targetPath=""))


def test_file_copy_node(dispatcher, tmp_path) -> None:
    (tmp_path / "a.txt").write_text("x", encoding="utf-8")
    target = tmp_path / "sub" / "b.txt"

    _, ctx = _dispatch(
        dispatcher, make_node("c", NodeKind.FILE_COPY, sourcePath=str(tmp_path / "a.txt"), targetPath=str(target))
    )

    assert target.read_text(encoding="utf-8") == "x"
    assert ctx.node_outputs["c"] == {"targetPath": str(target)}


# --- variables ------------------------------------------------------------------

def test_var_define_keeps_existing_value(dispatcher) -> None:
    ctx = ExecutionContext(variables={"a": "kept"})

    _dispatch(dispatcher, make_node("d", NodeKind.VAR_DEFINE, name="a", valueType="number", valueNumber=5), ctx)
    _dispatch(dispatcher, make_node("d2", NodeKind.VAR_DEFINE, name="b", valueType="json", valueJson="[1, 2]"), ctx)

    assert ctx.variables == {"a": "kept", "b": [1, 2]}
    assert ctx.node_outputs["d"] == {"value": 5.0}


def test_var_set_and_get(dispatcher) -> None:
    ctx = ExecutionContext()

    _dispatch(dispatcher, make_node("s", NodeKind.VAR_SET, name="a", valueType="string", valueString="x"), ctx)
    _dispatch(dispatcher, make_node("g", NodeKind.VAR_GET, name="a"), ctx)
    _dispatch(dispatcher, make_node("g2", NodeKind.VAR_GET, name="missing"), ctx)

    assert ctx.node_outputs["g"] == {"value": "x"}
    assert ctx.node_outputs["g2"] == {"value": None}


def test_var_math_without_assignment(dispatcher) -> None:
    ctx = ExecutionContext(variables={"n": 10})
    node = make_node("m", NodeKind.VAR_MATH, name="n", operation="mul", operand=3, assignToVariable=False)

    _dispatch(dispatcher, node, ctx)

    assert ctx.variables == {"n": 10}
    assert ctx.node_outputs["m"] == {"result": 30.0}


def test_var_math_reads_string_and_typed_operand(dispatcher) -> None:
    ctx = ExecutionContext(variables={"n": "2.5", "flag": True})

    _dispatch(dispatcher, make_node("m", NodeKind.VAR_MATH, name="n", operation="+", operandType="number", operandNumber=1), ctx)
    _dispatch(dispatcher, make_node("f", NodeKind.VAR_MATH, name="flag", operation="add", operand=4), ctx)

    assert ctx.variables == {"n": 3.5, "flag": 4.0}


def test_var_math_requires_name(dispatcher) -> None:
    with pytest.raises(ValidationError, match="variable name cannot be empty"):
        _dispatch(dispatcher, make_node("m", NodeKind.VAR_MATH, name=""))


def test_const_value_output(dispatcher) -> None:
    _, ctx = _dispatch(dispatcher, make_node("c", NodeKind.CONST_VALUE, valueType="boolean", valueBoolean="TRUE"))
    assert ctx.node_outputs["c"] == {"value": True}


# --- processes ------------------------------------------------------------------

@pytest.mark.skipif(sys.platform.startswith("win"), reason="posix shell")
def test_run_command_success_and_failure(dispatcher) -> None:
    _, ctx = _dispatch(dispatcher, make_node("r", NodeKind.RUN_COMMAND, command="echo hi"))
    assert ctx.node_outputs["r"] == {"command": "echo hi"}

    with pytest.raises(AutomationError, match="command exited with status 3"):
        _dispatch(dispatcher, make_node("r", NodeKind.RUN_COMMAND, command="exit 3"))


def test_python_code_logs_stdout(dispatcher, collect, log_lines) -> None:
    _dispatch(dispatcher, make_node("p", NodeKind.PYTHON_CODE, code="print('hello')"), log=collect)
    assert ("info", "Python stdout: hello") in log_lines


def test_python_code_empty_is_skipped(dispatcher, collect, log_lines) -> None:
    _dispatch(dispatcher, make_node("p", NodeKind.PYTHON_CODE, label="Script", code="  "), log=collect)
    assert log_lines == [("warn", "Python node 'Script' has no code; skipped.")]


# --- image matching -------------------------------------------------------------

def test_image_match_static_hit_clicks_center(dispatcher, desktop, tmp_path, frames, template_file) -> None:
    source = tmp_path / "screen.png"
    cv2.imwrite(str(source), frames["frame"])
    node = make_node(
        "im", NodeKind.IMAGE_MATCH, templatePath=template_file, sourcePath=str(source), clickOnMatch=True, clickTimes=2
    )

    directive, ctx = _dispatch(dispatcher, node)

    assert directive == BRANCH_TRUE
    assert desktop.calls == [("click", 80, 56, 2, "left")]
    assert ctx.node_outputs["im"]["matchX"] == 80
    assert ctx.node_outputs["im"]["matchY"] == 56
    assert ctx.node_outputs["im"]["similarity"] == pytest.approx(1.0, abs=1e-3)


def test_image_match_static_miss_saves_debug_image(dispatcher, desktop, settings, tmp_path, frames, template_file) -> None:
    source = tmp_path / "other.png"
    cv2.imwrite(str(source), frames["other"])
    node = make_node("im", NodeKind.IMAGE_MATCH, templatePath=template_file, sourcePath=str(source), clickOnMatch=True)

    directive, ctx = _dispatch(dispatcher, node)

    assert directive == BRANCH_FALSE
    assert desktop.calls == []
    assert "matchX" not in ctx.node_outputs["im"]
    assert list(Path(settings.debug_root).glob("*/static-source-gray.png"))


def test_image_match_requires_template(dispatcher) -> None:
    with pytest.raises(ValidationError, match="templatePath cannot be empty"):
        _dispatch(dispatcher, make_node("im", NodeKind.IMAGE_MATCH))


def test_image_match_live_confirms_consecutive_frames(desktop, settings, frames, template_file) -> None:
    factory = ScriptedStreams([frames["frame"], frames["other"], frames["frame"], frames["frame"]])
    dispatcher = _live_dispatcher(desktop, settings, factory)
    node = make_node(
        "im", NodeKind.IMAGE_MATCH, templatePath=template_file, clickOnMatch=True, confirmFrames=2, timeoutMs=5000
    )

    directive, ctx = _dispatch(dispatcher, node)

    assert directive == BRANCH_TRUE
    assert desktop.calls == [("click", 80, 56, 1, "left")]
    assert (ctx.node_outputs["im"]["matchX"], ctx.node_outputs["im"]["matchY"]) == (80, 56)
    assert factory.made[0].stops == 1
    assert factory.made[0].script == []


def test_image_match_live_recovers_once(desktop, settings, frames, template_file, collect, log_lines) -> None:
    factory = ScriptedStreams([RuntimeError("lost")], [frames["frame"], frames["frame"]])
    dispatcher = _live_dispatcher(desktop, settings, factory)
    node = make_node("im", NodeKind.IMAGE_MATCH, templatePath=template_file, timeoutMs=5000)

    directive, _ = _dispatch(dispatcher, node, log=collect)

    assert directive == BRANCH_TRUE
    assert len(factory.made) == 2
    assert [s.stops for s in factory.made] == [1, 1]
    assert any(level == "warn" and "rebuilding the stream" in msg for level, msg in log_lines)


def test_image_match_live_second_failure_is_fatal(desktop, settings, template_file) -> None:
    factory = ScriptedStreams([RuntimeError("lost")], [RuntimeError("lost again")])
    dispatcher = _live_dispatcher(desktop, settings, factory)
    node = make_node("im", NodeKind.IMAGE_MATCH, templatePath=template_file, timeoutMs=5000)

    with pytest.raises(AutomationError, match="imageMatch stream recv failed"):
        _dispatch(dispatcher, node)
    assert factory.made[-1].stops == 1


def test_image_match_live_timeout_takes_false_branch(desktop, settings, frames, template_file, collect, log_lines) -> None:
    factory = ScriptedStreams([frames["other"]])
    dispatcher = _live_dispatcher(desktop, settings, factory)
    node = make_node("im", NodeKind.IMAGE_MATCH, templatePath=template_file, timeoutMs=30, pollMs=1)

    directive, ctx = _dispatch(dispatcher, node, log=collect)

    assert directive == BRANCH_FALSE
    assert ctx.node_outputs["im"]["similarity"] < 0.99
    assert factory.made[0].stops == 1
    assert any(level == "warn" and "found no match within 30 ms" in msg for level, msg in log_lines)


def test_image_match_live_cancel_stops_stream(desktop, settings, frames, template_file) -> None:
    factory = ScriptedStreams([frames["frame"]])
    dispatcher = _live_dispatcher(desktop, settings, factory)
    node = make_node("im", NodeKind.IMAGE_MATCH, templatePath=template_file)

    with pytest.raises(CanceledError):
        _dispatch(dispatcher, node, should_cancel=lambda: True)
    assert factory.made[0].stops == 1


def test_image_match_live_stream_init_failure(desktop, settings, template_file) -> None:
    factory = ScriptedStreams(fail_start=100)
    dispatcher = _live_dispatcher(desktop, settings, factory)
    node = make_node("im", NodeKind.IMAGE_MATCH, templatePath=template_file)

    with pytest.raises(AutomationError, match="imageMatch stream init failed"):
        _dispatch(dispatcher, node)
    assert len(factory.made) == settings.stream_start_retries


def test_loop_directive_counts_down_then_restarts(dispatcher) -> None:
    node = make_node("loop", NodeKind.LOOP, times=3)
    ctx = ExecutionContext()

    branches = [_dispatch(dispatcher, node, ctx)[0] for _ in range(4)]

    assert branches == [BRANCH_LOOP, BRANCH_LOOP, BRANCH_LOOP, BRANCH_DONE]
    assert ctx.loop_remaining == {}
    _dispatch(dispatcher, node, ctx)
    assert ctx.loop_remaining == {"loop": 2}


def test_while_directive_leaves_after_max_iterations(dispatcher, collect, log_lines) -> None:
    node = make_node(
        "while",
        NodeKind.WHILE_LOOP,
        left="1",
        leftType="literal",
        operator="==",
        right="1",
        rightType="literal",
        maxIterations=5,
    )
    ctx = ExecutionContext()

    branches = [_dispatch(dispatcher, node, ctx, log=collect)[0] for _ in range(6)]

    assert branches == [BRANCH_LOOP] * 5 + [BRANCH_DONE]
    assert ctx.while_iterations == {}
    assert [level for level, _ in log_lines] == ["warn"]
