from __future__ import annotations

import asyncio
import time

import pytest

from autoflow.actions import RunContext, key_attr_name, split_hotkey, _escape_send_keys
from autoflow.errors import CanceledError, ValidationError
from autoflow.hotkeys import HotkeyListener, wait_for_hotkey


@pytest.mark.parametrize(
    "hotkey, expected",
    [
        ("Ctrl+Shift+R", "<ctrl>+<shift>+r"),
        ("control alt F5", "<ctrl>+<alt>+<f5>"),
        ("Win+Enter", "<cmd>+<enter>"),
        ("esc", "<esc>"),
    ],
)
def test_to_pynput_hotkey(hotkey, expected) -> None:
    assert HotkeyListener.to_pynput_hotkey(hotkey) == expected


def test_to_pynput_hotkey_rejects_bad_input() -> None:
    with pytest.raises(ValidationError, match="hotkey is empty"):
        HotkeyListener.to_pynput_hotkey("  ")
    with pytest.raises(ValidationError, match="unsupported hotkey token 'Hyper'"):
        HotkeyListener.to_pynput_hotkey("Ctrl+Hyper")


def test_stop_without_start_is_a_no_op() -> None:
    HotkeyListener("Ctrl+R", lambda: None).stop()


def test_wait_for_hotkey_honours_cancel(desktop) -> None:
    run = RunContext(should_cancel=lambda: True)

    with pytest.raises(CanceledError):
        asyncio.run(wait_for_hotkey(desktop, "Ctrl+R", 10_000, 10, run))
    assert desktop.hotkey_stopped


def test_run_context_sleep_is_cancelable() -> None:
    deadline = time.monotonic() + 0.03
    run = RunContext(should_cancel=lambda: time.monotonic() >= deadline, sleep_slice=0.005)

    started = time.monotonic()
    with pytest.raises(CanceledError):
        asyncio.run(run.sleep(5.0))
    assert time.monotonic() - started < 1.0


def test_split_hotkey_and_key_names() -> None:
    assert split_hotkey("Ctrl + Shift+R") == ["Ctrl", "Shift", "R"]
    assert key_attr_name("Return") == "enter"
    assert key_attr_name("Meta") == "cmd"
    assert key_attr_name("F12") == "f12"
    assert key_attr_name("PageDown") == "page_down"
    assert key_attr_name("a") is None


def test_send_keys_escaping() -> None:
    assert _escape_send_keys("a+b (c)\n") == "a{+}b {(}c{)}{ENTER}"
