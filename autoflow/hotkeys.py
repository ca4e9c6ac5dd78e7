"""Global hotkey listening built on top of pynput."""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .errors import AutomationError, ValidationError

if TYPE_CHECKING:
    from .actions import DesktopBackend, RunContext

logger = logging.getLogger(__name__)

DEFAULT_HOTKEY = "Ctrl+Shift+R"


class HotkeyListener:
    """Runs one global hotkey combination on a pynput listener thread."""

    _SPECIAL_KEY_ALIASES: Dict[str, str] = {
        "ctrl": "ctrl",
        "control": "ctrl",
        "alt": "alt",
        "shift": "shift",
        "win": "cmd",
        "cmd": "cmd",
        "command": "cmd",
        "option": "alt",
        "super": "cmd",
        "enter": "enter",
        "return": "enter",
        "esc": "esc",
        "escape": "esc",
        "space": "space",
        "tab": "tab",
    }

    def __init__(self, hotkey: str, callback: Callable[[], None]) -> None:
        self._hotkey = hotkey
        self._callback = callback
        self._listener: Optional[object] = None

    @property
    def hotkey(self) -> str:
        return self._hotkey

    def start(self) -> None:
        combo = self.to_pynput_hotkey(self._hotkey)
        try:
            from pynput import keyboard  # type: ignore
        except Exception as exc:
            raise AutomationError(f"global hotkeys unavailable (install pynput): {exc}") from exc
        try:
            self._listener = keyboard.GlobalHotKeys({combo: self._callback})
            self._listener.start()  # type: ignore[attr-defined]
        except Exception as exc:
            self._listener = None
            raise AutomationError(f"failed to register hotkey '{self._hotkey}': {exc}") from exc

    def stop(self) -> None:
        if self._listener is None:
            return
        try:
            self._listener.stop()  # type: ignore[attr-defined]
        except Exception as exc:
            logger.debug("ignoring error while stopping hotkey listener: %s", exc)
        self._listener = None

    @classmethod
    def to_pynput_hotkey(cls, hotkey: str) -> str:
        """'Ctrl+Shift+R' -> '<ctrl>+<shift>+r'."""
        if not hotkey or not hotkey.strip():
            raise ValidationError("hotkey is empty")

        tokens = [token.strip() for token in hotkey.replace("+", " ").split() if token.strip()]
        parsed: List[str] = []
        for token in tokens:
            lower_token = token.lower()

            if lower_token in cls._SPECIAL_KEY_ALIASES:
                parsed.append(f"<{cls._SPECIAL_KEY_ALIASES[lower_token]}>")
                continue

            if lower_token.startswith("f") and lower_token[1:].isdigit():
                parsed.append(f"<{lower_token}>")
                continue

            if len(lower_token) == 1:
                parsed.append(lower_token)
                continue

            raise ValidationError(f"unsupported hotkey token '{token}' in '{hotkey}'")

        return "+".join(parsed)


async def wait_for_hotkey(
    desktop: "DesktopBackend",
    hotkey: str,
    timeout_ms: int,
    poll_ms: int,
    ctx: "RunContext",
) -> None:
    """Block (cooperatively) until `hotkey` is pressed.

    Raises AutomationError when `timeout_ms` elapses first and CanceledError
    when the run is canceled while waiting.
    """
    pressed = threading.Event()
    stop_listening = desktop.listen_hotkey(hotkey, pressed.set)
    try:
        ctx.info(f"Waiting for hotkey {hotkey}")
        started = time.monotonic()
        while not pressed.is_set():
            ctx.check_cancel()
            if (time.monotonic() - started) * 1000.0 >= timeout_ms:
                raise AutomationError(f"hotkey '{hotkey}' was not pressed within {timeout_ms} ms")
            await ctx.sleep_ms(max(poll_ms, 1))
    finally:
        stop_listening()
    ctx.info(f"Hotkey {hotkey} pressed")
