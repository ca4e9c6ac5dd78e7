"""
Desktop capabilities used by node handlers.

Handlers never talk to an OS binding directly; they go through a
DesktopBackend. SystemDesktop is the real implementation:

- keyboard: pywinauto `send_keys` on Windows for text, pynput elsewhere
- mouse: pynput controller, falling back to pyautogui
- windows: pywinauto (Windows only)
- screen: mss
- clipboard: pyperclip
- dialogs: tkinter messagebox

Library imports are lazy so the engine (and its tests) import on machines
without a display.
"""

from __future__ import annotations

import asyncio
import sys
import time
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .errors import AutomationError, CanceledError, ValidationError
from .logger import LEVEL_INFO, LEVEL_WARN, LogSink


class DesktopBackend(Protocol):
    def click(self, x: int, y: int, times: int = 1, button: str = "left") -> None: ...

    def move_to(self, x: int, y: int) -> None: ...

    def drag(self, from_x: int, from_y: int, to_x: int, to_y: int) -> None: ...

    def wheel(self, vertical: int) -> None: ...

    def button_down(self, x: int, y: int, button: str) -> None: ...

    def button_up(self, x: int, y: int, button: str) -> None: ...

    def key_tap(self, key: str) -> None: ...

    def key_down(self, key: str) -> None: ...

    def key_up(self, key: str) -> None: ...

    def shortcut(self, modifiers: Sequence[str], key: str) -> None: ...

    def type_text(self, text: str) -> None: ...

    def window_title_exists(self, title: str, match_mode: str) -> bool: ...

    def activate_window(self, title: str) -> None: ...

    def capture_fullscreen(self) -> np.ndarray: ...

    def capture_region(self, width: int, height: int) -> np.ndarray: ...

    def clipboard_get(self) -> str: ...

    def clipboard_set(self, text: str) -> None: ...

    def show_message(self, title: str, message: str, level: str) -> None: ...

    def listen_hotkey(self, hotkey: str, on_press: Callable[[], None]) -> Callable[[], None]: ...


class RunContext:
    """Per-run helper passed to handlers: logging, cancellation, sleeping."""

    def __init__(
        self,
        logger: Optional[LogSink] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
        sleep_slice: float = 0.025,
    ):
        self._logger = logger
        self._should_cancel = should_cancel or (lambda: False)
        self._sleep_slice = max(sleep_slice, 0.001)

    def log(self, level: str, msg: str) -> None:
        if self._logger:
            self._logger(level, msg)

    def info(self, msg: str) -> None:
        self.log(LEVEL_INFO, msg)

    def warn(self, msg: str) -> None:
        self.log(LEVEL_WARN, msg)

    def is_canceled(self) -> bool:
        return bool(self._should_cancel())

    def check_cancel(self) -> None:
        if self.is_canceled():
            raise CanceledError()

    async def sleep(self, seconds: float) -> None:
        """Sleep in short slices, re-checking cancellation between them."""
        deadline = time.monotonic() + max(seconds, 0.0)
        while True:
            self.check_cancel()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, self._sleep_slice))

    async def sleep_ms(self, ms: int) -> None:
        await self.sleep(max(ms, 0) / 1000.0)


_MODIFIER_ALIASES = {
    "ctrl": "ctrl",
    "control": "ctrl",
    "alt": "alt",
    "option": "alt",
    "shift": "shift",
    "win": "cmd",
    "meta": "cmd",
    "super": "cmd",
    "cmd": "cmd",
    "command": "cmd",
}

_KEY_ALIASES = {
    "enter": "enter",
    "return": "enter",
    "tab": "tab",
    "esc": "esc",
    "escape": "esc",
    "space": "space",
    "backspace": "backspace",
    "delete": "delete",
    "del": "delete",
    "insert": "insert",
    "home": "home",
    "end": "end",
    "pageup": "page_up",
    "page_up": "page_up",
    "pagedown": "page_down",
    "page_down": "page_down",
    "up": "up",
    "down": "down",
    "left": "left",
    "right": "right",
    "arrowup": "up",
    "arrowdown": "down",
    "arrowleft": "left",
    "arrowright": "right",
    "capslock": "caps_lock",
    "printscreen": "print_screen",
}


def split_hotkey(hotkey: str) -> List[str]:
    """'Ctrl+Shift+R' or 'ctrl shift r' -> ['Ctrl', 'Shift', 'R']."""
    return [token.strip() for token in hotkey.replace("+", " ").split() if token.strip()]


def key_attr_name(name: str) -> Optional[str]:
    """pynput `Key` attribute for a logical key name, None for characters."""
    lowered = name.strip().lower()
    if lowered in _MODIFIER_ALIASES:
        return _MODIFIER_ALIASES[lowered]
    if lowered in _KEY_ALIASES:
        return _KEY_ALIASES[lowered]
    if lowered.startswith("f") and lowered[1:].isdigit():
        return lowered
    return None


def _get_pynput() -> Tuple[Optional[Any], Optional[Any]]:
    """Import pynput lazily and return (KeyboardControllerClass, KeyModule)."""
    try:
        from pynput.keyboard import Controller as KeyboardController, Key as KeyModule  # type: ignore
        return KeyboardController, KeyModule
    except Exception:
        return None, None


def _get_pynput_mouse() -> Tuple[Optional[Any], Optional[Any]]:
    """Import pynput.mouse lazily and return (MouseControllerClass, ButtonModule)."""
    try:
        from pynput.mouse import Controller as MouseController, Button as MouseButton  # type: ignore
        return MouseController, MouseButton
    except Exception:
        return None, None


_SEND_KEYS_SPECIAL = set("+^%~(){}[]")


def _escape_send_keys(text: str) -> str:
    return "".join("{" + ch + "}" if ch in _SEND_KEYS_SPECIAL else ch for ch in text).replace("\n", "{ENTER}")


def _try_pywinauto_send_keys(text: str, *, pause: float = 0.0) -> bool:
    """Send literal text via pywinauto on Windows; True on success."""
    if not sys.platform.startswith("win"):
        return False
    try:
        from pywinauto.keyboard import send_keys as pw_send_keys  # type: ignore
        pw_send_keys(_escape_send_keys(text), with_spaces=True, with_newlines=True, pause=max(0.0, float(pause)))
        return True
    except Exception:
        return False


def _normalize_button(name: str) -> str:
    lowered = name.strip().lower()
    return lowered if lowered in ("left", "right", "middle") else "left"


class SystemDesktop:
    """DesktopBackend backed by the installed OS automation libraries."""

    # --- keyboard -------------------------------------------------------
    def _keyboard(self) -> Tuple[Any, Any]:
        kb_cls, key_mod = _get_pynput()
        if kb_cls is None or key_mod is None:
            raise AutomationError("No keyboard backend available (install pynput)")
        return kb_cls(), key_mod

    @staticmethod
    def _resolve_key(key_mod: Any, name: str) -> Any:
        attr = key_attr_name(name)
        if attr is not None:
            key = getattr(key_mod, attr, None)
            if key is None:
                raise ValidationError(f"unsupported key '{name}'")
            return key
        stripped = name.strip()
        if len(stripped) == 1:
            return stripped.lower()
        raise ValidationError(f"unsupported key '{name}'")

    def key_tap(self, key: str) -> None:
        kb, key_mod = self._keyboard()
        resolved = self._resolve_key(key_mod, key)
        try:
            kb.press(resolved); kb.release(resolved)
        except Exception as e:
            raise AutomationError(f"key tap '{key}' failed: {e}") from e

    def key_down(self, key: str) -> None:
        kb, key_mod = self._keyboard()
        try:
            kb.press(self._resolve_key(key_mod, key))
        except ValidationError:
            raise
        except Exception as e:
            raise AutomationError(f"key down '{key}' failed: {e}") from e

    def key_up(self, key: str) -> None:
        kb, key_mod = self._keyboard()
        try:
            kb.release(self._resolve_key(key_mod, key))
        except ValidationError:
            raise
        except Exception as e:
            raise AutomationError(f"key up '{key}' failed: {e}") from e

    def shortcut(self, modifiers: Sequence[str], key: str) -> None:
        kb, key_mod = self._keyboard()
        held = [self._resolve_key(key_mod, name) for name in modifiers]
        main = self._resolve_key(key_mod, key)
        pressed: List[Any] = []
        try:
            for mod in held:
                kb.press(mod)
                pressed.append(mod)
            kb.press(main); kb.release(main)
        except Exception as e:
            raise AutomationError(f"shortcut failed: {e}") from e
        finally:
            for mod in reversed(pressed):
                kb.release(mod)

    def type_text(self, text: str) -> None:
        if not text:
            return
        # Prefer pywinauto on Windows with a tiny pause to prevent dropped chars
        if _try_pywinauto_send_keys(text, pause=0.015):
            return
        kb, _key_mod = self._keyboard()
        try:
            kb.type(text)
        except Exception as e:
            raise AutomationError(f"text input failed: {e}") from e

    # --- mouse ----------------------------------------------------------
    def _mouse(self) -> Tuple[Optional[Any], Optional[Any]]:
        m_ctrl_cls, m_btn_mod = _get_pynput_mouse()
        if m_ctrl_cls is None or m_btn_mod is None:
            return None, None
        return m_ctrl_cls(), m_btn_mod

    def click(self, x: int, y: int, times: int = 1, button: str = "left") -> None:
        btn_name = _normalize_button(button)
        count = max(1, int(times))
        controller, btn_mod = self._mouse()
        if controller is not None:
            try:
                controller.position = (int(x), int(y))
                controller.click(getattr(btn_mod, btn_name), count)
                return
            except Exception:
                pass
        # Fallback: pyautogui
        try:
            import pyautogui  # local import to avoid hard dep at import time
            pyautogui.click(x=int(x), y=int(y), clicks=count, button=btn_name)
        except Exception as e:
            raise AutomationError(f"mouse click failed: {e}") from e

    def move_to(self, x: int, y: int) -> None:
        controller, _btn_mod = self._mouse()
        try:
            if controller is not None:
                controller.position = (int(x), int(y))
                return
            import pyautogui
            pyautogui.moveTo(int(x), int(y))
        except Exception as e:
            raise AutomationError(f"mouse move failed: {e}") from e

    def drag(self, from_x: int, from_y: int, to_x: int, to_y: int) -> None:
        self.button_down(from_x, from_y, "left")
        try:
            self.move_to(to_x, to_y)
        finally:
            self.button_up(to_x, to_y, "left")

    def wheel(self, vertical: int) -> None:
        controller, _btn_mod = self._mouse()
        if controller is not None:
            try:
                controller.scroll(0, int(vertical))
                return
            except Exception:
                pass
        try:
            import pyautogui
            pyautogui.scroll(int(vertical))
        except Exception as e:
            raise AutomationError(f"mouse wheel failed: {e}") from e

    def _button(self, x: int, y: int, button: str, down: bool) -> None:
        btn_name = _normalize_button(button)
        controller, btn_mod = self._mouse()
        try:
            if controller is not None:
                controller.position = (int(x), int(y))
                btn = getattr(btn_mod, btn_name)
                if down:
                    controller.press(btn)
                else:
                    controller.release(btn)
                return
            import pyautogui
            if down:
                pyautogui.mouseDown(x=int(x), y=int(y), button=btn_name)
            else:
                pyautogui.mouseUp(x=int(x), y=int(y), button=btn_name)
        except Exception as e:
            raise AutomationError(f"mouse button {'down' if down else 'up'} failed: {e}") from e

    def button_down(self, x: int, y: int, button: str) -> None:
        self._button(x, y, button, True)

    def button_up(self, x: int, y: int, button: str) -> None:
        self._button(x, y, button, False)

    # --- windows --------------------------------------------------------
    @staticmethod
    def _window_titles() -> List[Tuple[Any, str]]:
        from pywinauto import Desktop  # type: ignore

        seen = set()
        out: List[Tuple[Any, str]] = []
        for win in Desktop(backend="uia").windows():
            try:
                if not win.is_visible():
                    continue
                title = (win.window_text() or "").strip()
            except Exception:
                continue
            if title and title not in seen:
                seen.add(title)
                out.append((win, title))
        return out

    def window_title_exists(self, title: str, match_mode: str) -> bool:
        if not sys.platform.startswith("win"):
            raise AutomationError("window trigger is only supported on Windows currently")
        target = title.strip().lower()
        if not target:
            raise ValidationError("window title is empty")
        exact = match_mode.strip().lower() == "exact"
        try:
            titles = [t.lower() for _win, t in self._window_titles()]
        except Exception as e:
            raise AutomationError(f"window enumeration failed: {e}") from e
        return any(t == target if exact else target in t for t in titles)

    def activate_window(self, title: str) -> None:
        if not sys.platform.startswith("win"):
            raise AutomationError("window switching is only supported on Windows currently")
        target = title.strip()
        if not target:
            raise ValidationError("window title is empty")
        try:
            candidates = self._window_titles()
        except Exception as e:
            raise AutomationError(f"window enumeration failed: {e}") from e
        for win, win_title in candidates:
            if target.lower() in win_title.lower():
                try:
                    if win.is_minimized():
                        win.restore()
                    win.set_focus()
                except Exception as e:
                    raise AutomationError(f"failed to switch to target window: {win_title}: {e}") from e
                return
        raise AutomationError(f"cannot find open window matching title: {target}")

    # --- screen ---------------------------------------------------------
    @staticmethod
    def _grab(region: dict) -> np.ndarray:
        import mss

        try:
            with mss.mss() as sct:
                return np.array(sct.grab(region))
        except Exception as e:
            raise AutomationError(f"screen capture failed: {e}") from e

    def capture_fullscreen(self) -> np.ndarray:
        from .frame_stream import list_monitors

        mon = list_monitors()[0]
        return self._grab({"left": mon["x"], "top": mon["y"], "width": mon["width"], "height": mon["height"]})

    def capture_region(self, width: int, height: int) -> np.ndarray:
        from .frame_stream import list_monitors

        mon = list_monitors()[0]
        w = min(max(int(width), 1), mon["width"])
        h = min(max(int(height), 1), mon["height"])
        if w <= 0 or h <= 0:
            raise AutomationError("invalid capture size for region screenshot")
        return self._grab({"left": mon["x"], "top": mon["y"], "width": w, "height": h})

    # --- clipboard & dialogs --------------------------------------------
    def clipboard_get(self) -> str:
        import pyperclip

        try:
            return pyperclip.paste() or ""
        except pyperclip.PyperclipException as e:
            raise AutomationError(f"reading the clipboard failed: {e}") from e

    def clipboard_set(self, text: str) -> None:
        import pyperclip

        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as e:
            raise AutomationError(f"writing the clipboard failed: {e}") from e

    def show_message(self, title: str, message: str, level: str) -> None:
        import tkinter as tk
        from tkinter import messagebox

        lowered = level.strip().lower()
        if lowered in ("warning", "warn"):
            show = messagebox.showwarning
        elif lowered == "error":
            show = messagebox.showerror
        else:
            show = messagebox.showinfo
        try:
            root = tk.Tk()
        except tk.TclError as e:
            raise AutomationError(f"message box could not be shown: {e}") from e
        try:
            root.withdraw()
            root.attributes("-topmost", True)
            show(title, message, parent=root)
        except tk.TclError as e:
            raise AutomationError(f"message box could not be shown: {e}") from e
        finally:
            root.destroy()

    # --- hotkeys --------------------------------------------------------
    def listen_hotkey(self, hotkey: str, on_press: Callable[[], None]) -> Callable[[], None]:
        from .hotkeys import HotkeyListener

        listener = HotkeyListener(hotkey, on_press)
        listener.start()
        return listener.stop
