"""
Live monitor capture for image matching.

FrameStreamManager owns at most one capture stream. Every state change and
every receive happens under a single lock, so callers on different threads
serialize. The manager is created per engine and handed to the dispatcher;
there is no module-level stream.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import cv2
import numpy as np

from .errors import AutomationError
from .models import EngineSettings

logger = logging.getLogger(__name__)

Monitor = Dict[str, Any]


class FrameStream(Protocol):
    """A started stream yields BGRA or grayscale frames from one monitor."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def recv(self, timeout: float) -> Optional[np.ndarray]: ...


def list_monitors() -> List[Monitor]:
    """Monitor rectangles as dicts (x, y, width, height, name), primary first."""
    try:
        from screeninfo import get_monitors  # type: ignore

        mons = get_monitors() or []
        out: List[Monitor] = []
        for m in mons:
            out.append(
                {
                    "x": int(m.x),
                    "y": int(m.y),
                    "width": int(m.width),
                    "height": int(m.height),
                    "name": m.name or "unknown",
                    "primary": bool(getattr(m, "is_primary", False)),
                }
            )
        if out:
            out.sort(key=lambda mon: not mon["primary"])
            return out
    except Exception as exc:
        logger.debug("screeninfo monitor enumeration failed: %s", exc)
    # Fallback: single screen via pyautogui
    import pyautogui

    size = pyautogui.size()
    return [{"x": 0, "y": 0, "width": int(size.width), "height": int(size.height), "name": "screen", "primary": True}]


def describe_monitor(monitor: Monitor) -> str:
    return (
        f"{monitor.get('name', 'unknown')}@({monitor.get('x', 0)}, {monitor.get('y', 0)}) "
        f"{monitor.get('width', 0)}x{monitor.get('height', 0)}"
    )


def to_gray(frame: np.ndarray) -> np.ndarray:
    if frame.ndim == 2:
        return frame
    if frame.ndim != 3 or frame.shape[0] == 0 or frame.shape[1] == 0:
        raise AutomationError("captured frame has invalid dimensions")
    code = cv2.COLOR_BGRA2GRAY if frame.shape[2] == 4 else cv2.COLOR_BGR2GRAY
    return cv2.cvtColor(frame, code)


class MssFrameStream:
    """Grabs one monitor with mss on a background thread into a small queue.

    The newest frames win: when the queue is full the oldest frame is
    dropped. The stream counts as disconnected once the capture thread died
    with an error.
    """

    def __init__(self, monitor: Monitor, fps: int = 30, queue_size: int = 2, start_timeout: float = 2.0) -> None:
        self._region = {
            "left": int(monitor["x"]),
            "top": int(monitor["y"]),
            "width": int(monitor["width"]),
            "height": int(monitor["height"]),
        }
        self._interval = 1.0 / max(fps, 1)
        self._frames: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=max(queue_size, 1))
        self._start_timeout = start_timeout
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._ready = threading.Event()
        self._error: Optional[BaseException] = None

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._ready.clear()
        self._error = None
        self._drain()
        self._thread = threading.Thread(target=self._worker, name="autoflow-capture", daemon=True)
        self._thread.start()
        if not self._ready.wait(self._start_timeout):
            self.stop()
            raise AutomationError("capture thread did not become ready")
        if self._error is not None:
            raise AutomationError(f"capture thread failed to start: {self._error}")

    def stop(self) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._drain()

    def recv(self, timeout: float) -> Optional[np.ndarray]:
        if self._error is not None and self._frames.empty():
            raise AutomationError(f"frame stream disconnected: {self._error}")
        try:
            return self._frames.get(timeout=max(timeout, 0.0))
        except queue.Empty:
            return None

    def _worker(self) -> None:
        import mss

        try:
            # mss handles are thread-local; create it on the capture thread.
            with mss.mss() as sct:
                self._ready.set()
                while not self._stop.is_set():
                    started = time.monotonic()
                    frame = np.array(sct.grab(self._region))
                    self._push(frame)
                    remaining = self._interval - (time.monotonic() - started)
                    if remaining > 0:
                        self._stop.wait(remaining)
        except Exception as exc:
            logger.warning("capture thread stopped: %s", exc)
            self._error = exc
            self._ready.set()

    def _drain(self) -> None:
        while True:
            try:
                self._frames.get_nowait()
            except queue.Empty:
                return

    def _push(self, frame: np.ndarray) -> None:
        try:
            self._frames.put_nowait(frame)
        except queue.Full:
            try:
                self._frames.get_nowait()
            except queue.Empty:
                pass
            self._frames.put_nowait(frame)


class FrameStreamManager:
    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        stream_factory: Optional[Callable[[Monitor], FrameStream]] = None,
        monitor_provider: Optional[Callable[[], Iterable[Monitor]]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._stream_factory = stream_factory or (lambda mon: MssFrameStream(mon, fps=self._settings.stream_fps))
        self._monitor_provider = monitor_provider or list_monitors
        self._sleep = sleep
        self._lock = threading.Lock()
        self._stream: Optional[FrameStream] = None

    @property
    def has_stream(self) -> bool:
        with self._lock:
            return self._stream is not None

    def ensure(self) -> None:
        """Build the stream if absent, otherwise (re)start the existing one."""
        with self._lock:
            if self._stream is None:
                self._stream = self._start_new_stream()
                return
            try:
                self._stream.start()
            except Exception as exc:
                raise AutomationError(f"frame stream restart failed: {exc}") from exc

    def recv_timeout(self, seconds: float) -> Optional[np.ndarray]:
        """Next frame as grayscale, or None when nothing arrived in time."""
        with self._lock:
            if self._stream is None:
                raise AutomationError("frame stream has not been initialized")
            try:
                frame = self._stream.recv(seconds)
            except AutomationError:
                raise
            except Exception as exc:
                raise AutomationError(f"frame receive failed: {exc}") from exc
        if frame is None:
            return None
        return to_gray(frame)

    def stop(self) -> None:
        with self._lock:
            if self._stream is None:
                return
            try:
                self._stream.stop()
            except Exception as exc:
                raise AutomationError(f"frame stream stop failed: {exc}") from exc

    def reset(self, reason: str = "") -> None:
        """Drop the stream so the next ensure() builds a fresh one."""
        with self._lock:
            stream, self._stream = self._stream, None
            if stream is None:
                return
            logger.info("resetting frame stream%s", f" ({reason})" if reason.strip() else "")
            self._quiet_stop(stream)
            self._sleep(self._settings.stream_settle_delay_ms / 1000.0)

    def close(self) -> None:
        self.reset("shutdown")

    def __enter__(self) -> "FrameStreamManager":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _start_new_stream(self) -> FrameStream:
        monitors = list(self._monitor_provider())
        if not monitors:
            raise AutomationError("failed to start frame stream: no monitor candidate found")

        retries = self._settings.stream_start_retries
        last_error: Optional[str] = None
        for attempt in range(1, retries + 1):
            for monitor in monitors:
                label = describe_monitor(monitor)
                try:
                    stream = self._stream_factory(monitor)
                except Exception as exc:
                    last_error = f"stream init failed (attempt {attempt}, monitor={label}): {exc}"
                    continue
                try:
                    stream.start()
                    logger.info("frame stream started on %s", label)
                    return stream
                except Exception as exc:
                    self._quiet_stop(stream)
                    self._sleep(self._settings.stream_settle_delay_ms / 1000.0)
                    last_error = f"stream start failed (attempt {attempt}, monitor={label}): {exc}"
            if attempt < retries:
                self._sleep(self._settings.stream_retry_delay_ms / 1000.0)

        raise AutomationError(
            f"failed to start frame stream after {retries} attempts: {last_error or 'unknown error'}"
        )

    @staticmethod
    def _quiet_stop(stream: FrameStream) -> None:
        try:
            stream.stop()
        except Exception as exc:
            logger.debug("ignoring error while stopping frame stream: %s", exc)
