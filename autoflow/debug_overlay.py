"""Image artifacts: match overlays for debugging and screenshot files."""

from __future__ import annotations

import base64
import time
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from .errors import AutomationError, IoError

# BGR
MATCH_COLOR = (0, 255, 0)
MISS_COLOR = (64, 64, 255)


def unix_ms() -> int:
    return int(time.time() * 1000)


def safe_label(label: str) -> str:
    """Keep alphanumerics, replace everything else with '_'."""
    return "".join(ch if ch.isalnum() else "_" for ch in label)


def sanitize_file_segment(value: str) -> str:
    cleaned = []
    for ch in value.strip():
        if ch.isascii() and ch.isalnum():
            cleaned.append(ch.lower())
        elif ch in "-_":
            cleaned.append(ch)
        else:
            cleaned.append("_")
    compact = "_".join(part for part in "".join(cleaned).split("_") if part)
    return compact or "node"


def prepare_debug_dir(root: Union[str, Path], node_id: str, label: str) -> Path:
    """Create `<root>/<label>-<id>-<unix_ms>` for one imageMatch run."""
    run_dir = Path(root) / f"{safe_label(label)}-{sanitize_file_segment(node_id)}-{unix_ms()}"
    try:
        run_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise IoError(str(exc)) from exc
    return run_dir


def draw_box(gray: np.ndarray, rect: Optional[Tuple[int, int, int, int]], matched: bool) -> np.ndarray:
    canvas = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)
    if rect is None:
        return canvas
    x, y, w, h = rect
    height, width = gray.shape[:2]
    if w <= 0 or h <= 0 or width == 0 or height == 0:
        return canvas
    x2 = min(x + w - 1, width - 1)
    y2 = min(y + h - 1, height - 1)
    color = MATCH_COLOR if matched else MISS_COLOR
    cv2.rectangle(canvas, (min(x, width - 1), min(y, height - 1)), (x2, y2), color, 1)
    return canvas


def save_image(path: Union[str, Path], image: np.ndarray) -> str:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise IoError(str(exc)) from exc
    if not cv2.imwrite(str(path), image):
        raise AutomationError(f"failed to write image '{path}'")
    return str(path)


def save_gray_with_box(
    path: Union[str, Path],
    gray: np.ndarray,
    rect: Optional[Tuple[int, int, int, int]],
    matched: bool,
) -> str:
    return save_image(path, draw_box(gray, rect, matched))


def encode_png_base64(image: np.ndarray) -> str:
    ok, buffer = cv2.imencode(".png", image)
    if not ok:
        raise AutomationError("failed to encode screenshot as PNG")
    return base64.b64encode(buffer.tobytes()).decode("ascii")
