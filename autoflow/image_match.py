"""
Grayscale template matching.

Two strategies produce the same MatchEvaluation:

- accelerated: OpenCV `matchTemplate` (TM_SQDIFF) over [0, 1] floats;
- portable: coarse-to-fine sum of absolute differences in numpy, with a
  per-row early exit once a candidate can no longer beat the best score.

The accelerated path is probed once at construction and permanently
disabled if OpenCV raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .errors import AutomationError, ValidationError

logger = logging.getLogger(__name__)

COARSE_SCALE = 4


@dataclass
class MatchEvaluation:
    matched_point: Optional[Tuple[int, int]]
    best_similarity: float
    best_top_left: Optional[Tuple[int, int]]
    template_size: Tuple[int, int]  # (width, height)

    @property
    def matched(self) -> bool:
        return self.matched_point is not None

    def box(self) -> Optional[Tuple[int, int, int, int]]:
        """(x, y, w, h) of the best candidate, if any."""
        if self.best_top_left is None:
            return None
        return (*self.best_top_left, *self.template_size)


def load_gray(path: Union[str, Path]) -> np.ndarray:
    image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if image is None:
        raise AutomationError(f"cannot read image '{path}'")
    return image


def _as_gray(image: np.ndarray) -> np.ndarray:
    image = np.asarray(image)
    if image.ndim == 3:
        code = cv2.COLOR_BGRA2GRAY if image.shape[2] == 4 else cv2.COLOR_BGR2GRAY
        image = cv2.cvtColor(image, code)
    if image.ndim != 2:
        raise ValidationError("expected a single-channel image")
    return np.ascontiguousarray(image, dtype=np.uint8)


class TemplateMatcher:
    def __init__(self, template: np.ndarray, threshold: float, accelerated: bool = True) -> None:
        self._template = _as_gray(template)
        if self._template.size == 0:
            raise ValidationError("template image is empty")
        self._threshold = min(max(float(threshold), 0.0), 1.0)
        self._template_f32 = self._template.astype(np.float32) / 255.0
        self._accelerated = accelerated and self._probe_accelerated()

    @classmethod
    def from_path(cls, path: Union[str, Path], threshold: float, accelerated: bool = True) -> "TemplateMatcher":
        return cls(load_gray(path), threshold, accelerated=accelerated)

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def accelerated(self) -> bool:
        return self._accelerated

    @property
    def template_size(self) -> Tuple[int, int]:
        height, width = self._template.shape
        return width, height

    def _probe_accelerated(self) -> bool:
        probe = np.zeros((2, 2), dtype=np.float32)
        try:
            cv2.matchTemplate(probe, probe, cv2.TM_SQDIFF)
        except cv2.error as exc:
            logger.info("OpenCV template matching unavailable, using portable matcher: %s", exc)
            return False
        return True

    def evaluate(self, frame: np.ndarray) -> MatchEvaluation:
        frame = _as_gray(frame)
        if self._accelerated:
            try:
                return self._evaluate_accelerated(frame)
            except cv2.error as exc:
                logger.warning("OpenCV matchTemplate failed, switching to portable matcher: %s", exc)
                self._accelerated = False
        return evaluate_portable(frame, self._template, self._threshold)

    def _evaluate_accelerated(self, frame: np.ndarray) -> MatchEvaluation:
        th, tw = self._template.shape
        sh, sw = frame.shape
        if tw > sw or th > sh:
            return _miss((tw, th))

        frame_f32 = frame.astype(np.float32) / 255.0
        scores = cv2.matchTemplate(frame_f32, self._template_f32, cv2.TM_SQDIFF)
        min_val, _max_val, min_loc, _max_loc = cv2.minMaxLoc(scores)

        pixel_count = max(tw * th, 1)
        normalized = min(max(max(float(min_val), 0.0) / pixel_count, 0.0), 1.0)
        similarity = min(max(1.0 - normalized, 0.0), 1.0)
        return _evaluation(int(min_loc[0]), int(min_loc[1]), (tw, th), similarity, self._threshold)


def _miss(template_size: Tuple[int, int]) -> MatchEvaluation:
    return MatchEvaluation(
        matched_point=None,
        best_similarity=0.0,
        best_top_left=None,
        template_size=template_size,
    )


def _evaluation(x: int, y: int, size: Tuple[int, int], similarity: float, threshold: float) -> MatchEvaluation:
    tw, th = size
    matched_point = (x + tw // 2, y + th // 2) if similarity >= threshold else None
    return MatchEvaluation(
        matched_point=matched_point,
        best_similarity=similarity,
        best_top_left=(x, y),
        template_size=size,
    )


def _build_coarse(frame: np.ndarray, template: np.ndarray) -> Tuple[np.ndarray, np.ndarray, int]:
    sh, sw = frame.shape
    th, tw = template.shape
    if min(tw, th, sw, sh) < COARSE_SCALE * 2:
        return frame, template, 1

    coarse_frame = cv2.resize(
        frame, (max(sw // COARSE_SCALE, 1), max(sh // COARSE_SCALE, 1)), interpolation=cv2.INTER_AREA
    )
    coarse_template = cv2.resize(
        template, (max(tw // COARSE_SCALE, 1), max(th // COARSE_SCALE, 1)), interpolation=cv2.INTER_AREA
    )
    return coarse_frame, coarse_template, COARSE_SCALE


def find_best_position(
    frame: np.ndarray,
    template: np.ndarray,
    min_x: int = 0,
    min_y: int = 0,
    max_xy: Optional[Tuple[int, int]] = None,
) -> Optional[Tuple[int, int, float]]:
    """Exhaustive SAD scan over top-left positions in [min, max].

    Returns (x, y, normalized_score) where the score is in [0, 1] and lower
    is better. Candidates are abandoned row by row as soon as their running
    difference exceeds the best score seen before the current scan row.
    """
    sh, sw = frame.shape
    th, tw = template.shape
    if tw > sw or th > sh:
        return None

    max_x_limit = sw - tw
    max_y_limit = sh - th
    max_x, max_y = max_xy if max_xy is not None else (max_x_limit, max_y_limit)
    min_x = min(min_x, max_x_limit)
    min_y = min(min_y, max_y_limit)
    max_x = min(max_x, max_x_limit)
    max_y = min(max_y, max_y_limit)
    if min_x > max_x or min_y > max_y:
        return None

    source = frame.astype(np.int32)
    tmpl = template.astype(np.int32)
    total = float(tw * th) * 255.0
    columns = max_x - min_x + 1

    best = np.inf
    best_x, best_y = min_x, min_y
    for y in range(min_y, max_y + 1):
        limit = best * total
        sums = np.zeros(columns, dtype=np.float64)
        alive = np.ones(columns, dtype=bool)
        for py in range(th):
            windows = sliding_window_view(source[y + py, min_x:max_x + tw], tw)
            idx = np.flatnonzero(alive)
            sums[idx] += np.abs(windows[idx] - tmpl[py]).sum(axis=1)
            alive[idx] = sums[idx] <= limit
            if not alive.any():
                break
        if not alive.any():
            continue
        candidates = np.where(alive, sums, np.inf)
        col = int(np.argmin(candidates))
        normalized = candidates[col] / total
        if normalized < best:
            best = normalized
            best_x, best_y = min_x + col, y

    if not np.isfinite(best):
        return None
    return best_x, best_y, min(max(float(best), 0.0), 1.0)


def evaluate_portable(frame: np.ndarray, template: np.ndarray, threshold: float) -> MatchEvaluation:
    sh, sw = frame.shape
    th, tw = template.shape
    if tw > sw or th > sh:
        return _miss((tw, th))

    coarse_frame, coarse_template, scale = _build_coarse(frame, template)
    coarse = find_best_position(coarse_frame, coarse_template)
    if coarse is None:
        return _miss((tw, th))

    ref_x, ref_y = coarse[0] * scale, coarse[1] * scale
    radius = max(scale, 1) * 2
    refined = find_best_position(
        frame,
        template,
        max(ref_x - radius, 0),
        max(ref_y - radius, 0),
        (min(ref_x + radius, sw - tw), min(ref_y + radius, sh - th)),
    )
    if refined is None:
        return _miss((tw, th))

    x, y, score = refined
    similarity = min(max(1.0 - score, 0.0), 1.0)
    return _evaluation(x, y, (tw, th), similarity, threshold)
