"""
Engine configuration.
"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict


def _default_debug_root() -> str:
    return str(Path(tempfile.gettempdir()) / "autoflow-image-match-debug")


def _default_screenshot_root() -> str:
    return str(Path(tempfile.gettempdir()) / "autoflow" / "screenshots")


@dataclass
class EngineSettings:
    """Tunables for a run. Persisted by SettingsManager."""

    default_post_delay_ms: int = 50
    max_steps: int = 10_000
    sleep_slice_ms: int = 25
    image_match_debug_every: int = 15
    debug_root: str = field(default_factory=_default_debug_root)
    screenshot_root: str = field(default_factory=_default_screenshot_root)
    stream_start_retries: int = 5
    stream_retry_delay_ms: int = 250
    stream_settle_delay_ms: int = 450
    stream_fps: int = 30
    gui_agent_timeout_s: float = 60.0
    gui_agent_wait_s: float = 5.0

    def __post_init__(self) -> None:
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        if self.sleep_slice_ms < 1:
            raise ValueError("sleep_slice_ms must be at least 1")
        if self.image_match_debug_every < 1:
            raise ValueError("image_match_debug_every must be at least 1")
        if self.stream_start_retries < 1:
            raise ValueError("stream_start_retries must be at least 1")
        if self.stream_fps < 1:
            raise ValueError("stream_fps must be at least 1")
        if self.default_post_delay_ms < 0:
            raise ValueError("default_post_delay_ms cannot be negative")

    @property
    def sleep_slice(self) -> float:
        return self.sleep_slice_ms / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "EngineSettings":
        """Build settings from JSON, keeping defaults for missing keys."""
        defaults = EngineSettings()
        values: Dict[str, Any] = {}
        for f in fields(EngineSettings):
            default = getattr(defaults, f.name)
            raw = data.get(f.name, default)
            if raw is None:
                raw = default
            values[f.name] = type(default)(raw)
        return EngineSettings(**values)
