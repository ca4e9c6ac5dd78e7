from __future__ import annotations

from typing import Callable, Dict, List, Tuple

import numpy as np
import pytest

from autoflow.dispatcher import NodeDispatcher
from autoflow.engine import WorkflowExecutor
from autoflow.models import EngineSettings
from fakes import FakeDesktop


@pytest.fixture
def desktop() -> FakeDesktop:
    return FakeDesktop()


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return EngineSettings(
        default_post_delay_ms=0,
        debug_root=str(tmp_path / "debug"),
        screenshot_root=str(tmp_path / "shots"),
        stream_retry_delay_ms=0,
        stream_settle_delay_ms=0,
    )


@pytest.fixture
def executor(desktop, settings) -> WorkflowExecutor:
    return WorkflowExecutor(NodeDispatcher(desktop=desktop, settings=settings), settings=settings)


@pytest.fixture
def log_lines() -> List[Tuple[str, str]]:
    return []


@pytest.fixture
def collect(log_lines) -> Callable[[str, str], None]:
    def _collect(level: str, msg: str) -> None:
        log_lines.append((level, msg))

    return _collect


@pytest.fixture
def frames() -> Dict[str, np.ndarray]:
    rng = np.random.default_rng(1234)
    frame = rng.integers(0, 256, size=(160, 200), dtype=np.uint8)
    other = rng.integers(0, 256, size=(160, 200), dtype=np.uint8)
    return {"frame": frame, "template": frame[40:72, 60:100].copy(), "other": other}
