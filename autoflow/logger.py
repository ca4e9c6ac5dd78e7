"""
Execution logger - keeps the log history of a run and forwards each entry.

Entries go to three places: an in-memory history (bounded), an optional sink
callback (the run's `on_log` hook, which receives the wire level and the
message), and the standard `logging` module under the `autoflow` logger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

LogSink = Callable[[str, str], None]

LEVEL_INFO = "info"
LEVEL_WARN = "warn"
LEVEL_ERROR = "error"

_STD_LEVELS = {
    LEVEL_INFO: logging.INFO,
    LEVEL_WARN: logging.WARNING,
    LEVEL_ERROR: logging.ERROR,
}

_std_logger = logging.getLogger("autoflow")


@dataclass
class LogEntry:
    timestamp: datetime
    message: str
    level: str = LEVEL_INFO

    def __str__(self) -> str:
        time_str = self.timestamp.strftime("%H:%M:%S")
        return f"[{time_str}] {self.level.upper()}: {self.message}"


class ExecutionLogger:
    """Log history for one engine, with a pluggable sink."""

    def __init__(self, sink: Optional[LogSink] = None, max_entries: int = 500):
        """
        Args:
            sink: receives (level, message) for every entry; errors raised by
                the sink are logged and otherwise ignored
            max_entries: maximum number of entries kept in memory
        """
        self._entries: List[LogEntry] = []
        self._max_entries = max_entries
        self._sink = sink

    def set_sink(self, sink: Optional[LogSink]) -> None:
        self._sink = sink

    def log(self, level: str, message: str) -> None:
        """Record an entry; unknown levels are treated as info."""
        if level not in _STD_LEVELS:
            level = LEVEL_INFO
        self._add_entry(message, level)

    def log_info(self, message: str) -> None:
        self._add_entry(message, LEVEL_INFO)

    def log_warning(self, message: str) -> None:
        self._add_entry(message, LEVEL_WARN)

    def log_error(self, message: str) -> None:
        self._add_entry(message, LEVEL_ERROR)

    def get_recent_logs(self, count: int = 10) -> List[LogEntry]:
        return self._entries[-count:]

    def clear_logs(self) -> None:
        self._entries.clear()

    def _add_entry(self, message: str, level: str) -> None:
        entry = LogEntry(timestamp=datetime.now(), message=message, level=level)
        self._entries.append(entry)
        if len(self._entries) > self._max_entries:
            self._entries = self._entries[-self._max_entries:]

        _std_logger.log(_STD_LEVELS[level], message)

        if self._sink:
            try:
                self._sink(level, message)
            except Exception:
                _std_logger.exception("log sink raised")

    def export_logs_to_file(self, filepath: str) -> bool:
        """
        Export all entries to a text file.

        Returns:
            bool: True if export was successful
        """
        try:
            with open(filepath, "w", encoding="utf-8") as f:
                f.write("autoflow - Log Export\n")
                f.write(f"Generated: {datetime.now()}\n")
                f.write("=" * 50 + "\n\n")

                for entry in self._entries:
                    time_str = entry.timestamp.strftime("%Y-%m-%d %H:%M:%S")
                    f.write(f"[{time_str}] {entry.level.upper()}: {entry.message}\n")
            return True
        except OSError as exc:
            _std_logger.error("Failed to export logs: %s", exc)
            return False
