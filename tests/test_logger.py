from __future__ import annotations

import logging

from autoflow.logger import LEVEL_ERROR, LEVEL_INFO, LEVEL_WARN, ExecutionLogger


def test_entries_reach_sink_and_history() -> None:
    received = []
    log = ExecutionLogger(sink=lambda level, msg: received.append((level, msg)))

    log.log_info("one")
    log.log_warning("two")
    log.log("debug", "three")

    assert received == [(LEVEL_INFO, "one"), (LEVEL_WARN, "two"), (LEVEL_INFO, "three")]
    assert [e.message for e in log.get_recent_logs(2)] == ["two", "three"]


def test_history_is_bounded() -> None:
    log = ExecutionLogger(max_entries=3)
    for i in range(5):
        log.log_info(str(i))

    assert [e.message for e in log.get_recent_logs(10)] == ["2", "3", "4"]
    log.clear_logs()
    assert log.get_recent_logs() == []


def test_failing_sink_does_not_break_logging(caplog) -> None:
    def broken(level, msg):
        raise RuntimeError("sink down")

    log = ExecutionLogger(sink=broken)
    with caplog.at_level(logging.INFO, logger="autoflow"):
        log.log_error("still recorded")

    assert log.get_recent_logs(1)[0].level == LEVEL_ERROR
    assert "log sink raised" in caplog.text
    assert "still recorded" in caplog.text


def test_set_sink_replaces_callback() -> None:
    first, second = [], []
    log = ExecutionLogger(sink=lambda level, msg: first.append(msg))
    log.set_sink(lambda level, msg: second.append(msg))

    log.log_info("x")

    assert first == [] and second == ["x"]


def test_export_logs(tmp_path) -> None:
    log = ExecutionLogger()
    log.log_warning("careful")
    path = tmp_path / "run.log"

    assert log.export_logs_to_file(str(path)) is True
    assert "WARN: careful" in path.read_text(encoding="utf-8")
    assert log.export_logs_to_file(str(tmp_path / "missing" / "run.log")) is False


def test_entry_formatting() -> None:
    log = ExecutionLogger()
    log.log_info("hello")
    assert str(log.get_recent_logs(1)[0]).endswith("INFO: hello")
