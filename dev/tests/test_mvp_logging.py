from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    level = root.level
    handlers = root.handlers[:]
    yield
    from romcurator.logging_config import cleanup_logging

    cleanup_logging()
    root.setLevel(level)
    for handler in handlers:
        root.addHandler(handler)


def test_file_logging_writes_main_and_error_logs(tmp_path: Path, restore_root_logger) -> None:
    from romcurator.logging_config import setup_logging

    result = setup_logging(
        log_level="DEBUG",
        log_dir=str(tmp_path / "logs"),
        enable_file_logging=True,
        enable_console_logging=False,
        structured_json=False,
    )
    assert set(result["handlers"]) == {"main_file", "error_file"}

    log = logging.getLogger("romcurator.test")
    log.info("hello info")
    log.warning("hello warning")
    for handler in result["handlers"].values():
        handler.flush()

    main_text = (tmp_path / "logs" / "romcurator.log").read_text(encoding="utf-8")
    error_text = (tmp_path / "logs" / "errors.log").read_text(encoding="utf-8")
    assert "hello info" in main_text
    assert "hello warning" in error_text
    assert "hello info" not in error_text


def test_json_env_switch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, restore_root_logger) -> None:
    from romcurator.logging_config import JsonFormatter, setup_logging

    monkeypatch.setenv("ROMCURATOR_LOG_JSON", "yes")
    result = setup_logging(log_dir=str(tmp_path), enable_file_logging=True, enable_console_logging=False)

    assert isinstance(result["handlers"]["main_file"].formatter, JsonFormatter)


def test_json_formatter_output_is_parseable() -> None:
    from romcurator.logging_config import JsonFormatter

    record = logging.LogRecord("romcurator.x", logging.ERROR, __file__, 12, "broke %s", ("here",), None)
    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "ERROR"
    assert payload["logger"] == "romcurator.x"
    assert payload["message"] == "broke here"
    assert payload["lineno"] == 12


def test_fast_formatter_without_colors() -> None:
    from romcurator.logging_config import FastFormatter

    record = logging.LogRecord("romcurator.x", logging.WARNING, __file__, 1, "careful", None, None)
    text = FastFormatter().format(record)

    assert "WARNING" in text
    assert "careful" in text
    assert "\033[" not in text


def test_cleanup_removes_handlers(tmp_path: Path, restore_root_logger) -> None:
    from romcurator.logging_config import cleanup_logging, setup_logging

    setup_logging(log_dir=str(tmp_path), enable_file_logging=True)
    assert logging.getLogger().handlers

    cleanup_logging()

    assert logging.getLogger().handlers == []


def test_timer_feeds_performance_stats() -> None:
    from romcurator.logging_config import LoggingTimer, get_performance_stats

    with LoggingTimer("unit.timer.op"):
        pass
    with LoggingTimer("unit.timer.op"):
        pass

    stats = get_performance_stats()["unit.timer.op"]
    assert stats["count"] >= 2
    assert stats["total_time"] >= 0


@pytest.mark.parametrize(
    "text,expected",
    [
        ("10MB", 10 * 1024 * 1024),
        ("512kb", 512 * 1024),
        ("1.5 GB", int(1.5 * 1024 ** 3)),
        ("2048", 2048),
        ("garbage", 10 * 1024 * 1024),
    ],
)
def test_parse_size_string(text, expected) -> None:
    from romcurator.logging_config import _parse_size_string

    assert _parse_size_string(text) == expected
