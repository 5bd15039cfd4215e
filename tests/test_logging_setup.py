"""Tests for root logger configuration."""

import logging

import pytest

from app.logging_setup import configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_level_override():
    configure_logging("debug")
    assert logging.getLogger().level == logging.DEBUG


def test_unknown_level_falls_back_to_info():
    configure_logging("chatty")
    assert logging.getLogger().level == logging.INFO


def test_log_file_handler(monkeypatch, tmp_path):
    log_file = tmp_path / "logs" / "shipwright.log"
    monkeypatch.setattr("app.config.settings.LOG_FILE", str(log_file))

    configure_logging("INFO")
    logging.getLogger("app.test").info("hello %s", "file")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "hello file" in log_file.read_text()


def test_noisy_loggers_are_quietened():
    configure_logging("DEBUG")
    assert logging.getLogger("httpx").level == logging.WARNING
