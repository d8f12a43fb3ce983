"""Unit tests for logging setup."""

import logging

import pytest

from meterbill.services.logging import get_log_level, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.unit
def test_get_log_level_from_env(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert get_log_level() == logging.DEBUG
    monkeypatch.setenv("LOG_LEVEL", "nonsense")
    assert get_log_level() == logging.INFO


@pytest.mark.unit
def test_setup_logging_writes_to_file(tmp_path, monkeypatch, restore_root_logger):
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    log_file = tmp_path / "logs" / "billing.log"

    setup_logging(str(log_file))
    logging.getLogger("meterbill.test").warning("late fee job finished")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert logging.getLogger().level == logging.WARNING
    assert len(logging.getLogger().handlers) == 2
    assert "meterbill.test - WARNING - late fee job finished" in log_file.read_text()
