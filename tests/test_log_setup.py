#!/usr/bin/env python3
"""Tests for log_setup.py — root handlers and log location."""

import logging
from logging.handlers import RotatingFileHandler

import pytest


@pytest.fixture
def fresh_root(monkeypatch):
    """Let setup_logging run again; drop whatever it attaches afterwards."""
    import log_setup
    monkeypatch.setattr(log_setup, "_initialized", False)
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers[:]:
        if handler not in before:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


class TestSetupLogging:

    def test_attaches_console_and_file_once(self, fresh_root, tmp_path):
        import log_setup
        log_file = tmp_path / "logs" / "premium_monitor.log"
        count = len(fresh_root.handlers)

        log_setup.setup_logging(log_file=log_file)
        log_setup.setup_logging(log_file=log_file)

        added = fresh_root.handlers[count:]
        assert len(added) == 2
        assert any(isinstance(h, RotatingFileHandler) for h in added)
        assert log_file.parent.is_dir()

    def test_log_file_lives_in_configured_log_dir(self):
        import config
        import log_setup
        assert log_setup.LOG_FILE.parent == config.LOG_DIR

    def test_trade_events_share_the_log_dir(self):
        import config
        import trade_events
        assert trade_events.EVENT_LOG_FILE.parent == config.LOG_DIR

    def test_get_logger_returns_named_logger(self, monkeypatch):
        import log_setup
        monkeypatch.setattr(log_setup, "_initialized", True)
        assert log_setup.get_logger("premium_monitor").name == "premium_monitor"
