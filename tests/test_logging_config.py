"""Tests for process logging setup."""

from __future__ import annotations

import logging

import pytest

from owlverload import logging_config


@pytest.fixture
def clean_root(monkeypatch):
    monkeypatch.setattr(logging_config, "_configured", False)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSetupLogging:
    def test_writes_formatted_lines_to_file(self, clean_root, tmp_path):
        log_file = tmp_path / "logs" / "api.log"
        logging_config.setup_logging("DEBUG", log_file)

        logging.getLogger("owlverload.test").warning("STORE_UNAVAILABLE: probe")
        for handler in clean_root.handlers:
            handler.flush()

        line = log_file.read_text(encoding="utf-8").strip().splitlines()[-1]
        assert "[WARNING]" in line
        assert "[test_logging_config.py:" in line
        assert line.endswith("STORE_UNAVAILABLE: probe")
        assert clean_root.level == logging.DEBUG

    def test_second_call_is_noop(self, clean_root):
        before = len(clean_root.handlers)
        logging_config.setup_logging()
        after_first = len(clean_root.handlers)
        logging_config.setup_logging()
        assert after_first == before + 1
        assert len(clean_root.handlers) == after_first

    def test_unknown_level_falls_back_to_info(self, clean_root):
        logging_config.setup_logging("chatty")
        assert clean_root.level == logging.INFO

    def test_quiets_noisy_loggers(self, clean_root):
        logging_config.setup_logging()
        assert logging.getLogger("httpx").level == logging.WARNING
