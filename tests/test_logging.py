"""Tests for logging setup."""

import logging

import pytest
from pydantic import ValidationError

from toolchat.utils.logging import LogConfig, get_logger, setup_logging


class TestLogging:
    """Tests for LogConfig and setup_logging."""

    def test_level_from_environment(self, monkeypatch):
        """Test that LOG_LEVEL selects the level."""
        monkeypatch.setenv("LOG_LEVEL", "debug")

        assert LogConfig.from_env().level == "DEBUG"
        assert get_logger("toolchat.test").level == logging.DEBUG

    def test_unknown_level(self):
        """Test that an unknown level is rejected."""
        with pytest.raises(ValidationError, match="unknown log level"):
            LogConfig(level="chatty")

    def test_setup_quiets_third_party_loggers(self):
        """Test that transport loggers are lowered to WARNING."""
        setup_logging(LogConfig(level="DEBUG"))

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("mcp").level == logging.WARNING
