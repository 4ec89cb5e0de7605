"""
Unit tests for torchat.utils module.

Tests utility functions for formatting, validation, and helpers.
"""

import logging
import logging.handlers
import sys

import pytest

from torchat.utils import (
    format_fingerprint,
    format_timestamp,
    resolve_data_dir,
    setup_logging,
    truncate_string,
    validate_onion_address,
)


class TestOnionValidation:
    """Test v3 onion address validation."""

    def test_valid_addresses(self):
        assert validate_onion_address("a" * 56 + ".onion") is True
        assert validate_onion_address("abcdefghijklmnopqrstuvwxyz234567" + "a" * 24 + ".onion") is True
        assert validate_onion_address("A" * 56 + ".ONION") is True

    def test_invalid_addresses(self):
        assert validate_onion_address("a" * 16 + ".onion") is False
        assert validate_onion_address("a" * 56) is False
        assert validate_onion_address("1" * 56 + ".onion") is False
        assert validate_onion_address("") is False
        assert validate_onion_address(None) is False


class TestFormatting:
    """Test formatting helpers."""

    def test_format_fingerprint(self):
        assert format_fingerprint("AbCdEfGhIjK=") == "AbCd-EfGh-IjK="
        assert format_fingerprint("abc") == "abc"

    def test_format_timestamp(self):
        assert format_timestamp(0) == "1970-01-01 00:00:00"
        assert format_timestamp(86400, "%Y-%m-%d") == "1970-01-02"

    def test_format_timestamp_invalid(self):
        assert format_timestamp("soon") == "soon"

    def test_truncate_string(self):
        assert truncate_string("short", 10) == "short"
        assert truncate_string("a much longer string", 10) == "a much ..."
        assert len(truncate_string("a much longer string", 10)) == 10


class TestDataDir:
    """Test data directory resolution."""

    def test_override_wins(self, temp_dir):
        assert resolve_data_dir(temp_dir / "x") == (temp_dir / "x").resolve()

    @pytest.mark.skipif(sys.platform in ("win32", "darwin"), reason="XDG layout")
    def test_xdg_data_home(self, temp_dir, monkeypatch):
        monkeypatch.setenv("XDG_DATA_HOME", str(temp_dir))
        assert resolve_data_dir() == (temp_dir / "torchat_paste").resolve()


class TestLogging:
    """Test logging setup."""

    def test_file_and_console_handlers(self, temp_dir):
        logger = setup_logging(temp_dir, level="DEBUG")
        try:
            kinds = {type(h).__name__ for h in logger.handlers}
            assert kinds == {"RotatingFileHandler", "RichHandler"}
            assert logger.level == logging.DEBUG

            logging.getLogger("torchat.storage").info("hello log")
            for handler in logger.handlers:
                handler.flush()
            assert "hello log" in (temp_dir / "logs" / "torchat.log").read_text()
        finally:
            setup_logging(None, console=False)

    def test_repeat_setup_replaces_handlers(self, temp_dir):
        setup_logging(temp_dir, console=False)
        logger = setup_logging(temp_dir, console=False)
        try:
            assert len(logger.handlers) == 1
            assert isinstance(logger.handlers[0], logging.handlers.RotatingFileHandler)
        finally:
            setup_logging(None, console=False)

    def test_no_handlers_requested(self):
        logger = setup_logging(None, level="bogus", console=False)

        assert logger.level == logging.INFO
        assert isinstance(logger.handlers[0], logging.NullHandler)
