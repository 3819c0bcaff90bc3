"""Tests for ledger logging configuration."""

import logging
import tempfile
from pathlib import Path
from unittest.mock import patch

from src.services.logging import get_log_level, setup_ledger_logging


class TestLedgerLogging:
    """Test ledger logging configuration."""

    def setup_method(self):
        """Save original handlers before each test."""
        self.root_logger = logging.getLogger()
        self.original_handlers = self.root_logger.handlers.copy()
        self.original_level = self.root_logger.level

    def teardown_method(self):
        """Restore original handlers after each test."""
        for handler in self.root_logger.handlers[:]:
            handler.close()
            self.root_logger.removeHandler(handler)
        for handler in self.original_handlers:
            self.root_logger.addHandler(handler)
        self.root_logger.setLevel(self.original_level)

    def test_creates_log_directory(self) -> None:
        """Verify setup_ledger_logging creates the log directory if missing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "ledger_logs" / "ledger.log"
            assert not log_file.parent.exists()

            setup_ledger_logging(str(log_file))

            assert log_file.parent.exists()

    def test_stdout_and_file_handlers(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            setup_ledger_logging(str(Path(temp_dir) / "ledger.log"))

            assert len(self.root_logger.handlers) == 2

    def test_stdout_only_without_file(self) -> None:
        setup_ledger_logging(None)

        assert len(self.root_logger.handlers) == 1

    def test_level_from_environment(self) -> None:
        with patch.dict("os.environ", {"LOG_LEVEL": "WARNING"}, clear=False):
            setup_ledger_logging(None)

            assert self.root_logger.level == logging.WARNING
            for handler in self.root_logger.handlers:
                assert handler.level == logging.WARNING

    def test_explicit_level_wins(self) -> None:
        with patch.dict("os.environ", {"LOG_LEVEL": "WARNING"}, clear=False):
            setup_ledger_logging(None, level_name="DEBUG")

            assert self.root_logger.level == logging.DEBUG

    def test_repeated_setup_does_not_duplicate_handlers(self) -> None:
        setup_ledger_logging(None)
        setup_ledger_logging(None)

        assert len(self.root_logger.handlers) == 1

    def test_balance_messages_reach_file(self) -> None:
        """Messages logged by ledger modules end up in the log file."""
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "ledger.log"
            setup_ledger_logging(str(log_file), level_name="INFO")

            logging.getLogger("src.services.balance_ledger").info(
                "Balance updated for property %d: %s -> %s units", 1, "10", "5"
            )
            for handler in self.root_logger.handlers:
                handler.flush()

            content = log_file.read_text()
            assert "src.services.balance_ledger - INFO - Balance updated for property 1" in content


class TestGetLogLevel:
    """Tests for log level resolution."""

    def test_unknown_name_falls_back_to_info(self) -> None:
        assert get_log_level("chatty") == logging.INFO

    def test_case_insensitive(self) -> None:
        assert get_log_level("error") == logging.ERROR
