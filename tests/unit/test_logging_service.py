"""Tests for logging service configuration."""

import logging
import tempfile
from pathlib import Path
from unittest.mock import patch

from src.services.logging import (
    QUIET_LOGGERS,
    billing_run_logger,
    get_log_level,
    setup_server_logging,
)


class TestServerLogging:
    """Test server logging configuration."""

    def setup_method(self):
        """Save original handlers before each test."""
        self.root_logger = logging.getLogger()
        self.original_handlers = self.root_logger.handlers.copy()
        self.original_level = self.root_logger.level
        self.original_quiet = {name: logging.getLogger(name).level for name in QUIET_LOGGERS}

    def teardown_method(self):
        """Restore original handlers after each test."""
        for handler in self.root_logger.handlers[:]:
            handler.close()
            self.root_logger.removeHandler(handler)
        for handler in self.original_handlers:
            self.root_logger.addHandler(handler)
        self.root_logger.setLevel(self.original_level)
        for name, level in self.original_quiet.items():
            logging.getLogger(name).setLevel(level)

    def test_creates_log_directory(self) -> None:
        """Verify setup_server_logging creates logs directory if missing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "test_logs" / "server.log"
            assert not log_file.parent.exists()

            setup_server_logging(str(log_file))

            assert log_file.parent.exists()

    def test_creates_stdout_and_file_handlers(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            setup_server_logging(str(Path(temp_dir) / "server.log"))

            assert len(self.root_logger.handlers) == 2

    def test_level_from_environment(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            with patch.dict("os.environ", {"LOG_LEVEL": "WARNING"}, clear=False):
                setup_server_logging(str(Path(temp_dir) / "server.log"))

                assert self.root_logger.level == logging.WARNING
                for handler in self.root_logger.handlers:
                    assert handler.level == logging.WARNING

    def test_unknown_level_defaults_to_info(self) -> None:
        with patch.dict("os.environ", {"LOG_LEVEL": "chatty"}, clear=False):
            assert get_log_level() == logging.INFO

    def test_writes_formatted_lines_to_file(self) -> None:
        """Verify file lines carry timestamp, logger name and level."""
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "server.log"
            with patch.dict("os.environ", {"LOG_LEVEL": "INFO"}, clear=False):
                setup_server_logging(str(log_file))

            logging.getLogger("src.services.billing_run_service").warning("Billing failed")

            contents = log_file.read_text()
            # ISO format: [YYYY-MM-DD HH:MM:SS]
            assert contents.startswith("[20")
            assert "src.services.billing_run_service - WARNING - Billing failed" in contents

    def test_quiets_noisy_loggers(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            with patch.dict("os.environ", {"LOG_LEVEL": "INFO"}, clear=False):
                setup_server_logging(str(Path(temp_dir) / "server.log"))

            assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_removes_existing_handlers(self) -> None:
        """Verify repeated setup does not duplicate handlers."""
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "server.log"
            dummy_handler = logging.StreamHandler()
            self.root_logger.addHandler(dummy_handler)

            setup_server_logging(str(log_file))
            setup_server_logging(str(log_file))

            assert len(self.root_logger.handlers) == 2
            assert dummy_handler not in self.root_logger.handlers

    def test_explicit_level_wins_over_environment(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            with patch.dict("os.environ", {"LOG_LEVEL": "ERROR"}, clear=False):
                setup_server_logging(str(Path(temp_dir) / "server.log"), level="debug")

            assert self.root_logger.level == logging.DEBUG
            assert logging.getLogger("uvicorn.access").level == logging.DEBUG


class TestBillingRunLogger:
    """Per-run message prefix."""

    def test_prefixes_run_id_and_scope(self, caplog) -> None:
        run_log = billing_run_logger(logging.getLogger("billing-test"), 7, "house-a")

        with caplog.at_level(logging.INFO, logger="billing-test"):
            run_log.info("Started for %s", "2024-07-01")

        assert caplog.messages == ["[run 7 house-a] Started for 2024-07-01"]
