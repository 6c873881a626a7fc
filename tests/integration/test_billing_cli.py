"""Integration tests for the billing run CLI."""

import logging

import pytest

from src.cli.billing_run import main, parse_args

pytestmark = pytest.mark.integration


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    """Isolate the CLI's log file and restore root logging afterwards."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "logs" / "billing.log"))
    monkeypatch.setenv("BILLING_SCOPE", f"cli-{tmp_path.name}")
    root = logging.getLogger()
    handlers, level = root.handlers.copy(), root.level
    yield tmp_path
    for handler in root.handlers[:]:
        handler.close()
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestBillingRunCli:
    """Exit codes of the scheduled entry point."""

    def test_parse_args(self):
        args = parse_args(["--date", "2024-07-01", "--strict"])

        assert args.date.isoformat() == "2024-07-01"
        assert args.strict

    def test_run_then_conflict(self, cli_env):
        assert main(["--date", "2031-03-03"]) == 0
        # Same scope and day again is refused
        assert main(["--date", "2031-03-03"]) == 1

        assert (cli_env / "logs" / "billing.log").exists()

    def test_invalid_configuration(self, cli_env, monkeypatch):
        monkeypatch.setenv("PORT", "0")

        assert main(["--date", "2031-03-04"]) == 1
