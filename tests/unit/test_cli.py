"""Unit tests for CLI commands.

This module tests the command-line interface for medsubmit including the
main group, configuration validation and the batch/queue/stats commands.
"""

import base64
import json
from datetime import datetime
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest
from click.testing import CliRunner

from medsubmit.cli.main import cli
from medsubmit.models.responses import GovernmentResponse

PERIOD_ENV_VARS = ("MEDSUBMIT_PERIOD_START_DAY", "MEDSUBMIT_PERIOD_END_DAY", "MEDSUBMIT_PERIOD_TIMEZONE")


def report_dict(report_id):
    return {
        "id": report_id,
        "patient_id": "1850101123456",
        "diagnosis": {"primary": "Hypertension", "icd_codes": ["I10"]},
        "created_at": "2024-04-15T09:30:00+00:00",
        "gdpr_consent": True,
        "doctor_id": "dr-popescu",
    }


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Isolated working directory with a report file, database and key."""
    monkeypatch.chdir(tmp_path)
    reports = tmp_path / "reports.json"
    reports.write_text(json.dumps([report_dict("r1"), report_dict("r2")]))

    for name in PERIOD_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MEDSUBMIT_DATABASE_URL", f"sqlite:///{tmp_path / 'medsubmit.db'}")
    monkeypatch.setenv("MEDSUBMIT_LOG_FILE", str(tmp_path / "logs" / "medsubmit.log"))
    monkeypatch.setenv("MEDSUBMIT_REPORTS_FILE", str(reports))
    monkeypatch.setenv("MEDSUBMIT_ENCRYPTION_KEY", base64.b64encode(b"k" * 32).decode("ascii"))
    monkeypatch.setenv("MEDSUBMIT_PATIENT_HASH_SALT", "test-salt")
    # Keep console logging out of JSON output
    monkeypatch.setenv("MEDSUBMIT_LOG_LEVEL", "WARNING")
    return tmp_path


@pytest.fixture
def runner():
    return CliRunner()


def create_batch(runner, batch_id="batch-cli"):
    return runner.invoke(
        cli,
        ["batch", "create", "--month", "2024-04", "-r", "r1", "-r", "r2", "--created-by", "dr-popescu", "--batch-id", batch_id],
    )


class TestMainCLI:
    """Test cases for main CLI entry point."""

    def test_cli_help(self, runner):
        """Test main CLI help output."""
        # Act
        result = runner.invoke(cli, ["--help"])

        # Assert
        assert result.exit_code == 0
        assert "MedSubmit" in result.output
        assert "--verbose" in result.output
        assert "--version" in result.output
        for command in ("batch", "queue", "scheduler", "stats", "period", "mock"):
            assert command in result.output

    def test_cli_version(self, runner):
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "medsubmit" in result.output
        assert "version" in result.output.lower()

    def test_cli_version_command(self, runner, workdir):
        result = runner.invoke(cli, ["version"])

        assert result.exit_code == 0
        assert "medsubmit version" in result.output

    def test_invalid_environment_override(self, runner, workdir, monkeypatch):
        """Test a malformed environment override stops the CLI."""
        # Arrange
        monkeypatch.setenv("MEDSUBMIT_MAX_RETRIES", "many")

        # Act
        result = runner.invoke(cli, ["version"])

        # Assert
        assert result.exit_code == 1
        assert "Error loading configuration" in result.output


class TestConfigValidate:
    """Tests for config validate."""

    def test_valid_file(self, runner, workdir):
        # Arrange
        path = workdir / "config.json"
        path.write_text(json.dumps({"retry": {"max_retries": 3}}))

        # Act
        result = runner.invoke(cli, ["config", "validate", str(path)])

        # Assert
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output
        assert "Max retries: 3" in result.output
        assert "Europe/Bucharest" in result.output

    def test_invalid_file(self, runner, workdir):
        path = workdir / "config.json"
        path.write_text(json.dumps({"period": {"start_day": 12, "end_day": 10}}))

        result = runner.invoke(cli, ["config", "validate", str(path)])

        assert result.exit_code == 1
        assert "Configuration validation failed" in result.output


class TestBatchCommands:
    """Tests for batch create/list/status/retry/cancel."""

    def test_create(self, runner, workdir):
        # Act
        result = create_batch(runner)

        # Assert
        assert result.exit_code == 0, result.output
        assert "Created batch batch-cli" in result.output
        assert "Reports: 2" in result.output
        assert "ready" in result.output

    def test_create_with_unknown_report(self, runner, workdir):
        result = runner.invoke(
            cli, ["batch", "create", "--month", "2024-04", "-r", "r1", "-r", "r9", "--created-by", "dr-popescu"]
        )

        assert result.exit_code == 1
        assert "r9" in result.output
        assert "Remediation" in result.output

    def test_list(self, runner, workdir):
        create_batch(runner, "batch-a")
        create_batch(runner, "batch-b")

        result = runner.invoke(cli, ["batch", "list", "--status", "ready"])

        assert result.exit_code == 0
        assert "batch-a" in result.output
        assert "batch-b" in result.output

    def test_list_empty(self, runner, workdir):
        result = runner.invoke(cli, ["batch", "list"])

        assert result.exit_code == 0
        assert "No batches found." in result.output

    def test_status_json(self, runner, workdir):
        """Test the status view is printed as JSON with the creation log entry."""
        # Arrange
        create_batch(runner)

        # Act
        result = runner.invoke(cli, ["batch", "status", "batch-cli", "--json"])

        # Assert
        assert result.exit_code == 0, result.output
        view = json.loads(result.output)
        assert view["batch_id"] == "batch-cli"
        assert view["status"] == "ready"
        assert view["receipt"] is None
        assert [entry["action"] for entry in view["submission_log"]] == ["created"]

    def test_status_unknown_batch(self, runner, workdir):
        result = runner.invoke(cli, ["batch", "status", "missing"])

        assert result.exit_code == 1
        assert "missing" in result.output

    def test_retry_of_ready_batch_refused(self, runner, workdir):
        create_batch(runner)

        result = runner.invoke(cli, ["batch", "retry", "batch-cli", "--user", "admin-1"])

        assert result.exit_code == 1
        assert "Remediation" in result.output
        assert "medsubmit batch status" in result.output

    def test_cancel(self, runner, workdir):
        # Arrange
        create_batch(runner)

        # Act
        result = runner.invoke(cli, ["batch", "cancel", "batch-cli", "--user", "admin-1", "--reason", "duplicate"])

        # Assert
        assert result.exit_code == 0, result.output
        assert "cancelled" in result.output
        status = json.loads(runner.invoke(cli, ["batch", "status", "batch-cli", "--json"]).output)
        assert status["status"] == "cancelled"


class TestQueueCommands:
    """Tests for queue add/process."""

    def test_add_and_process(self, runner, workdir):
        """Test a queued batch is submitted by queue process."""
        # Arrange
        create_batch(runner)
        queued = runner.invoke(cli, ["queue", "add", "batch-cli", "--user", "dr-popescu", "--override-window"])
        assert queued.exit_code == 0, queued.output
        assert "queued as" in queued.output

        # Act
        with patch("medsubmit.cli.submission_commands.HttpGovernmentClient") as client_class:
            client_class.return_value.submit.return_value = GovernmentResponse(
                reference="GOV-202405-1", confirmation_id="CONF-1", submission_id="sub-1"
            )
            result = runner.invoke(cli, ["queue", "process"])

        # Assert
        assert result.exit_code == 0, result.output
        assert "Processed 1 queue items" in result.output
        assert "submitted" in result.output
        status = json.loads(runner.invoke(cli, ["batch", "status", "batch-cli", "--json"]).output)
        assert status["status"] == "submitted"
        assert status["receipt"]["government_reference"] == "GOV-202405-1"

    def test_process_empty_queue(self, runner, workdir):
        result = runner.invoke(cli, ["queue", "process"])

        assert result.exit_code == 0
        assert "No queue items due." in result.output

    def test_add_refused_outside_window(self, runner, workdir, monkeypatch):
        """Test manual queueing is refused when today is not a window day."""
        # Arrange
        today = datetime.now(ZoneInfo("Europe/Bucharest")).day
        closed_day = 1 if today != 1 else 2
        monkeypatch.setenv("MEDSUBMIT_PERIOD_START_DAY", str(closed_day))
        monkeypatch.setenv("MEDSUBMIT_PERIOD_END_DAY", str(closed_day))
        create_batch(runner)

        # Act
        result = runner.invoke(cli, ["queue", "add", "batch-cli", "--user", "dr-popescu"])

        # Assert
        assert result.exit_code == 1
        assert "--override-window" in result.output

    def test_cleanup_and_reclaim(self, runner, workdir):
        reclaimed = runner.invoke(cli, ["queue", "reclaim"])
        deleted = runner.invoke(cli, ["queue", "cleanup", "--days", "1"])

        assert "Reclaimed 0 stale queue items." in reclaimed.output
        assert "Deleted 0 finished queue items." in deleted.output


class TestStatsAndPeriod:
    def test_stats_json(self, runner, workdir):
        create_batch(runner)

        result = runner.invoke(cli, ["stats", "--json"])

        assert result.exit_code == 0, result.output
        statistics = json.loads(result.output)
        assert statistics["total_batches"] == 1
        assert statistics["pending_submissions"] == 1
        assert statistics["average_submission_time_seconds"] == 0

    def test_stats_text(self, runner, workdir):
        result = runner.invoke(cli, ["stats"])

        assert result.exit_code == 0
        assert "Total batches:" in result.output
        assert "Avg submission time: 0.0s" in result.output

    def test_period(self, runner, workdir):
        result = runner.invoke(cli, ["period"])

        assert result.exit_code == 0
        assert "Submission period is" in result.output
