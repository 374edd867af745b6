"""Tests for the command-line interface.

Runs commands through click's CliRunner against a temporary config and
database, with the accounting system unconfigured (degraded mode).
"""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from posync.cli import cli


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Write a config pointing at a temporary database and select it."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        f"""
our_domain: "example.com"
database:
  path: "{(tmp_path / 'posync.db').as_posix()}"
trust:
  manual_domains: ["acme.com"]
logging:
  json_output: false
"""
    )
    monkeypatch.setenv("POSYNC_CONFIG_PATH", str(config_path))
    for name in ("CONDUCTOR_API_KEY", "CONDUCTOR_END_USER_ID", "TRUSTED_DOMAINS"):
        monkeypatch.delenv(name, raising=False)
    return config_path


def _write_json(path: Path, data: object) -> Path:
    path.write_text(json.dumps(data))
    return path


class TestValidateConfig:
    def test_valid_config(self, config_file: Path) -> None:
        result = CliRunner().invoke(cli, ["validate-config", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing_config(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(cli, ["validate-config", "-c", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "Load error" in result.output


class TestAlertWorkflow:
    """End-to-end: import mail, run a cycle, list and dismiss alerts."""

    def test_import_run_list_dismiss(self, cli_env: Path, tmp_path: Path) -> None:
        runner = CliRunner()

        emails = _write_json(
            tmp_path / "emails.json",
            [
                {
                    "id": "INBOX:1",
                    "messageId": "<po-4521@acme.com>",
                    "subject": "PO 4521 for bracket assembly",
                    "fromAddress": "buyer@acme.com",
                    "toAddresses": ["sales@example.com"],
                    "date": "2026-03-02T09:00:00Z",
                }
            ],
        )
        result = runner.invoke(cli, ["import-emails", str(emails)])
        assert result.exit_code == 0, result.output
        assert "Imported 1 emails" in result.output

        threads = _write_json(
            tmp_path / "threads.json",
            [
                {
                    "threadKey": "<po-4521@acme.com>",
                    "subject": "PO 4521 for bracket assembly",
                    "contactEmail": "buyer@acme.com",
                    "poDetails": {"poNumber": "4521", "total": 5000},
                }
            ],
        )
        result = runner.invoke(cli, ["run-alerts", "--threads", str(threads)])
        assert result.exit_code == 0, result.output
        assert "New alerts:   1" in result.output
        assert "Degraded mode" in result.output

        result = runner.invoke(cli, ["alerts", "--actionable", "--mark-notified"])
        assert result.exit_code == 0, result.output
        assert "Marked 1 alerts as notified." in result.output

        result = runner.invoke(cli, ["alerts", "--actionable"])
        assert "No actionable alerts." in result.output

        result = runner.invoke(cli, ["dismiss", "1"])
        assert result.exit_code == 0, result.output

        result = runner.invoke(cli, ["dismiss", "1"])
        assert result.exit_code == 1

    def test_run_alerts_rejects_non_list(self, cli_env: Path, tmp_path: Path) -> None:
        threads = _write_json(tmp_path / "threads.json", {"threadKey": "<x>"})
        result = CliRunner().invoke(cli, ["run-alerts", "--threads", str(threads)])
        assert result.exit_code != 0
