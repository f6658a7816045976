"""Tests for the CLI commands."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from inviteflow.cli import cli
from inviteflow.errors import StoreUnavailableError
from inviteflow.poller import PassSummary

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def poll_env(monkeypatch, fernet_key):
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "cid")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "csecret")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", fernet_key)
    monkeypatch.setenv("GEMINI_API_KEY", "gkey")


@pytest.fixture(autouse=True)
def logging_setup():
    with patch("inviteflow.cli.configure_logging") as configure:
        yield configure


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestPoll:
    def test_prints_summary(self, runner, poll_env):
        summary = PassSummary(users_total=2, users_ok=2, routes={"skip": 3})
        with patch("inviteflow.cli._run_poll", new=AsyncMock(return_value=summary)) as run:
            result = runner.invoke(
                cli, ["poll", "--user-id", "u-1", "--dry-run", "--backfill-days", "7"]
            )

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["users_ok"] == 2
        kwargs = run.call_args.kwargs
        assert kwargs == {"user_id": "u-1", "dry_run": True, "backfill_days": 7}

    def test_log_file_reaches_logging_setup(self, runner, poll_env, tmp_path, logging_setup):
        log_path = tmp_path / "logs" / "poll.jsonl"
        with patch("inviteflow.cli._run_poll", new=AsyncMock(return_value=PassSummary())):
            result = runner.invoke(cli, ["poll", "--log-file", str(log_path)])

        assert result.exit_code == 0, result.output
        assert logging_setup.call_args.kwargs["log_file"] == log_path

    def test_log_file_defaults_to_none(self, runner, poll_env, logging_setup):
        with patch("inviteflow.cli._run_poll", new=AsyncMock(return_value=PassSummary())):
            result = runner.invoke(cli, ["poll"])

        assert result.exit_code == 0, result.output
        assert logging_setup.call_args.kwargs["log_file"] is None

    def test_negative_backfill_rejected(self, runner, poll_env):
        result = runner.invoke(cli, ["poll", "--backfill-days", "-1"])
        assert result.exit_code == 2

    def test_missing_config(self, runner, monkeypatch):
        for name in ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET", "TOKEN_ENCRYPTION_KEY"):
            monkeypatch.delenv(name, raising=False)

        result = runner.invoke(cli, ["poll"])

        assert result.exit_code == 1
        assert "GOOGLE_CLIENT_ID is required" in result.output

    def test_gemini_key_required(self, runner, poll_env, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY")

        result = runner.invoke(cli, ["poll"])

        assert result.exit_code == 1
        assert "GEMINI_API_KEY" in result.output

    def test_store_unavailable_exits_2(self, runner, poll_env):
        failing = AsyncMock(side_effect=StoreUnavailableError("connection refused"))
        with patch("inviteflow.cli._run_poll", new=failing):
            result = runner.invoke(cli, ["poll"])

        assert result.exit_code == 2


class TestMigrate:
    def test_runs_core_chain(self, runner, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://app:pw@db:5432/inviteflow")
        with patch("inviteflow.cli.run_migrations", new=MagicMock()) as run:
            result = runner.invoke(cli, ["migrate"])

        assert result.exit_code == 0, result.output
        run.assert_called_once_with("postgresql://app:pw@db:5432/inviteflow")
        assert "Migrations complete" in result.output
