"""Tests for the admin CLI."""
from __future__ import annotations

import pytest
from click.testing import CliRunner

from main import cli


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)
    return CliRunner()


def test_add_list_deactivate(runner):
    result = runner.invoke(cli, ["add-whale", "0xABC", "--label", "Big Fish", "--tier", "paid", "--min-usd", "1000"])
    assert result.exit_code == 0, result.output
    assert "Big Fish" in result.output

    result = runner.invoke(cli, ["list-whales"])
    assert "0xabc" in result.output
    assert "paid" in result.output

    assert runner.invoke(cli, ["deactivate", "0xabc"]).exit_code == 0
    assert "No whales tracked." in runner.invoke(cli, ["list-whales"]).output
    assert "0xabc" in runner.invoke(cli, ["list-whales", "--all"]).output


def test_duplicate_and_invalid_whales_rejected(runner):
    assert runner.invoke(cli, ["add-whale", "0xabc"]).exit_code == 0
    assert runner.invoke(cli, ["add-whale", "0xABC"]).exit_code == 1

    result = runner.invoke(cli, ["add-whale", "0xdef", "--partial-close-pct", "150"])
    assert result.exit_code == 1
    assert "partial_close_pct" in result.output

    result = runner.invoke(cli, ["add-whale", "0xdef", "--min-usd", "300"])
    assert result.exit_code == 2


def test_deactivate_unknown_wallet(runner):
    assert runner.invoke(cli, ["deactivate", "0xnope"]).exit_code == 1


def test_report_without_positions(runner):
    result = runner.invoke(cli, ["report"])
    assert result.exit_code == 0
    assert "No copy-trade positions yet." in result.output
