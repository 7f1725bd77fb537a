"""Tests for the command line interface."""

from pathlib import Path

from click.testing import CliRunner

from nsepaper.cli import cli

CONFIG = str(Path(__file__).resolve().parent.parent / "config" / "config.yaml")


def test_price_shows_greeks():
    result = CliRunner().invoke(cli, ["price", "--spot", "24000", "--strike", "24000", "--days", "7"])
    assert result.exit_code == 0
    assert "Price:" in result.output
    assert "Delta:" in result.output


def test_price_solves_iv_from_premium():
    result = CliRunner().invoke(
        cli, ["price", "--spot", "24000", "--strike", "24000", "--days", "7", "--premium", "250"]
    )
    assert result.exit_code == 0
    assert "Implied volatility:" in result.output


def test_simulate_runs_on_virtual_time():
    result = CliRunner().invoke(
        cli, ["simulate", "--config", CONFIG, "--strategy", "short_straddle", "--cycles", "5"]
    )
    assert result.exit_code == 0, result.output
    assert "cycle    0" in result.output
    assert "SHORT_STRADDLE: realized" in result.output


def test_simulate_premium_strangle():
    result = CliRunner().invoke(cli, ["simulate", "--config", CONFIG, "--premium", "--cycles", "3"])
    assert result.exit_code == 0, result.output
    assert "SHORT_STRANGLE: realized" in result.output


def test_journal_on_empty_database(tmp_path):
    result = CliRunner().invoke(
        cli, ["journal", "--config", CONFIG], env={"NSEPAPER_DATA_DIR": str(tmp_path)}
    )
    assert result.exit_code == 0, result.output
    assert "Trades: 0 (0 open, 0 closed)" in result.output
    assert (tmp_path / "trade_journal.db").exists()
