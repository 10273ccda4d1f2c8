"""Tests for CLI helpers and subcommands that run without network access."""

import json
from datetime import date, datetime
from zoneinfo import ZoneInfo
from decimal import Decimal

import pytest

from folio.cli import main as cli_main
from folio.cli.common import format_currency, format_percentage, parse_date
from folio.currency import Currency
from folio.pricingdata import DividendEvent, SplitEvent, StaticMarketDataService


def test_format_percentage():
    assert format_percentage(0.0512) == "[green]+5.12%[/green]"
    assert format_percentage(Decimal("-3.5"), precision=1, fraction=False) == "[red]-3.5%[/red]"
    assert format_percentage(None) == "N/A"


def test_format_currency():
    assert format_currency(Decimal("1234.5"), Currency.CAD) == "1,234.50 CAD"
    assert format_currency(None, Currency.USD) == "N/A"


def test_parse_date():
    assert parse_date("2024-02-29") == date(2024, 2, 29)
    assert parse_date(None) is None
    with pytest.raises(ValueError):
        parse_date("29/02/2024")


def test_version_command(monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["folio", "version"])
    assert cli_main.main() == 0
    assert "folio version" in capsys.readouterr().out


def test_unknown_currency_exits_with_error(monkeypatch, capsys, tmp_path):
    path = tmp_path / "activities.json"
    path.write_text("[]")
    monkeypatch.setattr("sys.argv", ["folio", "report", str(path), "-c", "XYZ"])

    assert cli_main.main() == 1
    assert "Unknown currency 'XYZ'" in capsys.readouterr().err


def test_splits_command_saves_file(monkeypatch, tmp_path):
    """The splits command writes the reconciled ledger back to the file."""
    path = tmp_path / "activities.json"
    path.write_text(json.dumps([
        {"symbol": "AAPL", "datetime": "2020-01-02T12:00:00-05:00", "activity_type": "BUY", "quantity": 10, "price": 300},
    ]))
    market_data = StaticMarketDataService(splits={
        "AAPL": [SplitEvent(datetime(2020, 8, 31, tzinfo=ZoneInfo("America/New_York")), Decimal("4"), Decimal("1"))],
    })
    monkeypatch.setattr("folio.cli.common.YFinanceMarketDataService", lambda force_cache_refresh: market_data)
    monkeypatch.setattr("sys.argv", ["folio", "splits", str(path)])

    assert cli_main.main() == 0

    saved = json.loads(path.read_text())["activities"]
    assert [a["activity_type"] for a in saved] == ["BUY", "STOCK_SPLIT"]
    assert saved[1]["quantity"] == "4"


def test_dividends_dry_run_leaves_file_alone(monkeypatch, tmp_path, capsys):
    path = tmp_path / "activities.json"
    original = json.dumps([
        {"symbol": "AAPL", "datetime": "2024-01-02T12:00:00-05:00", "activity_type": "BUY", "quantity": 10, "price": 185},
    ])
    path.write_text(original)
    market_data = StaticMarketDataService(dividends={
        "AAPL": [DividendEvent(datetime(2024, 2, 9, tzinfo=ZoneInfo("America/New_York")), Decimal("0.24"))],
    })
    monkeypatch.setattr("folio.cli.common.YFinanceMarketDataService", lambda force_cache_refresh: market_data)
    monkeypatch.setattr("sys.argv", ["folio", "dividends", str(path), "--dry-run"])

    assert cli_main.main() == 0

    assert path.read_text() == original
    assert "Would add" in capsys.readouterr().out
