"""Tests for stock split reconciliation."""

import json
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from folio.activities import (
    Activity,
    BehaviorMap,
    InMemoryActivityStore,
    UNASSIGNED,
    load_activities,
    save_activities,
)
from folio.holdings import replay_holdings
from folio.pricingdata import SplitEvent, StaticMarketDataService
from folio.splits import SplitReconciler, affected_buckets

NY = ZoneInfo("America/New_York")

SPLIT_DATE = datetime(2020, 8, 31, tzinfo=NY)


def buy(symbol, when, quantity, price, account=None):
    return Activity(symbol, when, "BUY", Decimal(str(quantity)), Decimal(str(price)), account_id=account)


def sell(symbol, when, quantity, price, account=None):
    return Activity(symbol, when, "SELL", Decimal(str(quantity)), Decimal(str(price)), account_id=account)


def sample_store():
    """AAPL held in account "a", briefly in Unassigned, and bought in "b" after the split."""
    return InMemoryActivityStore([
        buy("AAPL", datetime(2020, 1, 2, 12, tzinfo=NY), 10, 300, account="a"),
        buy("AAPL", datetime(2020, 3, 2, 12, tzinfo=NY), 5, 250),
        sell("AAPL", datetime(2020, 5, 1, 12, tzinfo=NY), 5, 290),
        buy("AAPL", datetime(2020, 9, 1, 12, tzinfo=NY), 20, 130, account="b"),
    ])


def sample_market_data(**kwargs):
    return StaticMarketDataService(
        splits={
            "AAPL": [
                SplitEvent(datetime(2014, 6, 9, tzinfo=NY), Decimal("7"), Decimal("1")),
                SplitEvent(SPLIT_DATE, Decimal("4"), Decimal("1")),
            ],
        },
        **kwargs,
    )


def test_split_is_recorded_for_every_account_that_held_before():
    """Accounts holding before the split get one STOCK_SPLIT each; later buyers do not."""
    store = sample_store()
    result = SplitReconciler(store, sample_market_data()).detect_and_apply()

    assert result.created_count == 2
    assert {a.bucket for a in result.created} == {"a", UNASSIGNED}
    for created in result.created:
        assert created.activity_type == "STOCK_SPLIT"
        assert created.quantity == Decimal("4")
        assert created.price == Decimal("0")
        assert created.activity_datetime == SPLIT_DATE
    assert [a.account_id for a in result.created if a.bucket == UNASSIGNED] == [None]
    assert len(store.activities) == 6


def test_reconciled_ledger_replays_split_per_account():
    """After reconciliation the split multiplies only pre-split holdings."""
    store = sample_store()
    SplitReconciler(store, sample_market_data()).detect_and_apply()

    behavior_map = BehaviorMap()
    activities = store.get_activities(symbol="AAPL")
    assert replay_holdings(activities, behavior_map, account_id="a").quantity == Decimal("40")
    assert replay_holdings(activities, behavior_map, account_id="b").quantity == Decimal("20")
    assert replay_holdings(activities, behavior_map, account_id=UNASSIGNED).quantity == Decimal("0")
    assert replay_holdings(activities, behavior_map).cost_basis == Decimal("5600")


def test_reconciliation_is_idempotent():
    """A second run finds every split already recorded."""
    store = sample_store()
    reconciler = SplitReconciler(store, sample_market_data())
    reconciler.detect_and_apply()
    count_after_first = len(store.activities)

    second = reconciler.detect_and_apply()

    assert second.created_count == 0
    assert second.already_applied == 2
    assert len(store.activities) == count_after_first


def test_existing_split_within_a_day_is_respected():
    """A split recorded a few hours from the market date counts as applied."""
    store = sample_store()
    store.add_activity(Activity(
        "AAPL", datetime(2020, 8, 30, 20, tzinfo=NY), "STOCK_SPLIT", Decimal("4"), Decimal("0"), account_id="a"
    ))

    result = SplitReconciler(store, sample_market_data()).detect_and_apply()

    assert [a.bucket for a in result.created] == [UNASSIGNED]
    assert result.already_applied == 1


def test_splits_before_first_activity_are_ignored():
    """Only splits on or after the first activity are considered."""
    store = sample_store()
    result = SplitReconciler(store, sample_market_data()).detect_and_apply(symbol="AAPL")
    assert all(a.activity_datetime.year == 2020 for a in result.created)


def test_dry_run_leaves_store_untouched():
    """A dry run reports the splits without adding them."""
    store = sample_store()
    result = SplitReconciler(store, sample_market_data()).detect_and_apply(dry_run=True)
    assert result.created_count == 2
    assert len(store.activities) == 4


def test_failing_symbol_does_not_stop_others():
    """A market data error for one symbol is recorded and the loop continues."""
    store = sample_store()
    store.add_activity(buy("MSFT", datetime(2020, 1, 2, 12, tzinfo=NY), 3, 160))
    market_data = sample_market_data(failing={"MSFT": ConnectionError("rate limited")})

    with pytest.warns(UserWarning, match="MSFT"):
        result = SplitReconciler(store, market_data).detect_and_apply()

    assert result.failed_symbols == {"MSFT": "rate limited"}
    assert result.created_count == 2


def test_non_positive_ratio_is_ignored():
    """A split event with a zero numerator creates nothing."""
    store = sample_store()
    market_data = StaticMarketDataService(splits={"AAPL": [SplitEvent(SPLIT_DATE, Decimal("0"), Decimal("1"))]})

    with pytest.warns(UserWarning, match="Ignoring split"):
        result = SplitReconciler(store, market_data).detect_and_apply()

    assert result.created_count == 0


def test_affected_buckets_include_exited_accounts():
    """An account that sold out before the split is still affected."""
    activities = sample_store().get_activities(symbol="AAPL")
    assert affected_buckets(activities, BehaviorMap(), SPLIT_DATE) == ["a", UNASSIGNED]


def test_split_event_ratio():
    """Reverse splits have ratios below one."""
    assert SplitEvent(SPLIT_DATE, Decimal("1"), Decimal("10")).ratio == Decimal("0.1")
    assert SplitEvent(SPLIT_DATE, Decimal("3"), Decimal("2")).ratio == Decimal("1.5")


def test_saved_split_replays_the_same_after_reload(tmp_path):
    """A split stored at midnight keeps its place ahead of same-day date-only trades."""
    path = str(tmp_path / "activities.json")
    with open(path, "w") as f:
        json.dump([
            {"symbol": "AAPL", "datetime": "2020-01-02T12:00:00-05:00", "activity_type": "BUY", "quantity": 10, "price": 300},
            {"symbol": "AAPL", "datetime": "2020-08-31", "activity_type": "BUY", "quantity": 8, "price": 130},
        ], f)
    with pytest.warns(UserWarning, match="missing time"):
        store = load_activities(path)
    market_data = StaticMarketDataService(splits={"AAPL": [SplitEvent(SPLIT_DATE, Decimal("4"), Decimal("1"))]})

    result = SplitReconciler(store, market_data).detect_and_apply()
    behavior_map = BehaviorMap()
    assert result.created_count == 1
    assert replay_holdings(store.get_activities(symbol="AAPL"), behavior_map).quantity == Decimal("48")

    save_activities(store, path)
    reloaded = load_activities(path)

    split = next(a for a in reloaded.activities if a.activity_type == "STOCK_SPLIT")
    assert split.activity_datetime == SPLIT_DATE
    assert replay_holdings(reloaded.get_activities(symbol="AAPL"), behavior_map).quantity == Decimal("48")
