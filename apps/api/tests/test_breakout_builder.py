import numpy as np
import pandas as pd
import pytest

from trendscreen.services.breakout_builder import (
    BreakoutSignalBuilder,
    detect_confirmed_breakout,
    detect_perfect_retest,
    is_constructive_candle,
)


def test_confirmed_breakout_at_the_high():
    result = detect_confirmed_breakout(
        close=100, high=100, low=95, volume=2500, high_20d=100, avg_volume_20d=1000
    )
    assert result["breakout_percent"] == pytest.approx(0.0)
    assert result["volume_ratio"] == pytest.approx(2.5)


def test_breakout_needs_volume_surge():
    assert detect_confirmed_breakout(100, 100, 95, 1500, 100, 1000) is None


def test_breakout_needs_close_at_high():
    assert detect_confirmed_breakout(99, 101, 95, 3000, 101, 1000) is None


def test_breakout_rejects_long_upper_wick():
    # (high - close) = 2 >= 0.2 * range 5
    assert detect_confirmed_breakout(100, 102, 97, 3000, 100, 1000) is None


def test_constructive_candle():
    assert is_constructive_candle(99, 101, 98, 100)
    # Down day with a long lower wick
    assert is_constructive_candle(100, 100.5, 97, 99.5)
    # Plain down day
    assert not is_constructive_candle(102, 102.5, 99.5, 100)


@pytest.fixture
def retest_bars(make_bars):
    bars = make_bars([100.0] * 30).set_index("date")
    # New high five sessions before the latest date
    bars.iloc[25, bars.columns.get_loc("close")] = 110.0
    bars.iloc[25, bars.columns.get_loc("high")] = 110.0
    bars.iloc[-1, bars.columns.get_loc("open")] = 99.0
    bars.iloc[-1, bars.columns.get_loc("low")] = 98.5
    return bars


def test_perfect_retest(retest_bars):
    result = detect_perfect_retest(retest_bars, ma20=100.0)
    assert result["ma20_distance_percent"] == pytest.approx(0.0)


def test_retest_requires_recent_high(make_bars):
    bars = make_bars([100.0] * 30).set_index("date")
    assert detect_perfect_retest(bars, ma20=100.0) is None


def test_retest_requires_close_near_ma20(retest_bars):
    assert detect_perfect_retest(retest_bars, ma20=90.0) is None
    assert detect_perfect_retest(retest_bars, ma20=110.0) is None


def test_retest_rejects_weak_down_day(retest_bars):
    bars = retest_bars.copy()
    bars.iloc[-1, bars.columns.get_loc("open")] = 102.0
    bars.iloc[-1, bars.columns.get_loc("high")] = 102.5
    bars.iloc[-1, bars.columns.get_loc("low")] = 99.5
    assert detect_perfect_retest(bars, ma20=100.0) is None


def _with_breakout_day(make_bars):
    """Flat bars, a breakout candle on the second-to-last session, then one more session"""
    bars = make_bars([100.0] * 40)
    i = len(bars) - 2
    bars.loc[i, ["open", "high", "low", "close", "adj_close", "volume"]] = [101.0, 105.0, 100.0, 105.0, 105.0, 3000.0]
    return bars


@pytest.mark.asyncio
async def test_builder_evaluates_session_before_latest(store, make_bars):
    breakout = _with_breakout_day(make_bars)
    store.add_bars("BRK", breakout)
    store.add_bars("FLAT", make_bars([50.0] * 40))
    store.add_bars("NOMA", _with_breakout_day(make_bars))

    evaluation = breakout["date"].iloc[-2]
    store.set_moving_average("BRK", evaluation, ma20=100.0, ma50=98.0, ma100=95.0, ma200=90.0)
    store.set_moving_average("FLAT", evaluation, ma20=50.0, ma50=50.0, ma100=50.0, ma200=50.0)
    store.set_moving_average("NOMA", evaluation, ma20=100.0, ma50=98.0, ma100=None, ma200=None)

    result = await BreakoutSignalBuilder(store).run()

    assert result.dates == [evaluation]
    assert result.processed == 3
    assert result.written == 1
    assert result.skipped == 2

    rows = store.rows("daily_breakout_signals")
    assert len(rows) == 1
    row = rows[0]
    assert row["symbol"] == "BRK"
    assert row["date"] == evaluation
    assert row["is_confirmed_breakout"] is True
    assert row["breakout_percent"] == pytest.approx(0.0)
    # 20-bar average includes the breakout day: (19 * 1000 + 3000) / 20
    assert row["volume_ratio"] == pytest.approx(3000 / 1100)
    assert row["is_perfect_retest"] is False
    assert row["ma20_distance_percent"] is None


@pytest.mark.asyncio
async def test_builder_leaves_other_dates_untouched(store, make_bars):
    bars = _with_breakout_day(make_bars)
    store.add_bars("BRK", bars)
    evaluation = bars["date"].iloc[-2]
    store.set_moving_average("BRK", evaluation, ma20=100.0, ma50=98.0, ma100=95.0, ma200=90.0)
    stale_date = bars["date"].iloc[0]
    store.tables["daily_breakout_signals"][("OLD", stale_date)] = {"symbol": "OLD", "date": stale_date}

    await BreakoutSignalBuilder(store).run()

    keys = set(store.tables["daily_breakout_signals"])
    assert keys == {("OLD", stale_date), ("BRK", evaluation)}


@pytest.mark.asyncio
async def test_builder_with_single_session(store, make_bars):
    store.add_bars("ONE", make_bars([10.0]))
    result = await BreakoutSignalBuilder(store).run()
    assert result.processed == 0
    assert store.rows("daily_breakout_signals") == []
