import numpy as np
import pandas as pd
import pytest

from trendscreen.services.noise_builder import (
    NoiseSignalBuilder,
    body_ratio,
    is_vcp,
    liquidity_metrics,
    ma_convergence,
    volatility_metrics,
)


def test_vcp_thresholds():
    assert is_vcp(4.0, 0.05, 0.07) is True
    # 0.06 is not below 0.8 * 0.07
    assert is_vcp(4.0, 0.06, 0.07) is False
    assert is_vcp(5.5, 0.05, 0.07) is False
    assert is_vcp(None, 0.05, 0.07) is False


def test_body_ratio():
    assert body_ratio(10.0, 12.0, 8.0, 11.0) == pytest.approx(0.25)
    assert body_ratio(10.0, 10.0, 10.0, 10.0) is None


def test_ma_convergence():
    assert ma_convergence(51.0, 50.0) == pytest.approx(2.0)
    assert ma_convergence(None, 50.0) is None
    assert ma_convergence(51.0, 0.0) is None


def test_liquidity_uses_trailing_20_bars(make_bars):
    volume = [100.0] * 10 + [600_000.0] * 20
    bars = make_bars([50.0] * 30, volume=volume)
    metrics = liquidity_metrics(bars)
    assert metrics["avg_volume_20d"] == pytest.approx(600_000.0)
    assert metrics["avg_dollar_volume_20d"] == pytest.approx(30_000_000.0)


def test_liquidity_needs_volume_on_last_bar(make_bars):
    bars = make_bars([50.0] * 30)
    bars.loc[len(bars) - 1, "volume"] = 0.0
    assert liquidity_metrics(bars) == {"avg_dollar_volume_20d": None, "avg_volume_20d": None}


def test_volatility_compression(make_bars):
    # Wide swings first, then a tight range
    closes = np.concatenate([100 + 8 * np.sin(np.arange(60)), 100 + 0.5 * np.sin(np.arange(20))])
    bars = make_bars(closes, spread=1.0)
    metrics = volatility_metrics(bars)

    assert metrics["atr14"] is not None
    assert metrics["atr14_percent"] == pytest.approx(metrics["atr14"] / closes[-1] * 100)
    assert metrics["bb_width_current"] < metrics["bb_width_avg_60d"]


def test_volatility_short_history(make_bars):
    metrics = volatility_metrics(make_bars([10.0] * 5))
    assert metrics["atr14"] is None
    assert metrics["bb_width_current"] is None


@pytest.mark.asyncio
async def test_run_writes_latest_date(store, make_bars):
    bars = make_bars([50.0] * 80, volume=600_000.0)
    store.add_bars("LIQ", bars)
    latest = bars["date"].iloc[-1]
    store.set_moving_average("LIQ", latest, ma20=51.0, ma50=50.0, ma100=49.0, ma200=48.0)
    # Moving averages without a bar on the latest date
    store.set_moving_average("MAONLY", latest, ma20=20.0, ma50=25.0)

    result = await NoiseSignalBuilder(store).run()

    assert result.dates == [latest]
    assert result.written == 2
    rows = {r["symbol"]: r for r in store.rows("daily_noise_signals")}

    liq = rows["LIQ"]
    assert liq["date"] == latest
    assert liq["avg_volume_20d"] == pytest.approx(600_000.0)
    assert liq["avg_dollar_volume_20d"] == pytest.approx(30_000_000.0)
    assert liq["atr14"] == pytest.approx(2.0)
    assert liq["atr14_percent"] == pytest.approx(4.0)
    assert liq["body_ratio"] == pytest.approx(0.0)
    assert liq["ma20_ma50_distance_percent"] == pytest.approx(2.0)
    # Flat closes have no band width to compress
    assert liq["is_vcp"] is False

    only_ma = rows["MAONLY"]
    assert only_ma["avg_volume_20d"] is None
    assert only_ma["atr14"] is None
    assert only_ma["ma20_ma50_distance_percent"] == pytest.approx(-20.0)
    assert only_ma["is_vcp"] is False


def test_compute_row_without_any_metric(store):
    builder = NoiseSignalBuilder(store)
    ma = pd.Series({"ma20": np.nan, "ma50": np.nan})
    assert builder.compute_row("NONE", pd.Timestamp("2024-03-01").date(), None, ma) is None
