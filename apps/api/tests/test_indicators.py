import numpy as np
import pandas as pd
import pytest

from trendscreen.services.indicators import atr, bollinger_width, ema, macd, rsi, sma, true_range


@pytest.fixture
def closes():
    """Up-trending series with a sine wobble"""
    x = np.arange(120)
    return pd.Series(100 + 0.5 * x + 3 * np.sin(x / 4.0))


def test_sma_matches_definition(closes):
    result = sma(closes, 20)
    assert result.iloc[:19].isna().all()
    assert result.iloc[19] == pytest.approx(closes.iloc[:20].mean())
    assert result.iloc[-1] == pytest.approx(closes.iloc[-20:].mean())


def test_sma_rejects_non_positive_period():
    with pytest.raises(ValueError):
        sma([1, 2, 3], 0)


def test_ema_seeded_with_sma():
    values = [1, 2, 3, 4, 5, 6]
    result = ema(values, 3)
    assert result.iloc[:2].isna().all()
    assert result.iloc[2] == pytest.approx(2.0)
    # 2 / (3 + 1) = 0.5
    assert result.iloc[3] == pytest.approx((4 - 2.0) * 0.5 + 2.0)


def test_rsi_bounds_and_direction(closes):
    values = rsi(closes, 14)
    assert len(values) == len(closes) - 14
    assert ((values >= 0) & (values <= 100)).all()

    rising = rsi(pd.Series(np.linspace(10, 50, 40)), 14)
    falling = rsi(pd.Series(np.linspace(50, 10, 40)), 14)
    assert rising.iloc[-1] == 100.0
    assert falling.iloc[-1] == pytest.approx(0.0)


def test_rsi_short_input_is_empty():
    assert rsi([1, 2, 3], 14).empty


def test_macd_histogram(closes):
    result = macd(closes)
    assert list(result.columns) == ["macd", "signal", "histogram"]
    defined = result.dropna()
    assert not defined.empty
    assert np.allclose(defined["histogram"], defined["macd"] - defined["signal"])


def test_macd_short_input_is_empty():
    assert macd(list(range(30))).empty


def test_true_range_and_atr():
    ohlc = pd.DataFrame({
        "high": [11.0, 12.0, 13.0],
        "low": [9.0, 10.0, 12.5],
        "close": [10.0, 11.0, 12.0],
    })
    tr = true_range(ohlc)
    assert tr.tolist() == [2.0, 2.0, 2.0]
    assert atr(ohlc, 2).iloc[-1] == pytest.approx(2.0)
    assert pd.isna(atr(ohlc, 2).iloc[0])


def test_bollinger_width_flat_series_is_zero():
    width = bollinger_width([50.0] * 25, 20)
    assert width.iloc[-1] == 0.0
    assert width.iloc[:19].isna().all()
