"""
Technical indicators over ordered (oldest -> newest) price series.

Every function is pure and single-pass over its input. Inputs may be any
sequence of numbers, a pandas Series, or (for the OHLC variants) a DataFrame
with at least a ``close`` column; outputs keep the input index so callers can
align them with dates.
"""

from typing import Sequence, Union

import numpy as np
import pandas as pd

Values = Union[Sequence[float], pd.Series, np.ndarray]
Ohlc = Union[pd.DataFrame, Values]


def _as_series(values: Values) -> pd.Series:
    if isinstance(values, pd.Series):
        return values.astype(float)
    return pd.Series(np.asarray(values, dtype=float))


def _closes(ohlc: Ohlc) -> pd.Series:
    if isinstance(ohlc, pd.DataFrame):
        return ohlc["close"].astype(float)
    return _as_series(ohlc)


def sma(values: Values, period: int) -> pd.Series:
    """Simple moving average aligned to each index (NaN until ``period`` bars are available)."""
    if period <= 0:
        raise ValueError("period must be positive")
    s = _as_series(values)
    return s.rolling(window=period, min_periods=period).mean()


def ema(values: Values, period: int) -> pd.Series:
    """
    Exponential moving average seeded with the SMA of the first ``period`` values.
    Indices before ``period - 1`` are NaN.
    """
    if period <= 0:
        raise ValueError("period must be positive")
    s = _as_series(values)
    arr = s.to_numpy(dtype=float)
    out = np.full(len(arr), np.nan)
    if len(arr) < period:
        return pd.Series(out, index=s.index)

    multiplier = 2.0 / (period + 1)
    current = arr[:period].sum() / period
    out[period - 1] = current
    for i in range(period, len(arr)):
        current = (arr[i] - current) * multiplier + current
        out[i] = current
    return pd.Series(out, index=s.index)


def rsi(ohlc: Ohlc, period: int = 14) -> pd.Series:
    """
    Wilder's RSI. Returns only the defined values (the first one sits at
    position ``period``); empty when fewer than ``period + 1`` observations.
    """
    closes = _closes(ohlc)
    if period <= 0 or len(closes) < period + 1:
        return pd.Series(dtype=float)

    deltas = np.diff(closes.to_numpy(dtype=float))
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = gains[:period].sum() / period
    avg_loss = losses[:period].sum() / period

    values = [_rsi_value(avg_gain, avg_loss)]
    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        values.append(_rsi_value(avg_gain, avg_loss))

    return pd.Series(values, index=closes.index[period:], dtype=float)


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return min(100.0, max(0.0, 100.0 - 100.0 / (1.0 + rs)))


def macd(ohlc: Ohlc, fast: int = 12, slow: int = 26, signal: int = 9) -> pd.DataFrame:
    """
    MACD line, signal line and histogram.

    Rows start where the MACD line is first defined (position ``slow - 1``);
    ``signal`` and ``histogram`` stay NaN until the signal EMA is seeded.
    Empty when fewer than ``slow + signal`` observations.
    """
    closes = _closes(ohlc)
    if len(closes) < slow + signal:
        return pd.DataFrame(columns=["macd", "signal", "histogram"], dtype=float)

    macd_line = (ema(closes, fast) - ema(closes, slow)).dropna()
    signal_line = ema(macd_line, signal)

    out = pd.DataFrame({"macd": macd_line, "signal": signal_line})
    out["histogram"] = out["macd"] - out["signal"]
    return out


def true_range(ohlc: pd.DataFrame) -> pd.Series:
    """max(high - low, |high - prev_close|, |low - prev_close|); first bar falls back to high - low."""
    prev_close = ohlc["close"].shift(1)
    ranges = pd.concat(
        [
            ohlc["high"] - ohlc["low"],
            (ohlc["high"] - prev_close).abs(),
            (ohlc["low"] - prev_close).abs(),
        ],
        axis=1,
    )
    return ranges.max(axis=1, skipna=True)


def atr(ohlc: pd.DataFrame, period: int = 14) -> pd.Series:
    """Average true range as the trailing arithmetic mean of ``period`` true ranges."""
    return true_range(ohlc).rolling(window=period, min_periods=period).mean()


def bollinger_width(values: Values, window: int = 20, num_std: float = 2.0) -> pd.Series:
    """(num_std * sample stddev) / SMA over ``window`` bars; NaN where the SMA is not positive."""
    s = _as_series(values)
    middle = s.rolling(window=window, min_periods=window).mean()
    std = s.rolling(window=window, min_periods=window).std()
    width = (std * num_std) / middle
    return width.where(middle > 0)
