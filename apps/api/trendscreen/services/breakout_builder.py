import time
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional

import pandas as pd
import structlog

from trendscreen.models import BreakoutSignal
from trendscreen.schemas.common import JobResult
from trendscreen.services.store import SignalStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class BreakoutConfig:
    high_window: int = 20
    volume_window: int = 20
    volume_multiplier: float = 2.0
    # (high - close) must stay below this share of the day's range
    upper_wick_max_ratio: float = 0.2
    # Retest: a breakout between these many sessions before the latest date
    retest_min_days_ago: int = 3
    retest_max_days_ago: int = 10
    retest_ma20_lower: float = 0.98
    retest_ma20_upper: float = 1.05

    @property
    def history_bars(self) -> int:
        return self.retest_max_days_ago + self.high_window


DEFAULT_BREAKOUT_CONFIG = BreakoutConfig()


def detect_confirmed_breakout(
    close: float,
    high: float,
    low: float,
    volume: float,
    high_20d: float,
    avg_volume_20d: float,
    config: BreakoutConfig = DEFAULT_BREAKOUT_CONFIG,
) -> Optional[Dict[str, float]]:
    """New 20-bar high on a volume surge with a close near the top of the candle."""
    if not high_20d or not avg_volume_20d or avg_volume_20d <= 0:
        return None
    candle_range = high - low
    if candle_range <= 0:
        return None
    if close < high_20d:
        return None
    if volume < avg_volume_20d * config.volume_multiplier:
        return None
    if (high - close) >= candle_range * config.upper_wick_max_ratio:
        return None

    return {
        "breakout_percent": (close / high_20d - 1) * 100,
        "volume_ratio": volume / avg_volume_20d,
    }


def is_constructive_candle(open_: float, high: float, low: float, close: float) -> bool:
    """Up day, or a down day whose lower wick is longer than its real body."""
    if close >= open_:
        return True
    return (min(open_, close) - low) > (open_ - close)


def detect_perfect_retest(
    bars: pd.DataFrame,
    ma20: float,
    config: BreakoutConfig = DEFAULT_BREAKOUT_CONFIG,
) -> Optional[Dict[str, float]]:
    """
    ``bars`` ascending, last row = evaluation date (the session before the
    latest one). Looks for a close at or above its own trailing 20-bar high
    3-10 sessions before the latest date, then a constructive candle near MA20.
    """
    if not ma20 or ma20 <= 0 or bars.empty:
        return None

    last = bars.iloc[-1]
    close = last["close"]
    if not (ma20 * config.retest_ma20_lower <= close <= ma20 * config.retest_ma20_upper):
        return None
    if not is_constructive_candle(last["open"], last["high"], last["low"], close):
        return None

    rolling_high = bars["high"].rolling(window=config.high_window, min_periods=1).max()
    made_high = bars["close"] >= rolling_high

    # Latest date is one session after the last bar, so "k sessions before
    # the latest date" is position len(bars) - k.
    n = len(bars)
    lo = max(0, n - config.retest_max_days_ago)
    hi = n - config.retest_min_days_ago
    if hi < lo or not made_high.iloc[lo:hi + 1].any():
        return None

    return {"ma20_distance_percent": (close / ma20 - 1) * 100}


class BreakoutSignalBuilder:
    def __init__(self, store: SignalStore, config: BreakoutConfig = DEFAULT_BREAKOUT_CONFIG):
        self.store = store
        self.config = config

    async def run(self) -> JobResult:
        started = time.monotonic()
        result = JobResult(job="breakout")

        latest = await self.store.latest_trade_date()
        if latest is None:
            logger.warning("No latest trade date found")
            return result
        evaluation = await self.store.previous_trade_date(latest)
        if evaluation is None:
            logger.warning("No previous trade date found", latest=str(latest))
            return result

        logger.info("Building breakout signals", latest=str(latest), evaluation=str(evaluation))
        result.dates.append(evaluation)

        bars = await self.store.fetch_recent_bars(evaluation, self.config.history_bars)
        mas = await self.store.fetch_moving_averages(evaluation)

        rows = []
        for symbol, symbol_bars in bars.groupby("symbol", sort=True):
            result.processed += 1
            try:
                row = self.evaluate_symbol(symbol, symbol_bars.set_index("date"), mas, evaluation)
            except Exception as e:
                logger.error("Breakout evaluation failed", symbol=symbol, error=str(e))
                result.record_failure(symbol, e)
                continue
            if row is None:
                result.skipped += 1
            else:
                rows.append(row)

        result.written = await self.store.upsert_by_key(BreakoutSignal, rows)
        result.duration_seconds = round(time.monotonic() - started, 3)

        logger.info(
            "Breakout signals finished",
            date=str(evaluation),
            signals=result.written,
            confirmed=sum(1 for r in rows if r["is_confirmed_breakout"]),
            retests=sum(1 for r in rows if r["is_perfect_retest"]),
        )
        return result

    def evaluate_symbol(self, symbol: str, bars: pd.DataFrame, mas: pd.DataFrame, evaluation: date) -> Optional[dict]:
        if bars.empty or bars.index[-1] != evaluation or symbol not in mas.index:
            return None

        last = bars.iloc[-1]
        if last[["open", "high", "low", "close", "volume"]].isna().any() or last["volume"] <= 0:
            return None

        ma = mas.loc[symbol]
        if any(pd.isna(ma[c]) or ma[c] <= 0 for c in ("ma20", "ma50", "ma200")):
            return None

        cfg = self.config
        high_20d = bars["high"].tail(cfg.high_window).max()
        avg_volume_20d = bars["volume"].tail(cfg.volume_window).mean()

        breakout = detect_confirmed_breakout(
            last["close"], last["high"], last["low"], last["volume"], high_20d, avg_volume_20d, cfg
        )
        retest = detect_perfect_retest(bars, float(ma["ma20"]), cfg)
        if breakout is None and retest is None:
            return None

        return {
            "symbol": symbol,
            "date": evaluation,
            "is_confirmed_breakout": breakout is not None,
            "breakout_percent": breakout["breakout_percent"] if breakout else None,
            "volume_ratio": breakout["volume_ratio"] if breakout else None,
            "is_perfect_retest": retest is not None,
            "ma20_distance_percent": retest["ma20_distance_percent"] if retest else None,
        }
