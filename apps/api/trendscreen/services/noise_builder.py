import time
from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional

import pandas as pd
import structlog

from trendscreen.models import NoiseSignal
from trendscreen.schemas.common import JobResult
from trendscreen.services.indicators import atr, bollinger_width
from trendscreen.services.store import SignalStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class NoiseConfig:
    # Liquidity
    volume_dollar_threshold: float = 10_000_000
    volume_shares_threshold: float = 500_000
    volume_window: int = 20
    # Volatility compression
    atr_window: int = 14
    atr_percent_threshold: float = 5.0
    bb_window: int = 20
    bb_avg_window: int = 60
    bb_compression_ratio: float = 0.8
    # Candle body
    body_ratio_threshold: float = 0.6
    # MA convergence, percent
    ma_convergence_threshold: float = 3.0

    @property
    def history_bars(self) -> int:
        return self.bb_avg_window + self.bb_window


DEFAULT_NOISE_CONFIG = NoiseConfig()


def _value(x) -> Optional[float]:
    return None if x is None or pd.isna(x) else float(x)


def is_vcp(
    atr14_percent: Optional[float],
    bb_width_current: Optional[float],
    bb_width_avg_60d: Optional[float],
    config: NoiseConfig = DEFAULT_NOISE_CONFIG,
) -> bool:
    """ATR% (in percent) below threshold and Bollinger width compressed against its earlier average."""
    if atr14_percent is None or bb_width_current is None or bb_width_avg_60d is None:
        return False
    return bool(
        atr14_percent < config.atr_percent_threshold
        and bb_width_current < bb_width_avg_60d * config.bb_compression_ratio
    )


def body_ratio(open_: float, high: float, low: float, close: float) -> Optional[float]:
    candle_range = high - low
    if pd.isna(candle_range) or candle_range <= 0 or pd.isna(open_) or pd.isna(close):
        return None
    return abs(close - open_) / candle_range


def liquidity_metrics(bars: pd.DataFrame, config: NoiseConfig = DEFAULT_NOISE_CONFIG) -> Dict[str, Optional[float]]:
    last = bars.iloc[-1]
    if pd.isna(last["close"]) or pd.isna(last["volume"]) or last["volume"] <= 0:
        return {"avg_dollar_volume_20d": None, "avg_volume_20d": None}

    window = bars.tail(config.volume_window)
    return {
        "avg_dollar_volume_20d": _value((window["volume"] * window["close"]).mean()),
        "avg_volume_20d": _value(window["volume"].mean()),
    }


def volatility_metrics(bars: pd.DataFrame, config: NoiseConfig = DEFAULT_NOISE_CONFIG) -> Dict[str, Optional[float]]:
    """
    ATR14 and ATR% from the trailing true ranges; Bollinger width now and its
    mean over the widths 59..20 bars back (the current 20-bar window excluded).
    """
    ohlc = bars.dropna(subset=["high", "low", "close"])
    out: Dict[str, Optional[float]] = {
        "atr14": None,
        "atr14_percent": None,
        "bb_width_current": None,
        "bb_width_avg_60d": None,
    }
    if ohlc.empty:
        return out

    close = ohlc["close"].iloc[-1]
    atr14 = _value(atr(ohlc, config.atr_window).iloc[-1])
    out["atr14"] = atr14
    if atr14 is not None and close > 0:
        out["atr14_percent"] = atr14 / close * 100

    widths = bollinger_width(ohlc["close"], config.bb_window)
    out["bb_width_current"] = _value(widths.iloc[-1])
    lookback = config.bb_avg_window - config.bb_window
    earlier = widths.shift(config.bb_window).rolling(window=lookback, min_periods=1).mean()
    out["bb_width_avg_60d"] = _value(earlier.iloc[-1])
    return out


def ma_convergence(ma20: Optional[float], ma50: Optional[float]) -> Optional[float]:
    if ma20 is None or ma50 is None or pd.isna(ma20) or pd.isna(ma50) or ma50 <= 0:
        return None
    return (ma20 - ma50) / ma50 * 100


class NoiseSignalBuilder:
    def __init__(self, store: SignalStore, config: NoiseConfig = DEFAULT_NOISE_CONFIG):
        self.store = store
        self.config = config

    def compute_row(self, symbol: str, trade_date: date, bars: Optional[pd.DataFrame], ma: Optional[pd.Series]) -> Optional[dict]:
        row: Dict[str, object] = {
            "avg_dollar_volume_20d": None,
            "avg_volume_20d": None,
            "atr14": None,
            "atr14_percent": None,
            "bb_width_current": None,
            "bb_width_avg_60d": None,
            "body_ratio": None,
            "ma20_ma50_distance_percent": None,
        }

        # Each metric is independent; a missing one never blocks the others
        if bars is not None and not bars.empty and bars.index[-1] == trade_date:
            last = bars.iloc[-1]
            row.update(liquidity_metrics(bars, self.config))
            row.update(volatility_metrics(bars, self.config))
            row["body_ratio"] = body_ratio(last["open"], last["high"], last["low"], last["close"])

        if ma is not None:
            row["ma20_ma50_distance_percent"] = ma_convergence(ma.get("ma20"), ma.get("ma50"))

        if all(v is None for v in row.values()):
            return None

        row["is_vcp"] = is_vcp(row["atr14_percent"], row["bb_width_current"], row["bb_width_avg_60d"], self.config)
        return {"symbol": symbol, "date": trade_date, **row}

    async def run(self) -> JobResult:
        started = time.monotonic()
        result = JobResult(job="noise")

        latest = await self.store.latest_trade_date()
        if latest is None:
            logger.warning("No latest trade date found")
            return result
        result.dates.append(latest)

        bars = await self.store.fetch_recent_bars(latest, self.config.history_bars)
        mas = await self.store.fetch_moving_averages(latest)
        bars_by_symbol = {s: g.set_index("date") for s, g in bars.groupby("symbol", sort=True)}
        symbols = sorted(set(bars_by_symbol) | set(mas.index))
        logger.info("Building noise signals", date=str(latest), symbols=len(symbols))

        rows = []
        for symbol in symbols:
            result.processed += 1
            try:
                ma = mas.loc[symbol] if symbol in mas.index else None
                row = self.compute_row(symbol, latest, bars_by_symbol.get(symbol), ma)
            except Exception as e:
                logger.error("Noise metrics failed", symbol=symbol, error=str(e))
                result.record_failure(symbol, e)
                continue
            if row is None:
                result.skipped += 1
            else:
                rows.append(row)

        result.written = await self.store.upsert_by_key(NoiseSignal, rows)
        result.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "Noise signals finished",
            date=str(latest),
            rows=result.written,
            vcp=sum(1 for r in rows if r["is_vcp"]),
            failed=result.failed,
        )
        return result
