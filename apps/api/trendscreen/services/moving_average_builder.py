import asyncio
import time
from datetime import date, timedelta
from typing import Dict, List, Optional

import pandas as pd
import structlog

from trendscreen.models import DailyMovingAverage
from trendscreen.schemas.common import JobResult
from trendscreen.services.indicators import sma
from trendscreen.services.store import SignalStore
from trendscreen.services.validation import validate_moving_average

logger = structlog.get_logger()

MA_WINDOW_BARS = 220
MA_MIN_BARS = 200
MA_BACKFILL_DAYS = 30
MA_BATCH_SIZE = 50
MA_PAUSE_SECONDS = 0.1

PRICE_PERIODS = {"ma20": 20, "ma50": 50, "ma100": 100, "ma200": 200}
VOLUME_PERIOD = 30


def compute_moving_averages(bars: pd.DataFrame, min_bars: int = MA_MIN_BARS) -> Optional[Dict[str, float]]:
    """
    MA row for the last bar of ``bars`` (ascending). None when fewer than
    ``min_bars`` observations are available; never approximated.
    """
    if len(bars) < min_bars:
        return None

    price = bars["adj_close"].fillna(bars["close"])
    row: Dict[str, Optional[float]] = {}
    for name, period in PRICE_PERIODS.items():
        value = sma(price, period).iloc[-1]
        row[name] = None if pd.isna(value) else float(value)

    vol = sma(bars["volume"], VOLUME_PERIOD).iloc[-1]
    row["vol_ma30"] = None if pd.isna(vol) else float(vol)
    return row


class MovingAverageBuilder:
    def __init__(
        self,
        store: SignalStore,
        batch_size: int = MA_BATCH_SIZE,
        pause_seconds: float = MA_PAUSE_SECONDS,
        backfill_days: int = MA_BACKFILL_DAYS,
    ):
        self.store = store
        self.batch_size = batch_size
        self.pause_seconds = pause_seconds
        self.backfill_days = backfill_days

    async def target_dates(self, backfill: bool) -> List[date]:
        latest = await self.store.latest_trade_date()
        if latest is None:
            return []
        if not backfill:
            return [latest]
        return await self.store.trade_dates_since(latest - timedelta(days=self.backfill_days))

    async def run(self, backfill: bool = False) -> JobResult:
        started = time.monotonic()
        result = JobResult(job="ma")

        dates = await self.target_dates(backfill)
        if not dates:
            logger.warning("No trade dates in daily_prices; nothing to build")
            return result

        logger.info("Building moving averages", mode="backfill" if backfill else "incremental", dates=len(dates))
        # Dates run one after another; each recomputes from raw bars
        for target in dates:
            result.merge(await self.build_for_date(target))

        result.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "Moving averages finished",
            written=result.written,
            skipped=result.skipped,
            failed=result.failed,
            duration=result.duration_seconds,
        )
        return result

    async def build_for_date(self, target: date) -> JobResult:
        result = JobResult(job="ma", dates=[target])
        symbols = await self.store.symbols_on(target)
        logger.info("MA target date", date=str(target), symbols=len(symbols))

        for start in range(0, len(symbols), self.batch_size):
            batch = symbols[start:start + self.batch_size]
            for symbol in batch:
                result.processed += 1
                try:
                    written = await self.build_symbol(symbol, target)
                    if written:
                        result.written += 1
                    else:
                        result.skipped += 1
                except Exception as e:
                    logger.error("MA build failed", symbol=symbol, date=str(target), error=str(e))
                    result.record_failure(symbol, e)
                if self.pause_seconds:
                    await asyncio.sleep(self.pause_seconds)

            logger.debug("MA batch done", date=str(target), done=min(start + self.batch_size, len(symbols)))

        return result

    async def build_symbol(self, symbol: str, target: date) -> bool:
        bars = await self.store.fetch_bars(symbol, target, MA_WINDOW_BARS)
        # Builders never invent dates
        if bars.empty or bars.index[-1] != target:
            return False

        row = compute_moving_averages(bars)
        if row is None:
            return False

        check = validate_moving_average(row)
        for warning in check.warnings:
            logger.debug("MA data-quality warning", symbol=symbol, date=str(target), warning=warning)
        check.raise_for_errors(f"{symbol} {target}")

        await self.store.upsert_by_key(DailyMovingAverage, [{"symbol": symbol, "date": target, **row}])
        return True
