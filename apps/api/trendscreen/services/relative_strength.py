"""
Relative-strength score.

For each symbol with a bar on the target date, the store ranks the 12/6/3-month
returns cross-sectionally (percent_rank, 0..1). The blended score is

    round(100 * (0.20 * pr12 + 0.30 * pr6 + 0.50 * pr3))

and is null whenever any of the three ranks is missing.
"""

import time
from datetime import date
from typing import Dict, List, Mapping, Optional

import pandas as pd
import structlog

from trendscreen.schemas.common import JobResult
from trendscreen.services.store import SignalStore

logger = structlog.get_logger()

# Calendar-day lookbacks
RS_LOOKBACKS = {"pr12": 252, "pr6": 126, "pr3": 63}
RS_WEIGHTS = {"pr12": 0.20, "pr6": 0.30, "pr3": 0.50}
RS_BACKFILL_DAYS = 365


def composite_score(ranks: Mapping[str, Optional[float]], weights: Mapping[str, float] = RS_WEIGHTS) -> Optional[int]:
    total = 0.0
    for key, weight in weights.items():
        value = ranks.get(key)
        if value is None or pd.isna(value):
            return None
        total += weight * value
    return int(round(100 * total))


def blend_scores(ranks: pd.DataFrame, weights: Mapping[str, float] = RS_WEIGHTS) -> Dict[str, Optional[int]]:
    return {symbol: composite_score(row, weights) for symbol, row in ranks.iterrows()}


class RelativeStrengthRanker:
    def __init__(self, store: SignalStore, backfill_days: int = RS_BACKFILL_DAYS):
        self.store = store
        self.backfill_days = backfill_days

    async def target_dates(self, backfill: bool) -> List[date]:
        if backfill:
            return await self.store.recent_trade_dates(self.backfill_days)
        latest = await self.store.latest_trade_date()
        return [latest] if latest else []

    async def compute_for_date(self, trade_date: date) -> Dict[str, Optional[int]]:
        ranks = await self.store.fetch_horizon_ranks(trade_date, RS_LOOKBACKS)
        scores = blend_scores(ranks)
        await self.store.update_rs_scores(trade_date, scores)
        return scores

    async def run(self, backfill: bool = False) -> JobResult:
        started = time.monotonic()
        result = JobResult(job="rs")

        dates = await self.target_dates(backfill)
        if not dates:
            logger.warning("No dates found in daily_prices; aborting")
            return result

        logger.info("Computing RS scores", mode="backfill" if backfill else "incremental", dates=len(dates))
        for trade_date in dates:
            result.processed += 1
            try:
                scores = await self.compute_for_date(trade_date)
            except Exception as e:
                # One bad date never blocks the others
                logger.error("RS computation failed", date=str(trade_date), error=str(e))
                result.record_failure(str(trade_date), e)
                continue

            scored = sum(1 for s in scores.values() if s is not None)
            result.dates.append(trade_date)
            result.written += scored
            result.skipped += len(scores) - scored
            logger.info("RS scores updated", date=str(trade_date), scored=scored, unscored=len(scores) - scored)

        result.duration_seconds = round(time.monotonic() - started, 3)
        return result
