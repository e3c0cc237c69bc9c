"""
Provider -> database loaders.

Each loader walks a symbol list through a fixed-size worker pool
(asyncio.Semaphore) with a small pause after every symbol to stay under the
provider's rate limits. Per-symbol failures are logged and counted; the run
continues.
"""

import asyncio
import time
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from trendscreen.models import DailyRatio, PriceDaily, QuarterlyFinancial, QuarterlyRatio, Symbol
from trendscreen.schemas.common import JobResult
from trendscreen.services.data_provider import SUPPORTED_EXCHANGES, DataProvider
from trendscreen.services.store import SignalStore
from trendscreen.services.validation import (
    parse_date,
    to_float,
    validate_price_record,
    validate_ratio,
    validate_symbol,
)

logger = structlog.get_logger()

INCREMENTAL_SESSIONS = 5
BACKFILL_SESSIONS = 250
QUARTERS_LIMIT = 12


def as_quarter(d: date) -> str:
    return f"{d.year}Q{(d.month - 1) // 3 + 1}"


def dedupe_by_quarter(records: Iterable[Mapping[str, Any]]) -> List[Tuple[date, str, Mapping[str, Any]]]:
    """One record per calendar quarter, the latest period end winning. Newest first."""
    by_quarter: Dict[str, Tuple[date, Mapping[str, Any]]] = {}
    for record in records:
        period_end = parse_date(record.get("date"))
        if period_end is None:
            continue
        quarter = as_quarter(period_end)
        current = by_quarter.get(quarter)
        if current is None or period_end > current[0]:
            by_quarter[quarter] = (period_end, record)

    out = [(d, q, r) for q, (d, r) in by_quarter.items()]
    out.sort(key=lambda item: item[0], reverse=True)
    return out


async def run_pool(
    items: List[str],
    worker: Callable[[str], Awaitable[None]],
    concurrency: int,
    pause_seconds: float,
) -> None:
    sem = asyncio.Semaphore(max(1, concurrency))

    async def run_with_sem(item: str):
        async with sem:
            try:
                await worker(item)
            finally:
                if pause_seconds:
                    await asyncio.sleep(pause_seconds)

    await asyncio.gather(*(run_with_sem(item) for item in items))


class SymbolLoader:
    def __init__(self, provider: DataProvider, store: SignalStore, exchanges: Iterable[str] = SUPPORTED_EXCHANGES):
        self.provider = provider
        self.store = store
        self.exchanges = list(exchanges)

    async def run(self) -> JobResult:
        started = time.monotonic()
        result = JobResult(job="symbols")
        rows: Dict[str, dict] = {}

        for exchange in self.exchanges:
            try:
                listing = await self.provider.get_symbols(exchange)
            except Exception as e:
                logger.error("Symbol listing failed", exchange=exchange, error=str(e))
                result.record_failure(exchange, e)
                continue

            logger.info("Fetched symbols", exchange=exchange, count=len(listing))
            for info in listing:
                result.processed += 1
                if info.exchange_short_name and info.exchange_short_name not in self.exchanges:
                    result.skipped += 1
                    continue
                row = info.model_dump()
                check = validate_symbol(row)
                if not check.is_valid:
                    result.skipped += 1
                    continue
                rows[info.symbol] = row

        result.written = await self.store.upsert_by_key(Symbol, list(rows.values()))
        result.duration_seconds = round(time.monotonic() - started, 3)
        logger.info("Symbols loaded", written=result.written, skipped=result.skipped, failed=result.failed)
        return result


def price_row(symbol: str, record: Mapping[str, Any]) -> dict:
    close = to_float(record.get("close"))
    adj_close = to_float(record.get("adj_close"))
    return {
        "symbol": symbol,
        "date": parse_date(record.get("date")),
        "open": to_float(record.get("open")),
        "high": to_float(record.get("high")),
        "low": to_float(record.get("low")),
        "close": close,
        "adj_close": adj_close if adj_close is not None else close,
        "volume": to_float(record.get("volume")),
    }


class PriceLoader:
    def __init__(
        self,
        provider: DataProvider,
        store: SignalStore,
        concurrency: int = 3,
        pause_seconds: float = 0.3,
    ):
        self.provider = provider
        self.store = store
        self.concurrency = concurrency
        self.pause_seconds = pause_seconds

    async def run(self, backfill: bool = False, symbols: Optional[List[str]] = None) -> JobResult:
        started = time.monotonic()
        result = JobResult(job="prices")
        sessions = BACKFILL_SESSIONS if backfill else INCREMENTAL_SESSIONS
        symbols = symbols if symbols is not None else await self.store.get_active_symbols()
        logger.info("Loading prices", symbols=len(symbols), sessions=sessions)

        async def worker(symbol: str):
            result.processed += 1
            try:
                written, rejected = await self.load_symbol(symbol, sessions)
            except Exception as e:
                logger.warning("Price load failed", symbol=symbol, error=str(e))
                result.record_failure(symbol, e)
                return
            result.written += written
            result.skipped += rejected
            if result.processed % 100 == 0:
                logger.info("Price load progress", done=result.processed, total=len(symbols))

        await run_pool(symbols, worker, self.concurrency, self.pause_seconds)

        result.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "Prices loaded",
            written=result.written,
            rejected=result.skipped,
            failed=result.failed,
            duration=result.duration_seconds,
        )
        return result

    async def load_symbol(self, symbol: str, sessions: int) -> Tuple[int, int]:
        df = await self.provider.get_daily_ohlcv(symbol, sessions)
        rows = []
        rejected = 0
        for record in df.to_dict("records"):
            check = validate_price_record(record)
            if not check.is_valid:
                rejected += 1
                logger.warning("Rejected price record", symbol=symbol, date=str(record.get("date")), errors=check.errors)
                continue
            for warning in check.warnings:
                logger.debug("Price data-quality warning", symbol=symbol, date=str(record.get("date")), warning=warning)
            rows.append(price_row(symbol, record))

        # rs_score is not part of these rows, so an upsert never resets it
        written = await self.store.upsert_by_key(PriceDaily, rows)
        return written, rejected


def financial_row(symbol: str, period_end: date, quarter: str, record: Mapping[str, Any]) -> dict:
    eps = to_float(record.get("epsDiluted"))
    if eps is None:
        eps = to_float(record.get("eps"))
    return {
        "symbol": symbol,
        "period_end_date": period_end,
        "as_of_q": quarter,
        "revenue": to_float(record.get("revenue")),
        "net_income": to_float(record.get("netIncome")),
        "operating_income": to_float(record.get("operatingIncome")),
        "eps_diluted": eps,
    }


def quarterly_ratio_row(symbol: str, period_end: date, quarter: str, record: Mapping[str, Any]) -> dict:
    return {
        "symbol": symbol,
        "period_end_date": period_end,
        "as_of_q": quarter,
        "pe_ratio": to_float(record.get("priceToEarningsRatio")),
        "peg_ratio": to_float(record.get("priceToEarningsGrowthRatio")),
        "ps_ratio": to_float(record.get("priceToSalesRatio")),
        "pb_ratio": to_float(record.get("priceToBookRatio")),
    }


def daily_ratio_row(symbol: str, trade_date: date, record: Mapping[str, Any]) -> Optional[dict]:
    row = {
        "symbol": symbol,
        "date": trade_date,
        "pe_ratio": to_float(record.get("peRatioTTM")),
        "peg_ratio": to_float(record.get("pegRatioTTM")),
        "ps_ratio": to_float(record.get("priceToSalesRatioTTM")),
        "pb_ratio": to_float(record.get("priceToBookRatioTTM")),
        "market_cap": to_float(record.get("marketCapTTM")),
    }
    if all(row[k] is None for k in ("pe_ratio", "peg_ratio", "ps_ratio", "pb_ratio")):
        return None
    return row


class FundamentalsLoader:
    def __init__(
        self,
        provider: DataProvider,
        store: SignalStore,
        concurrency: int = 4,
        pause_seconds: float = 0.2,
    ):
        self.provider = provider
        self.store = store
        self.concurrency = concurrency
        self.pause_seconds = pause_seconds

    async def run(self, symbols: Optional[List[str]] = None) -> JobResult:
        started = time.monotonic()
        result = JobResult(job="fundamentals")
        trade_date = await self.store.latest_trade_date()
        if trade_date is not None:
            result.dates.append(trade_date)
        symbols = symbols if symbols is not None else await self.store.get_active_symbols()
        logger.info("Loading fundamentals", symbols=len(symbols), trade_date=str(trade_date))

        async def worker(symbol: str):
            result.processed += 1
            try:
                result.written += await self.load_symbol(symbol, trade_date)
            except Exception as e:
                logger.warning("Fundamentals load failed", symbol=symbol, error=str(e))
                result.record_failure(symbol, e)

        await run_pool(symbols, worker, self.concurrency, self.pause_seconds)

        result.duration_seconds = round(time.monotonic() - started, 3)
        logger.info("Fundamentals loaded", written=result.written, failed=result.failed, duration=result.duration_seconds)
        return result

    async def load_symbol(self, symbol: str, trade_date: Optional[date]) -> int:
        written = 0

        income = await self.provider.get_quarterly_income(symbol, QUARTERS_LIMIT)
        financials = [financial_row(symbol, d, q, r) for d, q, r in dedupe_by_quarter(income)]
        written += await self.store.upsert_by_key(QuarterlyFinancial, financials)

        ratios = await self.provider.get_quarterly_ratios(symbol, QUARTERS_LIMIT)
        ratio_rows = [quarterly_ratio_row(symbol, d, q, r) for d, q, r in dedupe_by_quarter(ratios)]
        for row in ratio_rows:
            self._log_ratio_warnings(symbol, row)
        written += await self.store.upsert_by_key(QuarterlyRatio, ratio_rows)

        if trade_date is not None:
            ttm = await self.provider.get_ttm_ratios(symbol)
            row = daily_ratio_row(symbol, trade_date, ttm) if ttm else None
            if row is not None:
                self._log_ratio_warnings(symbol, row)
                written += await self.store.upsert_by_key(DailyRatio, [row])

        return written

    def _log_ratio_warnings(self, symbol: str, row: Mapping[str, Any]) -> None:
        for warning in validate_ratio(row).warnings:
            logger.debug("Ratio data-quality warning", symbol=symbol, warning=warning)
