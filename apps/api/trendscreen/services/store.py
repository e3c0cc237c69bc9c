"""
Persistent store access for the batch builders.

Builders depend only on the SignalStore interface; SqlSignalStore is the
Postgres implementation on async SQLAlchemy. Every SQL call goes through the
shared retry combinator and opens its own short-lived session, so a retried
call never reuses a session left in a failed state.
"""

from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import Dict, List, Mapping, Optional, Sequence

import pandas as pd
import structlog
from sqlalchemy import bindparam, distinct, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trendscreen.models import DailyMovingAverage, PriceDaily, Symbol
from trendscreen.utils.retry import DEFAULT_RETRY_POLICY, RetryPolicy, retry_async

logger = structlog.get_logger()

BAR_COLUMNS = ["open", "high", "low", "close", "adj_close", "volume"]
MA_COLUMNS = ["ma20", "ma50", "ma100", "ma200", "vol_ma30"]

# asyncpg caps a statement at 32767 bind parameters
UPSERT_CHUNK_SIZE = 1000


def empty_bars() -> pd.DataFrame:
    return pd.DataFrame(columns=BAR_COLUMNS, index=pd.Index([], name="date"), dtype=float)


class SignalStore(ABC):
    """Read rows / upsert rows. Dates are trading dates present in daily_prices."""

    @abstractmethod
    async def get_active_symbols(self) -> List[str]:
        """Actively trading common stocks, sorted."""
        pass

    @abstractmethod
    async def symbols_on(self, trade_date: date) -> List[str]:
        """Symbols with a price bar on ``trade_date``, sorted."""
        pass

    @abstractmethod
    async def latest_trade_date(self) -> Optional[date]:
        pass

    @abstractmethod
    async def previous_trade_date(self, before: date) -> Optional[date]:
        """Latest trade date strictly before ``before``."""
        pass

    @abstractmethod
    async def trade_dates_since(self, since: date) -> List[date]:
        """Distinct trade dates on or after ``since``, newest first."""
        pass

    @abstractmethod
    async def recent_trade_dates(self, limit: int) -> List[date]:
        """The ``limit`` most recent distinct trade dates, newest first."""
        pass

    @abstractmethod
    async def fetch_bars(self, symbol: str, end_date: date, limit: int) -> pd.DataFrame:
        """
        Up to ``limit`` bars for ``symbol`` ending at ``end_date`` (inclusive).
        Ascending by date, index = date, columns = BAR_COLUMNS.
        """
        pass

    @abstractmethod
    async def fetch_recent_bars(self, end_date: date, limit: int) -> pd.DataFrame:
        """
        Trailing ``limit`` bars per symbol ending at ``end_date`` for every symbol
        that has a bar on ``end_date``. Columns: symbol, date + BAR_COLUMNS,
        sorted by (symbol, date).
        """
        pass

    @abstractmethod
    async def fetch_moving_averages(self, trade_date: date) -> pd.DataFrame:
        """daily_ma rows for ``trade_date`` indexed by symbol."""
        pass

    @abstractmethod
    async def fetch_horizon_ranks(self, trade_date: date, lookbacks: Mapping[str, int]) -> pd.DataFrame:
        """
        Per symbol with a bar on ``trade_date``: percent_rank (0..1) of the simple
        return over each lookback (calendar days) among symbols that have that
        return. Index = symbol, one column per lookback key, NaN when the
        horizon has no valid lag price.
        """
        pass

    @abstractmethod
    async def update_rs_scores(self, trade_date: date, scores: Mapping[str, Optional[int]]) -> int:
        """Set daily_prices.rs_score for existing (symbol, trade_date) rows only."""
        pass

    @abstractmethod
    async def upsert_by_key(self, model, rows: Sequence[Mapping]) -> int:
        """
        Insert rows keyed on the model's primary key. On conflict every supplied
        non-key column is overwritten; columns not supplied are left alone.
        """
        pass


class SqlSignalStore(SignalStore):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ):
        self.session_factory = session_factory
        self.retry_policy = retry_policy

    async def _run(self, name: str, fn):
        async def attempt():
            async with self.session_factory() as session:
                return await fn(session)

        return await retry_async(attempt, policy=self.retry_policy, name=f"db:{name}")

    async def _scalars(self, name: str, stmt) -> list:
        async def fn(session: AsyncSession):
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self._run(name, fn)

    async def get_active_symbols(self) -> List[str]:
        stmt = (
            select(Symbol.symbol)
            .where(Symbol.is_actively_trading.is_(True))
            .where(Symbol.is_etf.isnot(True))
            .where(Symbol.is_fund.isnot(True))
            .order_by(Symbol.symbol)
        )
        return await self._scalars("active_symbols", stmt)

    async def symbols_on(self, trade_date: date) -> List[str]:
        stmt = select(PriceDaily.symbol).where(PriceDaily.date == trade_date).order_by(PriceDaily.symbol)
        return await self._scalars("symbols_on", stmt)

    async def latest_trade_date(self) -> Optional[date]:
        rows = await self._scalars("latest_trade_date", select(func.max(PriceDaily.date)))
        return rows[0] if rows else None

    async def previous_trade_date(self, before: date) -> Optional[date]:
        stmt = select(func.max(PriceDaily.date)).where(PriceDaily.date < before)
        rows = await self._scalars("previous_trade_date", stmt)
        return rows[0] if rows else None

    async def trade_dates_since(self, since: date) -> List[date]:
        d = distinct(PriceDaily.date)
        stmt = select(d).where(PriceDaily.date >= since).order_by(PriceDaily.date.desc())
        return await self._scalars("trade_dates_since", stmt)

    async def recent_trade_dates(self, limit: int) -> List[date]:
        stmt = select(distinct(PriceDaily.date)).order_by(PriceDaily.date.desc()).limit(limit)
        return await self._scalars("recent_trade_dates", stmt)

    async def fetch_bars(self, symbol: str, end_date: date, limit: int) -> pd.DataFrame:
        stmt = (
            select(PriceDaily.date, *[getattr(PriceDaily, c) for c in BAR_COLUMNS])
            .where(PriceDaily.symbol == symbol, PriceDaily.date <= end_date)
            .order_by(PriceDaily.date.desc())
            .limit(limit)
        )

        async def fn(session: AsyncSession):
            result = await session.execute(stmt)
            return result.all()

        rows = await self._run("fetch_bars", fn)
        if not rows:
            return empty_bars()

        df = pd.DataFrame(rows, columns=["date"] + BAR_COLUMNS)
        df = df.sort_values("date").set_index("date")
        return df.astype(float)

    async def fetch_recent_bars(self, end_date: date, limit: int) -> pd.DataFrame:
        stmt = text(
            """
            WITH on_date AS (
                SELECT symbol FROM daily_prices WHERE date = :end_date
            ),
            ranked AS (
                SELECT dp.symbol, dp.date, dp.open, dp.high, dp.low, dp.close, dp.adj_close, dp.volume,
                       ROW_NUMBER() OVER (PARTITION BY dp.symbol ORDER BY dp.date DESC) AS rn
                FROM daily_prices dp
                JOIN on_date od ON od.symbol = dp.symbol
                WHERE dp.date <= :end_date
                  AND dp.date >= CAST(:end_date AS date) - CAST(:span_days AS integer)
            )
            SELECT symbol, date, open, high, low, close, adj_close, volume
            FROM ranked
            WHERE rn <= :limit
            ORDER BY symbol, date
            """
        ).bindparams(
            end_date=end_date,
            # calendar span comfortably covering ``limit`` sessions
            span_days=limit * 2 + 10,
            limit=limit,
        )

        async def fn(session: AsyncSession):
            result = await session.execute(stmt)
            return result.all()

        rows = await self._run("fetch_recent_bars", fn)
        df = pd.DataFrame(rows, columns=["symbol", "date"] + BAR_COLUMNS)
        df[BAR_COLUMNS] = df[BAR_COLUMNS].astype(float)
        return df

    async def fetch_moving_averages(self, trade_date: date) -> pd.DataFrame:
        stmt = select(
            DailyMovingAverage.symbol, *[getattr(DailyMovingAverage, c) for c in MA_COLUMNS]
        ).where(DailyMovingAverage.date == trade_date)

        async def fn(session: AsyncSession):
            result = await session.execute(stmt)
            return result.all()

        rows = await self._run("fetch_moving_averages", fn)
        df = pd.DataFrame(rows, columns=["symbol"] + MA_COLUMNS).set_index("symbol")
        return df.astype(float)

    async def fetch_horizon_ranks(self, trade_date: date, lookbacks: Mapping[str, int]) -> pd.DataFrame:
        keys = list(lookbacks.keys())
        params: Dict[str, object] = {"trade_date": trade_date}

        lag_columns = []
        rank_ctes = []
        joins = []
        for i, key in enumerate(keys):
            params[f"lag_date_{i}"] = trade_date - timedelta(days=lookbacks[key])
            lag_columns.append(
                f"""(
                    SELECT dp2.adj_close FROM daily_prices dp2
                    WHERE dp2.symbol = dp.symbol AND dp2.date <= :lag_date_{i}
                    ORDER BY dp2.date DESC LIMIT 1
                ) AS lag_{i}"""
            )
            rank_ctes.append(
                f"""r_{i} AS (
                    SELECT symbol, percent_rank() OVER (ORDER BY ret) AS pr
                    FROM (
                        SELECT symbol, last_close / lag_{i} - 1 AS ret
                        FROM lags
                        WHERE lag_{i} IS NOT NULL AND lag_{i} <> 0 AND last_close IS NOT NULL
                    ) x
                )"""
            )
            joins.append(f"LEFT JOIN r_{i} ON r_{i}.symbol = l.symbol")

        select_ranks = ", ".join(f"r_{i}.pr AS rank_{i}" for i in range(len(keys)))
        sql = f"""
            WITH lags AS (
                SELECT dp.symbol, dp.adj_close AS last_close, {", ".join(lag_columns)}
                FROM daily_prices dp
                WHERE dp.date = :trade_date
            ),
            {", ".join(rank_ctes)}
            SELECT l.symbol, {select_ranks}
            FROM lags l
            {" ".join(joins)}
            ORDER BY l.symbol
        """
        stmt = text(sql).bindparams(**params)

        async def fn(session: AsyncSession):
            result = await session.execute(stmt)
            return result.all()

        rows = await self._run("fetch_horizon_ranks", fn)
        df = pd.DataFrame(rows, columns=["symbol"] + keys).set_index("symbol")
        return df.astype(float)

    async def update_rs_scores(self, trade_date: date, scores: Mapping[str, Optional[int]]) -> int:
        if not scores:
            return 0

        stmt = (
            update(PriceDaily.__table__)
            .where(PriceDaily.__table__.c.symbol == bindparam("b_symbol"))
            .where(PriceDaily.__table__.c.date == bindparam("b_date"))
            .values(rs_score=bindparam("b_score"))
        )
        params = [
            {"b_symbol": symbol, "b_date": trade_date, "b_score": score}
            for symbol, score in scores.items()
        ]

        async def fn(session: AsyncSession):
            await session.execute(stmt, params)
            await session.commit()
            return len(params)

        return await self._run("update_rs_scores", fn)

    async def upsert_by_key(self, model, rows: Sequence[Mapping]) -> int:
        if not rows:
            return 0

        table = model.__table__
        key_columns = [c.name for c in table.primary_key.columns]
        written = 0

        for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
            chunk = [dict(r) for r in rows[start:start + UPSERT_CHUNK_SIZE]]
            stmt = pg_insert(table).values(chunk)
            overwrite = {
                name: stmt.excluded[name]
                for name in chunk[0].keys()
                if name not in key_columns
            }
            if "updated_at" in table.c and "updated_at" not in overwrite:
                overwrite["updated_at"] = func.now()

            if overwrite:
                stmt = stmt.on_conflict_do_update(index_elements=key_columns, set_=overwrite)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=key_columns)

            async def fn(session: AsyncSession, stmt=stmt):
                await session.execute(stmt)
                await session.commit()

            await self._run(f"upsert:{table.name}", fn)
            written += len(chunk)

        logger.debug("Upserted rows", table=table.name, rows=written)
        return written
