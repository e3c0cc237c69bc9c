from datetime import date

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from trendscreen.models import PriceDaily, Symbol
from trendscreen.services.store import BAR_COLUMNS, UPSERT_CHUNK_SIZE, SqlSignalStore
from trendscreen.utils.retry import RetryPolicy

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0)


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def all(self):
        return self.rows

    def scalars(self):
        return FakeResult([r[0] for r in self.rows])


class RecordingSession:
    def __init__(self, log, rows=None, error=None):
        self.log = log
        self.rows = rows or []
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, statement, params=None):
        if self.error:
            raise self.error
        self.log["statements"].append((statement, params))
        return FakeResult(self.rows)

    async def commit(self):
        self.log["commits"] += 1


def make_store(rows=None, errors=()):
    log = {"statements": [], "commits": 0, "sessions": 0}
    pending = list(errors)

    def factory():
        log["sessions"] += 1
        return RecordingSession(log, rows, pending.pop(0) if pending else None)

    return SqlSignalStore(factory, FAST_RETRY), log


def compiled(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


@pytest.mark.asyncio
async def test_upsert_overwrites_supplied_columns_only():
    store, log = make_store()
    row = {"symbol": "AAPL", "date": date(2024, 3, 1), "open": 1.0, "high": 2.0, "low": 0.5,
           "close": 1.5, "adj_close": 1.5, "volume": 100.0}

    written = await store.upsert_by_key(PriceDaily, [row])

    assert written == 1
    assert log["commits"] == 1
    sql = compiled(log["statements"][0][0])
    assert "ON CONFLICT (symbol, date) DO UPDATE SET" in sql
    assert "close = excluded.close" in sql
    assert "rs_score" not in sql


@pytest.mark.asyncio
async def test_upsert_touches_updated_at_and_chunks():
    store, log = make_store()
    rows = [{"symbol": f"S{i}", "company_name": "x"} for i in range(UPSERT_CHUNK_SIZE + 5)]

    written = await store.upsert_by_key(Symbol, rows)

    assert written == len(rows)
    assert len(log["statements"]) == 2
    assert "updated_at = now()" in compiled(log["statements"][0][0])


@pytest.mark.asyncio
async def test_upsert_nothing():
    store, log = make_store()
    assert await store.upsert_by_key(PriceDaily, []) == 0
    assert log["sessions"] == 0


@pytest.mark.asyncio
async def test_fetch_bars_ascending():
    rows = [
        (date(2024, 3, 4), 2.0, 2.5, 1.5, 2.2, 2.2, 200),
        (date(2024, 3, 1), 1.0, 1.5, 0.5, 1.2, 1.2, 100),
    ]
    store, _ = make_store(rows)

    bars = await store.fetch_bars("AAPL", date(2024, 3, 4), 10)

    assert list(bars.columns) == BAR_COLUMNS
    assert list(bars.index) == [date(2024, 3, 1), date(2024, 3, 4)]
    assert bars["volume"].tolist() == [100.0, 200.0]


@pytest.mark.asyncio
async def test_dropped_connection_retried_on_fresh_session():
    error = OperationalError("SELECT max(date)", {}, Exception("server closed the connection"))
    store, log = make_store(rows=[(date(2024, 3, 1),)], errors=[error])

    assert await store.latest_trade_date() == date(2024, 3, 1)
    assert log["sessions"] == 2


@pytest.mark.asyncio
async def test_rs_scores_update_existing_rows():
    store, log = make_store()

    updated = await store.update_rs_scores(date(2024, 3, 1), {"AAPL": 91, "NEW": None})

    assert updated == 2
    statement, params = log["statements"][0]
    assert "UPDATE daily_prices SET rs_score" in compiled(statement)
    assert {p["b_symbol"]: p["b_score"] for p in params} == {"AAPL": 91, "NEW": None}


@pytest.mark.asyncio
async def test_horizon_ranks_frame():
    rows = [("AAA", 1.0, 0.5, None), ("BBB", 0.0, 0.0, 1.0)]
    store, log = make_store(rows)

    ranks = await store.fetch_horizon_ranks(date(2024, 3, 1), {"pr12": 252, "pr6": 126, "pr3": 63})

    assert list(ranks.columns) == ["pr12", "pr6", "pr3"]
    assert ranks.loc["AAA", "pr12"] == 1.0
    assert ranks.isna().loc["AAA", "pr3"]
    sql = str(log["statements"][0][0])
    assert "percent_rank() OVER (ORDER BY ret)" in sql
