from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import pytest

from trendscreen.services.store import BAR_COLUMNS, MA_COLUMNS, SignalStore, empty_bars


def percent_rank(values: pd.Series) -> pd.Series:
    """Same ranking as Postgres percent_rank(): (rank - 1) / (n - 1), ties share the lowest rank."""
    valid = values.dropna()
    out = pd.Series(float("nan"), index=values.index, dtype=float)
    if len(valid) == 1:
        out.loc[valid.index] = 0.0
    elif len(valid) > 1:
        out.loc[valid.index] = (valid.rank(method="min") - 1) / (len(valid) - 1)
    return out


def build_bars(closes, start="2024-01-01", volume=1000.0, spread=1.0) -> pd.DataFrame:
    """Business-day bars around the given closes; open == close unless overridden."""
    closes = np.asarray(closes, dtype=float)
    dates = [d.date() for d in pd.date_range(start=start, periods=len(closes), freq="B")]
    return pd.DataFrame({
        "date": dates,
        "open": closes,
        "high": closes + spread,
        "low": closes - spread,
        "close": closes,
        "adj_close": closes,
        "volume": np.full(len(closes), volume, dtype=float) if np.isscalar(volume) else np.asarray(volume, dtype=float),
    })


class InMemorySignalStore(SignalStore):
    """Dict/pandas-backed store with the same contract as SqlSignalStore."""

    def __init__(self):
        self.bars = pd.DataFrame(columns=["symbol", "date"] + BAR_COLUMNS)
        self.symbols: List[str] = []
        self.tables: Dict[str, Dict[tuple, dict]] = defaultdict(dict)
        self.rs_scores: Dict[tuple, Optional[int]] = {}
        self.upsert_calls = 0

    # helpers

    def add_bars(self, symbol: str, bars: pd.DataFrame) -> None:
        frame = bars.copy()
        frame["symbol"] = symbol
        frame = frame[["symbol", "date"] + BAR_COLUMNS]
        self.bars = frame if self.bars.empty else pd.concat([self.bars, frame], ignore_index=True)
        if symbol not in self.symbols:
            self.symbols.append(symbol)

    def rows(self, table: str) -> List[dict]:
        return [dict(v) for _, v in sorted(self.tables[table].items())]

    def set_moving_average(self, symbol: str, trade_date: date, **values) -> None:
        row = {"symbol": symbol, "date": trade_date, **{c: None for c in MA_COLUMNS}}
        row.update(values)
        self.tables["daily_ma"][(symbol, trade_date)] = row

    def _dates(self) -> List[date]:
        return sorted(set(self.bars["date"]))

    # SignalStore

    async def get_active_symbols(self) -> List[str]:
        return sorted(self.symbols)

    async def symbols_on(self, trade_date: date) -> List[str]:
        return sorted(set(self.bars.loc[self.bars["date"] == trade_date, "symbol"]))

    async def latest_trade_date(self) -> Optional[date]:
        dates = self._dates()
        return dates[-1] if dates else None

    async def previous_trade_date(self, before: date) -> Optional[date]:
        earlier = [d for d in self._dates() if d < before]
        return earlier[-1] if earlier else None

    async def trade_dates_since(self, since: date) -> List[date]:
        return sorted((d for d in self._dates() if d >= since), reverse=True)

    async def recent_trade_dates(self, limit: int) -> List[date]:
        return sorted(self._dates(), reverse=True)[:limit]

    async def fetch_bars(self, symbol: str, end_date: date, limit: int) -> pd.DataFrame:
        mask = (self.bars["symbol"] == symbol) & (self.bars["date"] <= end_date)
        frame = self.bars.loc[mask].sort_values("date").tail(limit)
        if frame.empty:
            return empty_bars()
        return frame.set_index("date")[BAR_COLUMNS].astype(float)

    async def fetch_recent_bars(self, end_date: date, limit: int) -> pd.DataFrame:
        frames = []
        for symbol in await self.symbols_on(end_date):
            bars = (await self.fetch_bars(symbol, end_date, limit)).reset_index()
            bars.insert(0, "symbol", symbol)
            frames.append(bars)
        if not frames:
            return pd.DataFrame(columns=["symbol", "date"] + BAR_COLUMNS)
        return pd.concat(frames, ignore_index=True)

    async def fetch_moving_averages(self, trade_date: date) -> pd.DataFrame:
        rows = [r for (s, d), r in self.tables["daily_ma"].items() if d == trade_date]
        frame = pd.DataFrame(rows, columns=["symbol", "date"] + MA_COLUMNS)
        return frame.drop(columns=["date"]).set_index("symbol").astype(float)

    async def fetch_horizon_ranks(self, trade_date: date, lookbacks: Mapping[str, int]) -> pd.DataFrame:
        returns = {}
        for symbol in await self.symbols_on(trade_date):
            history = self.bars[self.bars["symbol"] == symbol].sort_values("date")
            last = float(history.loc[history["date"] == trade_date, "adj_close"].iloc[-1])
            row = {}
            for key, days in lookbacks.items():
                lag_rows = history[history["date"] <= trade_date - timedelta(days=days)]
                lag = float(lag_rows["adj_close"].iloc[-1]) if not lag_rows.empty else None
                row[key] = None if not lag else last / lag - 1
            returns[symbol] = row
        frame = pd.DataFrame.from_dict(returns, orient="index", columns=list(lookbacks)).astype(float)
        return frame.apply(percent_rank)

    async def update_rs_scores(self, trade_date: date, scores: Mapping[str, Optional[int]]) -> int:
        existing = set(await self.symbols_on(trade_date))
        updated = 0
        for symbol, score in scores.items():
            if symbol in existing:
                self.rs_scores[(symbol, trade_date)] = score
                updated += 1
        return updated

    async def upsert_by_key(self, model, rows: Sequence[Mapping]) -> int:
        table = model.__table__
        keys = [c.name for c in table.primary_key.columns]
        for row in rows:
            key = tuple(row[k] for k in keys)
            current = self.tables[table.name].get(key, {})
            current.update(dict(row))
            self.tables[table.name][key] = current
        self.upsert_calls += 1
        return len(rows)


@pytest.fixture
def store():
    return InMemorySignalStore()


@pytest.fixture
def make_bars():
    return build_bars
