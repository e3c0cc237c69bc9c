import json
from typing import Any, List, Mapping, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trendscreen.exceptions import RetryExhaustedError, ScreenerQueryError
from trendscreen.schemas.screener import QuarterlyPoint, ScreenerCompany, ScreenerFilters, ScreenerResponse
from trendscreen.services.query_composer import compose_screener_query
from trendscreen.services.validation import to_float
from trendscreen.utils.retry import DEFAULT_RETRY_POLICY, RetryPolicy, retry_async

logger = structlog.get_logger()


def profitability_status(latest_eps: Optional[float]) -> str:
    if latest_eps is None:
        return "unknown"
    if latest_eps > 0:
        return "profitable"
    if latest_eps < 0:
        return "unprofitable"
    return "unknown"


def ma_ordered(row: Mapping[str, Any]) -> Optional[bool]:
    values = [to_float(row.get(k)) for k in ("ma20", "ma50", "ma100", "ma200")]
    if any(v is None for v in values):
        return None
    ma20, ma50, ma100, ma200 = values
    return ma20 > ma50 > ma100 > ma200


def _quarterly_points(raw: Any) -> List[QuarterlyPoint]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = json.loads(raw)
    return [QuarterlyPoint.model_validate(item) for item in raw]


def _int(value: Any) -> Optional[int]:
    num = to_float(value)
    return None if num is None else int(num)


def to_company(row: Mapping[str, Any], filters: ScreenerFilters) -> ScreenerCompany:
    latest_eps = to_float(row.get("latest_eps"))
    turned = row.get("turned_profitable")
    return ScreenerCompany(
        symbol=row["symbol"],
        trade_date=row["trade_date"],
        last_close=to_float(row.get("last_close")),
        market_cap=to_float(row.get("market_cap")),
        sector=row.get("sector"),
        rs_score=_int(row.get("rs_score")),
        pe_ratio=to_float(row.get("pe_ratio")),
        peg_ratio=to_float(row.get("peg_ratio")),
        quarterly_financials=_quarterly_points(row.get("quarterly_data")),
        profitability_status=profitability_status(latest_eps),
        turned_profitable=None if turned is None else bool(turned),
        revenue_growth_quarters=_int(row.get("revenue_growth_quarters")) or 0,
        income_growth_quarters=_int(row.get("income_growth_quarters")) or 0,
        revenue_avg_growth_rate=to_float(row.get("revenue_avg_growth_rate")),
        income_avg_growth_rate=to_float(row.get("income_avg_growth_rate")),
        ordered=ma_ordered(row),
        just_turned=filters.just_turned,
    )


class ScreenerService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ):
        self.session_factory = session_factory
        self.retry_policy = retry_policy

    async def fetch_rows(self, filters: ScreenerFilters) -> List[Mapping[str, Any]]:
        query = compose_screener_query(filters)
        statement = query.render()
        logger.info("Running screener", predicates=query.predicate_names, joins=query.join_names)

        async def attempt():
            async with self.session_factory() as session:
                result = await session.execute(statement)
                return [dict(r) for r in result.mappings().all()]

        try:
            return await retry_async(attempt, policy=self.retry_policy, name="screener")
        except (SQLAlchemyError, RetryExhaustedError) as e:
            # Log the driver error; never hand SQL text back to the caller
            logger.error("Screener query failed", error_type=type(e).__name__, error=str(e))
            raise ScreenerQueryError() from e

    async def run(self, filters: ScreenerFilters) -> ScreenerResponse:
        rows = await self.fetch_rows(filters)
        data = [to_company(r, filters) for r in rows]
        return ScreenerResponse(
            count=len(data),
            trade_date=data[0].trade_date if data else None,
            lookback_days=filters.lookback_days if filters.just_turned else None,
            data=data,
        )
