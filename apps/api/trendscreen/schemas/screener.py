from datetime import date
from typing import Any, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trendscreen.exceptions import InvalidFilterError


class ScreenerFilters(BaseModel):
    """
    Flat, fully optional filter set. An unset boolean never constrains;
    numeric thresholds of 0 mean "no minimum".
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    # Moving-average state
    ordered: bool = False
    golden_cross: bool = Field(default=False, alias="goldenCross")
    just_turned: bool = Field(default=False, alias="justTurned")
    lookback_days: int = Field(default=10, ge=1, le=60, alias="lookbackDays")
    ma20_above: bool = Field(default=False, alias="ma20Above")
    ma50_above: bool = Field(default=False, alias="ma50Above")
    ma100_above: bool = Field(default=False, alias="ma100Above")
    ma200_above: bool = Field(default=False, alias="ma200Above")
    ma_convergence_filter: bool = Field(default=False, alias="maConvergenceFilter")

    # Scalar
    min_mcap: float = Field(default=0, ge=0, allow_inf_nan=False, alias="minMcap")
    min_price: float = Field(default=0, ge=0, allow_inf_nan=False, alias="minPrice")
    min_avg_vol: float = Field(default=0, ge=0, allow_inf_nan=False, alias="minAvgVol")
    allow_otc: bool = Field(default=True, alias="allowOTC")

    # Fundamentals
    profitability: Literal["all", "profitable", "unprofitable"] = "all"
    turn_around: bool = Field(default=False, alias="turnAround")
    revenue_growth: bool = Field(default=False, alias="revenueGrowth")
    income_growth: bool = Field(default=False, alias="incomeGrowth")
    revenue_growth_quarters: int = Field(default=3, ge=2, le=8, alias="revenueGrowthQuarters")
    income_growth_quarters: int = Field(default=3, ge=2, le=8, alias="incomeGrowthQuarters")
    revenue_growth_rate: Optional[float] = Field(default=None, ge=0, le=1000, allow_inf_nan=False, alias="revenueGrowthRate")
    income_growth_rate: Optional[float] = Field(default=None, ge=0, le=1000, allow_inf_nan=False, alias="incomeGrowthRate")
    peg_filter: bool = Field(default=False, alias="pegFilter")

    # Signal tables
    breakout_strategy: Optional[Literal["confirmed", "retest"]] = Field(default=None, alias="breakoutStrategy")
    volume_filter: bool = Field(default=False, alias="volumeFilter")
    vcp_filter: bool = Field(default=False, alias="vcpFilter")
    body_filter: bool = Field(default=False, alias="bodyFilter")

    @property
    def requires_moving_averages(self) -> bool:
        return any((
            self.ordered,
            self.golden_cross,
            self.just_turned,
            self.ma20_above,
            self.ma50_above,
            self.ma100_above,
            self.ma200_above,
            self.ma_convergence_filter,
        ))

    @property
    def requires_noise_signals(self) -> bool:
        return self.volume_filter or self.vcp_filter or self.body_filter


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def parse_filters(raw: Mapping[str, Any]) -> ScreenerFilters:
    """
    Validate caller input. Blank values count as unset; anything else that
    does not parse or is out of range raises InvalidFilterError.
    """
    data = {k: v for k, v in raw.items() if not _blank(v)}
    try:
        return ScreenerFilters.model_validate(data)
    except ValidationError as e:
        details = {
            ".".join(str(p) for p in err["loc"]): err["msg"] for err in e.errors()
        }
        fields = ", ".join(details) or "filters"
        raise InvalidFilterError(f"Invalid screener filters: {fields}", details) from e


class QuarterlyPoint(BaseModel):
    period_end_date: date
    as_of_q: Optional[str] = None
    revenue: Optional[float] = None
    net_income: Optional[float] = None
    eps_diluted: Optional[float] = None


class ScreenerCompany(BaseModel):
    symbol: str
    trade_date: date
    last_close: Optional[float] = None
    market_cap: Optional[float] = None
    sector: Optional[str] = None
    rs_score: Optional[int] = None
    pe_ratio: Optional[float] = None
    peg_ratio: Optional[float] = None
    quarterly_financials: List[QuarterlyPoint] = []
    profitability_status: Literal["profitable", "unprofitable", "unknown"] = "unknown"
    turned_profitable: Optional[bool] = None
    revenue_growth_quarters: int = 0
    income_growth_quarters: int = 0
    revenue_avg_growth_rate: Optional[float] = None
    income_avg_growth_rate: Optional[float] = None
    ordered: Optional[bool] = None
    just_turned: bool = False


class ScreenerResponse(BaseModel):
    count: int = 0
    trade_date: Optional[date] = None
    lookback_days: Optional[int] = None
    data: List[ScreenerCompany] = []
