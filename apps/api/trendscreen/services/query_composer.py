"""
Screener query composer.

compose_screener_query() turns a ScreenerFilters object into a ScreenerQuery:
an ordered list of named CTEs, the joins hung off the candidate set, and the
named predicate clauses the caller activated, each carrying its own bound
parameters. Nothing is spliced from caller input; every value travels as a
bind parameter. ScreenerQuery.render() produces a single SQLAlchemy text
clause.

Only what a filter set needs is materialised: the previous-days MA pass
(prev_ma / prev_status) exists only for ``justTurned``, and the breakout and
noise tables are joined only when one of their filters is on.
Growth streaks and valuation are computed once per candidate symbol in CTEs;
the quarterly series and EPS pair are lateral lookups.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from sqlalchemy import TextClause, text

from trendscreen.schemas.screener import ScreenerFilters
from trendscreen.services.moving_average_builder import VOLUME_PERIOD
from trendscreen.services.noise_builder import DEFAULT_NOISE_CONFIG

# Walk this many quarter-over-quarter comparisons for growth streaks
GROWTH_WINDOW_QUARTERS = 8
QUARTERLY_SERIES_LENGTH = 8
# Calendar span loaded for the previous-days MA pass: 200 bars plus lookback
PREV_MA_SPAN_DAYS = 400

COMMON_STOCK_PATTERN = "^[A-Z]{1,6}$"
NON_COMMON_SUFFIX_PATTERN = "(W|X|U|WS)$"
OTC_EXCHANGE_PATTERN = "^(OTC|PINK)"


@dataclass(frozen=True)
class Predicate:
    name: str
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Cte:
    name: str
    body: str
    predicates: Tuple[Predicate, ...] = ()
    suffix: str = ""
    params: Dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        sql = self.body.strip()
        if self.predicates:
            sql += "\nWHERE " + "\n  AND ".join(p.sql for p in self.predicates)
        if self.suffix:
            sql += "\n" + self.suffix
        return f"{self.name} AS (\n{sql}\n)"


@dataclass(frozen=True)
class Join:
    name: str
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScreenerQuery:
    ctes: List[Cte]
    select_columns: List[str]
    joins: List[Join]
    predicates: List[Predicate]
    order_by: str

    @property
    def cte_names(self) -> List[str]:
        return [c.name for c in self.ctes]

    @property
    def join_names(self) -> List[str]:
        return [j.name for j in self.joins]

    @property
    def predicate_names(self) -> List[str]:
        names = [p.name for c in self.ctes for p in c.predicates]
        return names + [p.name for p in self.predicates]

    @property
    def params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for c in self.ctes:
            params.update(c.params)
            for p in c.predicates:
                params.update(p.params)
        for j in self.joins:
            params.update(j.params)
        for p in self.predicates:
            params.update(p.params)
        return params

    def to_sql(self) -> str:
        parts = ["WITH " + ",\n".join(c.render() for c in self.ctes)]
        parts.append("SELECT\n  " + ",\n  ".join(self.select_columns))
        parts.append("FROM candidates cand")
        parts.extend(j.sql.strip() for j in self.joins)
        if self.predicates:
            parts.append("WHERE " + "\n  AND ".join(p.sql for p in self.predicates))
        parts.append("ORDER BY " + self.order_by)
        return "\n".join(parts)

    def render(self) -> TextClause:
        return text(self.to_sql()).bindparams(**self.params)


# 1. latest trade date

def _last_date_cte(filters: ScreenerFilters) -> Cte:
    source = "daily_ma" if filters.requires_moving_averages else "daily_prices"
    return Cte("last_d", f"SELECT MAX(date) AS d FROM {source}")


# 2. current rows

def _raw_volume_average() -> str:
    # Same window as daily_ma.vol_ma30: null until a full window exists
    return """
              (
                SELECT AVG(pv.volume)
                FROM daily_prices pv
                WHERE pv.symbol = dp.symbol
                  AND pv.date <= dp.date
                  AND pv.date >= (
                    SELECT pw.date
                    FROM daily_prices pw
                    WHERE pw.symbol = dp.symbol AND pw.date <= dp.date
                    ORDER BY pw.date DESC
                    LIMIT 1 OFFSET :volume_window_offset
                  )
              )"""


def _current_cte(filters: ScreenerFilters) -> Cte:
    if not filters.requires_moving_averages:
        # Without daily_ma only the volume average is worth computing, and only on demand
        if filters.min_avg_vol > 0:
            vol_ma30 = _raw_volume_average().strip()
            params = {"volume_window_offset": VOLUME_PERIOD - 1}
        else:
            vol_ma30 = "CAST(NULL AS double precision)"
            params = {}
        return Cte(
            "cur",
            f"""
            SELECT
              dp.symbol,
              dp.date AS d,
              CAST(NULL AS double precision) AS ma20,
              CAST(NULL AS double precision) AS ma50,
              CAST(NULL AS double precision) AS ma100,
              CAST(NULL AS double precision) AS ma200,
              {vol_ma30} AS vol_ma30,
              COALESCE(dp.adj_close, dp.close) AS close,
              dp.rs_score
            FROM daily_prices dp
            JOIN last_d ld ON dp.date = ld.d
            """,
            params=params,
        )

    predicates = [
        Predicate(
            "ma_present",
            "dm.ma20 IS NOT NULL AND dm.ma50 IS NOT NULL AND dm.ma100 IS NOT NULL AND dm.ma200 IS NOT NULL",
        ),
    ]
    # justTurned means "ordered now, not ordered at some point in the lookback"
    if filters.ordered or filters.just_turned:
        predicates.append(
            Predicate("ordered", "dm.ma20 > dm.ma50 AND dm.ma50 > dm.ma100 AND dm.ma100 > dm.ma200")
        )
    if filters.golden_cross:
        predicates.append(Predicate("golden_cross", "dm.ma50 > dm.ma200"))
    predicates.append(
        Predicate(
            "common_stock_shape",
            "dm.symbol ~ :common_stock_pattern AND dm.symbol !~ :non_common_suffix_pattern",
            {
                "common_stock_pattern": COMMON_STOCK_PATTERN,
                "non_common_suffix_pattern": NON_COMMON_SUFFIX_PATTERN,
            },
        )
    )

    return Cte(
        "cur",
        """
        SELECT
          dm.symbol,
          dm.date AS d,
          dm.ma20, dm.ma50, dm.ma100, dm.ma200,
          dm.vol_ma30,
          COALESCE(pr.adj_close, pr.close) AS close,
          pr.rs_score
        FROM daily_ma dm
        JOIN last_d ld ON dm.date = ld.d
        LEFT JOIN daily_prices pr ON pr.symbol = dm.symbol AND pr.date = ld.d
        """,
        tuple(predicates),
    )


# 3. cheap scalar filters

def _candidates_cte(filters: ScreenerFilters) -> Cte:
    predicates = []
    if filters.min_mcap > 0:
        predicates.append(
            Predicate(
                "min_market_cap",
                "s.market_cap IS NOT NULL AND s.market_cap >= :min_mcap",
                {"min_mcap": float(filters.min_mcap)},
            )
        )
    if filters.min_price > 0:
        predicates.append(
            Predicate("min_price", "c.close IS NOT NULL AND c.close >= :min_price", {"min_price": float(filters.min_price)})
        )
    if filters.min_avg_vol > 0:
        predicates.append(
            Predicate(
                "min_avg_volume",
                "c.vol_ma30 IS NOT NULL AND c.vol_ma30 >= :min_avg_vol",
                {"min_avg_vol": float(filters.min_avg_vol)},
            )
        )
    if not filters.allow_otc:
        predicates.append(
            Predicate(
                "exclude_otc",
                "COALESCE(s.exchange, '') !~* :otc_exchange_pattern",
                {"otc_exchange_pattern": OTC_EXCHANGE_PATTERN},
            )
        )

    return Cte(
        "candidates",
        """
        SELECT c.symbol, c.d, c.ma20, c.ma50, c.ma100, c.ma200, c.vol_ma30, c.close, c.rs_score,
               s.market_cap, s.sector
        FROM cur c
        JOIN symbols s ON s.symbol = c.symbol
        """,
        tuple(predicates),
    )


# 4. previous-days MA state, justTurned only

def _prev_ma_cte() -> Cte:
    return Cte(
        "prev_ma",
        """
        SELECT
          b.symbol,
          b.d,
          AVG(b.close) OVER (PARTITION BY b.symbol ORDER BY b.d ROWS BETWEEN 19 PRECEDING AND CURRENT ROW) AS ma20,
          AVG(b.close) OVER (PARTITION BY b.symbol ORDER BY b.d ROWS BETWEEN 49 PRECEDING AND CURRENT ROW) AS ma50,
          AVG(b.close) OVER (PARTITION BY b.symbol ORDER BY b.d ROWS BETWEEN 99 PRECEDING AND CURRENT ROW) AS ma100,
          AVG(b.close) OVER (PARTITION BY b.symbol ORDER BY b.d ROWS BETWEEN 199 PRECEDING AND CURRENT ROW) AS ma200,
          ROW_NUMBER() OVER (PARTITION BY b.symbol ORDER BY b.d DESC) AS rn
        FROM (
          SELECT dp.symbol, dp.date AS d, COALESCE(dp.adj_close, dp.close) AS close
          FROM daily_prices dp
          JOIN (SELECT DISTINCT symbol FROM candidates) cs ON cs.symbol = dp.symbol
          WHERE dp.date <= (SELECT d FROM last_d)
            AND dp.date >= (SELECT d FROM last_d) - CAST(:prev_ma_span_days AS integer)
        ) b
        """,
        params={"prev_ma_span_days": PREV_MA_SPAN_DAYS},
    )


def _prev_status_cte(filters: ScreenerFilters) -> Cte:
    return Cte(
        "prev_status",
        """
        SELECT
          symbol,
          COUNT(*) FILTER (WHERE NOT (ma20 > ma50 AND ma50 > ma100 AND ma100 > ma200)) AS non_ordered_days_count
        FROM prev_ma
        """,
        (Predicate("lookback_sessions", "rn BETWEEN 2 AND :max_rn", {"max_rn": 1 + filters.lookback_days}),),
        suffix="GROUP BY symbol",
    )


# 5. fundamentals and valuation

def _growth_cte(name: str, column: str, quarters_param: str, quarters: int) -> Cte:
    """
    Per candidate symbol: the consecutive quarter-over-quarter increases counted
    from the latest quarter back (stopping at the first non-increase), and the
    mean growth rate over the latest ``quarters`` comparisons.
    """
    return Cte(
        name,
        f"""
        SELECT
          g.symbol,
          COALESCE(MIN(CASE WHEN NOT g.is_growth THEN g.rn END) - 1, 0) AS growth_quarters,
          AVG(CASE WHEN g.rn <= :{quarters_param} THEN g.growth_rate END) AS avg_growth_rate
        FROM (
          SELECT
            h.symbol,
            h.rn,
            COALESCE(h.value > h.prev_value, FALSE) AS is_growth,
            CASE
              WHEN h.prev_value IS NULL OR h.prev_value = 0 THEN NULL
              ELSE (h.value - h.prev_value) / ABS(h.prev_value) * 100
            END AS growth_rate
          FROM (
            SELECT r.symbol, r.rn, r.value, LEAD(r.value) OVER (PARTITION BY r.symbol ORDER BY r.rn) AS prev_value
            FROM (
              SELECT
                qf.symbol,
                qf.{column} AS value,
                ROW_NUMBER() OVER (PARTITION BY qf.symbol ORDER BY qf.period_end_date DESC) AS rn
              FROM quarterly_financials qf
              JOIN (SELECT DISTINCT symbol FROM candidates) cs ON cs.symbol = qf.symbol
              WHERE qf.{column} IS NOT NULL
            ) r
            WHERE r.rn <= :growth_window_rows
          ) h
        ) g
        """,
        suffix="GROUP BY g.symbol",
        params={quarters_param: quarters, "growth_window_rows": GROWTH_WINDOW_QUARTERS + 1},
    )


def _valuation_cte() -> Cte:
    # Latest daily ratio on or before the trade date wins over the latest quarterly one
    return Cte(
        "val",
        """
        SELECT
          cs.symbol,
          COALESCE(dr.pe_ratio, qr.pe_ratio) AS pe_ratio,
          COALESCE(dr.peg_ratio, qr.peg_ratio) AS peg_ratio
        FROM candidates cs
        LEFT JOIN daily_ratios dr
          ON dr.symbol = cs.symbol
         AND dr.date = (
           SELECT MAX(x.date) FROM daily_ratios x WHERE x.symbol = cs.symbol AND x.date <= cs.d
         )
        LEFT JOIN quarterly_ratios qr
          ON qr.symbol = cs.symbol
         AND qr.period_end_date = (
           SELECT MAX(y.period_end_date) FROM quarterly_ratios y WHERE y.symbol = cs.symbol
         )
        """,
    )


def _fundamental_ctes(filters: ScreenerFilters) -> List[Cte]:
    return [
        _growth_cte("rev_growth", "revenue", "revenue_growth_quarters", filters.revenue_growth_quarters),
        _growth_cte("inc_growth", "eps_diluted", "income_growth_quarters", filters.income_growth_quarters),
        _valuation_cte(),
    ]


def _fundamental_joins() -> List[Join]:
    series = Join(
        "qs",
        f"""
        LEFT JOIN LATERAL (
          SELECT json_agg(
                   json_build_object(
                     'period_end_date', q.period_end_date,
                     'as_of_q', q.as_of_q,
                     'revenue', q.revenue,
                     'net_income', q.net_income,
                     'eps_diluted', q.eps_diluted
                   ) ORDER BY q.period_end_date DESC
                 ) AS quarterly_data
          FROM (
            SELECT period_end_date, as_of_q, revenue, net_income, eps_diluted
            FROM quarterly_financials
            WHERE symbol = cand.symbol
            ORDER BY period_end_date DESC
            LIMIT {QUARTERLY_SERIES_LENGTH}
          ) q
        ) qs ON true
        """,
    )
    eps = Join(
        "eps",
        """
        LEFT JOIN LATERAL (
          SELECT
            MAX(e.eps) FILTER (WHERE e.rn = 1) AS eps_q1,
            MAX(e.eps) FILTER (WHERE e.rn = 2) AS eps_prev,
            CASE
              WHEN COUNT(*) < 2 THEN NULL
              WHEN MAX(e.eps) FILTER (WHERE e.rn = 1) > 0
               AND MAX(e.eps) FILTER (WHERE e.rn = 2) <= 0 THEN TRUE
              ELSE FALSE
            END AS turned_profitable
          FROM (
            SELECT eps_diluted AS eps, ROW_NUMBER() OVER (ORDER BY period_end_date DESC) AS rn
            FROM quarterly_financials
            WHERE symbol = cand.symbol AND eps_diluted IS NOT NULL
            ORDER BY period_end_date DESC
            LIMIT 2
          ) e
        ) eps ON true
        """,
    )
    return [
        series,
        eps,
        Join("rev", "LEFT JOIN rev_growth rev ON rev.symbol = cand.symbol"),
        Join("inc", "LEFT JOIN inc_growth inc ON inc.symbol = cand.symbol"),
        Join("val", "LEFT JOIN val ON val.symbol = cand.symbol"),
    ]


# 6. signal tables

def _breakout_date_cte() -> Cte:
    # Breakout rows are written for the session before the latest one
    return Cte(
        "breakout_d",
        """
        SELECT MAX(date) AS d
        FROM daily_breakout_signals
        WHERE date <= (SELECT d FROM last_d)
        """,
    )


SELECT_COLUMNS = [
    "cand.symbol",
    "cand.d AS trade_date",
    "cand.close AS last_close",
    "cand.rs_score",
    "cand.market_cap",
    "cand.sector",
    "cand.ma20",
    "cand.ma50",
    "cand.ma100",
    "cand.ma200",
    "qs.quarterly_data",
    "eps.eps_q1 AS latest_eps",
    "eps.eps_prev AS prev_eps",
    "eps.turned_profitable",
    "COALESCE(rev.growth_quarters, 0) AS revenue_growth_quarters",
    "COALESCE(inc.growth_quarters, 0) AS income_growth_quarters",
    "rev.avg_growth_rate AS revenue_avg_growth_rate",
    "inc.avg_growth_rate AS income_avg_growth_rate",
    "val.pe_ratio",
    "val.peg_ratio",
]


# 7. final predicates

def _final_predicates(filters: ScreenerFilters) -> List[Predicate]:
    predicates: List[Predicate] = []

    if filters.just_turned:
        predicates.append(Predicate("just_turned", "COALESCE(ps.non_ordered_days_count, 0) > 0"))

    for period, active in (
        (20, filters.ma20_above),
        (50, filters.ma50_above),
        (100, filters.ma100_above),
        (200, filters.ma200_above),
    ):
        if active:
            predicates.append(Predicate(f"ma{period}_above", f"cand.close > cand.ma{period}"))

    if filters.ma_convergence_filter:
        predicates.append(
            Predicate(
                "ma_convergence",
                "cand.ma50 > 0 AND ABS(cand.ma20 - cand.ma50) / cand.ma50 * 100 < :ma_convergence_threshold",
                {"ma_convergence_threshold": DEFAULT_NOISE_CONFIG.ma_convergence_threshold},
            )
        )

    if filters.profitability == "profitable":
        predicates.append(Predicate("profitable", "eps.eps_q1 IS NOT NULL AND eps.eps_q1 > 0"))
    elif filters.profitability == "unprofitable":
        predicates.append(Predicate("unprofitable", "eps.eps_q1 IS NOT NULL AND eps.eps_q1 < 0"))

    if filters.turn_around:
        predicates.append(Predicate("turned_profitable", "eps.turned_profitable IS TRUE"))

    # A rate threshold only ever narrows the streak filter
    if filters.revenue_growth:
        predicates.append(
            Predicate(
                "revenue_growth_streak",
                "rev.growth_quarters >= :revenue_growth_quarters",
                {"revenue_growth_quarters": filters.revenue_growth_quarters},
            )
        )
        if filters.revenue_growth_rate is not None:
            predicates.append(
                Predicate(
                    "revenue_growth_rate",
                    "rev.avg_growth_rate IS NOT NULL AND rev.avg_growth_rate >= :revenue_growth_rate",
                    {"revenue_growth_rate": float(filters.revenue_growth_rate)},
                )
            )
    if filters.income_growth:
        predicates.append(
            Predicate(
                "income_growth_streak",
                "inc.growth_quarters >= :income_growth_quarters",
                {"income_growth_quarters": filters.income_growth_quarters},
            )
        )
        if filters.income_growth_rate is not None:
            predicates.append(
                Predicate(
                    "income_growth_rate",
                    "inc.avg_growth_rate IS NOT NULL AND inc.avg_growth_rate >= :income_growth_rate",
                    {"income_growth_rate": float(filters.income_growth_rate)},
                )
            )

    if filters.peg_filter:
        predicates.append(
            Predicate("peg_below_one", "val.peg_ratio IS NOT NULL AND val.peg_ratio >= 0 AND val.peg_ratio < 1")
        )

    if filters.breakout_strategy == "confirmed":
        predicates.append(Predicate("confirmed_breakout", "bs.is_confirmed_breakout IS TRUE"))
    elif filters.breakout_strategy == "retest":
        predicates.append(Predicate("perfect_retest", "bs.is_perfect_retest IS TRUE"))

    cfg = DEFAULT_NOISE_CONFIG
    if filters.volume_filter:
        predicates.append(
            Predicate(
                "liquidity",
                "ns.avg_dollar_volume_20d >= :min_dollar_volume AND ns.avg_volume_20d >= :min_share_volume",
                {
                    "min_dollar_volume": cfg.volume_dollar_threshold,
                    "min_share_volume": cfg.volume_shares_threshold,
                },
            )
        )
    if filters.vcp_filter:
        predicates.append(Predicate("vcp", "ns.is_vcp IS TRUE"))
    if filters.body_filter:
        predicates.append(
            Predicate("strong_body", "ns.body_ratio >= :min_body_ratio", {"min_body_ratio": cfg.body_ratio_threshold})
        )

    return predicates


def compose_screener_query(filters: ScreenerFilters) -> ScreenerQuery:
    ctes = [_last_date_cte(filters), _current_cte(filters), _candidates_cte(filters)]
    joins: List[Join] = []
    columns = list(SELECT_COLUMNS)

    if filters.just_turned:
        ctes.extend([_prev_ma_cte(), _prev_status_cte(filters)])
        joins.append(Join("prev_status", "LEFT JOIN prev_status ps ON ps.symbol = cand.symbol"))
        columns.append("ps.non_ordered_days_count")

    ctes.extend(_fundamental_ctes(filters))
    joins.extend(_fundamental_joins())

    if filters.breakout_strategy is not None:
        ctes.append(_breakout_date_cte())
        joins.append(
            Join(
                "breakout_signals",
                """
                LEFT JOIN daily_breakout_signals bs
                  ON bs.symbol = cand.symbol AND bs.date = (SELECT d FROM breakout_d)
                """,
            )
        )
    if filters.requires_noise_signals:
        joins.append(
            Join(
                "noise_signals",
                "LEFT JOIN daily_noise_signals ns ON ns.symbol = cand.symbol AND ns.date = cand.d",
            )
        )

    return ScreenerQuery(
        ctes=ctes,
        select_columns=columns,
        joins=joins,
        predicates=_final_predicates(filters),
        order_by="cand.market_cap DESC NULLS LAST, cand.symbol ASC",
    )
