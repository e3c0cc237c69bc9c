"""
Record-level data-quality checks.

Errors reject a single record; warnings are logged and the record is kept.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, List, Mapping, Optional

from trendscreen.exceptions import DataQualityError

DATE_FORMAT = "%Y-%m-%d"
SYMBOL_PATTERN = re.compile(r"^[A-Z]{1,5}$")
NON_COMMON_SUFFIXES = ("W", "X", "U", "WS")
RATIO_WARN_LIMIT = 1000.0


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self, context: str) -> None:
        if self.errors:
            raise DataQualityError(f"{context}: {'; '.join(self.errors)}", self.errors)


def to_float(value: Any) -> Optional[float]:
    """Provider numbers may arrive as strings, empty strings or NaN."""
    if value is None or value == "":
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value[:10], DATE_FORMAT).date()
    except ValueError:
        return None


def validate_price_record(record: Mapping[str, Any]) -> ValidationResult:
    result = ValidationResult()

    if parse_date(record.get("date")) is None:
        result.errors.append(f"unparseable date {record.get('date')!r}")

    prices = {k: to_float(record.get(k)) for k in ("open", "high", "low", "close")}
    for name, value in prices.items():
        if value is None:
            result.errors.append(f"{name} is missing")
        elif value < 0:
            result.errors.append(f"{name} is negative ({value})")

    high, low = prices["high"], prices["low"]
    if high is not None and low is not None:
        if high < low:
            result.errors.append(f"high {high} < low {low}")
        else:
            for name in ("open", "close"):
                value = prices[name]
                if value is not None and not (low <= value <= high):
                    result.errors.append(f"{name} {value} outside [{low}, {high}]")

    volume = to_float(record.get("volume"))
    if volume is None:
        result.warnings.append("volume is missing")
    elif volume < 0:
        result.errors.append(f"volume is negative ({volume})")
    elif volume == 0:
        result.warnings.append("volume is zero")

    return result


def validate_moving_average(row: Mapping[str, Any]) -> ValidationResult:
    result = ValidationResult()
    ma20, ma50, ma200 = row.get("ma20"), row.get("ma50"), row.get("ma200")

    for name in ("ma20", "ma50", "ma100", "ma200", "vol_ma30"):
        value = row.get(name)
        if value is not None and value < 0:
            result.errors.append(f"{name} is negative ({value})")

    if ma20 is not None and ma50 is not None and ma20 < ma50:
        result.warnings.append("ma20 below ma50")
    if ma50 is not None and ma200 is not None and ma50 < ma200:
        result.warnings.append("ma50 below ma200")
    return result


def validate_ratio(row: Mapping[str, Any]) -> ValidationResult:
    result = ValidationResult()
    for name in ("pe_ratio", "ps_ratio", "pb_ratio"):
        value = row.get(name)
        if value is None:
            continue
        if value < 0:
            result.warnings.append(f"{name} is negative ({value})")
        elif value > RATIO_WARN_LIMIT:
            result.warnings.append(f"{name} is implausibly large ({value})")
    return result


def is_common_stock_symbol(symbol: Optional[str]) -> bool:
    if not symbol or "." in symbol or not SYMBOL_PATTERN.match(symbol):
        return False
    return not symbol.endswith(NON_COMMON_SUFFIXES)


def validate_symbol(row: Mapping[str, Any]) -> ValidationResult:
    result = ValidationResult()
    symbol = row.get("symbol")
    if not is_common_stock_symbol(symbol):
        result.errors.append(f"not a common stock symbol: {symbol!r}")
    if row.get("is_etf") or row.get("is_fund"):
        result.errors.append("ETF or fund")

    market_cap = row.get("market_cap")
    if market_cap is not None and market_cap < 0:
        result.warnings.append(f"negative market cap ({market_cap})")
    if not row.get("company_name"):
        result.warnings.append("missing company name")
    return result
