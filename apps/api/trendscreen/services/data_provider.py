from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
import pandas as pd
import structlog
from pydantic import BaseModel, ConfigDict, Field

from trendscreen.config import Settings
from trendscreen.exceptions import ProviderError, TransientProviderError
from trendscreen.utils.retry import DEFAULT_RETRY_POLICY, RetryPolicy, is_retryable_status, retry_async

logger = structlog.get_logger()

SUPPORTED_EXCHANGES = ("NASDAQ", "NYSE", "AMEX")
OHLCV_COLUMNS = ["date", "open", "high", "low", "close", "adj_close", "volume"]


class SymbolInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    symbol: str
    company_name: Optional[str] = Field(default=None, alias="companyName")
    sector: Optional[str] = None
    industry: Optional[str] = None
    market_cap: Optional[float] = Field(default=None, alias="marketCap")
    beta: Optional[float] = None
    price: Optional[float] = None
    volume: Optional[float] = None
    exchange: Optional[str] = None
    exchange_short_name: Optional[str] = Field(default=None, alias="exchangeShortName")
    country: Optional[str] = None
    is_etf: bool = Field(default=False, alias="isEtf")
    is_fund: bool = Field(default=False, alias="isFund")
    is_actively_trading: bool = Field(default=True, alias="isActivelyTrading")


class DataProvider(ABC):
    @abstractmethod
    async def get_symbols(self, exchange: str) -> List[SymbolInfo]:
        """Company screener listing for one exchange."""
        pass

    @abstractmethod
    async def get_daily_ohlcv(self, symbol: str, sessions: int) -> pd.DataFrame:
        """
        Return the last ``sessions`` daily bars.
        Columns: [date, open, high, low, close, adj_close, volume], ascending by date.
        adj_close falls back to close when the provider omits it.
        """
        pass

    @abstractmethod
    async def get_quarterly_income(self, symbol: str, limit: int = 12) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_quarterly_ratios(self, symbol: str, limit: int = 12) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_ttm_ratios(self, symbol: str) -> Optional[Dict[str, Any]]:
        pass


class FmpDataProvider(DataProvider):
    """Financial Modeling Prep JSON API over httpx."""

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ):
        self.api_key = settings.require_provider_credentials()
        self.base_url = settings.DATA_API.rstrip("/")
        self.retry_policy = retry_policy
        self.client = client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None, name: str = "fmp") -> Any:
        query = dict(params or {})
        query["apikey"] = self.api_key
        url = f"{self.base_url}{path}"

        async def attempt():
            try:
                response = await self.client.get(url, params=query)
            except httpx.TimeoutException as e:
                raise TransientProviderError(f"Timeout calling {path}") from e
            except httpx.TransportError as e:
                raise TransientProviderError(f"Network error calling {path}: {e}") from e

            if response.status_code >= 400:
                # Never echo the query string: it carries the API key
                message = f"{path} returned HTTP {response.status_code}"
                if is_retryable_status(response.status_code):
                    raise TransientProviderError(message, response.status_code)
                raise ProviderError(message, response.status_code)

            try:
                return response.json()
            except ValueError as e:
                raise ProviderError(f"{path} returned invalid JSON") from e

        return await retry_async(attempt, policy=self.retry_policy, name=name)

    async def get_symbols(self, exchange: str) -> List[SymbolInfo]:
        payload = await self._get_json(
            "/stable/company-screener",
            {"exchange": exchange, "limit": 10000},
            name=f"symbols:{exchange}",
        )
        return [SymbolInfo.model_validate(row) for row in (payload or []) if row.get("symbol")]

    async def get_daily_ohlcv(self, symbol: str, sessions: int) -> pd.DataFrame:
        payload = await self._get_json(
            f"/api/v3/historical-price-full/{symbol}",
            {"timeseries": sessions},
            name=f"prices:{symbol}",
        )
        historical = (payload or {}).get("historical") or []
        if not historical:
            return pd.DataFrame(columns=OHLCV_COLUMNS)

        df = pd.DataFrame(historical)
        for col in ["open", "high", "low", "close", "volume"]:
            if col not in df.columns:
                df[col] = None
        if "adjClose" in df.columns:
            df["adj_close"] = df["adjClose"].fillna(df["close"])
        else:
            df["adj_close"] = df["close"]

        df = df[OHLCV_COLUMNS].sort_values("date").reset_index(drop=True)
        return df

    async def get_quarterly_income(self, symbol: str, limit: int = 12) -> List[Dict[str, Any]]:
        payload = await self._get_json(
            "/stable/income-statement",
            {"symbol": symbol, "period": "quarter", "limit": limit},
            name=f"income:{symbol}",
        )
        return list(payload or [])

    async def get_quarterly_ratios(self, symbol: str, limit: int = 12) -> List[Dict[str, Any]]:
        payload = await self._get_json(
            "/stable/ratios",
            {"symbol": symbol, "period": "quarter", "limit": limit},
            name=f"ratios:{symbol}",
        )
        return list(payload or [])

    async def get_ttm_ratios(self, symbol: str) -> Optional[Dict[str, Any]]:
        payload = await self._get_json(f"/api/v3/ratios-ttm/{symbol}", name=f"ratios_ttm:{symbol}")
        if not payload:
            return None
        return payload[0]
