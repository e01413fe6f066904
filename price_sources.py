"""
Price providers and the per-watcher price sources built on them.

Providers are plain blocking clients (yfinance / requests). Sources wrap them
for the async watchers: calls run in a worker thread and the provider payload
is reduced to a PriceQuote.
"""

import asyncio, logging, requests
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional

from price_cache import PriceCache

logger = logging.getLogger(__name__)

RATE_LIMITED = "rate limited"
HTTP_TIMEOUT = 10


class ProviderError(Exception):
    """A provider could not produce a usable quote."""


def is_rate_limited(err: Exception) -> bool:
    return RATE_LIMITED in str(err).lower()


# -------------------- Quotes --------------------
@dataclass
class PriceQuote:
    price: float
    change: float
    change_percent: float
    market_state: str = ""
    symbol: str = ""


@dataclass
class EquitySnapshot:
    price: float
    market_state: str
    regular_change: float
    regular_change_percent: float
    pre_change: Optional[float] = None
    pre_change_percent: Optional[float] = None
    post_change: Optional[float] = None
    post_change_percent: Optional[float] = None


def select_session(snap: EquitySnapshot) -> PriceQuote:
    """
    Pick the change figures for the session the provider says is current:
    POST, then PRE, then the regular session. The provider's label is trusted
    as is; a session without figures falls back to the regular ones.
    """
    change, percent = snap.regular_change, snap.regular_change_percent
    if snap.market_state == "POST" and snap.post_change is not None:
        change, percent = snap.post_change, snap.post_change_percent or 0.0
    elif snap.market_state == "PRE" and snap.pre_change is not None:
        change, percent = snap.pre_change, snap.pre_change_percent or 0.0
    return PriceQuote(snap.price, change, percent, snap.market_state)


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


# -------------------- Providers --------------------
class BaseProvider:
    def quote(self, instrument: str) -> Any: ...


class YahooProvider(BaseProvider):
    def __init__(self):
        import yfinance as yf
        self.yf = yf

    def quote(self, symbol: str) -> EquitySnapshot:
        try:
            info = self.yf.Ticker(symbol).info
        except Exception as e:
            raise ProviderError(f"yahoo quote for {symbol} failed: {e}") from e
        price = (info or {}).get("regularMarketPrice")
        if price is None:
            raise ProviderError(f"yahoo returned bad data for {symbol}")
        try:
            return EquitySnapshot(
                price                  = float(price),
                market_state           = info.get("marketState") or "",
                regular_change         = float(info.get("regularMarketChange") or 0.0),
                regular_change_percent = float(info.get("regularMarketChangePercent") or 0.0),
                pre_change             = _optional_float(info.get("preMarketChange")),
                pre_change_percent     = _optional_float(info.get("preMarketChangePercent")),
                post_change            = _optional_float(info.get("postMarketChange")),
                post_change_percent    = _optional_float(info.get("postMarketChangePercent")),
            )
        except (TypeError, ValueError) as e:
            raise ProviderError(f"yahoo returned bad data for {symbol}: {e}") from e


class TwelveDataProvider(BaseProvider):
    BASE = "https://api.twelvedata.com"

    def __init__(self, api_key: str):
        self.api_key = api_key

    def _series(self, symbol: str, interval: str) -> List[Dict[str, str]]:
        try:
            r = requests.get(
                f"{self.BASE}/time_series",
                params={"symbol": symbol, "interval": interval, "outputsize": 2, "apikey": self.api_key},
                timeout=HTTP_TIMEOUT,
            )
        except requests.RequestException as e:
            raise ProviderError(f"twelvedata request for {symbol} failed: {e}") from e
        if r.status_code == 429:
            raise ProviderError(f"twelvedata rate limited fetching {symbol}")
        if r.status_code != 200:
            raise ProviderError(f"twelvedata returned {r.status_code} for {symbol}")
        try:
            data = r.json()
        except ValueError as e:
            raise ProviderError(f"twelvedata returned bad data for {symbol}: {e}") from e
        if data.get("status") == "error":
            if data.get("code") == 429:
                raise ProviderError(f"twelvedata rate limited fetching {symbol}: {data.get('message')}")
            raise ProviderError(f"twelvedata error for {symbol}: {data.get('message')}")
        return data.get("values") or []

    def quote(self, symbol: str) -> EquitySnapshot:
        minutes = self._series(symbol, "1min")
        days = self._series(symbol, "1day")
        if not minutes or len(days) < 2:
            raise ProviderError(f"twelvedata returned no series for {symbol}")
        try:
            now = float(minutes[0]["close"])
            close = float(days[1]["close"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(f"unable to read twelvedata series for {symbol}: {e}") from e
        diff = now - close
        percent = diff / close * 100 if close else 0.0
        return EquitySnapshot(price=now, market_state="", regular_change=diff, regular_change_percent=percent)


class CoinGeckoProvider(BaseProvider):
    BASE = "https://api.coingecko.com/api/v3"

    def quote(self, coin: str) -> Dict[str, Any]:
        """USD price data for a coin id, as a plain dict so it can be cached."""
        try:
            r = requests.get(
                f"{self.BASE}/coins/{coin}",
                params={"localization": "false", "tickers": "false", "community_data": "false",
                        "developer_data": "false", "sparkline": "false"},
                timeout=HTTP_TIMEOUT,
            )
        except requests.RequestException as e:
            raise ProviderError(f"coingecko request for {coin} failed: {e}") from e
        if r.status_code == 429:
            raise ProviderError(f"coingecko rate limited fetching {coin}")
        if r.status_code != 200:
            raise ProviderError(f"coingecko returned {r.status_code} for {coin}")
        try:
            data = r.json()
            market = data["market_data"]
            return {
                "symbol": data["symbol"],
                "price": float(market["current_price"]["usd"]),
                "change": float((market.get("price_change_24h_in_currency") or {}).get("usd") or 0.0),
                "change_percent": float(market.get("price_change_percentage_24h") or 0.0),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(f"coingecko returned bad data for {coin}: {e}") from e


# -------------------- Sources --------------------
class EquityPriceSource:
    def __init__(self, provider: BaseProvider):
        self.provider = provider

    async def fetch(self, symbol: str) -> PriceQuote:
        snap = await asyncio.to_thread(self.provider.quote, symbol)
        return select_session(snap)

    async def fx_rate(self, currency: str) -> float:
        """Spot rate of one USD in `currency`."""
        snap = await asyncio.to_thread(self.provider.quote, f"{currency.upper()}=X")
        if snap.price <= 0:
            raise ProviderError(f"bad exchange rate for {currency}: {snap.price}")
        return snap.price


class CryptoPriceSource:
    def __init__(self, provider: BaseProvider, metrics, cache: Optional[PriceCache] = None):
        self.provider = provider
        self.metrics = metrics
        self.cache = cache

    async def fetch(self, coin: str) -> PriceQuote:
        if self.cache is None:
            data = await asyncio.to_thread(self.provider.quote, coin)
        else:
            data, hit = await asyncio.to_thread(self.cache.get_or_compute, coin, partial(self.provider.quote, coin))
            if hit:
                self.metrics.cache_hit()
            else:
                self.metrics.cache_miss()
        return PriceQuote(
            price=data["price"],
            change=data["change"],
            change_percent=data["change_percent"],
            symbol=data["symbol"],
        )

