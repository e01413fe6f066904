import asyncio
import json
from types import SimpleNamespace

import pytest
import redis

import price_sources
from fakes import FakeMetrics
from price_cache import KEY_PREFIX, PriceCache
from price_sources import (
    CoinGeckoProvider,
    CryptoPriceSource,
    EquityPriceSource,
    EquitySnapshot,
    ProviderError,
    TwelveDataProvider,
    YahooProvider,
    is_rate_limited,
    select_session,
)


class FakeRedis:
    def __init__(self, broken=False):
        self.store = {}
        self.broken = broken
        self.writes = []

    def get(self, key):
        if self.broken:
            raise redis.ConnectionError("redis is down")
        return self.store.get(key)

    def setex(self, key, ttl, value):
        if self.broken:
            raise redis.ConnectionError("redis is down")
        self.writes.append((key, ttl))
        self.store[key] = value


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class StubCoinProvider:
    def __init__(self, data=None, error=None):
        self.data = data or {"symbol": "btc", "price": 50000.0, "change": -120.5, "change_percent": -0.24}
        self.error = error
        self.calls = 0

    def quote(self, coin):
        self.calls += 1
        if self.error:
            raise self.error
        return dict(self.data)


def snapshot(state):
    return EquitySnapshot(
        price=100.0, market_state=state,
        regular_change=1.0, regular_change_percent=1.0,
        pre_change=2.0, pre_change_percent=2.0,
        post_change=-3.0, post_change_percent=-3.0,
    )


# -------------------- Session selection --------------------
def test_session_precedence_follows_provider_label():
    assert select_session(snapshot("POST")).change == -3.0
    assert select_session(snapshot("PRE")).change == 2.0
    assert select_session(snapshot("REGULAR")).change == 1.0
    assert select_session(snapshot("CLOSED")).change_percent == 1.0


def test_session_without_figures_uses_regular():
    snap = EquitySnapshot(price=10.0, market_state="POST", regular_change=0.5, regular_change_percent=5.0)
    quote = select_session(snap)
    assert (quote.change, quote.change_percent, quote.market_state) == (0.5, 5.0, "POST")


def test_rate_limit_detected_from_error_text():
    assert is_rate_limited(ProviderError("coingecko rate limited fetching btc"))
    assert is_rate_limited(Exception("Too Many Requests. Rate limited. Try after a while."))
    assert not is_rate_limited(ProviderError("coingecko returned 500 for btc"))


# -------------------- Providers --------------------
def test_coingecko_parses_market_data(monkeypatch):
    payload = {
        "symbol": "eth",
        "market_data": {
            "current_price": {"usd": 3120.5},
            "price_change_24h_in_currency": {"usd": -41.2},
            "price_change_percentage_24h": -1.3,
        },
    }
    seen = {}

    def fake_get(url, params=None, timeout=None):
        seen["url"] = url
        return FakeResponse(200, payload)

    monkeypatch.setattr(price_sources.requests, "get", fake_get)
    data = CoinGeckoProvider().quote("ethereum")
    assert seen["url"].endswith("/coins/ethereum")
    assert data == {"symbol": "eth", "price": 3120.5, "change": -41.2, "change_percent": -1.3}


def test_coingecko_rate_limit_is_reported_in_text(monkeypatch):
    monkeypatch.setattr(price_sources.requests, "get", lambda *a, **k: FakeResponse(429))
    with pytest.raises(ProviderError) as err:
        CoinGeckoProvider().quote("bitcoin")
    assert is_rate_limited(err.value)


def test_coingecko_bad_payload(monkeypatch):
    monkeypatch.setattr(price_sources.requests, "get", lambda *a, **k: FakeResponse(200, {"symbol": "x"}))
    with pytest.raises(ProviderError):
        CoinGeckoProvider().quote("bitcoin")


def test_twelvedata_compares_latest_minute_with_previous_close(monkeypatch):
    series = {
        "1min": {"values": [{"close": "110.0"}, {"close": "109.0"}]},
        "1day": {"values": [{"close": "110.0"}, {"close": "100.0"}]},
    }
    monkeypatch.setattr(price_sources.requests, "get",
                        lambda url, params=None, timeout=None: FakeResponse(200, series[params["interval"]]))
    snap = TwelveDataProvider("key").quote("AAPL")
    assert snap.price == 110.0
    assert snap.regular_change == pytest.approx(10.0)
    assert snap.regular_change_percent == pytest.approx(10.0)
    assert snap.market_state == ""


def test_twelvedata_credit_error(monkeypatch):
    body = {"status": "error", "code": 429, "message": "You have run out of API credits"}
    monkeypatch.setattr(price_sources.requests, "get", lambda *a, **k: FakeResponse(200, body))
    with pytest.raises(ProviderError) as err:
        TwelveDataProvider("key").quote("AAPL")
    assert is_rate_limited(err.value)


def yahoo_returning(info):
    """A YahooProvider whose yfinance module hands back `info` for every symbol."""
    provider = YahooProvider()
    provider.yf = SimpleNamespace(Ticker=lambda symbol: SimpleNamespace(info=info))
    return provider


def test_yahoo_reads_session_figures():
    provider = yahoo_returning({
        "regularMarketPrice": 201.5, "marketState": "PRE", "regularMarketChange": 1.0,
        "regularMarketChangePercent": 0.5, "preMarketChange": "-2.5", "preMarketChangePercent": -1.2,
    })
    snap = provider.quote("TSLA")
    assert (snap.price, snap.market_state, snap.pre_change, snap.post_change) == (201.5, "PRE", -2.5, None)


@pytest.mark.parametrize("info", [
    {"regularMarketPrice": "N/A"},
    {"regularMarketPrice": 10.0, "regularMarketChange": "N/A"},
    {"regularMarketPrice": 10.0, "postMarketChangePercent": "N/A"},
])
def test_yahoo_non_numeric_fields_are_provider_errors(info):
    with pytest.raises(ProviderError):
        yahoo_returning(info).quote("EUR=X")


# -------------------- Sources --------------------
def test_equity_source_fx_rate():
    class Provider:
        def quote(self, symbol):
            assert symbol == "EUR=X"
            return EquitySnapshot(price=0.92, market_state="REGULAR", regular_change=0.0, regular_change_percent=0.0)

    assert asyncio.run(EquityPriceSource(Provider()).fx_rate("eur")) == 0.92


def test_crypto_source_without_cache_calls_provider():
    provider, metrics = StubCoinProvider(), FakeMetrics()
    quote = asyncio.run(CryptoPriceSource(provider, metrics).fetch("bitcoin"))
    assert (quote.price, quote.change, quote.symbol) == (50000.0, -120.5, "btc")
    assert provider.calls == 1
    assert not metrics.counts


def test_crypto_source_read_through_cache():
    provider, metrics, client = StubCoinProvider(), FakeMetrics(), FakeRedis()
    source = CryptoPriceSource(provider, metrics, PriceCache(client, ttl=15))

    first = asyncio.run(source.fetch("bitcoin"))
    second = asyncio.run(source.fetch("bitcoin"))

    assert first == second
    assert provider.calls == 1
    assert metrics.counts["cache_miss"] == 1
    assert metrics.counts["cache_hit"] == 1
    assert client.writes == [(KEY_PREFIX + "bitcoin", 15)]
    assert json.loads(client.store[KEY_PREFIX + "bitcoin"])["symbol"] == "btc"


def test_crypto_source_surfaces_provider_errors_through_cache():
    provider = StubCoinProvider(error=ProviderError("coingecko rate limited fetching bitcoin"))
    source = CryptoPriceSource(provider, FakeMetrics(), PriceCache(FakeRedis()))
    with pytest.raises(ProviderError):
        asyncio.run(source.fetch("bitcoin"))


def test_cache_outage_degrades_to_provider():
    provider = StubCoinProvider()
    cache = PriceCache(FakeRedis(broken=True))
    value, hit = cache.get_or_compute("bitcoin", lambda: provider.quote("bitcoin"))
    assert value["price"] == 50000.0
    assert hit is False


def test_cache_from_empty_url_is_disabled():
    assert PriceCache.from_url("") is None
