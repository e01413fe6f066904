#!/usr/bin/env python3
"""
Discord Stock Ticker — live price bots for stocks and crypto

One Discord bot per instrument. Each bot shows the latest price as its
nickname (or status text) and the day's move as its activity:
- Stocks/FX/indices from Yahoo Finance (or Twelve Data with an API key)
- Crypto from CoinGecko, optionally through a shared redis cache
- Pre/post-market aware change for stocks
- Currency conversion, custom decimals, custom rotating activity messages
- Coin ratio pairs (e.g. ETH/BTC), green/red colour roles
- Sharded gateway connections for large crypto bots
- Prometheus metrics

Watchers are read from a JSON list (TICKERS_FILE), e.g.
  [{"ticker": "TSLA", "name": "Tesla", "nickname": true, "frequency": 60},
   {"name": "bitcoin", "crypto": true, "nickname": true, "pair": "ethereum"}]

IMPORTANT: Educational info only. Not financial advice.
"""

import asyncio, logging, argparse, signal
from typing import List

from price_cache import PriceCache
from price_sources import (CoinGeckoProvider, CryptoPriceSource, EquityPriceSource, TwelveDataProvider,
                           YahooProvider)
from ticker_config import Settings, WatcherConfig, load_settings, load_watchers
from ticker_metrics import PrometheusMetrics, serve_metrics
from ticker_watcher import Watcher

# -------------------- Config --------------------
SETTINGS = load_settings()

logging.basicConfig(level=getattr(logging, SETTINGS.log_level, logging.INFO),
                    format="[%(asctime)s] %(levelname)s: %(message)s")
logging.getLogger("discord").setLevel(logging.WARNING)


# -------------------- Orchestration --------------------
def build_watchers(configs: List[WatcherConfig], settings: Settings, cancel: asyncio.Event,
                   metrics=None, cache=None) -> List[Watcher]:
    metrics = metrics or PrometheusMetrics()
    yahoo = EquityPriceSource(YahooProvider())
    crypto_source = CryptoPriceSource(CoinGeckoProvider(), metrics, cache)
    watchers = []
    for cfg in configs:
        if cfg.crypto:
            source = crypto_source
        elif cfg.twelve_data_key:
            source = EquityPriceSource(TwelveDataProvider(cfg.twelve_data_key))
        else:
            source = yahoo
        watchers.append(Watcher(
            cfg, cancel, source, yahoo, metrics,
            shards=settings.shards or None,
            frequency_override=settings.frequency,
            managed=settings.managed,
        ))
    return watchers


async def run_all(configs: List[WatcherConfig], settings: Settings) -> None:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            pass

    cache = PriceCache.from_url(settings.redis_url, settings.cache_ttl)
    if cache is None:
        logging.info("No REDIS_URL set, crypto prices are fetched uncached")
    watchers = build_watchers(configs, settings, cancel, cache=cache)

    results = await asyncio.gather(*(w.run() for w in watchers), return_exceptions=True)
    for watcher, result in zip(watchers, results):
        if isinstance(result, Exception):
            logging.error("%r stopped with an error: %s", watcher, result, exc_info=result)
    logging.info("All watchers stopped")


def main():
    p = argparse.ArgumentParser(description="Run Discord price ticker bots")
    p.add_argument("--config", default=SETTINGS.tickers_file, help="JSON list of watcher records")
    p.add_argument("--frequency", type=int, default=SETTINGS.frequency, help="override every watcher's frequency")
    p.add_argument("--managed", action="store_true", default=SETTINGS.managed, help="rename bots to their label")
    p.add_argument("--metrics-port", type=int, default=SETTINGS.metrics_port)
    p.add_argument("--once", action="store_true", help="validate the config and exit")
    args = p.parse_args()

    settings = Settings(
        frequency=args.frequency, managed=args.managed, redis_url=SETTINGS.redis_url,
        cache_ttl=SETTINGS.cache_ttl, metrics_port=args.metrics_port, log_level=SETTINGS.log_level,
        tickers_file=args.config, token=SETTINGS.token, shards=SETTINGS.shards,
    )
    try:
        configs = load_watchers(settings.tickers_file, settings.token)
    except (OSError, ValueError) as e:
        logging.error("Could not load watchers from %s: %s", settings.tickers_file, e)
        return

    if not configs:
        logging.error("No watchers configured in %s.", settings.tickers_file); return

    logging.info("Starting — watchers=%s | frequency override=%s | managed=%s | cache=%s",
                 [c.label for c in configs], settings.frequency or "off", settings.managed,
                 "redis" if settings.redis_url else "off")

    if args.once:
        return

    serve_metrics(settings.metrics_port)
    asyncio.run(run_all(configs, settings))

__all__ = ["build_watchers", "run_all"]

if __name__ == "__main__":
    main()
