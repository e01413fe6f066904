"""
Configuration for the ticker bots.

Process-wide settings come from the environment (a .env file is honoured).
Each bot is described by one WatcherConfig record, usually read from a JSON
list in TICKERS_FILE.
"""

import os, json, logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"
MAX_DECIMALS  = 13
LABEL_MAX_LEN = 32

# JSON key -> WatcherConfig field
KEY_ALIASES = {
    "discord_bot_token": "token",
}


# -------------------- Process settings --------------------
@dataclass(frozen=True)
class Settings:
    frequency: int
    managed: bool
    redis_url: str
    cache_ttl: int
    metrics_port: int
    log_level: str
    tickers_file: str
    token: str = field(repr=False)
    shards: int


def load_settings() -> Settings:
    return Settings(
        frequency    = int(os.getenv("FREQUENCY", "0")),
        managed      = os.getenv("MANAGED", "false").lower() == "true",
        redis_url    = os.getenv("REDIS_URL", "").strip(),
        cache_ttl    = int(os.getenv("CACHE_TTL", "30")),
        metrics_port = int(os.getenv("METRICS_PORT", "0")),
        log_level    = os.getenv("LOG_LEVEL", "INFO").upper(),
        tickers_file = os.getenv("TICKERS_FILE", "tickers.json"),
        token        = os.getenv("DISCORD_BOT_TOKEN", "").strip(),
        shards       = int(os.getenv("SHARDS", "0")),
    )


# -------------------- Watchers --------------------
@dataclass(frozen=True)
class WatcherConfig:
    ticker: str = ""
    name: str = ""
    crypto: bool = False
    currency: str = BASE_CURRENCY
    currency_symbol: str = ""
    decimals: Optional[int] = None
    frequency: int = 60
    nickname: bool = False
    color: bool = False
    decorator: str = ""
    activity: str = ""
    pair: str = ""
    pair_flip: bool = False
    multiplier: int = 1
    client_id: str = ""
    token: str = field(default="", repr=False)
    twelve_data_key: str = field(default="", repr=False)

    def __post_init__(self):
        if self.frequency <= 0:
            raise ValueError(f"frequency must be positive, got {self.frequency}")
        if self.decimals is not None and not 0 <= self.decimals <= MAX_DECIMALS:
            raise ValueError(f"decimals must be between 0 and {MAX_DECIMALS}, got {self.decimals}")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be at least 1, got {self.multiplier}")
        if self.crypto and not self.name:
            raise ValueError("crypto watchers need a coin name")
        if not self.crypto and not self.ticker:
            raise ValueError("stock watchers need a ticker symbol")

    @property
    def instrument(self) -> str:
        """Identifier handed to the price provider."""
        return self.name if self.crypto else self.ticker

    @property
    def display_name(self) -> str:
        return (self.name or self.ticker).upper()

    @property
    def label(self) -> str:
        """Human readable id for this bot, also used as its managed username."""
        base = self.name if self.crypto else self.ticker
        return f"{base}-{self.currency}".lower()[:LABEL_MAX_LEN]

    @property
    def converts_currency(self) -> bool:
        return self.currency.upper() != BASE_CURRENCY

    def custom_activities(self) -> List[str]:
        messages = self.activity.split(";") if self.activity else []
        if self.crypto and self.multiplier != 1:
            # upper-cased only when it is the sole message
            name = self.name if messages else self.name.upper()
            messages.append(f"x{self.multiplier} {name}")
        return messages

    @classmethod
    def from_dict(cls, record: Dict[str, Any], default_token: str = "") -> "WatcherConfig":
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in record.items():
            key = KEY_ALIASES.get(key, key)
            if key not in known:
                logger.warning("Ignoring unknown watcher key %r", key)
                continue
            kwargs[key] = value
        # -1 means "no override" in existing ticker files
        if kwargs.get("decimals") is not None and kwargs["decimals"] < 0:
            kwargs["decimals"] = None
        if not kwargs.get("token"):
            kwargs["token"] = default_token
        return cls(**kwargs)


def load_watchers(path: str, default_token: str = "") -> List[WatcherConfig]:
    with open(path, "r") as f:
        records = json.load(f)
    if isinstance(records, dict):
        records = [records]
    return [WatcherConfig.from_dict(r, default_token) for r in records]
