"""
The per-instrument watcher.

A Watcher owns one bot: it opens the Discord connection(s), then on every
tick fetches a quote, formats it and publishes nickname and activity. It runs
until its cancellation event is set, which pre-empts both the timer and any
tick still in flight.
"""

import asyncio, logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from price_sources import PriceQuote, ProviderError, is_rate_limited
from ticker_config import WatcherConfig
from ticker_display import Display, format_pair, render, strip_percent
from ticker_metrics import NO_GUILD
from ticker_presence import DiscordConnection, GuildSeat, PresenceError, ShardManager, SingleTarget

logger = logging.getLogger(__name__)


class WatcherStopped(Exception):
    """The cancellation event fired."""


# -------------------- Activity rotation --------------------
class ActivityRotator:
    """
    Interleaves custom messages with the computed activity. Each custom
    message is shown on two consecutive ticks before the cursor moves on; once
    the list is exhausted one tick shows the real activity and the cycle
    restarts.
    """

    def __init__(self, messages: List[str]):
        self.messages = list(messages)
        self.index = 0
        self.parity = 0

    def next(self, activity: str) -> str:
        if not self.messages:
            return activity
        if self.index == len(self.messages):
            self.index = 0
            self.parity = 0
            return activity
        message = self.messages[self.index]
        if self.parity % 2 == 1:
            self.index += 1
        self.parity += 1
        return message


# -------------------- Exchange rate --------------------
async def exchange_rate(config: WatcherConfig, fx_lookup: Callable[[str], Awaitable[float]]) -> float:
    """Multiplier applied to every raw price for the watcher's lifetime."""
    if not config.converts_currency:
        return float(config.multiplier)
    fallback = float(config.multiplier) if config.crypto else 1.0
    try:
        rate = await fx_lookup(config.currency)
    except ProviderError as e:
        logger.error("Unable to fetch exchange rate for %s, default to USD: %s", config.currency, e)
        return fallback
    logger.info("Using %s at %.4f per USD", config.currency.upper(), rate)
    return rate * config.multiplier


# -------------------- Watcher --------------------
@dataclass
class RuntimeState:
    frequency: int
    nickname: bool
    rotator: ActivityRotator
    rate: float = 1.0
    decorator: str = ""
    guilds: List[GuildSeat] = field(default_factory=list)


class Watcher:
    def __init__(self, config: WatcherConfig, cancel: asyncio.Event, source, fx_source, metrics,
                 connect=DiscordConnection, shards: Optional[int] = None,
                 frequency_override: int = 0, managed: bool = False):
        self.config = config
        self.cancel = cancel
        self.source = source
        self.fx_source = fx_source
        self.metrics = metrics
        self.connect = connect
        self.shards = shards
        self.frequency_override = frequency_override
        self.managed = managed
        self.primary: Any = None
        self.target: Any = None

    def __repr__(self):
        return f"<Watcher {self.config.label}>"

    @property
    def kind(self) -> str:
        return "crypto" if self.config.crypto else "stock"

    async def run(self) -> None:
        """Watch until cancelled; returns early if the connections cannot be opened."""
        cfg = self.config
        try:
            state = await self._unless_cancelled(self._start())
            if state is None:
                return
            logger.info("Watching %s price for %s", self.kind, cfg.instrument)
            while True:
                await self._unless_cancelled(asyncio.sleep(state.frequency))
                try:
                    await self._unless_cancelled(self._tick(state))
                except WatcherStopped:
                    raise
                except Exception:
                    logger.exception("Tick failed for %s (continuing)", cfg.instrument)
                    self.metrics.update_error()
        except WatcherStopped:
            logger.info("Shutting down price watching for %s", cfg.instrument)
        finally:
            await self._close()

    async def _unless_cancelled(self, coro):
        """Await `coro` unless the cancellation event fires first."""
        if self.cancel.is_set():
            coro.close()
            raise WatcherStopped()
        work = asyncio.ensure_future(coro)
        stop = asyncio.ensure_future(self.cancel.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            stop.cancel()
            raise
        stop.cancel()
        if self.cancel.is_set():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            raise WatcherStopped()
        return work.result()

    # -------------------- Startup --------------------
    async def _start(self) -> Optional[RuntimeState]:
        cfg = self.config
        state = RuntimeState(
            frequency=self.frequency_override or cfg.frequency,
            nickname=cfg.nickname,
            rotator=ActivityRotator(cfg.custom_activities()),
        )

        # crypto bots only need REST on the primary; their presence rides the shards
        self.primary = self.connect(cfg.token, gateway=not cfg.crypto)
        try:
            await self.primary.open()
            if cfg.crypto:
                self.target = ShardManager(cfg.token, connect=self.connect, count=self.shards)
            else:
                self.target = SingleTarget(self.primary)
            await self.target.open()
        except PresenceError as e:
            logger.error("Opening discord connection for %s: %s", cfg.instrument, e)
            self.metrics.mark_failed(cfg.instrument)
            self.target = None
            return None

        if state.nickname:
            try:
                state.guilds = await self.primary.guilds()
            except PresenceError as e:
                logger.error("Getting guilds: %s", e)
            if not state.guilds:
                logger.warning("No guilds for %s, falling back to activity only", cfg.instrument)
                state.nickname = False

        state.rate = await exchange_rate(cfg, self.fx_source.fx_rate)

        if self.managed:
            try:
                await self.primary.set_name(cfg.label)
            except PresenceError as e:
                logger.warning("Unable to set name for %s: %s", cfg.instrument, e)
        return state

    async def _close(self) -> None:
        if self.target is not None:
            await self.target.close()
        if self.primary is not None:
            await self.primary.close()

    # -------------------- Ticks --------------------
    async def _tick(self, state: RuntimeState) -> None:
        cfg = self.config
        logger.debug("Fetching %s price for %s", self.kind, cfg.instrument)
        try:
            quote = await self.source.fetch(cfg.instrument)
        except ProviderError as e:
            logger.error("Unable to fetch %s price for %s: %s", self.kind, cfg.instrument, e)
            if is_rate_limited(e):
                self.metrics.rate_limited()
            else:
                self.metrics.update_error()
            return

        display = render(quote, state.rate, cfg.crypto, cfg.decimals, cfg.decorator)
        state.decorator = display.decorator

        if state.nickname:
            activity = await self._nickname_activity(quote, display)
            await self._update_nicknames(state, self._nickname(display), display.increase)
            activity = state.rotator.next(activity)
            watching = True
        elif cfg.crypto:
            activity = f"{display.price} {state.decorator} {display.percent}"
            watching = False
        else:
            activity = f"{display.price} {state.decorator} {strip_percent(display.percent)}"
            watching = True

        if await self.target.set_activity(activity, watching):
            self.metrics.mark_updated(cfg.instrument, NO_GUILD)

    def _nickname(self, display: Display) -> str:
        cfg = self.config
        if cfg.currency_symbol:
            return f"{cfg.currency_symbol}{display.price}"
        return f"{display.price} {cfg.currency.upper()}"

    async def _nickname_activity(self, quote: PriceQuote, display: Display) -> str:
        cfg = self.config
        if not cfg.crypto:
            activity = f"{strip_percent(display.percent)} % | {cfg.display_name}"
            if quote.market_state:
                activity += f" ({quote.market_state})"
            return activity

        symbol = cfg.ticker or quote.symbol.upper()
        if not cfg.pair:
            return f"{strip_percent(display.percent)} % | {quote.symbol.upper()}{cfg.currency.upper()}"
        try:
            pair = await self.source.fetch(cfg.pair)
        except ProviderError as e:
            logger.error("Unable to fetch pair price for %s: %s", cfg.pair, e)
            return display.percent
        if quote.price <= 0 or pair.price <= 0:
            logger.error("Unable to price %s against %s: zero price", cfg.instrument, cfg.pair)
            return display.percent
        return format_pair(quote.price, pair.price, symbol, pair.symbol.upper(), cfg.pair_flip)

    async def _update_nicknames(self, state: RuntimeState, nickname: str, increase: bool) -> None:
        cfg = self.config
        for seat in state.guilds:
            try:
                await self.primary.set_nickname(seat, nickname)
            except PresenceError as e:
                logger.error("Updating nickname: %s", e)
                continue
            logger.debug("Set nickname in %s: %s", seat.name, nickname)
            self.metrics.mark_updated(cfg.instrument, seat.name)

            if cfg.color:
                try:
                    await self.primary.set_color(seat, increase)
                except PresenceError as e:
                    logger.error("Color roles: %s", e)
