"""
Discord side of a ticker bot.

A watcher talks to Discord through one primary connection (guild lookups,
nicknames, colour roles, username) and a presence target that carries the
activity text: the primary connection itself for stocks, or a ShardManager
holding one gateway connection per shard for crypto bots.
"""

import asyncio, logging, requests
from dataclasses import dataclass
from typing import Any, List, Optional

import discord

logger = logging.getLogger(__name__)

DISCORD_API   = "https://discord.com/api/v10"
READY_TIMEOUT = 60
GUILD_LIMIT   = 100
GREEN_ROLE    = "tickers-green"
RED_ROLE      = "tickers-red"


class PresenceError(Exception):
    """A Discord call made on behalf of a watcher failed."""


@dataclass
class GuildSeat:
    """The bot's membership in one guild, captured when the watcher starts."""
    id: int
    name: str
    member: Any = None


def recommended_shards(token: str) -> int:
    try:
        r = requests.get(f"{DISCORD_API}/gateway/bot", headers={"Authorization": f"Bot {token}"}, timeout=10)
    except requests.RequestException as e:
        raise PresenceError(f"gateway lookup failed: {e}") from e
    if r.status_code != 200:
        raise PresenceError(f"gateway lookup returned {r.status_code}: {r.text[:200]}")
    return max(1, int(r.json().get("shards", 1)))


# -------------------- Connections --------------------
class DiscordConnection:
    """
    One authenticated discord client. With gateway=False only the REST side is
    logged in, which is enough for guilds, nicknames and roles.
    """

    def __init__(self, token: str, shard_id: Optional[int] = None, shard_count: Optional[int] = None,
                 gateway: bool = True):
        intents = discord.Intents.none()
        intents.guilds = True
        self.client = discord.Client(intents=intents, shard_id=shard_id, shard_count=shard_count)
        self.token = token
        self.shard_id = shard_id
        self.gateway = gateway
        self._runner: Optional[asyncio.Task] = None

    def __repr__(self):
        return f"<DiscordConnection shard={self.shard_id}>"

    async def open(self) -> None:
        try:
            await self.client.login(self.token)
        except (discord.DiscordException, OSError) as e:
            raise PresenceError(f"login failed: {e}") from e
        if not self.gateway:
            return

        self._runner = asyncio.create_task(self.client.connect(reconnect=True))
        ready = asyncio.create_task(self.client.wait_until_ready())
        done, _ = await asyncio.wait({ready, self._runner}, timeout=READY_TIMEOUT,
                                     return_when=asyncio.FIRST_COMPLETED)
        if ready in done:
            return
        ready.cancel()
        if self._runner in done and self._runner.exception() is not None:
            e = self._runner.exception()
            raise PresenceError(f"gateway connection failed: {e}") from e
        raise PresenceError(f"gateway not ready after {READY_TIMEOUT}s")

    async def close(self) -> None:
        try:
            await self.client.close()
        except (discord.DiscordException, OSError) as e:
            logger.warning("Closing %r: %s", self, e)
        if self._runner is not None:
            await asyncio.gather(self._runner, return_exceptions=True)

    async def guilds(self) -> List[GuildSeat]:
        seats = []
        try:
            async for guild in self.client.fetch_guilds(limit=GUILD_LIMIT):
                member = await guild.fetch_member(self.client.user.id)
                seats.append(GuildSeat(guild.id, guild.name, member))
        except discord.DiscordException as e:
            raise PresenceError(f"listing guilds failed: {e}") from e
        return seats

    async def set_nickname(self, seat: GuildSeat, nickname: str) -> None:
        try:
            seat.member = await seat.member.edit(nick=nickname) or seat.member
        except discord.DiscordException as e:
            raise PresenceError(f"nickname in {seat.name} failed: {e}") from e

    async def set_color(self, seat: GuildSeat, increase: bool) -> None:
        """Give the bot the green role on the way up and the red one on the way down."""
        try:
            roles = await seat.member.guild.fetch_roles()
            green = discord.utils.get(roles, name=GREEN_ROLE)
            red = discord.utils.get(roles, name=RED_ROLE)
            add, drop = (green, red) if increase else (red, green)
            if drop is not None:
                await seat.member.remove_roles(drop)
            if add is not None:
                await seat.member.add_roles(add)
        except discord.DiscordException as e:
            raise PresenceError(f"colour roles in {seat.name} failed: {e}") from e

    async def set_activity(self, text: str, watching: bool = True) -> None:
        if watching:
            activity = discord.Activity(type=discord.ActivityType.watching, name=text)
        else:
            activity = discord.Game(name=text)
        try:
            await self.client.change_presence(status=discord.Status.online, activity=activity)
        except (discord.DiscordException, OSError) as e:
            raise PresenceError(f"activity on {self!r} failed: {e}") from e

    async def set_name(self, name: str) -> None:
        try:
            await self.client.user.edit(username=name)
        except discord.DiscordException as e:
            raise PresenceError(f"renaming bot to {name} failed: {e}") from e


# -------------------- Presence targets --------------------
class SingleTarget:
    """Activity goes through the watcher's own (already open) connection."""

    def __init__(self, connection):
        self.connection = connection

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def set_activity(self, text: str, watching: bool = True) -> int:
        try:
            await self.connection.set_activity(text, watching)
        except PresenceError as e:
            logger.error("Unable to set activity: %s", e)
            return 0
        logger.debug("Set activity: %s", text)
        return 1


class ShardManager:
    """One gateway connection per shard, opened and updated together."""

    def __init__(self, token: str, connect=DiscordConnection, count: Optional[int] = None):
        self.token = token
        self.connect = connect
        self.count = count
        self.shards: List[Any] = []

    async def open(self) -> None:
        count = self.count or await asyncio.to_thread(recommended_shards, self.token)
        self.shards = [self.connect(self.token, shard_id=i, shard_count=count) for i in range(count)]
        results = await asyncio.gather(*(s.open() for s in self.shards), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            await self.close()
            raise PresenceError(f"{len(errors)} of {count} shards failed to open: {errors[0]}") from errors[0]
        logger.info("Opened %d shard(s)", count)

    async def close(self) -> None:
        results = await asyncio.gather(*(s.close() for s in self.shards), return_exceptions=True)
        for shard, result in zip(self.shards, results):
            if isinstance(result, BaseException):
                logger.warning("Closing %r: %s", shard, result)

    async def set_activity(self, text: str, watching: bool = True) -> int:
        """Update every shard; returns how many succeeded."""
        results = await asyncio.gather(*(s.set_activity(text, watching) for s in self.shards),
                                       return_exceptions=True)
        ok = 0
        for shard, result in zip(self.shards, results):
            if isinstance(result, BaseException):
                logger.error("Unable to set activity on %r: %s", shard, result)
            else:
                ok += 1
        logger.debug("Set activity on %d/%d shard(s): %s", ok, len(self.shards), text)
        return ok
