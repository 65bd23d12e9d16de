"""Display-name resolution with a time-bounded cache."""

from __future__ import annotations

import time
from typing import Callable, Optional

from llm_relay.core.ttl_cache import DEFAULT_PRUNE_THRESHOLD, TimedCache
from llm_relay.log import get_logger
from llm_relay.messenger.base import MessengerAdapter

logger = get_logger(__name__)

DISPLAY_NAME_CACHE_SECONDS = 60 * 60


class DisplayNameResolver:
    """Resolves user ids to human-readable names, preferring guild nicknames.

    Results are cached per ``guild_id:user_id`` (or bare ``user_id`` outside a
    guild) for an hour. Lookup failures degrade to the global name and are not
    cached.
    """

    def __init__(
        self,
        adapter: MessengerAdapter,
        ttl: float = DISPLAY_NAME_CACHE_SECONDS,
        prune_threshold: int = DEFAULT_PRUNE_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._adapter = adapter
        self._cache: TimedCache[str] = TimedCache(ttl, prune_threshold, clock)

    @property
    def cache(self) -> TimedCache[str]:
        return self._cache

    async def resolve(self, user_id: str, guild_id: Optional[str] = None) -> str:
        cache_key = f"{guild_id}:{user_id}" if guild_id else user_id
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        fetched_at = self._cache.now()
        try:
            user = await self._adapter.fetch_user(user_id)
            if guild_id:
                nickname = await self._adapter.fetch_nickname(guild_id, user_id)
                display_name = nickname or user.global_name or user.username
            else:
                display_name = user.global_name or user.username
        except Exception as e:
            logger.warning(
                "display_name_lookup_failed",
                bot_id=self._adapter.bot_id,
                user_id=user_id,
                guild_id=guild_id,
                error=str(e),
            )
            # Last attempt: the bare global user; errors here propagate
            user = await self._adapter.fetch_user(user_id)
            return user.global_name or user.username

        self._cache.put(cache_key, display_name, stored_at=fetched_at)
        return display_name
