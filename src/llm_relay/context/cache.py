"""Short-lived per-channel memoization of fetched conversations."""

from __future__ import annotations

import time
from typing import Callable

from llm_relay.context.fetcher import ConversationFetcher, ConversationMessage
from llm_relay.core.ttl_cache import DEFAULT_PRUNE_THRESHOLD, TimedCache
from llm_relay.log import get_logger
from llm_relay.messenger.models import ChannelInfo, ChatMessage

logger = get_logger(__name__)

CONVERSATION_CACHE_SECONDS = 5.0


class EphemeralConversationCache:
    """Absorbs bursts of events in one channel without refetching history.

    Keyed by channel id only: a second caller in the same channel within the
    TTL gets the stored conversation even if it asked for a different limit.
    """

    def __init__(
        self,
        fetcher: ConversationFetcher,
        ttl: float = CONVERSATION_CACHE_SECONDS,
        prune_threshold: int = DEFAULT_PRUNE_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._cache: TimedCache[list[ConversationMessage]] = TimedCache(
            ttl, prune_threshold, clock
        )

    @property
    def cache(self) -> TimedCache[list[ConversationMessage]]:
        return self._cache

    async def get(
        self,
        message: ChatMessage,
        channel: ChannelInfo,
        limit: int,
        ttl: float | None = None,
    ) -> list[ConversationMessage]:
        ttl = self._cache.ttl if ttl is None else ttl
        cached = self._cache.get(channel.id, ttl=ttl)
        if cached is not None:
            logger.debug("conversation_cache_hit", channel_id=channel.id)
            return cached

        fetched_at = self._cache.now()
        messages = await self._fetcher.fetch(message, channel, limit)
        self._cache.put(channel.id, messages, stored_at=fetched_at)
        return messages
