"""Suppression of runaway bot-to-bot reply chains."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from llm_relay.log import get_logger

logger = get_logger(__name__)

LOOP_IDLE_RESET_SECONDS = 600.0
LOOP_CHAIN_THRESHOLD = 3


@dataclass
class BotConversationChain:
    chain_count: int = 0
    last_bot_id: str = ""
    last_activity: float = 0.0


class BotLoopGuard:
    """Counts alternations between distinct bot authors per channel.

    One other bot posting repeatedly never trips the guard; two or more bots
    taking turns do, once ``threshold`` alternations accumulate. Any human
    message clears the channel's chain.
    """

    def __init__(
        self,
        self_id: Callable[[], str],
        idle_reset: float = LOOP_IDLE_RESET_SECONDS,
        threshold: int = LOOP_CHAIN_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._self_id = self_id
        self._idle_reset = idle_reset
        self._threshold = threshold
        self._clock = clock
        self._chains: dict[str, BotConversationChain] = {}

    def chain(self, channel_id: str) -> BotConversationChain | None:
        return self._chains.get(channel_id)

    def should_suppress(self, channel_id: str, author_id: str, is_bot: bool) -> bool:
        if not is_bot:
            self._chains.pop(channel_id, None)
            return False
        if author_id == self._self_id():
            return True

        now = self._clock()
        chain = self._chains.get(channel_id)
        if chain is None:
            chain = BotConversationChain(last_activity=now)
            self._chains[channel_id] = chain
        if now - chain.last_activity > self._idle_reset:
            chain.chain_count = 0
            chain.last_bot_id = ""
        if chain.last_bot_id and chain.last_bot_id != author_id:
            chain.chain_count += 1
        chain.last_bot_id = author_id
        chain.last_activity = now

        if chain.chain_count >= self._threshold:
            logger.info(
                "bot_loop_suppressed",
                channel_id=channel_id,
                author_id=author_id,
                chain_count=chain.chain_count,
            )
            return True
        return False
