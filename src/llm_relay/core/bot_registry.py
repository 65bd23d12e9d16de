"""Registry of the bots that are currently connected."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from llm_relay.app import BotRuntime
    from llm_relay.messenger.base import MessengerAdapter


class BotRegistry:
    """Started bot runtimes keyed by bot id, in start order."""

    def __init__(self) -> None:
        self._runtimes: dict[str, BotRuntime] = {}

    def register(self, runtime: BotRuntime) -> None:
        bot_id = runtime.config.id
        if bot_id in self._runtimes:
            raise ValueError(f"Bot '{bot_id}' is already registered")
        self._runtimes[bot_id] = runtime

    def get(self, bot_id: str) -> BotRuntime | None:
        return self._runtimes.get(bot_id)

    def adapter(self, bot_id: str) -> MessengerAdapter | None:
        runtime = self._runtimes.get(bot_id)
        return runtime.adapter if runtime else None

    def adapters(self) -> list[MessengerAdapter]:
        return [runtime.adapter for runtime in self._runtimes.values()]

    def ids(self) -> list[str]:
        return list(self._runtimes)

    def clear(self) -> None:
        self._runtimes.clear()

    def __contains__(self, bot_id: object) -> bool:
        return bot_id in self._runtimes

    def __len__(self) -> int:
        return len(self._runtimes)
