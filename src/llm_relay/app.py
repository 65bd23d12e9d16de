"""Application orchestrator - wires one runtime per bot and manages lifecycle."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

from llm_relay.ai.client import InferenceClient
from llm_relay.ai.handler import MessageHandler
from llm_relay.config import AppConfig, BotConfig, RuntimeConfig
from llm_relay.context.cache import EphemeralConversationCache
from llm_relay.context.fetcher import ConversationFetcher
from llm_relay.context.names import DisplayNameResolver
from llm_relay.core.bot_registry import BotRegistry
from llm_relay.log import get_logger
from llm_relay.messenger.base import MessengerAdapter
from llm_relay.policy.loop_guard import BotLoopGuard
from llm_relay.policy.response import ResponsePolicy

logger = get_logger(__name__)

AdapterFactory = Callable[[BotConfig, RuntimeConfig], MessengerAdapter]


class NoBotsError(RuntimeError):
    """No bot could be configured or started."""


@dataclass
class BotRuntime:
    """Everything one bot owns: its connection plus its private caches and guard."""

    config: BotConfig
    adapter: MessengerAdapter
    names: DisplayNameResolver
    conversations: EphemeralConversationCache
    loop_guard: BotLoopGuard
    policy: ResponsePolicy
    handler: MessageHandler


def _discord_adapter(bot_cfg: BotConfig, runtime: RuntimeConfig) -> MessengerAdapter:
    from llm_relay.messenger.discord_adapter import DiscordAdapter

    return DiscordAdapter(
        bot_cfg.id,
        bot_cfg.platform_token,
        ready_timeout=runtime.ready_timeout_seconds,
        download_timeout=runtime.http_timeout_seconds,
    )


def build_runtime(
    bot_cfg: BotConfig,
    adapter: MessengerAdapter,
    inference: InferenceClient,
    runtime: RuntimeConfig,
) -> BotRuntime:
    """Wire a bot's pipeline around its adapter and register the event callbacks."""

    def self_id() -> str:
        return adapter.bot_user_id

    names = DisplayNameResolver(
        adapter,
        ttl=runtime.display_name_cache_seconds,
        prune_threshold=runtime.cache_prune_threshold,
    )
    conversations = EphemeralConversationCache(
        ConversationFetcher(adapter, names),
        ttl=runtime.conversation_cache_seconds,
        prune_threshold=runtime.cache_prune_threshold,
    )
    loop_guard = BotLoopGuard(
        self_id,
        idle_reset=runtime.loop_idle_reset_seconds,
        threshold=runtime.loop_chain_threshold,
    )
    policy = ResponsePolicy(bot_cfg, self_id, loop_guard, names)
    handler = MessageHandler(
        adapter=adapter,
        bot_config=bot_cfg,
        policy=policy,
        conversations=conversations,
        names=names,
        inference=inference,
        typing_interval=runtime.typing_interval_seconds,
    )
    adapter.on_message(handler.handle_message)
    adapter.on_reaction(handler.handle_reaction)
    return BotRuntime(
        config=bot_cfg,
        adapter=adapter,
        names=names,
        conversations=conversations,
        loop_guard=loop_guard,
        policy=policy,
        handler=handler,
    )


class RelayApp:
    """Top-level application orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        adapter_factory: AdapterFactory = _discord_adapter,
        inference: InferenceClient | None = None,
    ):
        self.config = config
        self.inference = inference or InferenceClient(timeout=config.runtime.http_timeout_seconds)
        self.bot_registry = BotRegistry()
        self._adapter_factory = adapter_factory

    async def start(self) -> None:
        """Start every configured bot concurrently.

        A bot that fails to log in is logged and left out. Raises NoBotsError
        when nothing is configured or nothing started.
        """
        if not self.config.bots:
            raise NoBotsError("No valid bot configurations found in environment variables")

        logger.info("initializing_bots", bot_count=len(self.config.bots))
        results = await asyncio.gather(
            *(self._start_bot(bot_cfg) for bot_cfg in self.config.bots),
            return_exceptions=True,
        )
        for bot_cfg, result in zip(self.config.bots, results):
            if isinstance(result, BaseException):
                logger.error("bot_start_failed", bot_id=bot_cfg.id, error=str(result))
                continue
            self.bot_registry.register(result)
            logger.info("bot_started", bot_id=bot_cfg.id, platform=result.adapter.platform_name)

        if not self.bot_registry:
            raise NoBotsError("No bot could be started")
        logger.info("llm_relay_started", bot_count=len(self.bot_registry))

    async def _start_bot(self, bot_cfg: BotConfig) -> BotRuntime:
        adapter = self._adapter_factory(bot_cfg, self.config.runtime)
        runtime = build_runtime(bot_cfg, adapter, self.inference, self.config.runtime)
        try:
            await adapter.start()
        except Exception:
            # Release whatever the half-started connection holds
            try:
                await adapter.stop()
            except Exception as e:
                logger.warning("bot_cleanup_failed", bot_id=bot_cfg.id, error=str(e))
            raise
        return runtime

    async def stop(self) -> None:
        """Disconnect every active bot (best effort) and release the HTTP client."""
        logger.info("shutting_down_bots", bot_count=len(self.bot_registry))
        results = await asyncio.gather(
            *(adapter.stop() for adapter in self.bot_registry.adapters()),
            return_exceptions=True,
        )
        for bot_id, result in zip(self.bot_registry.ids(), results):
            if isinstance(result, Exception):
                logger.error("bot_stop_error", bot_id=bot_id, error=str(result))
        self.bot_registry.clear()
        await self.inference.close()
        logger.info("llm_relay_stopped")
