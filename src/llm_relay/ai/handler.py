"""Event handler: gates incoming events, calls the endpoint, delivers replies."""

from __future__ import annotations

import asyncio
import contextlib
import random
from typing import AsyncIterator, Optional

from llm_relay.ai.client import InferenceClient, InferenceError, LLMRateLimited
from llm_relay.config import BotConfig
from llm_relay.context.cache import EphemeralConversationCache
from llm_relay.context.names import DisplayNameResolver
from llm_relay.core.session import build_session_id
from llm_relay.core.types import ChannelKind
from llm_relay.log import get_logger
from llm_relay.messenger.base import MessengerAdapter
from llm_relay.messenger.models import ChannelInfo, ChatMessage, OutgoingMessage, ReactionEvent
from llm_relay.policy.response import ResponsePolicy

logger = get_logger(__name__)

TYPING_INTERVAL_SECONDS = 8.0
FALLBACK_REPLY = "Beep boop, something went wrong. Please contact the owner."
THUMBS_UP = "👍"
THUMBS_DOWN = "👎"
RESPONSE_EMOJIS = ("😎", "🧙‍♂️", "🫡", "🔮", "🪄", "🧞", "🦸", "✨", "🤩")


@contextlib.asynccontextmanager
async def typing_indicator(
    adapter: MessengerAdapter,
    channel: ChannelInfo,
    interval: float = TYPING_INTERVAL_SECONDS,
) -> AsyncIterator[None]:
    """Keep the typing indicator alive for the duration of the block.

    The refresher task is cancelled on every exit path, including errors.
    """

    async def _refresh() -> None:
        while True:
            try:
                await adapter.send_typing_indicator(channel)
            except Exception as e:
                logger.warning("typing_indicator_failed", channel_id=channel.id, error=str(e))
            await asyncio.sleep(interval)

    task = asyncio.create_task(_refresh())
    try:
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


class MessageHandler:
    """Drives one platform event end-to-end for a single bot."""

    def __init__(
        self,
        adapter: MessengerAdapter,
        bot_config: BotConfig,
        policy: ResponsePolicy,
        conversations: EphemeralConversationCache,
        names: DisplayNameResolver,
        inference: InferenceClient,
        typing_interval: float = TYPING_INTERVAL_SECONDS,
        rng: random.Random | None = None,
    ):
        self._adapter = adapter
        self._config = bot_config
        self._policy = policy
        self._conversations = conversations
        self._names = names
        self._inference = inference
        self._typing_interval = typing_interval
        self._rng = rng or random.Random()

    async def handle_message(self, message: ChatMessage, channel: ChannelInfo) -> None:
        """Entry point for message-created events. Never raises."""
        try:
            decision = await self._policy.decide(message, channel)
            if not decision.respond:
                logger.debug(
                    "message_ignored",
                    bot_id=self._config.id,
                    channel_id=channel.id,
                    reason=decision.reason,
                )
                return
            await self.respond(message, channel, as_reply=decision.as_reply)
        except InferenceError as e:
            logger.error(
                "inference_failed", bot_id=self._config.id, channel_id=channel.id, error=str(e)
            )
            await self._send_fallback(message)
        except Exception as e:
            logger.exception(
                "message_handling_failed",
                bot_id=self._config.id,
                channel_id=channel.id,
                error=str(e),
            )

    async def respond(self, message: ChatMessage, channel: ChannelInfo, as_reply: bool) -> bool:
        """Fetch context, call the endpoint and deliver the reply.

        Returns True once a reply was handed to the platform. Raises
        InferenceError for upstream failures; a rate limit drops silently.
        """
        if not channel.sendable:
            return False

        user_message = await self._resolve_user_message(message, channel)
        if user_message is None:
            logger.error(
                "user_message_not_found",
                bot_id=self._config.id,
                channel_id=channel.id,
                message_id=message.id,
            )
            return False

        conversation = await self._conversations.get(
            user_message, channel, self._config.message_limit
        )

        async with typing_indicator(self._adapter, channel, self._typing_interval):
            bot_id = self._adapter.bot_user_id
            guild_id = channel.guild_id if channel.kind is not ChannelKind.DM else None
            session_id = build_session_id(
                bot_id=bot_id,
                bot_name=await self._names.resolve(bot_id, guild_id),
                user_id=user_message.author_id,
                channel_id=channel.session_channel_id,
            )
            result = await self._inference.infer(self._config, conversation, session_id)

        if isinstance(result, LLMRateLimited):
            logger.info("reply_dropped_rate_limited", bot_id=self._config.id, channel_id=channel.id)
            return False

        return await self._deliver(user_message, channel, result.reply, as_reply)

    async def _resolve_user_message(
        self, message: ChatMessage, channel: ChannelInfo
    ) -> Optional[ChatMessage]:
        """The message being answered: the trigger itself unless this bot wrote it.

        For a bot-authored trigger, the message it replied to wins over the one
        immediately before it.
        """
        if message.author_id != self._adapter.bot_user_id:
            return message

        if message.reference_id:
            try:
                referenced = await self._adapter.fetch_message(channel, message.reference_id)
            except Exception as e:
                logger.warning(
                    "reference_fetch_failed",
                    bot_id=self._config.id,
                    message_id=message.reference_id,
                    error=str(e),
                )
                referenced = None
            if referenced is not None:
                return referenced

        try:
            preceding = await self._adapter.fetch_history(channel, 1, before_id=message.id)
        except Exception as e:
            logger.warning(
                "preceding_message_fetch_failed", bot_id=self._config.id, error=str(e)
            )
            return None
        return preceding[0] if preceding else None

    async def _deliver(
        self,
        user_message: ChatMessage,
        channel: ChannelInfo,
        reply: OutgoingMessage,
        as_reply: bool,
    ) -> bool:
        try:
            if as_reply:
                await self._adapter.reply(user_message, reply)
            else:
                await self._adapter.send_message(channel, reply)
            return True
        except Exception as e:
            logger.error(
                "reply_delivery_failed",
                bot_id=self._config.id,
                channel_id=channel.id,
                error=str(e),
            )
            await self._send_fallback(user_message)
            return False

    async def _send_fallback(self, target: ChatMessage) -> None:
        try:
            await self._adapter.reply(target, OutgoingMessage(content=FALLBACK_REPLY))
        except Exception as e:
            logger.error(
                "fallback_reply_failed",
                bot_id=self._config.id,
                channel_id=target.channel_id,
                error=str(e),
            )

    async def handle_reaction(self, event: ReactionEvent) -> None:
        """Thumbs up earns a random emoji back; thumbs down regenerates the reply."""
        bot_id = self._adapter.bot_user_id
        if event.user_id == bot_id or event.message.author_id != bot_id:
            return

        if event.emoji == THUMBS_UP:
            if event.bot_has_reacted:
                return
            emoji = self._rng.choice(RESPONSE_EMOJIS)
            try:
                await self._adapter.add_reaction(event.message, emoji)
            except Exception as e:
                logger.error("reaction_add_failed", bot_id=self._config.id, error=str(e))

        elif event.emoji == THUMBS_DOWN:
            logger.info(
                "regenerating_reply", bot_id=self._config.id, message_id=event.message.id
            )
            try:
                if await self.respond(event.message, event.channel, as_reply=True):
                    await self._adapter.delete_message(event.message)
            except Exception as e:
                logger.error("regenerate_failed", bot_id=self._config.id, error=str(e))
