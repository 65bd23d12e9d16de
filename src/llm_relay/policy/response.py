"""Decides whether (and how) a bot answers an incoming message."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from llm_relay.config import BotConfig
from llm_relay.context.names import DisplayNameResolver
from llm_relay.core.types import ChannelKind, MessageKind, Permission, RespondTo
from llm_relay.log import get_logger
from llm_relay.messenger.models import ChannelInfo, ChatMessage
from llm_relay.policy.loop_guard import BotLoopGuard

logger = get_logger(__name__)

_RESPONDABLE_KINDS = frozenset({MessageKind.STANDARD, MessageKind.REPLY})
_REQUIRED_PERMISSIONS = frozenset(
    {Permission.VIEW_CHANNEL, Permission.SEND_MESSAGES, Permission.READ_MESSAGE_HISTORY}
)
_REQUIRED_THREAD_PERMISSIONS = _REQUIRED_PERMISSIONS | {Permission.SEND_MESSAGES_IN_THREADS}


@dataclass(frozen=True, slots=True)
class ResponseDecision:
    respond: bool
    as_reply: bool = False
    reason: str = ""


def _ignore(reason: str) -> ResponseDecision:
    return ResponseDecision(respond=False, reason=reason)


class ResponsePolicy:
    """First-match-wins gate between a platform message and the inference call.

    Only the loop guard carries state; the only I/O is resolving the bot's own
    display name when the bot answers to its name.
    """

    def __init__(
        self,
        bot_config: BotConfig,
        self_id: Callable[[], str],
        loop_guard: BotLoopGuard,
        names: DisplayNameResolver,
    ):
        self._config = bot_config
        self._self_id = self_id
        self._loop_guard = loop_guard
        self._names = names

    async def decide(self, message: ChatMessage, channel: ChannelInfo) -> ResponseDecision:
        self_id = self._self_id()
        if message.kind not in _RESPONDABLE_KINDS:
            return _ignore("message_kind")

        if self._loop_guard.should_suppress(channel.id, message.author_id, message.author_is_bot):
            return _ignore("loop_guard")

        if channel.kind is not ChannelKind.DM and not self._has_permissions(channel):
            return _ignore("permissions")

        mentioned = self_id in message.mentions.users
        if not message.mentions.is_empty() and not mentioned:
            return _ignore("mentions_others")

        # DMs and threads always reply; RESPOND_AS_REPLY only matters in guild text channels
        as_reply = (
            mentioned
            or channel.kind in (ChannelKind.DM, ChannelKind.THREAD)
            or (self._config.respond_as_reply and channel.kind is ChannelKind.GUILD_TEXT)
        )

        if channel.kind is ChannelKind.THREAD:
            # Never join a thread on our own
            if not channel.bot_is_member:
                return _ignore("not_thread_member")
            return ResponseDecision(respond=True, as_reply=as_reply, reason="thread")

        if self._config.respond_to is RespondTo.DYNAMIC:
            return ResponseDecision(respond=True, as_reply=as_reply, reason="dynamic")

        if channel.kind is ChannelKind.DM:
            return ResponseDecision(respond=True, as_reply=as_reply, reason="direct_message")

        if mentioned:
            return ResponseDecision(respond=True, as_reply=as_reply, reason="mentioned")

        if self._config.respond_to is RespondTo.NAME and await self._name_referenced(
            message, channel
        ):
            return ResponseDecision(respond=True, as_reply=as_reply, reason="name")

        return _ignore("not_addressed")

    def _has_permissions(self, channel: ChannelInfo) -> bool:
        if channel.bot_permissions is None:
            return False
        required = (
            _REQUIRED_THREAD_PERMISSIONS
            if channel.kind is ChannelKind.THREAD
            else _REQUIRED_PERMISSIONS
        )
        return required <= channel.bot_permissions

    async def _name_referenced(self, message: ChatMessage, channel: ChannelInfo) -> bool:
        guild_id = channel.guild_id if channel.kind is not ChannelKind.DM else None
        try:
            display_name = await self._names.resolve(self._self_id(), guild_id)
        except Exception as e:
            logger.warning("bot_name_unresolved", bot_id=self._config.id, error=str(e))
            return False
        display_name = display_name.strip().lower()
        return bool(display_name) and display_name in message.content.lower()
