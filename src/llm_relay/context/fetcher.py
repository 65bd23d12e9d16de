"""Fetch and format the most recent messages of a channel as LLM context."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from llm_relay.context.names import DisplayNameResolver
from llm_relay.core.types import ChannelKind
from llm_relay.log import get_logger
from llm_relay.messenger.base import MessengerAdapter
from llm_relay.messenger.models import ChannelInfo, ChatMessage

logger = get_logger(__name__)

MENTION_PATTERN = re.compile(r"<@!?(\d+)>")
TOPIC_USERNAME = "Channel Topic"


@dataclass(frozen=True, slots=True)
class ConversationMessage:
    username: str
    text: str
    timestamp: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"username": self.username, "text": self.text}
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        return data


def isoformat(moment: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def replace_mentions(text: str, names: Mapping[str, str]) -> str:
    """Rewrite ``<@id>`` tokens to display names; unknown ids stay verbatim."""
    return MENTION_PATTERN.sub(lambda m: names.get(m.group(1), m.group(0)), text)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationFetcher:
    """Builds the oldest-first conversation for a triggering message. Never caches."""

    def __init__(
        self,
        adapter: MessengerAdapter,
        names: DisplayNameResolver,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._adapter = adapter
        self._names = names
        self._now = now

    async def fetch(
        self, message: ChatMessage, channel: ChannelInfo, limit: int
    ) -> list[ConversationMessage]:
        history: list[ChatMessage] = []
        if limit > 0:
            fetched = await self._adapter.fetch_history(channel, limit, before_id=message.id)
            history = sorted(fetched, key=lambda m: m.created_at)

        if message.author_id != self._adapter.bot_user_id and all(
            m.id != message.id for m in history
        ):
            history.append(message)

        guild_id = channel.guild_id if channel.kind is not ChannelKind.DM else None
        names = await self._resolve_authors(history, guild_id)

        conversation = [
            ConversationMessage(
                username=names.get(m.author_id, m.author_name),
                text=self._render_text(m, names),
                timestamp=isoformat(m.created_at),
            )
            for m in history
        ]

        if channel.topic:
            conversation.insert(
                0,
                ConversationMessage(
                    username=TOPIC_USERNAME,
                    text=channel.topic,
                    timestamp=isoformat(self._now()),
                ),
            )

        return conversation

    async def _resolve_authors(
        self, messages: list[ChatMessage], guild_id: Optional[str]
    ) -> dict[str, str]:
        author_ids = list(dict.fromkeys(m.author_id for m in messages))
        results = await asyncio.gather(
            *(self._names.resolve(user_id, guild_id) for user_id in author_ids),
            return_exceptions=True,
        )
        names: dict[str, str] = {}
        for user_id, result in zip(author_ids, results):
            if isinstance(result, Exception):
                logger.warning("author_name_unresolved", user_id=user_id, error=str(result))
                continue
            names[user_id] = result
        return names

    @staticmethod
    def _render_text(message: ChatMessage, names: Mapping[str, str]) -> str:
        text = replace_mentions(message.content, names)
        if message.embeds:
            text += " " + " ".join(embed.flatten() for embed in message.embeds)
        return text
