"""Platform-neutral message models produced at the adapter boundary."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from llm_relay.core.types import ChannelKind, MessageKind, Permission


@dataclass(frozen=True, slots=True)
class MentionSet:
    users: frozenset[str] = frozenset()
    roles: frozenset[str] = frozenset()
    channels: frozenset[str] = frozenset()
    everyone: bool = False

    def is_empty(self) -> bool:
        return not (self.users or self.roles or self.channels or self.everyone)


@dataclass(frozen=True, slots=True)
class Embed:
    title: Optional[str] = None
    description: Optional[str] = None

    def flatten(self) -> str:
        return " ".join(part for part in (self.title, self.description) if part)


@dataclass(frozen=True, slots=True)
class ChatMessage:
    id: str
    channel_id: str
    author_id: str
    author_name: str
    content: str
    created_at: datetime
    author_is_bot: bool = False
    guild_id: Optional[str] = None
    kind: MessageKind = MessageKind.STANDARD
    embeds: tuple[Embed, ...] = ()
    mentions: MentionSet = field(default_factory=MentionSet)
    reference_id: Optional[str] = None  # id of the message this one replies to


@dataclass(frozen=True, slots=True)
class ChannelInfo:
    id: str
    kind: ChannelKind
    guild_id: Optional[str] = None
    parent_id: Optional[str] = None  # threads only
    topic: Optional[str] = None
    # None when the platform could not report permissions for the bot
    bot_permissions: Optional[frozenset[Permission]] = None
    bot_is_member: bool = True  # thread membership; always True elsewhere
    sendable: bool = True

    @property
    def session_channel_id(self) -> str:
        """Channel id used for session identity: threads fold into their parent."""
        if self.kind is ChannelKind.THREAD and self.parent_id:
            return self.parent_id
        return self.id


@dataclass(frozen=True, slots=True)
class UserProfile:
    id: str
    username: str
    global_name: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ReactionEvent:
    message: ChatMessage
    channel: ChannelInfo
    emoji: str
    user_id: str
    bot_has_reacted: bool = False


@dataclass(frozen=True, slots=True)
class Attachment:
    """A file the endpoint wants posted with the reply, fetched by URL at send time."""

    url: str
    filename: Optional[str] = None

    @classmethod
    def from_payload(cls, item: Any) -> Optional[Attachment]:
        """Accept a bare URL or ``{"url"|"attachment": ..., "filename"|"name": ...}``."""
        if isinstance(item, str):
            return cls(url=item) if item else None
        if isinstance(item, dict):
            url = item.get("url") or item.get("attachment")
            if isinstance(url, str) and url:
                name = item.get("filename") or item.get("name")
                return cls(url=url, filename=str(name) if name else None)
        return None


_ATTACHMENT_KEYS = ("files", "attachments")


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    """A reply payload: plain content, or rich content passed through from the endpoint."""

    content: Optional[str] = None
    embeds: tuple[dict[str, Any], ...] = ()
    attachments: tuple[Attachment, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict)  # any other payload keys, untouched

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> OutgoingMessage:
        handled = ("content", "embeds", *_ATTACHMENT_KEYS)
        rest = {k: v for k, v in payload.items() if k not in handled}
        content = payload.get("content")
        embeds = payload.get("embeds") or ()
        if isinstance(embeds, dict):
            embeds = (embeds,)

        attachments: list[Attachment] = []
        for key in _ATTACHMENT_KEYS:
            items = payload.get(key) or ()
            if isinstance(items, (str, dict)):
                items = (items,)
            for item in items:
                attachment = Attachment.from_payload(item)
                if attachment is not None:
                    attachments.append(attachment)

        return cls(
            content=content if content is None else str(content),
            embeds=tuple(embeds),
            attachments=tuple(attachments),
            extra=rest,
        )

