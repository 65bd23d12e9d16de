"""In-memory platform fakes and message factories shared by the tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from llm_relay.config import BotConfig
from llm_relay.core.types import ChannelKind, MessageKind, Permission
from llm_relay.messenger.base import MessengerAdapter
from llm_relay.messenger.models import (
    ChannelInfo,
    ChatMessage,
    Embed,
    MentionSet,
    OutgoingMessage,
    UserProfile,
)

BOT_USER_ID = "1000"
GUILD_ID = "500"
BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

ALL_PERMISSIONS = frozenset(Permission)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter(MessengerAdapter):
    """In-memory platform that records every side effect."""

    def __init__(self, bot_id: str = "alpha", user_id: str = BOT_USER_ID):
        super().__init__(bot_id, "token")
        self.user_id = user_id
        self.users: dict[str, UserProfile] = {}
        self.nicknames: dict[tuple[str, str], Optional[str]] = {}
        self.history: dict[str, list[ChatMessage]] = {}
        self.failing_users: set[str] = set()
        self.failing_nicknames: set[str] = set()
        self.fail_send = False
        self.fail_reply = False
        self.history_calls: list[tuple[str, int, Optional[str]]] = []
        self.user_calls: list[str] = []
        self.sent: list[tuple[str, OutgoingMessage]] = []
        self.replies: list[tuple[str, OutgoingMessage]] = []
        self.reactions: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.typing_pings = 0
        self.started = False
        self.stopped = False

    @property
    def platform_name(self) -> str:
        return "fake"

    @property
    def bot_user_id(self) -> str:
        return self.user_id

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    def add_user(self, user_id: str, username: str, global_name: Optional[str] = None) -> None:
        self.users[user_id] = UserProfile(id=user_id, username=username, global_name=global_name)

    async def fetch_history(
        self, channel: ChannelInfo, limit: int, before_id: Optional[str] = None
    ) -> list[ChatMessage]:
        self.history_calls.append((channel.id, limit, before_id))
        messages = self.history.get(channel.id, [])
        if before_id is not None:
            ids = [m.id for m in messages]
            if before_id in ids:
                messages = messages[: ids.index(before_id)]
        # Newest first, like the real API
        return list(reversed(messages[-limit:])) if limit else []

    async def fetch_message(self, channel: ChannelInfo, message_id: str) -> Optional[ChatMessage]:
        for message in self.history.get(channel.id, []):
            if message.id == message_id:
                return message
        return None

    async def fetch_user(self, user_id: str) -> UserProfile:
        self.user_calls.append(user_id)
        if user_id in self.failing_users or user_id not in self.users:
            raise LookupError(f"unknown user {user_id}")
        return self.users[user_id]

    async def fetch_nickname(self, guild_id: str, user_id: str) -> Optional[str]:
        if user_id in self.failing_nicknames:
            raise LookupError(f"member {user_id} not in guild {guild_id}")
        return self.nicknames.get((guild_id, user_id))

    async def send_message(self, channel: ChannelInfo, message: OutgoingMessage) -> None:
        if self.fail_send:
            raise ConnectionError("send failed")
        self.sent.append((channel.id, message))

    async def reply(self, target: ChatMessage, message: OutgoingMessage) -> None:
        if self.fail_reply:
            raise ConnectionError("reply failed")
        self.replies.append((target.id, message))

    async def send_typing_indicator(self, channel: ChannelInfo) -> None:
        self.typing_pings += 1

    async def add_reaction(self, target: ChatMessage, emoji: str) -> None:
        self.reactions.append((target.id, emoji))

    async def delete_message(self, target: ChatMessage) -> None:
        self.deleted.append(target.id)


def make_message(
    message_id: str = "9000",
    content: str = "hello",
    author_id: str = "2000",
    author_name: str = "alice",
    channel_id: str = "300",
    guild_id: Optional[str] = GUILD_ID,
    author_is_bot: bool = False,
    kind: MessageKind = MessageKind.STANDARD,
    mentions: MentionSet | None = None,
    embeds: tuple[Embed, ...] = (),
    reference_id: Optional[str] = None,
    minutes: int = 0,
) -> ChatMessage:
    return ChatMessage(
        id=message_id,
        channel_id=channel_id,
        author_id=author_id,
        author_name=author_name,
        content=content,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        author_is_bot=author_is_bot,
        guild_id=guild_id,
        kind=kind,
        embeds=embeds,
        mentions=mentions or MentionSet(),
        reference_id=reference_id,
    )


def make_channel(
    kind: ChannelKind = ChannelKind.GUILD_TEXT,
    channel_id: str = "300",
    topic: Optional[str] = None,
    permissions: Optional[frozenset[Permission]] = ALL_PERMISSIONS,
    bot_is_member: bool = True,
    parent_id: Optional[str] = None,
    sendable: bool = True,
) -> ChannelInfo:
    is_dm = kind is ChannelKind.DM
    return ChannelInfo(
        id=channel_id,
        kind=kind,
        guild_id=None if is_dm else GUILD_ID,
        parent_id=parent_id,
        topic=topic,
        bot_permissions=None if is_dm else permissions,
        bot_is_member=bot_is_member,
        sendable=sendable,
    )


def make_bot_config(**overrides) -> BotConfig:
    data = {
        "id": "alpha",
        "platform_token": "token",
        "infer_url": "https://llm.example.com/infer",
        "api_key": "secret",
    }
    data.update(overrides)
    return BotConfig(**data)
