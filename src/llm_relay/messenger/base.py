"""Abstract messenger adapter interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from llm_relay.messenger.models import (
    ChannelInfo,
    ChatMessage,
    OutgoingMessage,
    ReactionEvent,
    UserProfile,
)

MessageCallback = Callable[[ChatMessage, ChannelInfo], Awaitable[None]]
ReactionCallback = Callable[[ReactionEvent], Awaitable[None]]


class MessengerAdapter(ABC):
    """Platform capabilities the relay pipeline consumes.

    Implementations translate platform objects into the neutral models in
    ``llm_relay.messenger.models`` and back. Every method that talks to the
    platform may raise; callers decide how to recover.
    """

    def __init__(self, bot_id: str, token: str):
        self.bot_id = bot_id
        self.token = token
        self._message_callback: MessageCallback | None = None
        self._reaction_callback: ReactionCallback | None = None

    @abstractmethod
    async def start(self) -> None:
        """Log in and begin receiving events."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Gracefully disconnect."""
        ...

    @property
    @abstractmethod
    def platform_name(self) -> str:
        ...

    @property
    @abstractmethod
    def bot_user_id(self) -> str:
        """Platform user id of the logged-in bot account."""
        ...

    @abstractmethod
    async def fetch_history(
        self, channel: ChannelInfo, limit: int, before_id: Optional[str] = None
    ) -> list[ChatMessage]:
        """Fetch up to ``limit`` messages strictly before ``before_id`` (any order)."""
        ...

    @abstractmethod
    async def fetch_message(self, channel: ChannelInfo, message_id: str) -> Optional[ChatMessage]:
        """Fetch one message by id, or None if it no longer exists."""
        ...

    @abstractmethod
    async def fetch_user(self, user_id: str) -> UserProfile:
        ...

    @abstractmethod
    async def fetch_nickname(self, guild_id: str, user_id: str) -> Optional[str]:
        """Return the member's guild-specific nickname, if any."""
        ...

    @abstractmethod
    async def send_message(self, channel: ChannelInfo, message: OutgoingMessage) -> None:
        ...

    @abstractmethod
    async def reply(self, target: ChatMessage, message: OutgoingMessage) -> None:
        """Send ``message`` as a threaded/quoted reply to ``target``."""
        ...

    @abstractmethod
    async def send_typing_indicator(self, channel: ChannelInfo) -> None:
        """Show the typing indicator once; callers refresh it."""
        ...

    @abstractmethod
    async def add_reaction(self, target: ChatMessage, emoji: str) -> None:
        ...

    @abstractmethod
    async def delete_message(self, target: ChatMessage) -> None:
        ...

    def on_message(self, callback: MessageCallback) -> None:
        """Register the callback invoked for every incoming message."""
        self._message_callback = callback

    def on_reaction(self, callback: ReactionCallback) -> None:
        """Register the callback invoked for every added reaction."""
        self._reaction_callback = callback
