"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class ChannelKind(StrEnum):
    DM = "dm"
    GUILD_TEXT = "guild_text"
    THREAD = "thread"


class MessageKind(StrEnum):
    STANDARD = "standard"
    REPLY = "reply"
    OTHER = "other"


class Permission(StrEnum):
    VIEW_CHANNEL = "view_channel"
    SEND_MESSAGES = "send_messages"
    READ_MESSAGE_HISTORY = "read_message_history"
    SEND_MESSAGES_IN_THREADS = "send_messages_in_threads"


class RespondTo(StrEnum):
    UNSET = "unset"  # mention-only
    NAME = "name"
    DYNAMIC = "dynamic"
