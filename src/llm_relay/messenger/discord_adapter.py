"""Discord messenger adapter using discord.py v2+."""

from __future__ import annotations

import asyncio
import io
from typing import Any, Optional, Sequence
from urllib.parse import unquote, urlparse

import discord
import httpx

from llm_relay.core.types import ChannelKind, MessageKind, Permission
from llm_relay.log import get_logger
from llm_relay.messenger.base import MessengerAdapter
from llm_relay.messenger.models import (
    Attachment,
    ChannelInfo,
    ChatMessage,
    Embed,
    MentionSet,
    OutgoingMessage,
    ReactionEvent,
    UserProfile,
)

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 2000
MAX_ATTACHMENTS = 10

_DM_TYPES = frozenset({discord.ChannelType.private, discord.ChannelType.group})
_THREAD_TYPES = frozenset(
    {
        discord.ChannelType.public_thread,
        discord.ChannelType.private_thread,
        discord.ChannelType.news_thread,
    }
)
_MESSAGE_KINDS = {
    discord.MessageType.default: MessageKind.STANDARD,
    discord.MessageType.reply: MessageKind.REPLY,
}


def classify_channel(channel: Any) -> ChannelKind:
    """Map a discord.py channel onto the closed set of channel kinds."""
    channel_type = getattr(channel, "type", None)
    if channel_type in _DM_TYPES:
        return ChannelKind.DM
    if channel_type in _THREAD_TYPES:
        return ChannelKind.THREAD
    return ChannelKind.GUILD_TEXT


def bot_permissions(channel: Any) -> Optional[frozenset[Permission]]:
    """Permissions the bot's guild member holds in ``channel`` (None outside guilds)."""
    guild = getattr(channel, "guild", None)
    me = getattr(guild, "me", None) if guild is not None else None
    if me is None:
        return None
    perms = channel.permissions_for(me)
    return frozenset(p for p in Permission if getattr(perms, p.value, False))


def describe_channel(channel: Any) -> ChannelInfo:
    kind = classify_channel(channel)
    guild = getattr(channel, "guild", None)
    parent_id = getattr(channel, "parent_id", None) if kind is ChannelKind.THREAD else None
    return ChannelInfo(
        id=str(channel.id),
        kind=kind,
        guild_id=str(guild.id) if guild is not None else None,
        parent_id=str(parent_id) if parent_id else None,
        topic=getattr(channel, "topic", None) or None,
        bot_permissions=None if kind is ChannelKind.DM else bot_permissions(channel),
        bot_is_member=kind is not ChannelKind.THREAD or getattr(channel, "me", None) is not None,
        sendable=hasattr(channel, "send"),
    )


def to_chat_message(message: Any) -> ChatMessage:
    guild = getattr(message, "guild", None)
    user_mentions = {str(u.id) for u in message.mentions}
    user_mentions.update(str(uid) for uid in message.raw_mentions)
    reference = message.reference
    return ChatMessage(
        id=str(message.id),
        channel_id=str(message.channel.id),
        author_id=str(message.author.id),
        author_name=message.author.name,
        author_is_bot=bool(message.author.bot),
        content=message.content or "",
        created_at=message.created_at,
        guild_id=str(guild.id) if guild is not None else None,
        kind=_MESSAGE_KINDS.get(message.type, MessageKind.OTHER),
        embeds=tuple(Embed(title=e.title, description=e.description) for e in message.embeds),
        mentions=MentionSet(
            users=frozenset(user_mentions),
            roles=frozenset(str(rid) for rid in message.raw_role_mentions),
            channels=frozenset(str(cid) for cid in message.raw_channel_mentions),
            everyone=bool(message.mention_everyone),
        ),
        reference_id=(
            str(reference.message_id) if reference is not None and reference.message_id else None
        ),
    )


def _split_content(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split text into chunks that fit within Discord's message limit."""
    if len(text) <= max_length:
        return [text]

    chunks = []
    while text:
        if len(text) <= max_length:
            chunks.append(text)
            break
        split_pos = text.rfind("\n", 0, max_length)
        if split_pos <= 0:
            split_pos = max_length
        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip("\n")
    return chunks


def _attachment_filename(attachment: Attachment, index: int) -> str:
    if attachment.filename:
        return attachment.filename
    name = unquote(urlparse(attachment.url).path.rsplit("/", 1)[-1])
    return name or f"attachment-{index + 1}"


async def download_attachments(
    http: httpx.AsyncClient, attachments: Sequence[Attachment]
) -> list[discord.File]:
    """Fetch each attachment URL into an in-memory ``discord.File``. HTTP errors propagate."""
    files = []
    for index, attachment in enumerate(attachments):
        response = await http.get(attachment.url)
        response.raise_for_status()
        files.append(
            discord.File(
                io.BytesIO(response.content), filename=_attachment_filename(attachment, index)
            )
        )
    return files


class DiscordAdapter(MessengerAdapter):
    """Discord bot adapter using discord.py."""

    def __init__(
        self,
        bot_id: str,
        token: str,
        ready_timeout: float = 30.0,
        download_timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(bot_id, token)
        intents = discord.Intents.default()
        intents.message_content = True
        intents.guild_messages = True
        intents.dm_messages = True
        intents.guild_reactions = True
        intents.dm_reactions = True
        # Replies must never ping anyone
        self._client = discord.Client(
            intents=intents, allowed_mentions=discord.AllowedMentions.none()
        )
        self._ready_timeout = ready_timeout
        self._task: asyncio.Task[Any] | None = None
        self._ready = asyncio.Event()
        # Fetches reply attachments by URL
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=download_timeout, follow_redirects=True
        )

        @self._client.event
        async def on_ready() -> None:
            logger.info("discord_bot_ready", user=str(self._client.user), bot_id=self.bot_id)
            self._ready.set()

        @self._client.event
        async def on_message(message: discord.Message) -> None:
            await self._on_discord_message(message)

        @self._client.event
        async def on_raw_reaction_add(payload: discord.RawReactionActionEvent) -> None:
            await self._on_discord_reaction(payload)

        @self._client.event
        async def on_error(event: str, *args: Any, **kwargs: Any) -> None:
            logger.exception("discord_gateway_error", bot_id=self.bot_id, discord_event=event)

    @property
    def platform_name(self) -> str:
        return "discord"

    @property
    def bot_user_id(self) -> str:
        if self._client.user is None:
            raise RuntimeError(f"Discord bot '{self.bot_id}' is not logged in")
        return str(self._client.user.id)

    async def start(self) -> None:
        if not self.token:
            raise ValueError(f"Discord bot token not configured for bot '{self.bot_id}'")

        # login() raises discord.LoginFailure on a bad token before any task is spawned
        await self._client.login(self.token)
        self._task = asyncio.create_task(self._client.connect())
        ready = asyncio.create_task(self._ready.wait())
        done, _ = await asyncio.wait(
            {ready, self._task},
            timeout=self._ready_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if ready not in done:
            ready.cancel()
        if self._task in done:
            # The gateway connection ended before READY (e.g. PrivilegedIntentsRequired)
            error = self._task.exception()
            raise error or ConnectionError(
                f"Discord gateway closed before bot '{self.bot_id}' became ready"
            )
        if not done:
            logger.warning("discord_ready_timeout", bot_id=self.bot_id)

        logger.info("discord_adapter_started", bot_id=self.bot_id)

    async def stop(self) -> None:
        await self._client.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("discord_connect_task_error", bot_id=self.bot_id, error=str(e))
        if self._owns_http:
            await self._http.aclose()
        logger.info("discord_adapter_stopped", bot_id=self.bot_id)

    async def _resolve_channel(self, channel_id: str) -> Any:
        channel = self._client.get_channel(int(channel_id))
        if channel is None:
            channel = await self._client.fetch_channel(int(channel_id))
        return channel

    async def fetch_history(
        self, channel: ChannelInfo, limit: int, before_id: Optional[str] = None
    ) -> list[ChatMessage]:
        target = await self._resolve_channel(channel.id)
        before = discord.Object(id=int(before_id)) if before_id else None
        return [to_chat_message(m) async for m in target.history(limit=limit, before=before)]

    async def fetch_message(self, channel: ChannelInfo, message_id: str) -> Optional[ChatMessage]:
        target = await self._resolve_channel(channel.id)
        try:
            message = await target.fetch_message(int(message_id))
        except discord.NotFound:
            return None
        return to_chat_message(message)

    async def fetch_user(self, user_id: str) -> UserProfile:
        user = self._client.get_user(int(user_id))
        if user is None:
            user = await self._client.fetch_user(int(user_id))
        return UserProfile(id=str(user.id), username=user.name, global_name=user.global_name)

    async def fetch_nickname(self, guild_id: str, user_id: str) -> Optional[str]:
        guild = self._client.get_guild(int(guild_id))
        if guild is None:
            guild = await self._client.fetch_guild(int(guild_id))
        member = guild.get_member(int(user_id))
        if member is None:
            member = await guild.fetch_member(int(user_id))
        return member.nick

    async def _send_kwargs(self, message: OutgoingMessage) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if message.embeds:
            kwargs["embeds"] = [discord.Embed.from_dict(e) for e in message.embeds]
        if message.attachments:
            attachments = message.attachments
            if len(attachments) > MAX_ATTACHMENTS:
                logger.warning(
                    "reply_attachments_truncated", bot_id=self.bot_id, count=len(attachments)
                )
                attachments = attachments[:MAX_ATTACHMENTS]
            kwargs["files"] = await download_attachments(self._http, attachments)
        if message.extra.get("tts"):
            kwargs["tts"] = True
        return kwargs

    async def send_message(self, channel: ChannelInfo, message: OutgoingMessage) -> None:
        target = await self._resolve_channel(channel.id)
        chunks = _split_content(message.content) if message.content else [None]
        await target.send(content=chunks[0], **await self._send_kwargs(message))
        for chunk in chunks[1:]:
            await target.send(content=chunk)

    async def reply(self, target: ChatMessage, message: OutgoingMessage) -> None:
        channel = await self._resolve_channel(target.channel_id)
        partial = channel.get_partial_message(int(target.id))
        chunks = _split_content(message.content) if message.content else [None]
        await partial.reply(content=chunks[0], **await self._send_kwargs(message))
        for chunk in chunks[1:]:
            await channel.send(content=chunk)

    async def send_typing_indicator(self, channel: ChannelInfo) -> None:
        target = await self._resolve_channel(channel.id)
        await target.typing()

    async def add_reaction(self, target: ChatMessage, emoji: str) -> None:
        channel = await self._resolve_channel(target.channel_id)
        await channel.get_partial_message(int(target.id)).add_reaction(emoji)

    async def delete_message(self, target: ChatMessage) -> None:
        channel = await self._resolve_channel(target.channel_id)
        await channel.get_partial_message(int(target.id)).delete()

    async def _on_discord_message(self, message: discord.Message) -> None:
        if not self._message_callback:
            return
        try:
            await self._message_callback(
                to_chat_message(message), describe_channel(message.channel)
            )
        except Exception as e:
            logger.error(
                "discord_handler_error",
                bot_id=self.bot_id,
                error=str(e),
                channel_id=str(message.channel.id),
            )

    async def _on_discord_reaction(self, payload: discord.RawReactionActionEvent) -> None:
        if not self._reaction_callback:
            return
        # Reactions arrive for uncached messages too; fetch the full objects first
        try:
            channel = await self._resolve_channel(str(payload.channel_id))
            message = await channel.fetch_message(payload.message_id)
        except discord.HTTPException as e:
            logger.warning(
                "discord_reaction_fetch_failed",
                bot_id=self.bot_id,
                message_id=str(payload.message_id),
                error=str(e),
            )
            return

        event = ReactionEvent(
            message=to_chat_message(message),
            channel=describe_channel(channel),
            emoji=payload.emoji.name or str(payload.emoji),
            user_id=str(payload.user_id),
            bot_has_reacted=any(r.me for r in message.reactions),
        )
        try:
            await self._reaction_callback(event)
        except Exception as e:
            logger.error(
                "discord_reaction_handler_error",
                bot_id=self.bot_id,
                error=str(e),
                channel_id=str(payload.channel_id),
            )
