from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from fakes import BOT_USER_ID, make_bot_config, make_channel, make_message
from llm_relay.ai.client import InferenceError, LLMRateLimited, LLMSuccess
from llm_relay.ai.handler import (
    FALLBACK_REPLY,
    RESPONSE_EMOJIS,
    THUMBS_DOWN,
    THUMBS_UP,
    MessageHandler,
    typing_indicator,
)
from llm_relay.context.cache import EphemeralConversationCache
from llm_relay.context.fetcher import ConversationFetcher
from llm_relay.context.names import DisplayNameResolver
from llm_relay.core.session import decode_session_id
from llm_relay.core.types import ChannelKind, RespondTo
from llm_relay.messenger.models import MentionSet, OutgoingMessage, ReactionEvent
from llm_relay.policy.loop_guard import BotLoopGuard
from llm_relay.policy.response import ResponsePolicy


class FakeInference:
    def __init__(self, result=None, error: Exception | None = None, delay: float = 0):
        self.result = result or LLMSuccess(reply=OutgoingMessage(content="Hello there"))
        self.error = error
        self.delay = delay
        self.calls: list[SimpleNamespace] = []

    async def infer(self, bot_config, conversation, session_id):
        self.calls.append(
            SimpleNamespace(config=bot_config, conversation=conversation, session_id=session_id)
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def inference():
    return FakeInference()


@pytest.fixture
def make_handler(adapter, clock, inference):
    def self_id() -> str:
        return adapter.bot_user_id

    def _make(**overrides) -> MessageHandler:
        config = make_bot_config(**overrides)
        names = DisplayNameResolver(adapter, clock=clock)
        conversations = EphemeralConversationCache(
            ConversationFetcher(adapter, names), clock=clock
        )
        policy = ResponsePolicy(config, self_id, BotLoopGuard(self_id, clock=clock), names)
        return MessageHandler(
            adapter=adapter,
            bot_config=config,
            policy=policy,
            conversations=conversations,
            names=names,
            inference=inference,
            typing_interval=0.01,
            rng=SimpleNamespace(choice=lambda options: options[0]),
        )

    return _make


MENTIONS_BOT = MentionSet(users=frozenset({BOT_USER_ID}))


async def test_mention_gets_a_threaded_reply(adapter, inference, make_handler):
    message = make_message("9000", "hi <@1000>", mentions=MENTIONS_BOT)

    await make_handler().handle_message(message, make_channel())

    assert [(target, m.content) for target, m in adapter.replies] == [("9000", "Hello there")]
    assert adapter.sent == []
    assert [m.text for m in inference.calls[0].conversation] == ["hi <@1000>"]


async def test_direct_message_is_answered_as_reply(adapter, make_handler):
    await make_handler().handle_message(make_message(guild_id=None), make_channel(ChannelKind.DM))

    assert [(target, m.content) for target, m in adapter.replies] == [("9000", "Hello there")]
    assert adapter.sent == []


async def test_unmentioned_guild_answer_is_sent_plainly(adapter, make_handler):
    handler = make_handler(respond_to=RespondTo.DYNAMIC)

    await handler.handle_message(make_message(content="anyone?"), make_channel())

    assert [(channel, m.content) for channel, m in adapter.sent] == [("300", "Hello there")]
    assert adapter.replies == []


async def test_unaddressed_message_never_reaches_the_endpoint(adapter, inference, make_handler):
    await make_handler().handle_message(make_message(content="just chatting"), make_channel())

    assert inference.calls == []
    assert adapter.sent == adapter.replies == []


async def test_session_id_identifies_bot_user_and_channel(inference, make_handler):
    await make_handler().handle_message(make_message(guild_id=None), make_channel(ChannelKind.DM))

    assert decode_session_id(inference.calls[0].session_id) == {
        "botId": BOT_USER_ID,
        "botName": "Relay",
        "userId": "2000",
        "channelId": "300",
    }


async def test_thread_session_uses_parent_channel(adapter, inference, make_handler):
    thread = make_channel(ChannelKind.THREAD, channel_id="301", parent_id="300")

    await make_handler().handle_message(make_message(channel_id="301"), thread)

    assert decode_session_id(inference.calls[0].session_id)["channelId"] == "300"
    assert [target for target, _ in adapter.replies] == ["9000"]


async def test_rate_limit_drops_the_reply(adapter, make_handler, inference):
    inference.result = LLMRateLimited()

    await make_handler().handle_message(make_message(guild_id=None), make_channel(ChannelKind.DM))

    assert adapter.sent == adapter.replies == []


async def test_inference_error_sends_fallback_reply(adapter, make_handler, inference):
    inference.error = InferenceError("model offline")

    await make_handler().handle_message(make_message(guild_id=None), make_channel(ChannelKind.DM))

    assert [(target, m.content) for target, m in adapter.replies] == [("9000", FALLBACK_REPLY)]


async def test_delivery_failure_sends_fallback_reply(adapter, make_handler):
    adapter.fail_send = True

    await make_handler(respond_to=RespondTo.DYNAMIC).handle_message(
        make_message(content="anyone?"), make_channel()
    )

    assert [m.content for _, m in adapter.replies] == [FALLBACK_REPLY]


async def test_failed_fallback_is_swallowed(adapter, make_handler, inference):
    inference.error = InferenceError("model offline")
    adapter.fail_reply = True

    await make_handler().handle_message(make_message(guild_id=None), make_channel(ChannelKind.DM))

    assert adapter.replies == []


async def test_unsendable_channel_is_skipped(adapter, make_handler, inference):
    handler = make_handler()

    delivered = await handler.respond(make_message(), make_channel(sendable=False), as_reply=True)

    assert delivered is False
    assert inference.calls == []


async def test_typing_indicator_runs_during_inference(adapter, make_handler, inference):
    inference.delay = 0.05

    await make_handler().handle_message(make_message(guild_id=None), make_channel(ChannelKind.DM))
    pings = adapter.typing_pings
    await asyncio.sleep(0.05)

    assert pings >= 2
    assert adapter.typing_pings == pings


async def test_typing_indicator_stops_on_error(adapter):
    with pytest.raises(RuntimeError):
        async with typing_indicator(adapter, make_channel(), interval=0.01):
            await asyncio.sleep(0.02)
            raise RuntimeError("inference blew up")
    pings = adapter.typing_pings
    await asyncio.sleep(0.03)

    assert pings >= 1
    assert adapter.typing_pings == pings


async def test_own_trigger_answers_the_referenced_message(adapter, make_handler):
    question = make_message("1", "question", minutes=1)
    own = make_message(
        "2", "old answer", author_id=BOT_USER_ID, author_name="relaybot",
        author_is_bot=True, reference_id="1", minutes=2,
    )
    adapter.history["300"] = [question, own]

    delivered = await make_handler().respond(own, make_channel(), as_reply=True)

    assert delivered is True
    assert [target for target, _ in adapter.replies] == ["1"]


async def test_own_trigger_falls_back_to_preceding_message(adapter, make_handler, inference):
    adapter.history["300"] = [
        make_message("1", "first", minutes=1),
        make_message("5", "second", author_id="2001", author_name="bob", minutes=2),
        make_message("2", "answer", author_id=BOT_USER_ID, author_is_bot=True, minutes=3),
    ]

    await make_handler().respond(adapter.history["300"][2], make_channel(), as_reply=True)

    assert [target for target, _ in adapter.replies] == ["5"]
    assert decode_session_id(inference.calls[0].session_id)["userId"] == "2001"


async def test_own_trigger_without_context_is_dropped(adapter, make_handler, inference):
    own = make_message("2", "answer", author_id=BOT_USER_ID, author_is_bot=True)

    delivered = await make_handler().respond(own, make_channel(), as_reply=True)

    assert delivered is False
    assert inference.calls == []


def _reaction(emoji: str, **overrides) -> ReactionEvent:
    message = make_message(
        "2", "old answer", author_id=BOT_USER_ID, author_name="relaybot",
        author_is_bot=True, reference_id="1", minutes=2,
    )
    data = {
        "message": message,
        "channel": make_channel(),
        "emoji": emoji,
        "user_id": "2000",
        "bot_has_reacted": False,
    }
    data.update(overrides)
    return ReactionEvent(**data)


async def test_thumbs_up_adds_a_random_emoji(adapter, make_handler):
    await make_handler().handle_reaction(_reaction(THUMBS_UP))

    assert adapter.reactions == [("2", RESPONSE_EMOJIS[0])]


async def test_thumbs_up_is_acknowledged_once(adapter, make_handler):
    await make_handler().handle_reaction(_reaction(THUMBS_UP, bot_has_reacted=True))

    assert adapter.reactions == []


async def test_reactions_on_other_authors_are_ignored(adapter, make_handler, inference):
    handler = make_handler()
    foreign = make_message("7", "someone else")

    await handler.handle_reaction(_reaction(THUMBS_UP, message=foreign))
    await handler.handle_reaction(_reaction(THUMBS_DOWN, message=foreign))

    assert adapter.reactions == []
    assert inference.calls == []


async def test_own_reactions_are_ignored(adapter, make_handler):
    await make_handler().handle_reaction(_reaction(THUMBS_UP, user_id=BOT_USER_ID))

    assert adapter.reactions == []


async def test_thumbs_down_regenerates_and_deletes(adapter, make_handler):
    event = _reaction(THUMBS_DOWN)
    adapter.history["300"] = [make_message("1", "question", minutes=1), event.message]

    await make_handler().handle_reaction(event)

    assert [(target, m.content) for target, m in adapter.replies] == [("1", "Hello there")]
    assert adapter.deleted == ["2"]


async def test_thumbs_down_keeps_old_reply_when_regeneration_fails(
    adapter, make_handler, inference
):
    event = _reaction(THUMBS_DOWN)
    adapter.history["300"] = [make_message("1", "question", minutes=1), event.message]
    inference.error = InferenceError("model offline")

    await make_handler().handle_reaction(event)

    assert adapter.deleted == []
