"""HTTP client for the remote inference endpoint."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Sequence, Union

import httpx

from llm_relay.config import BotConfig
from llm_relay.context.fetcher import ConversationMessage
from llm_relay.log import get_logger
from llm_relay.messenger.models import OutgoingMessage

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
GENERIC_FAILURE = "Failed to get response from LLM"


class InferenceError(RuntimeError):
    """The endpoint failed in any way other than rate limiting."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class LLMSuccess:
    reply: OutgoingMessage


@dataclass(frozen=True, slots=True)
class LLMRateLimited:
    pass


LLMResult = Union[LLMSuccess, LLMRateLimited]


def build_request_body(
    bot_config: BotConfig, conversation: Sequence[ConversationMessage]
) -> dict[str, Any]:
    """Single ``message`` when the bot keeps no history, else the full ``conversation``."""
    if not conversation:
        raise ValueError("Conversation cannot be empty")
    if bot_config.message_limit == 0:
        return {"message": conversation[-1].text, **bot_config.custom_fields}
    return {
        "conversation": [m.to_dict() for m in conversation],
        **bot_config.custom_fields,
    }


def build_headers(bot_config: BotConfig, session_id: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if bot_config.api_key:
        headers["Authorization"] = f"Bearer {bot_config.api_key}"
    if bot_config.session_header_name:
        headers[bot_config.session_header_name] = session_id
    return headers


def _reply_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, ensure_ascii=False)


def parse_reply(data: Any) -> LLMSuccess:
    """Classify a 200 response body.

    Bodies without a ``success`` key are treated as the raw reply, so naive
    endpoints returning bare text or JSON still work.
    """
    if not isinstance(data, dict) or "success" not in data:
        return LLMSuccess(reply=OutgoingMessage(content=_reply_text(data)))

    if not data["success"]:
        raise InferenceError(data.get("error") or "API request failed")

    reply = data.get("reply")
    if isinstance(reply, dict):
        return LLMSuccess(reply=OutgoingMessage.from_payload(reply))
    if reply is None:
        raise InferenceError("API response is missing 'reply'")
    return LLMSuccess(reply=OutgoingMessage(content=_reply_text(reply)))


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class InferenceClient:
    """Posts conversations to each bot's inference URL and classifies the outcome."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def infer(
        self,
        bot_config: BotConfig,
        conversation: Sequence[ConversationMessage],
        session_id: str,
    ) -> LLMResult:
        body = build_request_body(bot_config, conversation)
        headers = build_headers(bot_config, session_id)

        logger.debug(
            "inference_request",
            bot_id=bot_config.id,
            message_count=len(conversation),
            single_message=bot_config.message_limit == 0,
        )
        try:
            response = await self._http.post(bot_config.infer_url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error("inference_transport_error", bot_id=bot_config.id, error=str(e))
            raise InferenceError(GENERIC_FAILURE) from e

        if response.status_code == 429:
            logger.warning("inference_rate_limited", bot_id=bot_config.id)
            return LLMRateLimited()

        data = _decode_body(response)
        if response.status_code != 200:
            logger.error(
                "inference_http_error",
                bot_id=bot_config.id,
                status=response.status_code,
                body=str(data)[:500],
            )
            upstream_error = data.get("error") if isinstance(data, dict) else None
            raise InferenceError(
                upstream_error or f"Request failed with status code {response.status_code}",
                status_code=response.status_code,
            )

        return parse_reply(data)
