"""Configuration loader: per-bot settings from the environment, runtime tuning from YAML."""

from __future__ import annotations

import json
import math
import os
import re
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from llm_relay.core.types import RespondTo
from llm_relay.log import get_logger

logger = get_logger(__name__)

TOKEN_SUFFIX = "_DISCORD_BOT_TOKEN"

# Environment option name -> BotConfig field
_BOT_OPTIONS = {
    "DISCORD_BOT_TOKEN": "platform_token",
    "LLM_INFER_URL": "infer_url",
    "LLM_API_KEY": "api_key",
    "SESSION_HEADER": "session_header_name",
    "CONVERSATION_LENGTH": "message_limit",
    "RESPOND_TO": "respond_to",
    "RESPOND_AS_REPLY": "respond_as_reply",
    "CUSTOM_FIELDS_JSON": "custom_fields",
}

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"", "0", "false", "no", "off"})


class BotConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    platform_token: str = Field(min_length=1)
    infer_url: str = Field(min_length=1)
    api_key: Optional[str] = None
    session_header_name: Optional[str] = None
    message_limit: int = 0
    respond_to: RespondTo = RespondTo.UNSET
    respond_as_reply: bool = False
    custom_fields: dict[str, Any] = Field(default_factory=dict)

    @field_validator("api_key", "session_header_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("message_limit", mode="before")
    @classmethod
    def _parse_message_limit(cls, value: Any) -> int:
        if value is None or value == "":
            return 0
        try:
            limit = int(value)
        except (TypeError, ValueError):
            logger.warning("invalid_conversation_length", value=value)
            return 0
        if limit < 0:
            logger.warning("negative_conversation_length", value=value)
            return 0
        return limit

    @field_validator("respond_to", mode="before")
    @classmethod
    def _parse_respond_to(cls, value: Any) -> RespondTo:
        if value is None or isinstance(value, RespondTo):
            return value or RespondTo.UNSET
        normalized = str(value).strip().lower()
        if not normalized:
            return RespondTo.UNSET
        try:
            return RespondTo(normalized)
        except ValueError:
            logger.warning("unknown_respond_to", value=value)
            return RespondTo.UNSET

    @field_validator("respond_as_reply", mode="before")
    @classmethod
    def _parse_respond_as_reply(cls, value: Any) -> bool:
        if value is None or isinstance(value, bool):
            return bool(value)
        normalized = str(value).strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized not in _FALSE_VALUES:
            logger.warning("invalid_respond_as_reply", value=value)
        return False

    @field_validator("custom_fields", mode="before")
    @classmethod
    def _parse_custom_fields(cls, value: Any) -> dict[str, Any]:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                logger.warning("invalid_custom_fields_json", error=str(e))
                return {}
        if not isinstance(value, dict):
            logger.warning("custom_fields_not_an_object", type=type(value).__name__)
            return {}
        return value


class RuntimeConfig(BaseModel):
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    conversation_cache_seconds: float = Field(default=5.0, gt=0)
    display_name_cache_seconds: float = Field(default=3600.0, gt=0)
    cache_prune_threshold: int = Field(default=1000, gt=0)
    loop_idle_reset_seconds: float = Field(default=600.0, gt=0)
    loop_chain_threshold: int = Field(default=3, gt=0)
    typing_interval_seconds: float = Field(default=8.0, gt=0)
    http_timeout_seconds: float = Field(default=60.0, gt=0)
    ready_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("http_timeout_seconds")
    @classmethod
    def _finite_timeout(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("http_timeout_seconds must be finite")
        return value


class AppConfig(BaseModel):
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    bots: list[BotConfig] = Field(default_factory=list)
    # bot id -> validation error for blocks that could not be loaded
    rejected: dict[str, str] = Field(default_factory=dict)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, environ: Mapping[str, str]) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        value = environ.get(match.group(1))
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def discover_bot_ids(environ: Mapping[str, str]) -> list[str]:
    """Return the ids of every bot that has a ``<ID>_DISCORD_BOT_TOKEN`` key."""
    ids = {
        key[: -len(TOKEN_SUFFIX)]
        for key in environ
        if key.endswith(TOKEN_SUFFIX) and len(key) > len(TOKEN_SUFFIX)
    }
    return sorted(ids)


def load_bot_config(bot_id: str, environ: Mapping[str, str]) -> BotConfig:
    """Build one bot's configuration from its ``<ID>_`` prefixed settings.

    Raises pydantic.ValidationError when the token or inference URL is missing.
    """
    prefix = f"{bot_id}_"
    data: dict[str, Any] = {"id": bot_id}
    for option, field_name in _BOT_OPTIONS.items():
        value = environ.get(prefix + option)
        if value is not None:
            data[field_name] = value
    return BotConfig(**data)


def load_runtime_config(config_path: str | Path, environ: Mapping[str, str]) -> RuntimeConfig:
    """Load runtime tuning from an optional YAML file with env-var interpolation."""
    config_file = Path(config_path)
    if not config_file.exists():
        return RuntimeConfig()

    raw_text = config_file.read_text(encoding="utf-8")
    data = yaml.safe_load(_interpolate_env_vars(raw_text, environ)) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {config_file}")
    return RuntimeConfig(**data)


def load_config(
    config_path: str | Path = "config.yaml",
    env_path: str | Path = ".env",
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Load every bot block from the environment plus optional runtime settings.

    A bot whose block fails validation is recorded in ``rejected`` instead of
    aborting the others.
    """
    if environ is None:
        env_file = Path(env_path)
        if env_file.exists():
            load_dotenv(env_file)
        environ = os.environ

    runtime = load_runtime_config(config_path, environ)

    bots: list[BotConfig] = []
    rejected: dict[str, str] = {}
    for bot_id in discover_bot_ids(environ):
        try:
            bots.append(load_bot_config(bot_id, environ))
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            rejected[bot_id] = f"invalid settings: {fields or e}"
            logger.error("bot_config_invalid", bot_id=bot_id, fields=fields)

    return AppConfig(runtime=runtime, bots=bots, rejected=rejected)
