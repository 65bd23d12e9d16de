"""Opaque session identifiers for endpoint-side conversation memory."""

from __future__ import annotations

import base64
import json
from typing import Any


def build_session_id(bot_id: str, bot_name: str, user_id: str, channel_id: str) -> str:
    """Encode (bot, user, channel) as a deterministic, reversible session id.

    For threads the caller passes the parent channel id so a session outlives
    any single thread.
    """
    session_data = {
        "botId": bot_id,
        "botName": bot_name,
        "userId": user_id,
        "channelId": channel_id,
    }
    raw = json.dumps(session_data, separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_session_id(session_id: str) -> dict[str, Any]:
    """Inverse of build_session_id."""
    try:
        raw = base64.b64decode(session_id.encode("ascii"), validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeError) as e:
        raise ValueError(f"Malformed session id: {session_id!r}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Malformed session id: {session_id!r}")
    return data
