"""Relay wire protocol constants.

Both endpoints expect one JSON text frame describing the audio format,
followed by binary PCM frames. See ``audiorelay.audio.format`` for the
configuration fields.
"""

from enum import IntEnum
from typing import Any
from urllib.parse import urlsplit

import structlog

logger = structlog.get_logger(__name__)

PLAY_PATH = "/play"
RECORD_PATH = "/rec"


class CloseCode(IntEnum):
    """WebSocket close codes used by the relay (RFC 6455, section 7.4.1)."""

    NORMAL = 1000
    GOING_AWAY = 1001
    POLICY_VIOLATION = 1008
    INTERNAL_ERROR = 1011


# Close reasons are limited to 123 bytes by the protocol
MAX_REASON_BYTES = 123


def close_reason(text: str) -> str:
    """Truncate a close reason to what fits in a close frame."""
    encoded = text.encode("utf-8")
    if len(encoded) <= MAX_REASON_BYTES:
        return text
    return encoded[: MAX_REASON_BYTES - 3].decode("utf-8", errors="ignore") + "..."


def extract_path(connection: Any) -> str:  # noqa: ANN401
    """Extract the request path (without query string) from a connection."""
    path = None
    try:
        if hasattr(connection, "request") and hasattr(connection.request, "path"):
            path = connection.request.path
        elif hasattr(connection, "path"):
            path = connection.path
    except Exception as e:
        logger.error("Error extracting path from websocket", error=str(e), exc_info=True)

    if not isinstance(path, str) or not path:
        logger.warning("Could not extract path from websocket, defaulting to /")
        return "/"
    return urlsplit(path).path or "/"
