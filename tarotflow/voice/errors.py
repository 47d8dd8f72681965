"""Voice session failures and how they are explained to the user."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

TEXT_FALLBACK_HINT = "You can continue with a text reading instead."


class ConnectionCategory(str, Enum):
    TRANSPORT = "transport"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ConnectionFailure:
    category: ConnectionCategory
    message: str
    suggestion: str
    fallback_to_text: bool = True


class VoiceSessionError(RuntimeError):
    def __init__(self, failure: ConnectionFailure):
        super().__init__(failure.message)
        self.failure = failure


class ToolExecutionError(RuntimeError):
    """Failure returned to the agent runtime from a tool call."""


def classify_connection_error(exc: BaseException) -> ConnectionFailure:
    """Map a realtime connection error to a category and recovery hint.

    Matching is on the error text, in the same order the realtime runtime
    tends to report problems: transport first, then auth, then timeouts.
    """
    text = str(exc)
    lowered = text.lower()

    if "websocket" in lowered or "wss://" in lowered:
        return ConnectionFailure(
            category=ConnectionCategory.TRANSPORT,
            message=(
                "OpenAI Realtime API WebSocket connection failed. This may be due to:\n"
                "1. API key does not have Realtime API access\n"
                "2. OpenAI Realtime API service issues (check status.openai.com)\n"
                "3. Network connectivity issues\n"
                "Please try again later or contact support."
            ),
            suggestion=f"Check your network connection and try again. {TEXT_FALLBACK_HINT}",
        )
    if "401" in text or "unauthorized" in lowered:
        return ConnectionFailure(
            category=ConnectionCategory.PERMISSION,
            message="Invalid API key or insufficient permissions for Realtime API",
            suggestion=f"Voice readings are not available for this account right now. {TEXT_FALLBACK_HINT}",
        )
    if "403" in text or "forbidden" in lowered:
        return ConnectionFailure(
            category=ConnectionCategory.PERMISSION,
            message="Access to Realtime API is forbidden. Check your API key permissions.",
            suggestion=f"Voice readings are not available for this account right now. {TEXT_FALLBACK_HINT}",
        )
    if isinstance(exc, TimeoutError) or "timeout" in lowered or "timed out" in lowered:
        return ConnectionFailure(
            category=ConnectionCategory.TIMEOUT,
            message="Connection to OpenAI Realtime API timed out. Please check your network connection.",
            suggestion=f"Try again in a moment. {TEXT_FALLBACK_HINT}",
        )
    if "503" in text or "502" in text or "unavailable" in lowered or "overloaded" in lowered:
        return ConnectionFailure(
            category=ConnectionCategory.SERVICE_UNAVAILABLE,
            message="The voice service is temporarily unavailable.",
            suggestion=f"Please try again later. {TEXT_FALLBACK_HINT}",
        )
    return ConnectionFailure(
        category=ConnectionCategory.UNKNOWN,
        message=text or "Failed to connect to voice session",
        suggestion=TEXT_FALLBACK_HINT,
    )
