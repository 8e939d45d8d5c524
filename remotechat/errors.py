"""Error taxonomy for the remote conversation client.

Only three kinds ever reach a caller of RemoteChatClient:

- ConfigurationError: no credentials, bad settings. Fatal.
- TerminalError: content rejected or malformed input. Never retry.
- ExhaustedError: every credential and strategy failed. Carries the
  per-attempt failures for diagnostics.

Everything else in this module is internal and is absorbed by the
fallback chain and the credential rotation.
"""

from dataclasses import dataclass
from typing import Optional


class RemoteChatError(Exception):
    """Base error.

    Attributes:
        code: Machine-readable error code (e.g. "HTTP_STATUS").
        message: Human-readable message.
        extra: Free-form context (strategy id, status, ...).
    """

    code = "REMOTECHAT_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **extra):
        self.message = message
        if code:
            self.code = code
        self.extra = extra
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code}: {self.message})"


# =============================================================================
# Public errors
# =============================================================================


class ConfigurationError(RemoteChatError):
    """Missing or invalid configuration (e.g. empty credential pool)."""

    code = "CONFIGURATION"


class TerminalError(RemoteChatError):
    """Must not be retried, by us or by the caller."""

    code = "TERMINAL"


class ContentRejectedError(TerminalError):
    """The backend refused the content (moderation / filtering)."""

    code = "CONTENT_REJECTED"


@dataclass
class AttemptFailure:
    """One failed strategy attempt, kept for diagnostics."""
    credential: str  # masked label, never the secret
    operation: str
    strategy_id: str
    error: Exception

    def describe(self) -> str:
        return f"[{self.credential}] {self.operation}/{self.strategy_id}: {self.error}"


class ExhaustedError(RemoteChatError):
    """All credentials and strategies failed."""

    code = "EXHAUSTED"

    def __init__(self, message: str, attempts: Optional[list[AttemptFailure]] = None, **extra):
        super().__init__(message, **extra)
        self.attempts: list[AttemptFailure] = list(attempts or [])

    def by_credential(self) -> dict[str, list[AttemptFailure]]:
        """Group attempts by credential label, preserving order."""
        grouped: dict[str, list[AttemptFailure]] = {}
        for attempt in self.attempts:
            grouped.setdefault(attempt.credential, []).append(attempt)
        return grouped

    def last_per_credential(self) -> dict[str, AttemptFailure]:
        return {label: attempts[-1] for label, attempts in self.by_credential().items()}


# =============================================================================
# Internal errors
# =============================================================================


class TransportError(RemoteChatError):
    """Retryable failure while talking to the backend."""

    code = "TRANSPORT"


class NetworkError(TransportError):
    code = "NETWORK"


class AttemptTimeoutError(TransportError):
    code = "TIMEOUT"


class HttpStatusError(TransportError):
    code = "HTTP_STATUS"

    def __init__(self, status: int, body: str = "", **extra):
        super().__init__(f"HTTP {status}: {body[:150]}" if body else f"HTTP {status}", **extra)
        self.status = status
        self.body = body


class ResponseShapeError(TransportError):
    """Reply did not match the strategy's declared contract."""

    code = "UNRECOGNIZED_SHAPE"


class ConnectionClosedError(TransportError):
    """The shared stream connection went away while the call was waiting."""

    code = "CONNECTION_CLOSED"


class ChainExhaustedError(RemoteChatError):
    """Every strategy of one operation failed with a retryable error."""

    code = "CHAIN_EXHAUSTED"

    def __init__(self, operation: str, failures: list[AttemptFailure]):
        super().__init__(f"All {len(failures)} strategies failed for {operation}")
        self.operation = operation
        self.failures = failures


class AuthenticationError(RemoteChatError):
    """Session material or credential rejected by the backend."""

    code = "AUTHENTICATION"


class ConversationNotFoundError(RemoteChatError):
    """The backend does not know the external conversation id."""

    code = "CONVERSATION_NOT_FOUND"


_REJECTION_MARKERS = ("filtered", "moderat", "policy", "violat")


def looks_like_rejection(text: str) -> bool:
    """Whether an error body/comment describes a content-policy rejection."""
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _REJECTION_MARKERS)


def error_for_status(status: int, body: str = "", has_conversation: bool = False) -> RemoteChatError:
    """Map a backend status code (HTTP or stream error_code) to an error.

    Args:
        status: Status code reported by the backend.
        body: Response body or error comment, used for diagnostics.
        has_conversation: Whether the call named an external conversation,
            in which case 404 means the conversation is gone.
    """
    if looks_like_rejection(body):
        return ContentRejectedError(f"Content rejected by backend: {body[:150]}", status=status)
    if status in (401, 403):
        return AuthenticationError(f"Credential rejected (HTTP {status})", status=status)
    if status == 404 and has_conversation:
        return ConversationNotFoundError("Conversation not found", status=status)
    if status in (400, 422):
        return TerminalError(f"Malformed request (HTTP {status}): {body[:150]}", code="MALFORMED_REQUEST")
    return HttpStatusError(status, body)
