"""Data model shared by every layer of the client."""

import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Optional


class TransportKind(str, Enum):
    UNARY = "unary"
    STREAM = "stream"


class Operation(str, Enum):
    """Operations the fallback chain knows strategies for."""
    DISCOVER_IDENTITY = "discoverIdentity"
    ACQUIRE_SESSION = "acquireSession"
    CREATE_CONVERSATION = "createConversation"
    SEND_TURN = "sendTurn"
    FETCH_HISTORY = "fetchHistory"
    FETCH_PERSONA = "fetchPersona"


@dataclass(frozen=True)
class Credential:
    """Opaque bearer secret. Identity is the secret itself."""
    secret: str

    @property
    def label(self) -> str:
        """Masked form safe for logs."""
        return f"{self.secret[:5]}..." if self.secret else "<empty>"

    def __repr__(self) -> str:
        return f"Credential({self.label})"


@dataclass
class SessionContext:
    """Per-credential session material required before any chat call."""
    credential: Credential
    account_id: str = ""
    csrf_token: str = ""
    session_cookie: str = ""

    def auth_headers(self) -> dict[str, str]:
        """Headers every unary request carries for this session."""
        headers = {"Authorization": f"Token {self.credential.secret}"}
        if self.csrf_token:
            headers["X-CSRFToken"] = self.csrf_token
        cookies = self.cookies()
        if cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in cookies.items())
        return headers

    def cookies(self) -> dict[str, str]:
        cookies = {}
        if self.csrf_token:
            cookies["csrftoken"] = self.csrf_token
        if self.session_cookie:
            cookies["sessionid"] = self.session_cookie
        return cookies


@dataclass
class SessionMaterial:
    """What a session-acquisition strategy discovers."""
    csrf_token: str
    session_cookie: str = ""


@dataclass
class ConversationHandle:
    """Association of a caller conversation key with a backend conversation."""
    conversation_key: str
    external_id: str
    persona_id: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationHandle":
        return cls(
            conversation_key=data["conversation_key"],
            external_id=data["external_id"],
            persona_id=data["persona_id"],
        )


@dataclass
class Reply:
    """Canonical normalized reply. Only parsers in normalizer.py build these."""
    reply_id: str
    author_label: str
    text: str
    alternate_texts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConversationCreated:
    """Result of createConversation."""
    external_id: str
    greeting: Optional[Reply] = None


@dataclass
class PersonaInfo:
    """Backend persona description (fetchPersona)."""
    persona_id: str
    name: str
    title: str = ""
    greeting: str = ""
    description: str = ""


def new_correlation_id() -> str:
    return str(uuid.uuid4())


@dataclass
class CallContext:
    """Everything a strategy may need to build its request.

    One instance per strategy attempt; correlation_id is fresh each time.
    """
    session: SessionContext
    persona_id: str = ""
    conversation_id: str = ""
    text: str = ""
    correlation_id: str = field(default_factory=new_correlation_id)
    turn_id: str = field(default_factory=new_correlation_id)
    candidate_id: str = field(default_factory=new_correlation_id)

    def fresh(self) -> "CallContext":
        """Copy with new per-attempt identifiers."""
        return CallContext(
            session=self.session,
            persona_id=self.persona_id,
            conversation_id=self.conversation_id,
            text=self.text,
        )


@dataclass
class RawResponse:
    """What the Unary Transport hands to a parser."""
    status: int
    text: str
    data: Any = None  # parsed JSON body, None when the body is not JSON
    cookies: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
