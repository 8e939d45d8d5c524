"""Response normalizer.

Each fallback strategy owns exactly one parser, registered here under the
strategy id. A parser only understands the shape its own strategy
produces; there is no generic sniffing. normalize() dispatches on the
strategy id and turns any deviation from the declared shape into a
ResponseShapeError, which the fallback chain treats as retryable.

Raw inputs are a RawResponse for unary strategies and the final
correlated frame (a dict) for stream strategies.
"""

import logging
from typing import Any, Callable

from .errors import (
    ContentRejectedError,
    ConversationNotFoundError,
    RemoteChatError,
    ResponseShapeError,
    TransportError,
    error_for_status,
    looks_like_rejection,
)
from .models import (
    CallContext,
    ConversationCreated,
    PersonaInfo,
    RawResponse,
    Reply,
    SessionMaterial,
)

logger = logging.getLogger(__name__)

Parser = Callable[[Any, CallContext], Any]

PARSERS: dict[str, Parser] = {}

# Errors that mean "the body is not what this strategy promised"
_SHAPE_ERRORS = (KeyError, IndexError, TypeError, ValueError, AttributeError)


def parser(strategy_id: str) -> Callable[[Parser], Parser]:
    """Register the parser for one strategy."""
    def register(func: Parser) -> Parser:
        PARSERS[strategy_id] = func
        return func
    return register


def normalize(raw: Any, strategy_id: str, ctx: CallContext) -> Any:
    """Parse a raw response with the parser of the strategy that produced it.

    Raises:
        ResponseShapeError: unknown strategy or body deviates from its contract.
        RemoteChatError: the body itself reports a backend error
            (moderation, missing conversation, ...).
    """
    parse = PARSERS.get(strategy_id)
    if parse is None:
        raise ResponseShapeError(f"No parser registered for {strategy_id}", strategy=strategy_id)
    try:
        return parse(raw, ctx)
    except RemoteChatError:
        raise
    except _SHAPE_ERRORS as e:
        logger.debug(f"Unrecognized shape from {strategy_id}: {e!r}")
        raise ResponseShapeError(
            f"Unrecognized response shape from {strategy_id}: {type(e).__name__}: {e}",
            strategy=strategy_id,
        ) from e


# =============================================================================
# Shared helpers
# =============================================================================


def _require_text(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"empty {what}")
    return value


def _check_stream_error(frame: dict, ctx: CallContext) -> None:
    """Raise the mapped error if the frame is a backend error frame."""
    if frame.get("command") != "neo_error":
        return
    comment = str(frame.get("comment") or frame.get("error") or "")
    try:
        status = int(frame.get("error_code") or 0)
    except (TypeError, ValueError):
        status = 0
    if status:
        raise error_for_status(status, comment, has_conversation=bool(ctx.conversation_id))
    if looks_like_rejection(comment):
        raise ContentRejectedError(f"Content rejected by backend: {comment[:150]}")
    if ctx.conversation_id and "not found" in comment.lower():
        raise ConversationNotFoundError(f"Conversation not found: {comment[:150]}")
    raise TransportError(f"Stream error frame: {comment[:150] or 'no detail'}")


def _reply_from_turn(turn: dict) -> Reply:
    """Build a Reply from a turn object (stream frames and turn endpoints)."""
    candidates = turn["candidates"]
    if not candidates:
        raise ValueError("turn without candidates")
    primary_id = turn.get("primary_candidate_id")
    primary = next(
        (c for c in candidates if primary_id and c.get("candidate_id") == primary_id),
        candidates[0],
    )
    if primary.get("is_filtered"):
        raise ContentRejectedError("Reply was filtered by the backend")
    alternates = [
        c["raw_content"] for c in candidates
        if c is not primary and c.get("raw_content")
    ]
    return Reply(
        reply_id=str(turn["turn_key"]["turn_id"]),
        author_label=turn["author"].get("name") or "",
        text=_require_text(primary["raw_content"], "candidate"),
        alternate_texts=alternates,
    )


def _json(raw: RawResponse) -> dict:
    if not isinstance(raw.data, dict):
        raise TypeError("body is not a JSON object")
    return raw.data


# =============================================================================
# Session bootstrap
# =============================================================================


@parser("identity.chat_user")
def parse_identity(raw: RawResponse, ctx: CallContext) -> str:
    user = _json(raw)["user"]
    # Newer deployments nest the account under user.user
    account_id = (user.get("user") or {}).get("id") or user.get("user_id") or user.get("id")
    if not account_id:
        raise KeyError("user id")
    return str(account_id)


@parser("session.web_cookies")
def parse_web_cookies(raw: RawResponse, ctx: CallContext) -> SessionMaterial:
    return SessionMaterial(
        csrf_token=_require_text(raw.cookies.get("csrftoken"), "csrftoken cookie"),
        session_cookie=raw.cookies.get("sessionid", ""),
    )


@parser("session.csrf_endpoint")
def parse_csrf_endpoint(raw: RawResponse, ctx: CallContext) -> SessionMaterial:
    data = _json(raw)
    return SessionMaterial(
        csrf_token=_require_text(data["csrf_token"], "csrf_token"),
        session_cookie=raw.cookies.get("sessionid", ""),
    )


# =============================================================================
# Conversations
# =============================================================================


@parser("create.ws_create_chat")
def parse_ws_create_chat(frame: dict, ctx: CallContext) -> ConversationCreated:
    _check_stream_error(frame, ctx)
    chat_id = _require_text(frame["chat"]["chat_id"], "chat_id")
    greeting = _reply_from_turn(frame["turn"]) if frame.get("turn") else None
    return ConversationCreated(external_id=chat_id, greeting=greeting)


@parser("create.rest_history")
def parse_rest_history_create(raw: RawResponse, ctx: CallContext) -> ConversationCreated:
    data = _json(raw)
    external_id = _require_text(data["external_id"], "external_id")
    greeting = None
    messages = data.get("messages") or []
    if messages:
        first = messages[0]
        greeting = Reply(
            reply_id=str(first.get("id", "")),
            author_label=first.get("src__name", ""),
            text=first.get("text", ""),
        )
    return ConversationCreated(external_id=external_id, greeting=greeting)


# =============================================================================
# Turns
# =============================================================================


@parser("turn.ws_generate")
def parse_ws_turn(frame: dict, ctx: CallContext) -> Reply:
    _check_stream_error(frame, ctx)
    return _reply_from_turn(frame["turn"])


@parser("turn.rest_streaming_recv")
def parse_streaming_recv(raw: RawResponse, ctx: CallContext) -> Reply:
    data = _json(raw)
    replies = data["replies"]
    if not replies:
        raise ValueError("no replies")
    first = replies[0]
    participant = (data.get("src_char") or {}).get("participant") or {}
    return Reply(
        reply_id=str(first["id"]),
        author_label=participant.get("name") or "Character",
        text=_require_text(first["text"], "reply text"),
        alternate_texts=[r["text"] for r in replies[1:] if r.get("text")],
    )


@parser("turn.rest_turn_generate")
def parse_turn_generate(raw: RawResponse, ctx: CallContext) -> Reply:
    return _reply_from_turn(_json(raw)["turn"])


# =============================================================================
# History and persona
# =============================================================================


@parser("history.rest_msgs")
def parse_history_msgs(raw: RawResponse, ctx: CallContext) -> list[Reply]:
    return [
        Reply(
            reply_id=str(m["id"]),
            author_label=m.get("src__name") or (m.get("src") or {}).get("name", ""),
            text=m["text"],
        )
        for m in _json(raw)["messages"]
    ]


@parser("history.rest_turns")
def parse_history_turns(raw: RawResponse, ctx: CallContext) -> list[Reply]:
    # Endpoint lists newest first
    turns = _json(raw)["turns"]
    return [_reply_from_turn(turn) for turn in reversed(turns)]


def _persona(character: dict) -> PersonaInfo:
    return PersonaInfo(
        persona_id=str(character["external_id"]),
        name=character["name"],
        title=character.get("title") or "",
        greeting=character.get("greeting") or "",
        description=character.get("description") or "",
    )


@parser("persona.rest_info")
def parse_persona_info(raw: RawResponse, ctx: CallContext) -> PersonaInfo:
    return _persona(_json(raw)["character"])


@parser("persona.rest_info_post")
def parse_persona_info_post(raw: RawResponse, ctx: CallContext) -> PersonaInfo:
    data = _json(raw)
    if data.get("status") not in (None, "OK"):
        raise ValueError(f"status {data.get('status')}")
    return _persona(data["character"])
