"""Static fallback strategy table.

Every known way of performing an operation against the backend is one
FallbackStrategy entry: which transport carries it, how the request is
built, and (through normalizer.PARSERS, keyed by the same id) how the
reply is read. Strategies are data; the chain and the exchange protocol
never special-case one.

Order within an operation is priority order.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from .models import CallContext, Operation, TransportKind
from .normalizer import PARSERS

# Frame builders return the frame without the correlation field; the
# stream transport stamps it.
CORRELATION_FIELD = "request_id"

ORIGIN_ID = "web-next"


@dataclass(frozen=True)
class FallbackStrategy:
    """One (transport, request shape, response parser) candidate."""
    id: str
    operation: Operation
    transport: TransportKind
    build: Callable[[CallContext], dict]

    # Unary only
    method: str = "GET"
    base: str = "api"
    path: str = ""

    # Stream only: which inbound frame for our correlation id ends the call
    completes: Optional[Callable[[dict], bool]] = None
    # Stream handshake: "cookie" or "header"
    auth_scheme: str = "cookie"

    def url_path(self, ctx: CallContext) -> str:
        return self.path.format(conversation_id=ctx.conversation_id, persona_id=ctx.persona_id)

    def __repr__(self) -> str:
        return f"FallbackStrategy({self.id})"


# =============================================================================
# Request builders
# =============================================================================


def _empty(ctx: CallContext) -> dict:
    return {}


def _create_chat_frame(ctx: CallContext) -> dict:
    return {
        "command": "create_chat",
        "payload": {
            "chat": {
                "chat_id": ctx.turn_id,
                "creator_id": ctx.session.account_id,
                "visibility": "VISIBILITY_PRIVATE",
                "character_id": ctx.persona_id,
                "type": "TYPE_ONE_ON_ONE",
            },
            "with_greeting": True,
        },
        "origin_id": ORIGIN_ID,
    }


def _history_create_body(ctx: CallContext) -> dict:
    return {"character_external_id": ctx.persona_id, "history_external_id": None}


def _generate_turn_frame(ctx: CallContext) -> dict:
    return {
        "command": "create_and_generate_turn",
        "payload": {
            "num_candidates": 1,
            "tts_enabled": False,
            "selected_language": "",
            "character_id": ctx.persona_id,
            "user_name": "",
            "turn": {
                "turn_key": {"turn_id": ctx.turn_id, "chat_id": ctx.conversation_id},
                "author": {
                    "author_id": ctx.session.account_id,
                    "is_human": True,
                    "name": "",
                },
                "candidates": [{"candidate_id": ctx.candidate_id, "raw_content": ctx.text}],
                "primary_candidate_id": ctx.candidate_id,
            },
            "previous_annotations": {},
        },
        "origin_id": ORIGIN_ID,
    }


def _streaming_recv_body(ctx: CallContext) -> dict:
    return {
        "history_external_id": ctx.conversation_id,
        "character_external_id": ctx.persona_id,
        "text": ctx.text,
    }


def _turn_generate_body(ctx: CallContext) -> dict:
    return {
        "chat_id": ctx.conversation_id,
        "character_id": ctx.persona_id,
        "text": ctx.text,
    }


def _history_params(ctx: CallContext) -> dict:
    return {"history_external_id": ctx.conversation_id}


def _persona_params(ctx: CallContext) -> dict:
    return {"external_id": ctx.persona_id}


# =============================================================================
# Stream completion predicates
# =============================================================================


def _is_error_frame(frame: dict) -> bool:
    return frame.get("command") == "neo_error"


def _create_chat_done(frame: dict) -> bool:
    return _is_error_frame(frame) or frame.get("command") == "create_chat_response"


def _turn_done(frame: dict) -> bool:
    """Final, non-human turn frame. Partial frames are ignored."""
    if _is_error_frame(frame):
        return True
    if frame.get("command") not in ("add_turn", "update_turn"):
        return False
    turn = frame.get("turn") or {}
    if (turn.get("author") or {}).get("is_human"):
        return False
    candidates = turn.get("candidates") or []
    primary_id = turn.get("primary_candidate_id")
    for candidate in candidates:
        if primary_id is None or candidate.get("candidate_id") == primary_id:
            return bool(candidate.get("is_final"))
    return False


# =============================================================================
# The table
# =============================================================================


STRATEGIES: dict[Operation, tuple[FallbackStrategy, ...]] = {
    Operation.DISCOVER_IDENTITY: (
        FallbackStrategy(
            id="identity.chat_user",
            operation=Operation.DISCOVER_IDENTITY,
            transport=TransportKind.UNARY,
            build=_empty,
            path="/chat/user/",
        ),
    ),
    Operation.ACQUIRE_SESSION: (
        FallbackStrategy(
            id="session.web_cookies",
            operation=Operation.ACQUIRE_SESSION,
            transport=TransportKind.UNARY,
            build=_empty,
            base="web",
            path="/",
        ),
        FallbackStrategy(
            id="session.csrf_endpoint",
            operation=Operation.ACQUIRE_SESSION,
            transport=TransportKind.UNARY,
            build=_empty,
            path="/chat/csrf/",
        ),
    ),
    Operation.CREATE_CONVERSATION: (
        FallbackStrategy(
            id="create.ws_create_chat",
            operation=Operation.CREATE_CONVERSATION,
            transport=TransportKind.STREAM,
            build=_create_chat_frame,
            completes=_create_chat_done,
        ),
        FallbackStrategy(
            id="create.rest_history",
            operation=Operation.CREATE_CONVERSATION,
            transport=TransportKind.UNARY,
            build=_history_create_body,
            method="POST",
            path="/chat/history/create/",
        ),
    ),
    Operation.SEND_TURN: (
        FallbackStrategy(
            id="turn.ws_generate",
            operation=Operation.SEND_TURN,
            transport=TransportKind.STREAM,
            build=_generate_turn_frame,
            completes=_turn_done,
        ),
        FallbackStrategy(
            id="turn.rest_streaming_recv",
            operation=Operation.SEND_TURN,
            transport=TransportKind.UNARY,
            build=_streaming_recv_body,
            method="POST",
            path="/chat/streaming/recv/",
        ),
        FallbackStrategy(
            id="turn.rest_turn_generate",
            operation=Operation.SEND_TURN,
            transport=TransportKind.UNARY,
            build=_turn_generate_body,
            method="POST",
            base="web",
            path="/chat/turn/generate/",
        ),
    ),
    Operation.FETCH_HISTORY: (
        FallbackStrategy(
            id="history.rest_msgs",
            operation=Operation.FETCH_HISTORY,
            transport=TransportKind.UNARY,
            build=_history_params,
            path="/chat/history/msgs/user/",
        ),
        FallbackStrategy(
            id="history.rest_turns",
            operation=Operation.FETCH_HISTORY,
            transport=TransportKind.UNARY,
            build=_empty,
            path="/turns/{conversation_id}/",
        ),
    ),
    Operation.FETCH_PERSONA: (
        FallbackStrategy(
            id="persona.rest_info",
            operation=Operation.FETCH_PERSONA,
            transport=TransportKind.UNARY,
            build=_persona_params,
            path="/chat/character/info/",
        ),
        FallbackStrategy(
            id="persona.rest_info_post",
            operation=Operation.FETCH_PERSONA,
            transport=TransportKind.UNARY,
            build=_persona_params,
            method="POST",
            base="web",
            path="/chat/character/info/",
        ),
    ),
}


def chain_for(operation: Operation) -> tuple[FallbackStrategy, ...]:
    return STRATEGIES[operation]


def get_strategy(strategy_id: str) -> FallbackStrategy:
    for strategies in STRATEGIES.values():
        for strategy in strategies:
            if strategy.id == strategy_id:
                return strategy
    raise KeyError(strategy_id)


def _check_table() -> None:
    for strategies in STRATEGIES.values():
        for strategy in strategies:
            if strategy.id not in PARSERS:
                raise RuntimeError(f"Strategy {strategy.id} has no parser")
            if strategy.transport is TransportKind.STREAM and strategy.completes is None:
                raise RuntimeError(f"Stream strategy {strategy.id} has no completion predicate")


_check_table()
