"""Message exchange protocol.

RemoteChatClient.send() is the single entry point chat adapters use:

1. Take the current credential from the pool.
2. Make sure it has a session (bootstrap).
3. Resolve or create the conversation for the caller's key.
4. Send the turn through the fallback chain.
5. If the backend forgot the conversation, re-create it once and resend.
6. Anything else that fails moves on to the next credential.

At most len(pool) credentials are tried per call. Only ConfigurationError,
TerminalError and ExhaustedError ever leave this module.
"""

import logging
from typing import Awaitable, Callable, Mapping, Optional, TypeVar

from .config import ClientSettings
from .credentials import CredentialPool
from .errors import (
    AttemptFailure,
    AuthenticationError,
    ConfigurationError,
    ConversationNotFoundError,
    ExhaustedError,
    RemoteChatError,
    TerminalError,
)
from .fallback import FallbackChain
from .models import (
    CallContext,
    ConversationHandle,
    Credential,
    Operation,
    PersonaInfo,
    Reply,
    SessionContext,
    TransportKind,
)
from .registry import ConversationRegistry
from .session import SessionBootstrap
from .store import ConversationStore, MemoryConversationStore
from .transport import StreamTransport, Transport, UnaryTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

Attempt = Callable[[SessionContext, list[AttemptFailure]], Awaitable[T]]


def _require(value: str, name: str) -> str:
    if not value or not value.strip():
        raise TerminalError(f"{name} must not be empty", code="BAD_INPUT")
    return value


class RemoteChatClient:
    """Resilient client for the remote conversational backend."""

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        store: Optional[ConversationStore] = None,
        pool: Optional[CredentialPool] = None,
        transports: Optional[Mapping[TransportKind, Transport]] = None,
    ):
        self.settings = settings or ClientSettings.from_env()
        self.pool = pool if pool is not None else CredentialPool(self.settings.tokens)
        if transports is None:
            transports = {
                TransportKind.UNARY: UnaryTransport(self.settings),
                TransportKind.STREAM: StreamTransport(self.settings),
            }
        self.chain = FallbackChain(transports)
        self.sessions = SessionBootstrap(self.chain, timeout=self.settings.bootstrap_timeout)
        self.registry = ConversationRegistry(store or MemoryConversationStore(), self.chain)

    async def __aenter__(self) -> "RemoteChatClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close every open stream connection."""
        await self.chain.aclose()

    # =========================================================================
    # Public operations
    # =========================================================================

    async def send(self, conversation_key: str, persona_id: str, text: str) -> Reply:
        """Send one message in the key's conversation and return the reply."""
        _require(conversation_key, "conversation_key")
        _require(persona_id, "persona_id")
        _require(text, "text")

        async def attempt(session: SessionContext, failures: list[AttemptFailure]) -> Reply:
            handle = await self.registry.resolve(conversation_key, persona_id, session, failures)
            try:
                return await self._send_turn(handle, text, session, failures)
            except ConversationNotFoundError:
                logger.warning(
                    f"Conversation {handle.external_id} unknown to backend, re-creating once"
                )
                handle = await self.registry.resolve(
                    conversation_key, persona_id, session, failures, stale_id=handle.external_id
                )
                return await self._send_turn(handle, text, session, failures)

        return await self._with_credentials("send", attempt)

    async def start(
        self, conversation_key: str, persona_id: str
    ) -> tuple[ConversationHandle, Optional[Reply]]:
        """Start a fresh conversation for the key; returns the handle and greeting."""
        _require(conversation_key, "conversation_key")
        _require(persona_id, "persona_id")

        async def attempt(session, failures):
            return await self.registry.start(conversation_key, persona_id, session, failures)

        return await self._with_credentials("start", attempt)

    async def fetch_history(self, conversation_key: str) -> list[Reply]:
        """Messages of the key's conversation, oldest first."""
        handle = self.registry.lookup(_require(conversation_key, "conversation_key"))
        if handle is None:
            raise TerminalError(f"No conversation for {conversation_key}", code="NO_CONVERSATION")

        async def attempt(session, failures):
            ctx = CallContext(
                session=session,
                persona_id=handle.persona_id,
                conversation_id=handle.external_id,
            )
            try:
                return await self.chain.execute(Operation.FETCH_HISTORY, ctx, failures)
            except ConversationNotFoundError:
                raise TerminalError(
                    f"Conversation {handle.external_id} no longer exists",
                    code="NO_CONVERSATION",
                )

        return await self._with_credentials("fetch_history", attempt)

    async def fetch_persona(self, persona_id: str) -> PersonaInfo:
        _require(persona_id, "persona_id")

        async def attempt(session, failures):
            ctx = CallContext(session=session, persona_id=persona_id)
            return await self.chain.execute(Operation.FETCH_PERSONA, ctx, failures)

        return await self._with_credentials("fetch_persona", attempt)

    def attach(self, conversation_key: str, persona_id: str, link_or_id: str) -> ConversationHandle:
        """Bind the key to an existing backend conversation from a link or id."""
        _require(conversation_key, "conversation_key")
        _require(persona_id, "persona_id")
        return self.registry.adopt(conversation_key, persona_id, link_or_id)

    def reset(self, conversation_key: str) -> None:
        self.registry.reset(_require(conversation_key, "conversation_key"))

    def conversation(self, conversation_key: str) -> Optional[ConversationHandle]:
        return self.registry.lookup(conversation_key)

    # =========================================================================
    # Protocol internals
    # =========================================================================

    async def _send_turn(
        self,
        handle: ConversationHandle,
        text: str,
        session: SessionContext,
        failures: list[AttemptFailure],
    ) -> Reply:
        ctx = CallContext(
            session=session,
            persona_id=handle.persona_id,
            conversation_id=handle.external_id,
            text=text,
        )
        return await self.chain.execute(Operation.SEND_TURN, ctx, failures)

    def _next_credential(self, failed: Credential, tried: set[Credential]) -> Credential:
        credential = self.pool.advance(failed)
        if credential not in tried:
            return credential
        # A concurrent caller moved the cursor onto one we already used
        for candidate in self.pool.credentials:
            if candidate not in tried:
                return candidate
        return credential

    async def _with_credentials(self, label: str, attempt: Attempt) -> T:
        """Run attempt() under each credential in turn until one succeeds."""
        credential = self.pool.current()  # ConfigurationError on empty pool
        failures: list[AttemptFailure] = []
        tried: set[Credential] = set()

        for _ in range(len(self.pool)):
            tried.add(credential)
            try:
                session = await self.sessions.ensure_session(credential, failures)
                return await attempt(session, failures)
            except (TerminalError, ConfigurationError):
                raise
            except AuthenticationError as e:
                logger.warning(f"[{credential.label}] authentication failed: {e}")
                self.sessions.invalidate(credential)
                await self.chain.discard(credential)
            except RemoteChatError as e:
                logger.warning(f"[{credential.label}] {label} failed: {e}")

            if len(tried) < len(self.pool):
                credential = self._next_credential(credential, tried)
            else:
                # Leave the cursor past the last failure for the next caller
                self.pool.advance(credential)

        logger.error(f"{label}: all {len(self.pool)} credential(s) failed ({len(failures)} attempts)")
        raise ExhaustedError(
            f"{label} failed with all {len(self.pool)} credential(s)",
            attempts=failures,
        )
