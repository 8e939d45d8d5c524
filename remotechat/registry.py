"""Conversation registry.

Maps a caller's conversation key to the backend conversation it is bound
to. Creation is serialized per key so concurrent first messages in one
context produce a single backend conversation.
"""

import logging
import re
from typing import Optional

from .errors import AttemptFailure, TerminalError
from .fallback import FallbackChain
from .locks import KeyedLock
from .models import (
    CallContext,
    ConversationCreated,
    ConversationHandle,
    Operation,
    Reply,
    SessionContext,
)
from .store import ConversationStore

logger = logging.getLogger(__name__)

# Shared chat links carry the conversation as ?hist=<id>
_HIST_PARAM = re.compile(r"hist=([^&\s#]+)")
_BARE_ID = re.compile(r"^[A-Za-z0-9_\-]{8,}$")


def extract_conversation_id(text: str) -> Optional[str]:
    """Pull an external conversation id out of a shared link or a bare id."""
    if not text:
        return None
    match = _HIST_PARAM.search(text)
    if match:
        return match.group(1)
    text = text.strip()
    if _BARE_ID.match(text):
        return text
    return None


class ConversationRegistry:
    """create-or-reuse of ConversationHandles on top of a store."""

    def __init__(self, store: ConversationStore, chain: FallbackChain):
        self.store = store
        self._chain = chain
        self._locks = KeyedLock()

    def lookup(self, conversation_key: str) -> Optional[ConversationHandle]:
        return self.store.load(conversation_key)

    def _reusable(self, conversation_key: str, stale_id: Optional[str]) -> Optional[ConversationHandle]:
        handle = self.store.load(conversation_key)
        if handle is None:
            return None
        if stale_id is not None and handle.external_id == stale_id:
            return None
        return handle

    async def resolve(
        self,
        conversation_key: str,
        persona_id: str,
        session: SessionContext,
        failures: Optional[list[AttemptFailure]] = None,
        stale_id: Optional[str] = None,
    ) -> ConversationHandle:
        """Return the key's handle, creating a conversation if there is none.

        Args:
            stale_id: External id the caller found invalid. A stored handle
                with this id is replaced; one with any other id was already
                replaced by a concurrent caller and is returned as is.
        """
        handle = self._reusable(conversation_key, stale_id)
        if handle is not None:
            return handle

        async with self._locks.hold(conversation_key):
            handle = self._reusable(conversation_key, stale_id)
            if handle is not None:
                return handle
            handle, _ = await self._create(conversation_key, persona_id, session, failures)
            return handle

    async def start(
        self,
        conversation_key: str,
        persona_id: str,
        session: SessionContext,
        failures: Optional[list[AttemptFailure]] = None,
    ) -> tuple[ConversationHandle, Optional[Reply]]:
        """Always create a fresh conversation for the key, replacing any old one."""
        async with self._locks.hold(conversation_key):
            return await self._create(conversation_key, persona_id, session, failures)

    async def _create(
        self,
        conversation_key: str,
        persona_id: str,
        session: SessionContext,
        failures: Optional[list[AttemptFailure]],
    ) -> tuple[ConversationHandle, Optional[Reply]]:
        logger.info(f"Creating conversation for {conversation_key} with persona {persona_id}")
        ctx = CallContext(session=session, persona_id=persona_id)
        created: ConversationCreated = await self._chain.execute(
            Operation.CREATE_CONVERSATION, ctx, failures
        )
        handle = ConversationHandle(
            conversation_key=conversation_key,
            external_id=created.external_id,
            persona_id=persona_id,
        )
        self.store.save(conversation_key, handle)
        logger.info(f"Conversation {created.external_id} bound to {conversation_key}")
        return handle, created.greeting

    def adopt(self, conversation_key: str, persona_id: str, link_or_id: str) -> ConversationHandle:
        """Bind the key to an existing backend conversation (no network call)."""
        external_id = extract_conversation_id(link_or_id)
        if not external_id:
            raise TerminalError(f"No conversation id found in {link_or_id!r}", code="BAD_INPUT")
        handle = ConversationHandle(conversation_key, external_id, persona_id)
        self.store.save(conversation_key, handle)
        logger.info(f"Conversation {external_id} attached to {conversation_key}")
        return handle

    def reset(self, conversation_key: str) -> None:
        """Forget the key's conversation; the next message creates a new one."""
        self.store.delete(conversation_key)
        logger.info(f"Conversation for {conversation_key} reset")
