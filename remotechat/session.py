"""Session bootstrap.

Before any chat call a credential needs session material: the account
id (identity discovery) plus the anti-forgery token and session cookie
(session acquisition). Both steps run through the fallback chain with
their own timeout. Results are cached per credential until a call
reports an authentication failure.
"""

import logging
from typing import Optional

from .errors import AttemptFailure, AuthenticationError
from .fallback import FallbackChain
from .locks import KeyedLock
from .models import CallContext, Credential, Operation, SessionContext

logger = logging.getLogger(__name__)


class SessionBootstrap:
    """Owns the per-credential SessionContext map."""

    def __init__(self, chain: FallbackChain, timeout: float = 10.0):
        self._chain = chain
        self._timeout = timeout
        self._sessions: dict[Credential, SessionContext] = {}
        self._locks = KeyedLock()

    def cached(self, credential: Credential) -> Optional[SessionContext]:
        return self._sessions.get(credential)

    def invalidate(self, credential: Credential) -> None:
        if self._sessions.pop(credential, None) is not None:
            logger.info(f"Session for {credential.label} discarded")

    async def ensure_session(
        self,
        credential: Credential,
        failures: Optional[list[AttemptFailure]] = None,
    ) -> SessionContext:
        """Return the cached session for the credential, bootstrapping it if needed.

        Raises whatever the chain raises; nothing is cached on failure and
        an authentication failure also drops any previous session.
        """
        session = self._sessions.get(credential)
        if session is not None:
            return session

        async with self._locks.hold(credential):
            # Another task may have finished bootstrapping while we waited
            session = self._sessions.get(credential)
            if session is not None:
                return session

            logger.info(f"Bootstrapping session for {credential.label}")
            session = SessionContext(credential=credential)
            ctx = CallContext(session=session)
            try:
                session.account_id = await self._chain.execute(
                    Operation.DISCOVER_IDENTITY, ctx, failures, timeout=self._timeout
                )
                material = await self._chain.execute(
                    Operation.ACQUIRE_SESSION, ctx, failures, timeout=self._timeout
                )
            except AuthenticationError:
                self.invalidate(credential)
                raise

            session.csrf_token = material.csrf_token
            session.session_cookie = material.session_cookie
            self._sessions[credential] = session
            logger.info(f"Session ready for {credential.label} (account {session.account_id})")
            return session
