"""Endpoint fallback chain.

Tries each strategy of an operation in priority order and classifies
every failure:

- RETRYABLE: move on to the next strategy.
- TERMINAL: stop and propagate (moderation, malformed request).
- AUTH / CONVERSATION_INVALID: stop and propagate; the exchange
  protocol reacts (credential rotation, conversation re-creation).

When every strategy fails with a retryable error the chain raises
ChainExhaustedError carrying one failure per strategy.
"""

import logging
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import (
    AttemptFailure,
    AuthenticationError,
    ChainExhaustedError,
    ConfigurationError,
    ConversationNotFoundError,
    RemoteChatError,
    TerminalError,
)
from .models import CallContext, Credential, Operation, TransportKind
from .normalizer import normalize
from .strategies import STRATEGIES, FallbackStrategy
from .transport import Transport

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    AUTH = "auth"
    CONVERSATION_INVALID = "conversation_invalid"


def classify(error: Exception) -> Outcome:
    """Classify a failed attempt."""
    if isinstance(error, (TerminalError, ConfigurationError)):
        return Outcome.TERMINAL
    if isinstance(error, AuthenticationError):
        return Outcome.AUTH
    if isinstance(error, ConversationNotFoundError):
        return Outcome.CONVERSATION_INVALID
    return Outcome.RETRYABLE


class FallbackChain:
    """Executes operations against the static strategy table."""

    def __init__(
        self,
        transports: Mapping[TransportKind, Transport],
        strategies: Optional[Mapping[Operation, tuple[FallbackStrategy, ...]]] = None,
    ):
        self.transports = dict(transports)
        self.strategies = dict(strategies or STRATEGIES)

    def length(self, operation: Operation) -> int:
        return len(self.strategies[operation])

    async def execute(
        self,
        operation: Operation,
        ctx: CallContext,
        failures: Optional[list[AttemptFailure]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Run the operation's strategies until one succeeds.

        Args:
            operation: Which strategy list to use.
            ctx: Call context; each attempt gets fresh correlation ids.
            failures: Optional shared list every failed attempt is appended
                to (including the one that stops the chain).
            timeout: Per-attempt timeout override (bootstrap uses its own).

        Raises:
            ChainExhaustedError: every strategy failed with a retryable error.
            TerminalError, AuthenticationError, ConversationNotFoundError:
                propagated as soon as a strategy reports them.
        """
        attempted: list[AttemptFailure] = []
        label = ctx.session.credential.label

        for strategy in self.strategies[operation]:
            attempt_ctx = ctx.fresh()
            transport = self.transports[strategy.transport]
            logger.debug(f"[{label}] {operation.value}: trying {strategy.id}")
            try:
                raw = await transport.send(strategy, attempt_ctx, timeout)
                result = normalize(raw, strategy.id, attempt_ctx)
            except RemoteChatError as e:
                failure = AttemptFailure(label, operation.value, strategy.id, e)
                attempted.append(failure)
                if failures is not None:
                    failures.append(failure)

                outcome = classify(e)
                if outcome is not Outcome.RETRYABLE:
                    logger.info(f"[{label}] {strategy.id} stopped the chain ({outcome.value}): {e}")
                    raise
                logger.warning(f"[{label}] {strategy.id} failed, trying next strategy: {e}")
                continue

            logger.debug(f"[{label}] {operation.value}: {strategy.id} succeeded")
            return result

        raise ChainExhaustedError(operation.value, attempted)

    async def discard(self, credential: Credential) -> None:
        """Drop per-credential transport state (stale session material)."""
        for transport in self.transports.values():
            await transport.discard(credential)

    async def aclose(self) -> None:
        for transport in self.transports.values():
            await transport.aclose()
