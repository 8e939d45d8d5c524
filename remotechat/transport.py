"""Transport adapters.

Two interchangeable ways of delivering one strategy attempt:

- UnaryTransport: one HTTP request per call on its own connection (httpx).
- StreamTransport: one persistent WebSocket per credential, shared by
  every concurrent call for that credential. Outbound frames carry a
  correlation id; a reader task routes inbound frames to the waiter
  registered under the same id and drops frames nobody waits for.

Both raise only errors from .errors; raw httpx/websockets exceptions
never leave this module.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
import websockets

from .config import ClientSettings
from .errors import (
    AttemptTimeoutError,
    ConnectionClosedError,
    NetworkError,
    ResponseShapeError,
    error_for_status,
)
from .locks import KeyedLock
from .models import CallContext, Credential, RawResponse, SessionContext, TransportKind
from .strategies import CORRELATION_FIELD, FallbackStrategy

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Capability shared by both transports."""

    kind: TransportKind

    async def send(
        self, strategy: FallbackStrategy, ctx: CallContext, timeout: Optional[float] = None
    ) -> Any:
        ...

    async def discard(self, credential: Credential) -> None:
        ...

    async def aclose(self) -> None:
        ...


# =============================================================================
# Unary Transport
# =============================================================================


class UnaryTransport:
    """One request, one response, own connection."""

    kind = TransportKind.UNARY

    def __init__(
        self,
        settings: ClientSettings,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        # Injected by tests (httpx.MockTransport); None means real network
        self._http_transport = http_transport

    def _headers(self, session: SessionContext) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.settings.user_agent,
        }
        headers.update(session.auth_headers())
        return headers

    async def send(
        self, strategy: FallbackStrategy, ctx: CallContext, timeout: Optional[float] = None
    ) -> RawResponse:
        timeout = timeout or self.settings.unary_timeout
        url = f"{self.settings.base_url(strategy.base)}{strategy.url_path(ctx)}"
        body = strategy.build(ctx)
        kwargs: dict[str, Any] = {"params": body} if strategy.method == "GET" else {"json": body}

        logger.debug(f"Unary {strategy.method} {url} ({strategy.id})")
        try:
            response = await asyncio.wait_for(
                self._request(strategy.method, url, self._headers(ctx.session), timeout, kwargs),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise AttemptTimeoutError(f"{strategy.id} timed out after {timeout}s")
        except httpx.RequestError as e:
            raise NetworkError(f"{strategy.id}: {type(e).__name__}: {e}")

        if response.status_code >= 400:
            raise error_for_status(
                response.status_code,
                response.text,
                has_conversation=bool(ctx.conversation_id),
            )

        try:
            data = response.json()
        except ValueError:
            data = None

        return RawResponse(
            status=response.status_code,
            text=response.text,
            data=data,
            cookies=dict(response.cookies),
            headers=dict(response.headers),
        )

    async def _request(
        self, method: str, url: str, headers: dict, timeout: float, kwargs: dict
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout, transport=self._http_transport) as client:
            return await client.request(method, url, headers=headers, **kwargs)

    async def discard(self, credential: Credential) -> None:
        """Nothing is kept between calls."""

    async def aclose(self) -> None:
        pass


# =============================================================================
# Stream Transport
# =============================================================================


Connector = Callable[..., Awaitable[Any]]


@dataclass
class _Waiter:
    future: asyncio.Future
    completes: Callable[[dict], bool]


class StreamConnection:
    """One open WebSocket plus its correlation table.

    Table mutations never straddle an await, so the event loop serializes
    them; sends may interleave freely.
    """

    def __init__(self, credential: Credential, ws: Any, auth_scheme: str, send_timeout: float = 5.0):
        self.credential = credential
        self.ws = ws
        self.auth_scheme = auth_scheme
        self.send_timeout = send_timeout
        self.closed = False
        self._waiters: dict[str, _Waiter] = {}
        self._reader: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._waiters)

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    async def request(self, frame: dict, completes: Callable[[dict], bool], timeout: float) -> dict:
        """Send a correlated frame and wait for the frame that completes it."""
        correlation_id = frame[CORRELATION_FIELD]
        if self.closed:
            raise ConnectionClosedError("Stream connection is closed")
        if correlation_id in self._waiters:
            raise ValueError(f"Duplicate correlation id {correlation_id}")

        future = asyncio.get_running_loop().create_future()
        self._waiters[correlation_id] = _Waiter(future, completes)
        try:
            return await asyncio.wait_for(self._roundtrip(frame, future), timeout=timeout)
        except asyncio.TimeoutError:
            raise AttemptTimeoutError(
                f"No reply for {correlation_id[:8]}... within {timeout}s"
            )
        finally:
            # Cancellation lands here too; the connection stays open
            self._waiters.pop(correlation_id, None)

    async def _roundtrip(self, frame: dict, future: asyncio.Future) -> dict:
        try:
            await asyncio.wait_for(self.ws.send(json.dumps(frame)), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.error(f"WebSocket send timed out after {self.send_timeout}s")
            raise
        except (websockets.ConnectionClosed, OSError) as e:
            self._fail_waiters(f"send failed: {e}")
            raise ConnectionClosedError(f"Stream connection closed during send: {e}")
        return await future

    async def _read_loop(self) -> None:
        reason = "connection closed by peer"
        try:
            async for message in self.ws:
                try:
                    frame = json.loads(message)
                except (json.JSONDecodeError, TypeError):
                    logger.warning("Invalid JSON received on stream, dropped")
                    continue
                if isinstance(frame, dict):
                    self._dispatch(frame)
        except websockets.ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except Exception as e:
            logger.exception("Stream reader failed")
            reason = f"{type(e).__name__}: {e}"
        finally:
            self._fail_waiters(reason)

    def _dispatch(self, frame: dict) -> None:
        correlation_id = frame.get(CORRELATION_FIELD)
        waiter = self._waiters.get(correlation_id) if isinstance(correlation_id, str) else None
        if waiter is None:
            logger.debug(f"Dropping frame without waiter ({frame.get('command')})")
            return
        if waiter.future.done():
            return
        try:
            done = waiter.completes(frame)
        except Exception as e:
            # Malformed frame for a live call: fail that attempt, keep the connection
            waiter.future.set_exception(
                ResponseShapeError(f"Unrecognized stream frame: {type(e).__name__}: {e}")
            )
            return
        if done:
            waiter.future.set_result(frame)

    def _fail_waiters(self, reason: str) -> None:
        if not self.closed:
            logger.info(f"Stream for {self.credential.label} closed: {reason}")
        self.closed = True
        for waiter in list(self._waiters.values()):
            if not waiter.future.done():
                waiter.future.set_exception(ConnectionClosedError(f"Stream {reason}"))

    async def close(self) -> None:
        self._fail_waiters("closed locally")
        try:
            await self.ws.close()
        except Exception as e:
            logger.debug(f"Error closing stream: {e}")
        if self._reader and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass


def handshake_headers(session: SessionContext, scheme: str, user_agent: str) -> dict[str, str]:
    """Authentication headers for opening a stream connection."""
    cookies = session.cookies()
    headers = {"User-Agent": user_agent}
    if scheme == "cookie":
        cookie_parts = [f'HTTP_AUTHORIZATION="Token {session.credential.secret}"']
        cookie_parts += [f"{k}={v}" for k, v in cookies.items()]
        headers["Cookie"] = "; ".join(cookie_parts)
    elif scheme == "header":
        headers["Authorization"] = f"Token {session.credential.secret}"
        if cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in cookies.items())
    else:
        raise ValueError(f"Unknown stream auth scheme: {scheme}")
    return headers


class StreamTransport:
    """At most one duplex connection per credential, multiplexed by correlation id."""

    kind = TransportKind.STREAM

    def __init__(self, settings: ClientSettings, connector: Optional[Connector] = None):
        self.settings = settings
        self._connector = connector or websockets.connect
        self._connections: dict[Credential, StreamConnection] = {}
        self._open_locks = KeyedLock()

    def connection(self, credential: Credential) -> Optional[StreamConnection]:
        conn = self._connections.get(credential)
        if conn is None or conn.closed:
            return None
        return conn

    async def send(
        self, strategy: FallbackStrategy, ctx: CallContext, timeout: Optional[float] = None
    ) -> dict:
        timeout = timeout or self.settings.stream_timeout
        conn = await self._connection_for(ctx.session, strategy.auth_scheme)
        frame = strategy.build(ctx)
        frame[CORRELATION_FIELD] = ctx.correlation_id
        logger.debug(f"Stream {frame.get('command')} {ctx.correlation_id[:8]}... ({strategy.id})")
        return await conn.request(frame, strategy.completes, timeout)

    async def _connection_for(self, session: SessionContext, scheme: str) -> StreamConnection:
        credential = session.credential
        async with self._open_locks.hold(credential):
            conn = self._connections.get(credential)
            if conn is not None and not conn.closed and conn.auth_scheme == scheme:
                return conn
            if conn is not None:
                await conn.close()
            conn = await self._open(session, scheme)
            self._connections[credential] = conn
            return conn

    async def _open(self, session: SessionContext, scheme: str) -> StreamConnection:
        url = self.settings.stream_url
        headers = handshake_headers(session, scheme, self.settings.user_agent)
        logger.info(f"Opening stream to {url} for {session.credential.label}")

        async def connect():
            return await self._connector(
                url,
                additional_headers=headers,
                ping_interval=30,
                ping_timeout=10,
            )

        try:
            ws = await asyncio.wait_for(connect(), timeout=self.settings.connect_timeout)
        except asyncio.TimeoutError:
            raise AttemptTimeoutError(f"Stream connect timed out after {self.settings.connect_timeout}s")
        except websockets.exceptions.InvalidStatus as e:
            # Server rejected the upgrade (e.g. 401, 500)
            raise error_for_status(e.response.status_code, "stream handshake rejected")
        except (websockets.exceptions.InvalidURI, websockets.exceptions.InvalidHandshake) as e:
            raise NetworkError(f"Stream handshake failed: {e}")
        except OSError as e:
            raise NetworkError(f"Stream connect failed: {e}")

        conn = StreamConnection(session.credential, ws, scheme)
        conn.start()
        return conn

    async def discard(self, credential: Credential) -> None:
        """Close the credential's connection (its session material is stale)."""
        conn = self._connections.pop(credential, None)
        if conn is not None:
            await conn.close()

    async def aclose(self) -> None:
        for credential in list(self._connections):
            await self.discard(credential)
