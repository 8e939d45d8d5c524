"""Shared fakes for the remotechat tests.

FakeTransport answers strategy attempts from a per-strategy route table
and records every call, so tests can count attempts per strategy.
FakeWebSocket/FakeConnector stand in for the websockets client behind
StreamTransport.
"""

import asyncio
import json
from typing import Any, Optional

import pytest

from remotechat.client import RemoteChatClient
from remotechat.config import ClientSettings
from remotechat.errors import NetworkError
from remotechat.models import Credential, RawResponse, TransportKind
from remotechat.store import MemoryConversationStore


def raw(data: Any = None, cookies: Optional[dict] = None, status: int = 200) -> RawResponse:
    """A successful unary response."""
    return RawResponse(
        status=status,
        text=json.dumps(data) if data is not None else "",
        data=data,
        cookies=cookies or {},
    )


def turn_frame(request_id: str, text: str, final: bool = True, author: str = "Hero") -> dict:
    """Inbound stream frame carrying a (possibly partial) generated turn."""
    return {
        "command": "update_turn" if final else "add_turn",
        "request_id": request_id,
        "turn": {
            "turn_key": {"turn_id": f"turn-{request_id[:8]}", "chat_id": "conv-1"},
            "author": {"author_id": "char", "is_human": False, "name": author},
            "candidates": [{"candidate_id": "cand-1", "raw_content": text, "is_final": final}],
            "primary_candidate_id": "cand-1",
        },
    }


def streaming_recv(text: str, reply_id: int = 1) -> RawResponse:
    return raw({"replies": [{"id": reply_id, "text": text}], "src_char": {"participant": {"name": "Hero"}}})


Route = Any  # value, exception instance, or callable(ctx) returning either


class FakeTransport:
    """Scripted transport. Unrouted strategies fail with a NetworkError."""

    def __init__(self, kind: TransportKind, routes: Optional[dict[str, Route]] = None, delay: float = 0):
        self.kind = kind
        self.routes: dict[str, Route] = dict(routes or {})
        self.delay = delay
        self.calls: list[tuple[str, Any]] = []
        self.discarded: list[Credential] = []
        self.closed = False

    def count(self, prefix: str = "") -> int:
        return sum(1 for strategy_id, _ in self.calls if strategy_id.startswith(prefix))

    def credentials_used(self, prefix: str = "") -> list[Credential]:
        return [ctx.session.credential for strategy_id, ctx in self.calls if strategy_id.startswith(prefix)]

    async def send(self, strategy, ctx, timeout=None):
        self.calls.append((strategy.id, ctx))
        if self.delay:
            await asyncio.sleep(self.delay)
        route = self.routes.get(strategy.id)
        if route is None:
            raise NetworkError(f"no route for {strategy.id}")
        result = route(ctx) if callable(route) else route
        if isinstance(result, Exception):
            raise result
        return result

    async def discard(self, credential):
        self.discarded.append(credential)

    async def aclose(self):
        self.closed = True


def session_routes() -> dict[str, Route]:
    """Unary routes that make session bootstrap succeed."""
    return {
        "identity.chat_user": raw({"user": {"user": {"id": 42}}}),
        "session.web_cookies": raw(cookies={"csrftoken": "csrf-1", "sessionid": "sess-1"}),
    }


def make_client(
    tokens: list[str],
    unary: Optional[dict[str, Route]] = None,
    stream: Optional[dict[str, Route]] = None,
    store=None,
    delay: float = 0,
) -> tuple[RemoteChatClient, FakeTransport, FakeTransport]:
    unary_routes = session_routes()
    unary_routes.update(unary or {})
    unary_transport = FakeTransport(TransportKind.UNARY, unary_routes, delay=delay)
    stream_transport = FakeTransport(TransportKind.STREAM, stream or {}, delay=delay)
    client = RemoteChatClient(
        settings=ClientSettings(tokens=tokens),
        store=store if store is not None else MemoryConversationStore(),
        transports={
            TransportKind.UNARY: unary_transport,
            TransportKind.STREAM: stream_transport,
        },
    )
    return client, unary_transport, stream_transport


class FakeWebSocket:
    """In-memory duplex connection."""

    def __init__(self):
        self.sent: list[dict] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, message: str):
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(message))

    def push(self, frame: dict):
        self.inbound.put_nowait(json.dumps(frame))

    def push_raw(self, message: str):
        self.inbound.put_nowait(message)

    def drop(self):
        """Peer closes the connection."""
        self.inbound.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.inbound.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def close(self):
        self.closed = True
        self.inbound.put_nowait(None)


class FakeConnector:
    """Replaces websockets.connect; one FakeWebSocket per call."""

    def __init__(self):
        self.sockets: list[FakeWebSocket] = []
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws


async def wait_for_sent(ws: FakeWebSocket, count: int, attempts: int = 200):
    for _ in range(attempts):
        if len(ws.sent) >= count:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"expected {count} frames, got {len(ws.sent)}")


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings(
        tokens=["token-aaaaa", "token-bbbbb"],
        api_url="https://api.example.com",
        web_url="https://web.example.com",
        stream_url="wss://stream.example.com/ws/",
        connect_timeout=1.0,
        stream_timeout=1.0,
    )


async def wait_for_socket(connector: FakeConnector, index: int = 0, attempts: int = 200) -> FakeWebSocket:
    for _ in range(attempts):
        if len(connector.sockets) > index:
            return connector.sockets[index]
        await asyncio.sleep(0.005)
    raise AssertionError(f"connection {index} was never opened")
