"""End-to-end tests of the message exchange protocol.

RemoteChatClient runs against scripted transports, so every strategy
attempt is counted and any failure can be injected per credential.
"""

import asyncio

import pytest

from remotechat.errors import (
    AttemptTimeoutError,
    AuthenticationError,
    ConfigurationError,
    ContentRejectedError,
    ConversationNotFoundError,
    ExhaustedError,
    HttpStatusError,
    TerminalError,
)
from remotechat.client import RemoteChatClient
from remotechat.config import ClientSettings
from remotechat.models import ConversationHandle, Credential, TransportKind
from remotechat.store import MemoryConversationStore
from remotechat.transport import StreamTransport

from conftest import (
    FakeConnector,
    FakeTransport,
    make_client,
    raw,
    session_routes,
    streaming_recv,
    turn_frame,
    wait_for_sent,
    wait_for_socket,
)

ALPHA, BRAVO, CHARLIE = "alpha-secret", "bravo-secret", "charlie-secret"


def store_with(external_id: str = "conv-1", persona_id: str = "persona-1") -> MemoryConversationStore:
    store = MemoryConversationStore()
    store.save("channel-1", ConversationHandle("channel-1", external_id, persona_id))
    return store


def reply_frame(ctx, text="Hello!"):
    return turn_frame(ctx.correlation_id, text)


def created(external_id):
    return {"command": "create_chat_response", "chat": {"chat_id": external_id}}


class TestSend:
    @pytest.mark.asyncio
    async def test_happy_path_creates_conversation_then_replies(self):
        client, unary, stream = make_client(
            [ALPHA],
            stream={
                "create.ws_create_chat": created("conv-new"),
                "turn.ws_generate": reply_frame,
            },
        )
        reply = await client.send("channel-1", "persona-1", "Hi")
        assert reply.text == "Hello!"
        assert client.conversation("channel-1").external_id == "conv-new"
        _, ctx = stream.calls[-1]
        assert ctx.conversation_id == "conv-new"
        assert ctx.text == "Hi"
        assert ctx.session.account_id == "42"

    @pytest.mark.asyncio
    async def test_stream_timeout_falls_back_to_unary(self):
        """First strategy times out, second succeeds; no credential rotation."""
        client, unary, stream = make_client(
            [ALPHA, BRAVO],
            unary={"turn.rest_streaming_recv": streaming_recv("from rest")},
            stream={"turn.ws_generate": AttemptTimeoutError("slow")},
            store=store_with(),
        )
        reply = await client.send("channel-1", "persona-1", "Hi")
        assert reply.text == "from rest"
        assert stream.count("turn.ws_generate") == 1
        assert unary.count("turn.rest_streaming_recv") == 1
        assert client.pool.current() == Credential(ALPHA)

    @pytest.mark.asyncio
    async def test_malformed_stream_frame_falls_back_to_unary(self):
        """An unreadable reply on the live stream is retried on the next strategy."""
        connector = FakeConnector()
        settings = ClientSettings(tokens=[ALPHA], stream_timeout=1.0, connect_timeout=1.0)
        unary = FakeTransport(
            TransportKind.UNARY,
            {**session_routes(), "turn.rest_streaming_recv": streaming_recv("from rest")},
        )
        client = RemoteChatClient(
            settings=settings,
            store=store_with(),
            transports={
                TransportKind.UNARY: unary,
                TransportKind.STREAM: StreamTransport(settings, connector=connector),
            },
        )
        task = asyncio.create_task(client.send("channel-1", "persona-1", "Hi"))
        ws = await wait_for_socket(connector)
        await wait_for_sent(ws, 1)
        ws.push({"command": "update_turn", "request_id": ws.sent[0]["request_id"], "turn": {"author": "x"}})

        reply = await task
        assert reply.text == "from rest"
        assert unary.count("turn.rest_streaming_recv") == 1
        assert client.pool.current() == Credential(ALPHA)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_persona_change_keeps_stored_conversation(self):
        """A different persona id does not replace the conversation bound to the key."""
        client, unary, stream = make_client(
            [ALPHA],
            stream={"create.ws_create_chat": created("conv-new"), "turn.ws_generate": reply_frame},
            store=store_with("conv-existing", "persona-1"),
        )
        reply = await client.send("channel-1", "persona-2", "Hi")
        assert reply.text == "Hello!"
        assert stream.count("create.") == 0
        handle = client.conversation("channel-1")
        assert handle.external_id == "conv-existing"
        assert handle.persona_id == "persona-1"
        _, ctx = stream.calls[-1]
        assert ctx.conversation_id == "conv-existing"

    @pytest.mark.asyncio
    async def test_missing_conversation_is_recreated_once(self):
        """The stale handle is replaced and the message is resent exactly once."""
        def turn(ctx):
            if ctx.conversation_id == "conv-old":
                return ConversationNotFoundError("gone")
            return reply_frame(ctx, "fresh start")

        client, unary, stream = make_client(
            [ALPHA],
            stream={"create.ws_create_chat": created("conv-new"), "turn.ws_generate": turn},
            store=store_with("conv-old"),
        )
        reply = await client.send("channel-1", "persona-1", "Hi")
        assert reply.text == "fresh start"
        assert stream.count("create.") + unary.count("create.") == 1
        assert stream.count("turn.") + unary.count("turn.") == 2
        assert client.conversation("channel-1").external_id == "conv-new"

    @pytest.mark.asyncio
    async def test_total_failure_reports_every_attempt(self):
        """Two credentials times three send strategies, all failing."""
        client, unary, stream = make_client([ALPHA, BRAVO], store=store_with())
        with pytest.raises(ExhaustedError) as exc_info:
            await client.send("channel-1", "persona-1", "Hi")
        error = exc_info.value
        assert len(error.attempts) == 6
        assert {a.operation for a in error.attempts} == {"sendTurn"}
        grouped = error.by_credential()
        assert list(grouped) == ["alpha...", "bravo..."]
        assert [len(v) for v in grouped.values()] == [3, 3]
        assert error.last_per_credential()["bravo..."].strategy_id == "turn.rest_turn_generate"

    @pytest.mark.asyncio
    async def test_rotation_is_bounded_by_pool_size(self):
        client, unary, stream = make_client([ALPHA, BRAVO, CHARLIE], store=store_with())
        with pytest.raises(ExhaustedError):
            await client.send("channel-1", "persona-1", "Hi")
        assert stream.count("turn.") + unary.count("turn.") == 3 * 3
        assert unary.count("identity.") == 3
        used = {c.secret for c in stream.credentials_used("turn.")}
        assert used == {ALPHA, BRAVO, CHARLIE}

    @pytest.mark.asyncio
    async def test_authentication_failure_rotates_credential(self):
        def turn(ctx):
            if ctx.session.credential.secret == ALPHA:
                return AuthenticationError("token revoked")
            return reply_frame(ctx, "from bravo")

        client, unary, stream = make_client(
            [ALPHA, BRAVO], stream={"turn.ws_generate": turn}, store=store_with()
        )
        reply = await client.send("channel-1", "persona-1", "Hi")
        assert reply.text == "from bravo"
        assert client.sessions.cached(Credential(ALPHA)) is None
        assert client.sessions.cached(Credential(BRAVO)) is not None
        assert Credential(ALPHA) in stream.discarded
        assert client.pool.current() == Credential(BRAVO)

    @pytest.mark.asyncio
    async def test_bootstrap_failure_rotates_credential(self):
        def identity(ctx):
            if ctx.session.credential.secret == ALPHA:
                return HttpStatusError(500)
            return raw({"user": {"user": {"id": 7}}})

        client, unary, stream = make_client(
            [ALPHA, BRAVO],
            unary={"identity.chat_user": identity},
            stream={"turn.ws_generate": reply_frame},
            store=store_with(),
        )
        reply = await client.send("channel-1", "persona-1", "Hi")
        assert reply.text == "Hello!"
        _, ctx = stream.calls[-1]
        assert ctx.session.credential == Credential(BRAVO)
        assert ctx.session.account_id == "7"

    @pytest.mark.asyncio
    async def test_content_rejection_is_never_retried(self):
        client, unary, stream = make_client(
            [ALPHA, BRAVO],
            unary={"turn.rest_streaming_recv": streaming_recv("never")},
            stream={"turn.ws_generate": {"command": "neo_error", "comment": "message filtered"}},
            store=store_with(),
        )
        with pytest.raises(ContentRejectedError):
            await client.send("channel-1", "persona-1", "something rude")
        assert stream.count("turn.") == 1
        assert unary.count("turn.") == 0
        assert unary.count("identity.") == 1

    @pytest.mark.asyncio
    async def test_empty_pool_is_configuration_error(self):
        client, unary, stream = make_client([])
        with pytest.raises(ConfigurationError):
            await client.send("channel-1", "persona-1", "Hi")
        assert unary.calls == []
        assert stream.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key, persona, text", [
        ("", "persona-1", "Hi"),
        ("channel-1", "", "Hi"),
        ("channel-1", "persona-1", "   "),
    ])
    async def test_blank_input_is_terminal(self, key, persona, text):
        client, unary, stream = make_client([ALPHA])
        with pytest.raises(TerminalError) as exc_info:
            await client.send(key, persona, text)
        assert exc_info.value.code == "BAD_INPUT"
        assert unary.calls == []

    @pytest.mark.asyncio
    async def test_create_failure_exhausts(self):
        client, unary, stream = make_client([ALPHA])
        with pytest.raises(ExhaustedError) as exc_info:
            await client.send("channel-1", "persona-1", "Hi")
        assert {a.operation for a in exc_info.value.attempts} == {"createConversation"}
        assert client.conversation("channel-1") is None

    @pytest.mark.asyncio
    async def test_concurrent_first_messages_share_conversation(self):
        client, unary, stream = make_client(
            [ALPHA],
            stream={"create.ws_create_chat": created("conv-new"), "turn.ws_generate": reply_frame},
            delay=0.01,
        )
        replies = await asyncio.gather(*(client.send("channel-1", "persona-1", f"m{i}") for i in range(5)))
        assert len(replies) == 5
        assert stream.count("create.") == 1
        assert unary.count("identity.") == 1
        assert {ctx.conversation_id for strategy_id, ctx in stream.calls if strategy_id.startswith("turn.")} == {"conv-new"}


class TestSupplementaryOperations:
    @pytest.mark.asyncio
    async def test_start_returns_greeting(self):
        greeting = dict(created("conv-new"), turn=turn_frame("greet-0001", "Welcome!")["turn"])
        client, unary, stream = make_client(
            [ALPHA], stream={"create.ws_create_chat": greeting}, store=store_with("conv-old")
        )
        handle, reply = await client.start("channel-1", "persona-1")
        assert handle.external_id == "conv-new"
        assert reply.text == "Welcome!"

    @pytest.mark.asyncio
    async def test_fetch_history(self):
        client, unary, stream = make_client(
            [ALPHA],
            unary={"history.rest_msgs": raw({"messages": [
                {"id": 1, "text": "Hi", "src__name": "Me"},
                {"id": 2, "text": "Hello!", "src__name": "Hero"},
            ]})},
            store=store_with(),
        )
        replies = await client.fetch_history("channel-1")
        assert [r.text for r in replies] == ["Hi", "Hello!"]
        _, ctx = unary.calls[-1]
        assert ctx.conversation_id == "conv-1"

    @pytest.mark.asyncio
    async def test_fetch_history_without_conversation(self):
        client, unary, stream = make_client([ALPHA])
        with pytest.raises(TerminalError) as exc_info:
            await client.fetch_history("channel-1")
        assert exc_info.value.code == "NO_CONVERSATION"

    @pytest.mark.asyncio
    async def test_fetch_history_of_deleted_conversation(self):
        client, unary, stream = make_client(
            [ALPHA], unary={"history.rest_msgs": ConversationNotFoundError("gone")}, store=store_with()
        )
        with pytest.raises(TerminalError):
            await client.fetch_history("channel-1")

    @pytest.mark.asyncio
    async def test_fetch_persona_falls_back(self):
        client, unary, stream = make_client(
            [ALPHA],
            unary={
                "persona.rest_info": HttpStatusError(502),
                "persona.rest_info_post": raw({
                    "status": "OK",
                    "character": {"external_id": "persona-1", "name": "Hero", "greeting": "Hi!"},
                }),
            },
        )
        info = await client.fetch_persona("persona-1")
        assert info.name == "Hero"
        assert info.greeting == "Hi!"

    @pytest.mark.asyncio
    async def test_attached_conversation_is_used(self):
        client, unary, stream = make_client([ALPHA], stream={"turn.ws_generate": reply_frame})
        client.attach("channel-1", "persona-1", "https://beta.character.ai/chat?hist=shared12345")
        await client.send("channel-1", "persona-1", "Hi")
        assert stream.count("create.") == 0
        _, ctx = stream.calls[-1]
        assert ctx.conversation_id == "shared12345"

    @pytest.mark.asyncio
    async def test_reset_starts_over(self):
        client, unary, stream = make_client(
            [ALPHA],
            stream={"create.ws_create_chat": created("conv-new"), "turn.ws_generate": reply_frame},
            store=store_with("conv-old"),
        )
        client.reset("channel-1")
        await client.send("channel-1", "persona-1", "Hi")
        assert client.conversation("channel-1").external_id == "conv-new"

    @pytest.mark.asyncio
    async def test_context_manager_closes_transports(self):
        client, unary, stream = make_client([ALPHA])
        async with client:
            pass
        assert unary.closed and stream.closed
