"""Local HTTP bridge.

Lets a chat adapter written in another process (or language) use the
client over plain HTTP:

    GET  /health
    POST /api/chat                         {"conversation_key", "persona_id"?, "message"}
    POST /api/conversations/{key}/reset

Error kinds map to status codes: TerminalError -> 422,
ExhaustedError -> 502 (with per-attempt diagnostics),
ConfigurationError -> 503.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .client import RemoteChatClient
from .errors import ConfigurationError, ExhaustedError, TerminalError
from .runtime import get_version

logger = logging.getLogger(__name__)


class ChatBody(BaseModel):
    conversation_key: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    persona_id: Optional[str] = None


def _error(status: int, error: Exception, **extra) -> JSONResponse:
    content = {"error": str(error), "code": getattr(error, "code", "ERROR")}
    content.update(extra)
    return JSONResponse(status_code=status, content=content)


def create_app(client: RemoteChatClient) -> FastAPI:
    """Build the FastAPI app around an existing client."""
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await client.aclose()

    app = FastAPI(
        title="remotechat bridge",
        description="HTTP access to the resilient remote conversation client",
        version=get_version(),
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "credentials": len(client.pool),
        }

    @app.post("/api/chat")
    async def chat(body: ChatBody):
        persona_id = body.persona_id or client.settings.persona_id
        try:
            reply = await client.send(body.conversation_key, persona_id, body.message)
        except TerminalError as e:
            return _error(422, e)
        except ConfigurationError as e:
            return _error(503, e)
        except ExhaustedError as e:
            logger.error(f"Chat for {body.conversation_key} exhausted: {e}")
            return _error(502, e, attempts=[a.describe() for a in e.attempts])
        return reply.to_dict()

    @app.post("/api/conversations/{conversation_key}/reset")
    async def reset(conversation_key: str):
        client.reset(conversation_key)
        return {"status": "ok", "conversation_key": conversation_key}

    return app
