# chatpipe/api/relay.py
"""
FastAPI relay between the chat pipeline and the upstream model provider:

- POST /api/chat : forward one chat-completion request upstream with
                   streaming enabled and re-frame each delta as
                   `data: {"content": ...}\\n\\n`, ending with `data: [DONE]\\n\\n`
- GET  /health   : basic health check

The relay is stateless. It holds no session data, persists nothing, and only
translates framing and propagates cancellation: when the client goes away it
stops emitting and closes its upstream read.
"""

import time
import uuid
from functools import lru_cache
from typing import Any, AsyncIterator, Callable, Dict, List, Literal, Optional

import openai
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from chatpipe.config.settings import Settings, load_settings
from chatpipe.core.sse import FrameWriter
from chatpipe.utils.logging import get_logger

logger = get_logger(__name__)

app = FastAPI(
    title="chatpipe relay",
    description="Streaming relay between the chat pipeline and an OpenAI-compatible provider.",
    version="1.0.0",
)

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class RelayMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRelayRequest(BaseModel):
    message: Optional[str] = Field(default=None, description="Single user message (legacy shape).")
    messages: Optional[List[RelayMessage]] = Field(default=None, description="Full role-tagged message list.")
    model: Optional[str] = Field(default=None, description="Upstream model identifier.")
    reasoning_effort: Optional[Literal["low", "medium", "high"]] = None

    def to_upstream_messages(self) -> List[Dict[str, str]]:
        if self.messages:
            return [m.model_dump() for m in self.messages]
        if self.message and self.message.strip():
            return [{"role": "user", "content": self.message}]
        return []

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

UpstreamFactory = Callable[[Settings], Any]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def _make_upstream_client(settings: Settings) -> openai.AsyncOpenAI:
    return openai.AsyncOpenAI(
        api_key=settings.upstream_api_key,
        base_url=settings.upstream_base_url,
        timeout=settings.timeout_seconds,
        max_retries=0,
    )


def get_upstream_factory() -> UpstreamFactory:
    return _make_upstream_client

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error_response(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


def _delta_text(chunk: Any) -> str:
    """Pull the text delta out of one upstream chunk; empty for keep-alive/usage chunks."""
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    return (getattr(delta, "content", None) or "") if delta is not None else ""


async def _aclose(resource: Any, what: str, request_id: str) -> None:
    close = getattr(resource, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception as e:
        logger.warning("[relay] request_id=%s %s close failed: %s", request_id, what, e)


def _upstream_error_response(e: openai.OpenAIError, request_id: str) -> JSONResponse:
    if isinstance(e, openai.APIStatusError):
        body = ""
        try:
            body = e.response.text
        except Exception:
            body = str(e)
        logger.error("[relay] request_id=%s upstream status=%d body=%r", request_id, e.status_code, body[:200])
        return _error_response(e.status_code, f"Upstream API error: {e.status_code}", details=body[:200])
    if isinstance(e, openai.APIConnectionError):
        logger.error("[relay] request_id=%s upstream unreachable: %s", request_id, e)
        return _error_response(502, "Upstream API unreachable.")
    logger.error("[relay] request_id=%s upstream error: %s", request_id, e)
    return _error_response(500, str(e))


async def relay_frames(
    upstream: Any,
    request: Request,
    request_id: str,
    client: Any = None,
) -> AsyncIterator[bytes]:
    """
    Re-frame upstream chunks as relay events.

    Checks for a client disconnect before every frame. On disconnect nothing
    more is emitted. The upstream stream, and the client that opened it, are
    closed in every exit path.
    """
    writer = FrameWriter()
    start_time = time.monotonic()
    chars = 0
    disconnected = False
    try:
        async for chunk in upstream:
            if await request.is_disconnected():
                disconnected = True
                writer.close()
                break
            delta = _delta_text(chunk)
            frame = writer.content(delta)
            if frame is not None:
                chars += len(delta)
                yield frame

        if not disconnected:
            frame = writer.done()
            if frame is not None:
                yield frame
    except openai.OpenAIError as e:
        logger.error("[relay] request_id=%s upstream failed mid-stream: %s", request_id, e)
        frame = writer.error(f"Upstream stream failed: {e}")
        if frame is not None:
            yield frame
    finally:
        writer.close()
        await _aclose(upstream, "upstream", request_id)
        await _aclose(client, "client", request_id)
        latency_ms = int((time.monotonic() - start_time) * 1000)
        if disconnected:
            logger.info("[relay] request_id=%s client disconnected after %d frames latency_ms=%d",
                        request_id, writer.frames_sent, latency_ms)
        else:
            logger.info("[relay] request_id=%s stream closed frames=%d chars=%d latency_ms=%d",
                        request_id, writer.frames_sent, chars, latency_ms)

# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Keep the relay's single error shape instead of FastAPI's "detail" list
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return _error_response(400, f"Invalid request: {location}: {message}" if location else f"Invalid request: {message}")


@app.post("/api/chat")
async def chat(
    req: ChatRelayRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    upstream_factory: UpstreamFactory = Depends(get_upstream_factory),
):
    request_id = str(uuid.uuid4())
    messages = req.to_upstream_messages()
    model = (req.model or "").strip() or settings.default_model

    if not messages or not any((m.get("content") or "").strip() for m in messages):
        logger.warning("[relay] request_id=%s rejected empty message", request_id)
        return _error_response(400, "Message cannot be empty")

    if not settings.upstream_configured:
        logger.error("[relay] request_id=%s upstream API key missing", request_id)
        return _error_response(500, "API key not configured. Set UPSTREAM_API_KEY in .env or the environment.")

    logger.info("[relay] request_id=%s start model=%s msg_count=%d reasoning=%s",
                request_id, model, len(messages), req.reasoning_effort)

    kwargs: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": settings.upstream_temperature,
        "top_p": settings.upstream_top_p,
        "max_tokens": settings.upstream_max_tokens,
        "stream": True,
    }
    if req.reasoning_effort:
        kwargs["reasoning_effort"] = req.reasoning_effort

    client = upstream_factory(settings)
    try:
        upstream = await client.chat.completions.create(**kwargs)
    except openai.OpenAIError as e:
        await _aclose(client, "client", request_id)
        return _upstream_error_response(e, request_id)
    except Exception:
        await _aclose(client, "client", request_id)
        raise

    return StreamingResponse(
        relay_frames(upstream, request, request_id, client=client),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


@app.get("/health")
def health_check(settings: Settings = Depends(get_settings)) -> dict:
    """
    Very simple health check endpoint.
    """
    return {"status": "ok", "upstream_configured": settings.upstream_configured}
