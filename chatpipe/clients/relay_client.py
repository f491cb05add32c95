# chatpipe/clients/relay_client.py
#
# Single integration layer between the pipeline and the relay endpoint.
# - stream(): one POST, line-delimited events in, incremental text out.
# - complete(): the same call without a chunk callback, with bounded retries,
#   used by background jobs.
# Cancellation is cooperative through CancelToken; closing the HTTP response
# tears down the read loop and, through the dropped connection, the relay's
# upstream read as well.

import codecs
import random
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from chatpipe.config.settings import Settings, load_settings
from chatpipe.core.errors import (
    EmptyResponseError,
    StreamCancelled,
    StreamError,
    ValidationError,
)
from chatpipe.core.sse import DeltaEvent, DoneEvent, ErrorEvent, FrameParser, StreamEvent
from chatpipe.utils.logging import get_logger

logger = get_logger(__name__)

OnChunk = Callable[[str, str], None]

# ---------------------------------------------------------------------------
# Request ids + diagnostics helpers
# ---------------------------------------------------------------------------

def _mk_req_id(prefix: str = "req") -> str:
    return f"{prefix}_{int(time.time()*1000)}_{random.randint(1000, 9999)}"


def _safe_host_from_url(url: str) -> str:
    u = (url or "").strip()
    u = u.replace("https://", "").replace("http://", "")
    return u.split("/")[0] or "unknown-host"


def _sleep_backoff(attempt_idx: int) -> None:
    base = 0.4 * (2 ** max(0, attempt_idx - 1))
    jitter = random.uniform(0.0, 0.25)
    time.sleep(min(3.0, base + jitter))


def _validate_messages(messages: Any) -> None:
    if not isinstance(messages, (list, tuple)) or not messages:
        raise ValidationError("Messages list must not be empty.")
    for i, m in enumerate(messages):
        if not isinstance(m, dict) or "role" not in m or "content" not in m:
            raise ValidationError(f"Invalid message at index {i}: {m!r}")


def _make_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": "chatpipe/relay-client (requests)"})
    return session

# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelToken:
    """
    Thread-safe cancellation handle shared between a caller and one stream.

    cancel() is idempotent: a second call, or a call after the stream has
    already finished, does nothing. Callbacks registered after cancellation
    run immediately.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception as e:
                logger.warning("Cancel callback %r raised: %s", cb, e)

    def add_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(cb)
                return
        cb()

    def remove_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if cb in self._callbacks:
                self._callbacks.remove(cb)

# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class RelayClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
        url: Optional[str] = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.url = url or self.settings.relay_url
        self.session = session or _make_session()

    def stream(
        self,
        messages: Sequence[Dict[str, str]],
        model: Optional[str] = None,
        on_chunk: Optional[OnChunk] = None,
        reasoning: bool = False,
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        """
        Send `messages` to the relay and return the full reply text.

        `on_chunk(delta, accumulated)` runs once per delta, in arrival order.
        Raises StreamCancelled when `cancel_token` fires, StreamError on any
        transport/HTTP/protocol failure and EmptyResponseError when the stream
        ends without text. Partial text is never returned on failure.
        """
        _validate_messages(messages)
        token = cancel_token or CancelToken()
        req_id = _mk_req_id("stream")
        model_name = (model or self.settings.default_model).strip() or self.settings.default_model

        if token.cancelled:
            logger.info("[stream] req_id=%s cancelled before request", req_id)
            raise StreamCancelled("Request aborted")

        payload = {
            "messages": list(messages),
            "model": model_name,
            "reasoning_effort": "high" if reasoning else "medium",
        }

        logger.info("[stream] req_id=%s start model=%s host=%s msg_count=%d",
                    req_id, model_name, _safe_host_from_url(self.url), len(payload["messages"]))

        t0 = time.monotonic()
        try:
            resp = self.session.post(
                self.url,
                json=payload,
                stream=True,
                timeout=self.settings.timeout_seconds,
                headers={"Accept": "text/event-stream"},
            )
        except requests.RequestException as e:
            if token.cancelled:
                raise StreamCancelled("Request aborted") from e
            logger.error("[stream] req_id=%s HTTP exception err=%s", req_id, e)
            raise StreamError(f"Could not reach relay: {e}") from e

        token.add_callback(resp.close)
        try:
            if token.cancelled:
                raise StreamCancelled("Request aborted")
            self._check_response(resp, req_id)
            text = self._read_events(resp, token, on_chunk, req_id)
        except StreamCancelled:
            logger.info("[stream] req_id=%s cancelled after %d ms",
                        req_id, int((time.monotonic() - t0) * 1000))
            raise
        finally:
            token.remove_callback(resp.close)
            resp.close()

        dt_ms = int((time.monotonic() - t0) * 1000)
        logger.info("[stream] req_id=%s OK latency_ms=%d chars=%d", req_id, dt_ms, len(text))
        return text

    def complete(self, messages: Sequence[Dict[str, str]], model: Optional[str] = None) -> str:
        """
        Non-streaming convenience for background calls.

        Retries transient failures with bounded backoff; never retries
        validation errors, cancellations or empty responses.
        """
        req_id = _mk_req_id("complete")
        max_attempts = max(1, self.settings.max_attempts)

        attempt = 1
        while True:
            t0 = time.monotonic()
            try:
                return self.stream(messages, model=model)
            except StreamError as e:
                dt_ms = int((time.monotonic() - t0) * 1000)
                logger.warning("[complete] req_id=%s FAIL attempt=%d/%d latency_ms=%d status=%s transient=%s err=%s",
                               req_id, attempt, max_attempts, dt_ms, e.status_code, e.transient, e)
                if attempt >= max_attempts or not e.transient:
                    raise
            _sleep_backoff(attempt)
            attempt += 1

    # ---------- internals ----------

    def _check_response(self, resp: requests.Response, req_id: str) -> None:
        if not resp.ok:
            message = None
            try:
                data = resp.json()
                if isinstance(data, dict):
                    message = data.get("error")
            except ValueError:
                pass
            message = message or f"HTTP {resp.status_code}: {resp.reason}"
            logger.error("[stream] req_id=%s non-2xx status=%d err=%s", req_id, resp.status_code, message)
            raise StreamError(str(message), status_code=resp.status_code)

        content_type = resp.headers.get("content-type", "")
        if "text/event-stream" not in content_type:
            body_preview = (resp.text or "")[:200]
            logger.error("[stream] req_id=%s unexpected content-type=%r body=%r", req_id, content_type, body_preview)
            raise StreamError(f"Invalid response type: {content_type}. Response: {body_preview}",
                              status_code=resp.status_code)

    def _read_events(
        self,
        resp: requests.Response,
        token: CancelToken,
        on_chunk: Optional[OnChunk],
        req_id: str,
    ) -> str:
        parser = FrameParser()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        accumulated = ""
        finished = False

        def apply(events: List[StreamEvent]) -> bool:
            nonlocal accumulated
            for event in events:
                if token.cancelled:
                    raise StreamCancelled("Request aborted")
                if isinstance(event, DoneEvent):
                    return True
                if isinstance(event, ErrorEvent):
                    raise StreamError(event.message)
                if isinstance(event, DeltaEvent):
                    accumulated += event.content
                    if on_chunk is not None:
                        on_chunk(event.content, accumulated)
            return False

        try:
            for raw in resp.iter_content(chunk_size=None):
                if token.cancelled:
                    raise StreamCancelled("Request aborted")
                if not raw:
                    continue
                if apply(parser.feed(decoder.decode(raw))):
                    finished = True
                    break
            if not finished:
                apply(parser.feed(decoder.decode(b"", final=True)) + parser.flush())
        except (StreamCancelled, StreamError):
            raise
        except Exception as e:
            # Closing the response from another thread surfaces as an
            # arbitrary I/O error inside the read loop.
            if token.cancelled:
                raise StreamCancelled("Request aborted") from e
            if isinstance(e, requests.RequestException):
                logger.error("[stream] req_id=%s stream interrupted err=%s", req_id, e)
                raise StreamError(f"Stream interrupted: {e}") from e
            raise

        if token.cancelled:
            raise StreamCancelled("Request aborted")

        if parser.skipped:
            logger.warning("[stream] req_id=%s skipped %d malformed line(s)", req_id, parser.skipped)

        if not accumulated.strip():
            logger.error("[stream] req_id=%s empty response", req_id)
            raise EmptyResponseError("Empty response received from server")

        return accumulated

# ---------------------------------------------------------------------------
# Module-level convenience
# ---------------------------------------------------------------------------

_default_client: Optional[RelayClient] = None
_default_lock = threading.Lock()


def get_default_client() -> RelayClient:
    global _default_client
    with _default_lock:
        if _default_client is None:
            _default_client = RelayClient()
        return _default_client


def stream_response(
    messages: Sequence[Dict[str, str]],
    model: Optional[str] = None,
    on_chunk: Optional[OnChunk] = None,
    reasoning: bool = False,
    cancel_token: Optional[CancelToken] = None,
) -> str:
    return get_default_client().stream(
        messages, model=model, on_chunk=on_chunk, reasoning=reasoning, cancel_token=cancel_token
    )


def get_runtime_config(client: Optional[RelayClient] = None) -> Dict[str, str]:
    """
    Returns non-secret runtime configuration helpful for debugging.
    """
    c = client or get_default_client()
    return {
        "relay_url": c.url,
        "default_model": c.settings.default_model,
        "timeout_seconds": str(c.settings.timeout_seconds),
        "max_attempts": str(c.settings.max_attempts),
        "max_context_messages": str(c.settings.max_context_messages),
        "max_context_tokens": str(c.settings.max_context_tokens),
    }
