"""Tests for the FastAPI streaming relay."""

import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest
from fastapi.testclient import TestClient

from chatpipe.api.relay import STREAM_HEADERS, app, get_settings, get_upstream_factory, relay_frames
from chatpipe.config.settings import Settings
from chatpipe.core.sse import FrameParser, DeltaEvent, DoneEvent, ErrorEvent

UPSTREAM_URL = "http://upstream.test/v1/chat/completions"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeStream:
    """Async iterator over upstream chunks, optionally failing at the end."""

    def __init__(self, deltas, error=None):
        self.deltas = list(deltas)
        self.error = error
        self.closed = False
        self.consumed = 0

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for d in self.deltas:
            self.consumed += 1
            yield _chunk(d)
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True


class FakeUpstream:
    def __init__(self, stream=None, exc=None):
        self.stream = stream
        self.exc = exc
        self.calls = []
        self.closed = False
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self.exc is not None:
            raise self.exc
        return self.stream

    async def close(self):
        self.closed = True


class FakeRequest:
    """Reports a disconnect once `after` checks have passed."""

    def __init__(self, after):
        self.after = after
        self.checks = 0

    async def is_disconnected(self):
        self.checks += 1
        return self.checks > self.after


def _events(body: str):
    p = FrameParser()
    return p.feed(body) + p.flush()


@pytest.fixture
def relay(settings):
    state = {"upstream": FakeUpstream(FakeStream(["Hel", "lo"])), "settings": settings}
    app.dependency_overrides[get_settings] = lambda: state["settings"]
    app.dependency_overrides[get_upstream_factory] = lambda: (lambda s: state["upstream"])
    yield state
    app.dependency_overrides.clear()


@pytest.fixture
def http(relay):
    return TestClient(app)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestRelayValidation:
    def test_empty_message_is_400(self, http, relay):
        r = http.post("/api/chat", json={"message": "   "})
        assert r.status_code == 400
        assert r.json() == {"error": "Message cannot be empty"}
        assert relay["upstream"].calls == []

    def test_missing_body_fields_is_400(self, http):
        r = http.post("/api/chat", json={})
        assert r.status_code == 400

    def test_bad_role_is_400_with_error_shape(self, http):
        r = http.post("/api/chat", json={"messages": [{"role": "tool", "content": "x"}]})
        assert r.status_code == 400
        assert r.json()["error"].startswith("Invalid request")

    def test_missing_api_key_is_500(self, http, relay):
        relay["settings"] = Settings(upstream_api_key=None)
        r = http.post("/api/chat", json={"message": "hi"})
        assert r.status_code == 500
        assert "API key not configured" in r.json()["error"]
        assert relay["upstream"].calls == []


class TestRelayStreaming:
    def test_streams_frames_then_done(self, http, relay):
        r = http.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        assert _events(r.text) == [DeltaEvent("Hel"), DeltaEvent("lo"), DoneEvent()]
        assert relay["upstream"].stream.closed
        assert relay["upstream"].closed

    def test_stream_headers(self, http):
        r = http.post("/api/chat", json={"message": "hi"})
        for name, value in STREAM_HEADERS.items():
            if name.lower() == "connection":
                continue
            assert r.headers[name] == value

    def test_forwards_model_and_generation_parameters(self, http, relay, settings):
        http.post("/api/chat", json={
            "messages": [{"role": "system", "content": "s"}, {"role": "user", "content": "hi"}],
            "model": "vendor/model-x",
            "reasoning_effort": "high",
        })
        call = relay["upstream"].calls[0]
        assert call["model"] == "vendor/model-x"
        assert call["stream"] is True
        assert call["reasoning_effort"] == "high"
        assert call["temperature"] == settings.upstream_temperature
        assert call["top_p"] == settings.upstream_top_p
        assert call["max_tokens"] == settings.upstream_max_tokens
        assert [m["role"] for m in call["messages"]] == ["system", "user"]

    def test_legacy_single_message_and_default_model(self, http, relay, settings):
        http.post("/api/chat", json={"message": "hello"})
        call = relay["upstream"].calls[0]
        assert call["messages"] == [{"role": "user", "content": "hello"}]
        assert call["model"] == settings.default_model
        assert "reasoning_effort" not in call

    def test_empty_deltas_are_not_forwarded(self, http, relay):
        relay["upstream"] = FakeUpstream(FakeStream(["", "a", None, "b"]))
        r = http.post("/api/chat", json={"message": "hi"})
        assert _events(r.text) == [DeltaEvent("a"), DeltaEvent("b"), DoneEvent()]

    def test_mid_stream_upstream_failure_becomes_error_frame(self, http, relay):
        err = openai.APIError("stream broke", httpx.Request("POST", UPSTREAM_URL), body=None)
        relay["upstream"] = FakeUpstream(FakeStream(["part"], error=err))
        r = http.post("/api/chat", json={"message": "hi"})
        events = _events(r.text)
        assert events[0] == DeltaEvent("part")
        assert isinstance(events[1], ErrorEvent)
        assert DoneEvent() not in events
        assert relay["upstream"].closed


class TestRelayUpstreamErrors:
    def test_status_code_passthrough(self, http, relay):
        response = httpx.Response(429, request=httpx.Request("POST", UPSTREAM_URL), text="slow down")
        relay["upstream"] = FakeUpstream(exc=openai.RateLimitError("rate limited", response=response, body=None))
        r = http.post("/api/chat", json={"message": "hi"})
        assert r.status_code == 429
        assert r.json() == {"error": "Upstream API error: 429", "details": "slow down"}
        assert relay["upstream"].closed

    def test_connection_error_is_502(self, http, relay):
        relay["upstream"] = FakeUpstream(
            exc=openai.APIConnectionError(request=httpx.Request("POST", UPSTREAM_URL))
        )
        r = http.post("/api/chat", json={"message": "hi"})
        assert r.status_code == 502
        assert "error" in r.json()
        assert relay["upstream"].closed


class TestRelayDisconnect:
    def test_client_disconnect_stops_frames_and_closes_upstream(self):
        stream = FakeStream(["a", "b", "c", "d"])

        async def collect():
            return [f async for f in relay_frames(stream, FakeRequest(after=2), "req-test")]

        frames = asyncio.run(collect())
        assert frames == [b'data: {"content": "a"}\n\n', b'data: {"content": "b"}\n\n']
        assert stream.closed
        assert stream.consumed == 3

    def test_client_closed_after_disconnect(self):
        upstream = FakeUpstream(FakeStream(["a", "b"]))

        async def collect():
            return [f async for f in relay_frames(upstream.stream, FakeRequest(after=0), "req-test",
                                                  client=upstream)]

        assert asyncio.run(collect()) == []
        assert upstream.stream.closed
        assert upstream.closed

    def test_done_sent_exactly_once(self):
        stream = FakeStream(["x"])

        async def collect():
            return [f async for f in relay_frames(stream, FakeRequest(after=99), "req-test")]

        frames = asyncio.run(collect())
        assert frames.count(b"data: [DONE]\n\n") == 1
        assert frames[-1] == b"data: [DONE]\n\n"


def test_health(http):
    r = http.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "upstream_configured": True}
