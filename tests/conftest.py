"""Shared fixtures: settings, a temp sqlite store, and fakes for the HTTP layer."""

import json
import threading
from typing import Callable, Dict, List, Optional

import pytest
import requests

from chatpipe.config.settings import Settings
from chatpipe.core.errors import StreamCancelled
from chatpipe.store.repository import SQLiteStore


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------

def frame(payload) -> bytes:
    body = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {body}\n\n".encode("utf-8")


def content_frames(*deltas: str, done: bool = True) -> List[bytes]:
    frames = [frame({"content": d}) for d in deltas]
    if done:
        frames.append(frame("[DONE]"))
    return frames


class FakeResponse:
    """Just enough of requests.Response for RelayClient."""

    def __init__(
        self,
        chunks: Optional[List[bytes]] = None,
        status_code: int = 200,
        content_type: str = "text/event-stream",
        json_body=None,
        text: str = "",
        reason: str = "OK",
        on_chunk_sent: Optional[Callable[[int], None]] = None,
        raise_after: Optional[Exception] = None,
    ):
        self._chunks = list(chunks or [])
        self.status_code = status_code
        self.headers = {"content-type": content_type}
        self._json_body = json_body
        self.text = text
        self.reason = reason
        self.closed = False
        self._on_chunk_sent = on_chunk_sent
        self._raise_after = raise_after

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._json_body is None:
            raise ValueError("no json")
        return self._json_body

    def iter_content(self, chunk_size=None):
        for i, chunk in enumerate(self._chunks):
            if self.closed:
                raise requests.ConnectionError("connection closed")
            yield chunk
            if self._on_chunk_sent is not None:
                self._on_chunk_sent(i)
        if self._raise_after is not None:
            raise self._raise_after

    def close(self):
        self.closed = True


class FakeSession:
    """Returns queued responses (or raises queued exceptions) in order."""

    def __init__(self, *responses):
        self._responses = list(responses)
        self.calls: List[Dict] = []

    def post(self, url, json=None, stream=False, timeout=None, headers=None):
        self.calls.append({"url": url, "json": json, "stream": stream, "timeout": timeout, "headers": headers})
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class ScriptedClient:
    """
    Stand-in for RelayClient at the pipeline level.

    stream() answers with `reply`, delivered word by word. complete() answers
    by prompt kind ("title", "summary", "memory", "project") from `answers`;
    an Exception value is raised instead of returned.
    """

    DEFAULT_ANSWERS = {
        "title": "Test Title",
        "summary": "- decided things",
        "memory": '{"action": "none"}',
        "project": '{"action": "none"}',
    }

    def __init__(self, reply: str = "Hello there.", answers=None, settings: Optional[Settings] = None):
        self.reply = reply
        self.answers = {**self.DEFAULT_ANSWERS, **(answers or {})}
        self.settings = settings
        self.stream_calls: List[Dict] = []
        self.complete_calls: List[Dict] = []
        self._lock = threading.Lock()

    @staticmethod
    def kind_of(messages) -> str:
        system = messages[0]["content"]
        if "short, concise titles" in system:
            return "title"
        if "summarization assistant" in system:
            return "summary"
        if "project knowledge extraction" in system:
            return "project"
        return "memory"

    def stream(self, messages, model=None, on_chunk=None, reasoning=False, cancel_token=None):
        self.stream_calls.append({"messages": list(messages), "model": model, "reasoning": reasoning})
        if cancel_token is not None and cancel_token.cancelled:
            raise StreamCancelled("Request aborted")
        accumulated = ""
        for word in self.reply.split(" "):
            delta = word if not accumulated else " " + word
            accumulated += delta
            if on_chunk is not None:
                on_chunk(delta, accumulated)
        return accumulated

    def complete(self, messages, model=None):
        kind = self.kind_of(messages)
        with self._lock:
            self.complete_calls.append({"kind": kind, "messages": list(messages), "model": model})
        answer = self.answers[kind]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def calls_of(self, kind: str) -> List[Dict]:
        with self._lock:
            return [c for c in self.complete_calls if c["kind"] == kind]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path):
    return Settings(
        upstream_api_key="test-key",
        relay_url="http://relay.test/api/chat",
        timeout_seconds=5.0,
        max_attempts=2,
        db_path=str(tmp_path / "chatpipe.db"),
        enrichment_workers=2,
    )


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(str(tmp_path / "store.db"))


@pytest.fixture(autouse=True)
def _no_backoff_sleep(monkeypatch):
    monkeypatch.setattr("chatpipe.clients.relay_client._sleep_backoff", lambda attempt_idx: None)
