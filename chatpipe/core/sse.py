# chatpipe/core/sse.py
"""
Line-delimited event framing shared by the relay (writer) and the streaming
client (parser).

Wire format, one frame per event:

    data: {"content": "<delta>"}\n\n
    data: {"error": "<message>"}\n\n
    data: [DONE]\n\n
"""

from dataclasses import dataclass
import json
from typing import Any, Dict, List, Optional, Union

from chatpipe.utils.logging import get_logger

logger = get_logger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
FRAME_SEPARATOR = "\n\n"


def encode_frame(payload: Union[Dict[str, Any], str]) -> bytes:
    body = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"{DATA_PREFIX} {body}{FRAME_SEPARATOR}".encode("utf-8")


DONE_FRAME = encode_frame(DONE_SENTINEL)


class FrameWriter:
    """
    Emits frames for one relay response.

    Once closed (terminator sent, client gone, upstream failed) every further
    emit/done/close is a silent no-op, so racing shutdown paths cannot
    double-close or write past the end.
    """

    def __init__(self) -> None:
        self.closed = False
        self.frames_sent = 0

    def emit(self, payload: Dict[str, Any]) -> Optional[bytes]:
        if self.closed:
            return None
        self.frames_sent += 1
        return encode_frame(payload)

    def content(self, delta: str) -> Optional[bytes]:
        if not delta:
            return None
        return self.emit({"content": delta})

    def error(self, message: str) -> Optional[bytes]:
        frame = self.emit({"error": message})
        self.close()
        return frame

    def done(self) -> Optional[bytes]:
        if self.closed:
            return None
        self.close()
        return DONE_FRAME

    def close(self) -> None:
        self.closed = True


@dataclass(frozen=True)
class DeltaEvent:
    content: str


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class DoneEvent:
    pass


StreamEvent = Union[DeltaEvent, ErrorEvent, DoneEvent]


class FrameParser:
    """
    Incremental parser for the relay's event stream.

    feed() accepts decoded text in arbitrary slices and returns the events of
    every frame completed so far, in order. flush() drains a trailing frame
    that was not followed by a blank line.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self.skipped = 0

    def feed(self, text: str) -> List[StreamEvent]:
        if not text:
            return []
        self._buffer += text.replace("\r\n", "\n")
        *frames, self._buffer = self._buffer.split(FRAME_SEPARATOR)
        events: List[StreamEvent] = []
        for frame in frames:
            events.extend(self._parse_frame(frame))
        return events

    def flush(self) -> List[StreamEvent]:
        rest, self._buffer = self._buffer, ""
        if not rest.strip():
            return []
        return self._parse_frame(rest)

    def _parse_frame(self, frame: str) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for line in frame.split("\n"):
            line = line.strip()
            # blank lines and ":" keep-alive comments
            if not line or line.startswith(":"):
                continue
            if not line.startswith(DATA_PREFIX):
                continue

            body = line[len(DATA_PREFIX):].strip()
            if body == DONE_SENTINEL:
                events.append(DoneEvent())
                continue

            try:
                data = json.loads(body)
            except json.JSONDecodeError:
                self.skipped += 1
                logger.warning("Skipping malformed stream line: %r", body[:200])
                continue

            if not isinstance(data, dict):
                self.skipped += 1
                logger.warning("Skipping non-object stream payload: %r", body[:200])
                continue

            if data.get("error"):
                events.append(ErrorEvent(str(data["error"])))
                continue

            content = data.get("content")
            if content:
                events.append(DeltaEvent(str(content)))
        return events
