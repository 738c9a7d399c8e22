import json
import logging
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Tuple

from utils import build_delta_chunk

logger = logging.getLogger(__name__)

OPEN_MARKER = "<think>\n"
CLOSE_MARKER = "\n</think>\n\n"

DATA_PREFIX = "data: "
DONE_LINE = "data: [DONE]"
DONE_RECORD = b"data: [DONE]\n\n"

# NIM/DeepSeek use reasoning_content, OpenRouter-style upstreams use reasoning
REASONING_FIELDS = ("reasoning_content", "reasoning")


class RecordKind(str, Enum):
    BLANK = "blank"
    DONE = "done"
    DATA = "data"
    OPAQUE = "opaque"


class LineFramer:
    """
    Turns arbitrarily chunked bytes into complete lines.
    Only the trailing partial line is held between chunks.
    """

    def __init__(self):
        self._buffer = b""

    def feed(self, chunk: bytes) -> List[bytes]:
        *lines, self._buffer = (self._buffer + chunk).split(b"\n")
        return lines

    def discard(self) -> bytes:
        """Drop and return whatever partial line is left"""
        tail, self._buffer = self._buffer, b""
        return tail


def classify_line(line: bytes) -> Tuple[RecordKind, Optional[str]]:
    """Return the record kind and, for data records, the JSON payload"""
    try:
        text = line.decode("utf-8").strip()
    except UnicodeDecodeError:
        return RecordKind.OPAQUE, None
    if not text:
        return RecordKind.BLANK, None
    if text == DONE_LINE:
        return RecordKind.DONE, None
    if text.startswith(DATA_PREFIX):
        return RecordKind.DATA, text[len(DATA_PREFIX):]
    return RecordKind.OPAQUE, None


def _reject_constant(name: str) -> Any:
    # NaN/Infinity are not JSON, re-encoding them would emit an invalid frame
    raise ValueError(f"non-standard JSON constant {name}")


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _reasoning_text(delta: Dict[str, Any]) -> str:
    for field in REASONING_FIELDS:
        value = _text(delta.get(field))
        if value:
            return value
    return ""


def _without_reasoning(delta: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in delta.items() if k not in REASONING_FIELDS and k != "content"}


def splice_delta(delta: Dict[str, Any], span_open: bool) -> Tuple[Dict[str, Any], bool]:
    """
    Fold a delta's reasoning text into its content using think markers.

    Reasoning is handled before content, so a delta carrying both ends up with
    the closing marker right before the content inside the same delta.
    Returns a new delta and the updated span state; the input is untouched.
    """
    reasoning = _reasoning_text(delta)
    content = _text(delta.get("content"))

    out = ""
    if reasoning:
        if not span_open:
            out += OPEN_MARKER
            span_open = True
        out += reasoning
    if content:
        if span_open:
            out += CLOSE_MARKER
            span_open = False
        out += content

    new_delta = _without_reasoning(delta)
    if out:
        new_delta["content"] = out
    elif content == "":
        # explicit empty content marks an in-progress turn, keep it
        new_delta["content"] = ""
    return new_delta, span_open


def strip_reasoning(delta: Dict[str, Any]) -> Dict[str, Any]:
    """Drop reasoning without markers; null content becomes an empty string"""
    new_delta = _without_reasoning(delta)
    new_delta["content"] = _text(delta.get("content")) or ""
    return new_delta


def encode_frame(frame: Dict[str, Any]) -> bytes:
    payload = json.dumps(frame, ensure_ascii=False, separators=(",", ":"))
    return f"{DATA_PREFIX}{payload}\n\n".encode("utf-8")


class ReasoningFilter:
    """
    Rewrites an upstream chat-completion event stream for one response.

    Reasoning deltas are moved into the content stream wrapped in
    <think>...</think>. The only state kept across records is whether a
    think span is currently open, plus the framer's partial line.
    """

    def __init__(self, model: str, show_reasoning: bool = True):
        self.model = model
        self.show_reasoning = show_reasoning
        self.span_open = False
        self._framer = LineFramer()

    def feed(self, chunk: bytes) -> List[bytes]:
        """Consume one upstream chunk, return the records ready to send"""
        out: List[bytes] = []
        for line in self._framer.feed(chunk):
            out.extend(self.rewrite_line(line))
        return out

    def finish(self) -> List[bytes]:
        """Upstream closed cleanly. Torn final records are dropped."""
        tail = self._framer.discard()
        if tail:
            logger.debug("Dropping incomplete trailing record (%d bytes)", len(tail))
        return self._close_span()

    def rewrite_line(self, line: bytes) -> List[bytes]:
        kind, payload = classify_line(line)
        if kind is RecordKind.BLANK:
            return []
        if kind is RecordKind.DONE:
            return self._close_span() + [DONE_RECORD]
        if kind is RecordKind.OPAQUE:
            return [line + b"\n"]

        try:
            frame = json.loads(payload, parse_constant=_reject_constant)
        except ValueError:
            logger.warning("Passing through malformed stream record: %r", line[:200])
            return [line + b"\n"]
        if not isinstance(frame, dict):
            return [line + b"\n"]
        return [encode_frame(self.rewrite_frame(frame))]

    def rewrite_frame(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        """Build the outgoing frame for one decoded upstream frame"""
        choices = frame.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return frame
        first = choices[0]
        delta = first.get("delta")
        if not isinstance(delta, dict):
            return frame

        if self.show_reasoning:
            new_delta, self.span_open = splice_delta(delta, self.span_open)
        else:
            new_delta = strip_reasoning(delta)
        return {**frame, "choices": [{**first, "delta": new_delta}, *choices[1:]]}

    def _close_span(self) -> List[bytes]:
        if not self.span_open:
            return []
        self.span_open = False
        return [encode_frame(build_delta_chunk(self.model, CLOSE_MARKER))]

    async def stream(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        """
        Drive the filter from an async byte source.

        If the source raises, the error propagates and no closing record is
        produced; a stream that has failed is not patched up.
        """
        async for chunk in chunks:
            for record in self.feed(chunk):
                yield record
        for record in self.finish():
            yield record
