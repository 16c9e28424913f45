"""
Upstream stream line splitting and final-reply assembly.

The relay treats the upstream body as two independent consumers of one line
sequence: every line is presented to the caller as-is, and the same lines are
buffered so the finished reply can be rebuilt for persistence. This module
holds the pieces that do not touch the network or the store:

    - iter_lines(): splits an async byte stream into newline-terminated lines
      without decoding or stripping them, so relayed bytes are identical
    - tee_lines(): yields each line onward after handing it to a side consumer
    - StreamAccumulator: the buffering consumer
    - assemble_reply(): best-effort parse of the buffered records

Record format (OpenAI chat-completions streaming):
    data: {"choices": [{"delta": {"content": "Hel"}}]}
    data: {"choices": [{"delta": {}, "finish_reason": "stop"}], "usage": {...}}
    data: [DONE]
    : OPENROUTER PROCESSING        <- SSE comment, ignored

Last Grunted: 10/16/2026 02:15:00 PM UTC
"""
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, List, Optional

import structlog

logger = structlog.get_logger(__name__)

DATA_PREFIX = b"data:"
DONE_SENTINEL = "[DONE]"


def _token_count(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"token count is not a whole number: {value!r}")
    return int(value)


@dataclass(frozen=True)
class Usage:
    """Token usage reported by the upstream for one completion."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: dict) -> "Usage":
        """
        Build usage counts from an upstream ``usage`` object.

        Missing counters count as zero.

        Raises:
            ValueError: A counter is not a finite whole number (JSON allows
                ``1e400``, ``Infinity`` and ``NaN``)
        """
        return cls(
            prompt_tokens=_token_count(payload.get("prompt_tokens")),
            completion_tokens=_token_count(payload.get("completion_tokens")),
            total_tokens=_token_count(payload.get("total_tokens")),
        )


@dataclass(frozen=True)
class AssembledReply:
    """Final assistant text and the last usage object seen, if any."""
    content: str
    usage: Optional[Usage] = None
    records: int = 0
    skipped: int = 0


# ============================================================================
# Line Handling
# ============================================================================

async def iter_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """
    Split an async byte stream into lines, keeping the line terminators.

    Chunks from the network rarely line up with record boundaries, so bytes
    are held until a newline arrives. A trailing fragment without a newline
    is yielded at EOF.

    Args:
        chunks: Raw body chunks, e.g. ``response.aiter_bytes()``

    Yields:
        bytes: One line including its ``\\n`` (except possibly the last)
    """
    pending = b""
    async for chunk in chunks:
        if not chunk:
            continue
        pending += chunk
        while True:
            newline = pending.find(b"\n")
            if newline < 0:
                break
            yield pending[:newline + 1]
            pending = pending[newline + 1:]
    if pending:
        yield pending


async def tee_lines(
    lines: AsyncIterator[bytes],
    consumer: Callable[[bytes], None],
) -> AsyncIterator[bytes]:
    """Hand every line to ``consumer`` and then yield it unchanged."""
    async for line in lines:
        consumer(line)
        yield line


class StreamAccumulator:
    """Buffers relayed lines so the reply can be assembled after EOF."""

    def __init__(self) -> None:
        self._lines: List[bytes] = []
        self.bytes_seen = 0

    def feed(self, line: bytes) -> None:
        self._lines.append(line)
        self.bytes_seen += len(line)

    @property
    def buffer(self) -> bytes:
        return b"".join(self._lines)

    def assemble(self) -> "AssembledReply":
        return assemble_reply(self.buffer)


# ============================================================================
# Reply Assembly
# ============================================================================

def _first_choice(payload: Any) -> dict:
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _usage_of(payload: Any) -> Optional[Usage]:
    usage = payload.get("usage") if isinstance(payload, dict) else None
    if not isinstance(usage, dict):
        return None
    try:
        return Usage.from_payload(usage)
    except (TypeError, ValueError, OverflowError):
        logger.debug("stream.usage_skipped", usage=usage)
        return None


def assemble_reply(buffer: bytes) -> AssembledReply:
    """
    Rebuild the assistant reply from buffered upstream records.

    Every ``data:`` record except ``[DONE]`` is decoded as JSON. Its
    ``choices[0].delta.content`` fragment is appended to the reply, and a
    ``usage`` object replaces any usage seen earlier. Records that fail to
    decode are skipped so one bad accounting line does not lose the reply.

    A non-streaming upstream body has no ``data:`` records; when the whole
    buffer decodes as a completion object its ``choices[0].message.content``
    and ``usage`` are used instead.

    Args:
        buffer: Every byte relayed to the caller, in order

    Returns:
        AssembledReply: Concatenated content and last observed usage

    Example:
        >>> assemble_reply(b'data: {"choices":[{"delta":{"content":"Hi"}}]}\\ndata: [DONE]\\n').content
        'Hi'
    """
    fragments: List[str] = []
    usage: Optional[Usage] = None
    records = 0
    skipped = 0

    for raw in buffer.split(b"\n"):
        line = raw.strip()
        if not line.startswith(DATA_PREFIX):
            continue
        records += 1
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_SENTINEL.encode():
            continue
        try:
            payload = json.loads(data)
        except ValueError as e:
            skipped += 1
            logger.debug("stream.record_skipped", error=str(e), record=data[:200])
            continue

        delta = _first_choice(payload).get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            fragments.append(delta["content"])

        record_usage = _usage_of(payload)
        if record_usage is not None:
            usage = record_usage

    if records == 0 and buffer.strip():
        return _assemble_completion_body(buffer)

    return AssembledReply(content="".join(fragments), usage=usage, records=records, skipped=skipped)


def _assemble_completion_body(buffer: bytes) -> AssembledReply:
    try:
        payload = json.loads(buffer)
    except ValueError:
        return AssembledReply(content="", skipped=1)

    message = _first_choice(payload).get("message")
    content = ""
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        content = message["content"]
    return AssembledReply(content=content, usage=_usage_of(payload), records=1)
