"""Incremental decoder for server-sent-event chat-completion streams."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Iterable, Iterator

from pydantic import BaseModel, ValidationError

from .errors import DecodeError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

# ---------------------------------------------------------------------------
# Stream record schema (every level optional)
# ---------------------------------------------------------------------------


class StreamDelta(BaseModel):
    content: str | None = None


class StreamChoice(BaseModel):
    delta: StreamDelta | None = None


class StreamChunk(BaseModel):
    """One ``data:`` record of the stream: ``choices[0].delta.content``."""

    choices: list[StreamChoice] | None = None

    def fragment(self) -> str:
        if not self.choices:
            return ""
        delta = self.choices[0].delta
        if delta is None or delta.content is None:
            return ""
        return delta.content


# ---------------------------------------------------------------------------
# StreamDecoder
# ---------------------------------------------------------------------------


class StreamDecoder:
    """Reassembles assistant text from ``data: <json>`` lines.

    Lines without the ``data:`` prefix (comments, keepalives, ``event:``
    fields) are ignored. ``data: [DONE]`` ends the stream successfully.
    A record that fails to parse is skipped and remembered; if the stream
    then ends without the sentinel, :class:`DecodeError` is raised.

    One decoder instance decodes one stream; state is reset at the start of
    :meth:`decode`, :meth:`decode_async` and :meth:`iter_fragments`.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._fragments: list[str] = []
        self.done = False
        self.last_error: Exception | None = None
        self.malformed_records = 0

    @property
    def text(self) -> str:
        return "".join(self._fragments).strip()

    @property
    def fragment_count(self) -> int:
        return len(self._fragments)

    def feed_line(self, line: bytes | str) -> str | None:
        """Consume one line; return the text fragment it carried, if any."""
        if self.done:
            return None
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.rstrip("\r\n")
        if not line.startswith(DATA_PREFIX):
            return None

        data = line[len(DATA_PREFIX) :]
        if data.startswith(" "):
            data = data[1:]
        if data.strip() == DONE_SENTINEL:
            self.done = True
            return None

        try:
            chunk = StreamChunk.model_validate_json(data)
        except ValidationError as exc:
            self.malformed_records += 1
            self.last_error = exc
            logger.warning("Skipping malformed stream record: %.200s", data)
            return None

        fragment = chunk.fragment()
        if not fragment:
            return None
        self._fragments.append(fragment)
        return fragment

    def iter_fragments(self, lines: Iterable[bytes | str]) -> Iterator[str]:
        """Lazily yield fragments in arrival order, stopping at the sentinel."""
        self.reset()
        for line in lines:
            fragment = self.feed_line(line)
            if fragment:
                yield fragment
            if self.done:
                return

    def decode(self, lines: Iterable[bytes | str]) -> str:
        """Pull ``lines`` to completion and return the assembled, trimmed text."""
        for _ in self.iter_fragments(lines):
            pass
        return self.finish()

    async def decode_async(self, lines: AsyncIterable[bytes | str]) -> str:
        """Async counterpart of :meth:`decode` for an HTTP response body."""
        self.reset()
        async for line in lines:
            self.feed_line(line)
            if self.done:
                break
        return self.finish()

    def finish(self) -> str:
        """Close out the stream: raise if it ended dirty, else return the text."""
        if not self.done and self.last_error is not None:
            msg = (
                f"stream ended without {DONE_SENTINEL} after "
                f"{self.malformed_records} malformed record(s)"
            )
            raise DecodeError(msg) from self.last_error
        return self.text
