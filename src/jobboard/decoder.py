from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from .events import JobStreamEvent, parse_event

DATA_PREFIX = "data: "

logger = logging.getLogger("jobboard.decoder")


class StreamDecoder:
    """Incremental decoder for ``data: <json>`` line frames.

    Chunks may split a frame (or a UTF-8 character) anywhere; the incomplete tail
    is held until the next chunk arrives.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.dropped_frames = 0

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes) -> list[JobStreamEvent]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: list[JobStreamEvent] = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> None:
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer.strip():
            logger.debug("discarding unterminated frame at end of stream: %r", self._buffer[:200])
        self._buffer = ""

    def _parse_line(self, line: str) -> JobStreamEvent | None:
        if line.endswith("\r"):
            line = line[:-1]
        if not line.startswith(DATA_PREFIX):
            return None
        try:
            return parse_event(json.loads(line[len(DATA_PREFIX) :]))
        except (ValueError, RecursionError) as exc:
            # json.JSONDecodeError is a ValueError; deeply nested frames hit the recursion limit
            self.dropped_frames += 1
            logger.debug("dropping malformed frame: %r", exc)
            return None


async def decode_stream(
    chunks: AsyncIterable[bytes], decoder: StreamDecoder | None = None
) -> AsyncIterator[JobStreamEvent]:
    if decoder is None:
        decoder = StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    decoder.close()
