"""Stream layer: turn raw response chunks into `data: ` protocol frames."""

from __future__ import annotations

import codecs
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass

DATA_PREFIX = "data: "
DONE_PAYLOAD = "[DONE]"


@dataclass(frozen=True)
class Frame:
    """One decoded protocol line with the `data: ` prefix removed."""

    payload: str

    @property
    def is_done(self) -> bool:
        return self.payload == DONE_PAYLOAD


def _to_frame(line: str) -> Frame | None:
    stripped = line.strip()
    if not stripped.startswith(DATA_PREFIX):
        return None
    return Frame(payload=stripped[len(DATA_PREFIX):])


class FrameDecoder:
    """Lazy, single-use frame sequence bound to one response body.

    Chunks may split lines (and multi-byte characters) at any byte offset;
    the trailing partial line is buffered until the next chunk arrives. The
    sequence ends after the `[DONE]` frame or when the body is exhausted.
    """

    def __init__(self, chunks: AsyncIterable[bytes]) -> None:
        self._chunks = chunks
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[Frame]:
        if self._consumed:
            raise RuntimeError("FrameDecoder is bound to one stream and was already consumed")
        self._consumed = True
        return self._frames()

    async def _frames(self) -> AsyncIterator[Frame]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        async for chunk in self._chunks:
            if not chunk:
                continue
            buffer += decoder.decode(chunk)
            lines = buffer.split("\n")
            buffer = lines.pop()
            for line in lines:
                frame = _to_frame(line)
                if frame is None:
                    continue
                yield frame
                if frame.is_done:
                    return
        buffer += decoder.decode(b"", final=True)
        if buffer:
            frame = _to_frame(buffer)
            if frame is not None:
                yield frame
