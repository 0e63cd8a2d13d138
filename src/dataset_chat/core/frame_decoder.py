"""
Frame decoder for the query event stream.

Turns arbitrarily chunked response bytes into complete frame payloads:

    data: {"type": "chunk", "content": "..."}\\n\\n

Bytes are decoded with an incremental UTF-8 decoder so a multi-byte character
split across two reads is reassembled before the text is split into frames.
The output for a given byte sequence does not depend on where read boundaries
fall.
"""

import codecs
from collections.abc import Iterable, Iterator

import structlog

logger = structlog.get_logger()

__all__ = ["FRAME_MARKER", "FRAME_SEPARATOR", "FrameDecoder", "iter_frames"]

FRAME_MARKER = "data: "
FRAME_SEPARATOR = "\n\n"


class FrameDecoder:
    """
    Incremental decoder from raw bytes to frame payloads.

    Holds the trailing incomplete frame between calls to feed(). A frame's
    payload is the rest of its first line after FRAME_MARKER. Frames whose
    first line does not start with FRAME_MARKER (comments, keep-alive pings)
    are skipped.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._closed = False
        self.frames_completed = 0
        self.frames_ignored = 0
        self.partial_frames_discarded = 0

    @property
    def pending(self) -> str:
        """Text of the incomplete trailing frame held for the next feed()."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[str]:
        """
        Decode one chunk and return payloads of every frame it completes.

        Args:
            chunk: Next bytes read from the response body (may be empty)

        Returns:
            Payloads (rest of the marker line) in arrival order

        Raises:
            RuntimeError: If called after close()
        """
        if self._closed:
            raise RuntimeError("FrameDecoder.feed() called after close()")

        text = self._decoder.decode(chunk, final=False)
        if not text:
            return []

        # CRLF is folded on the whole buffer so a "\r" / "\n" pair split across reads still matches
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        frames = self._buffer.split(FRAME_SEPARATOR)
        self._buffer = frames.pop()

        return [payload for payload in (self._extract_payload(frame) for frame in frames) if payload is not None]

    def close(self) -> None:
        """
        Signal end-of-stream.

        An unterminated trailing frame is dropped: the server always ends a frame
        with a blank line, so a partial frame at end-of-stream means truncation.
        """
        if self._closed:
            return
        self._closed = True

        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer.strip():
            self.partial_frames_discarded += 1
            logger.debug(
                "frame_partial_discarded",
                pending_length=len(self._buffer),
                pending_preview=self._buffer[:80],
            )
        self._buffer = ""

    def _extract_payload(self, frame: str) -> str | None:
        frame = frame.lstrip("\n")
        if not frame.startswith(FRAME_MARKER):
            if frame.strip():
                self.frames_ignored += 1
                logger.debug("frame_ignored", frame_preview=frame[:80])
            return None

        self.frames_completed += 1
        # Payload is the marker line only; trailing id:/event:/retry: lines are dropped
        payload, _, rest = frame[len(FRAME_MARKER) :].partition("\n")
        if rest:
            logger.debug("frame_extra_lines_ignored", extra_preview=rest[:80])
        return payload


def iter_frames(chunks: Iterable[bytes], decoder: FrameDecoder | None = None) -> Iterator[str]:
    """
    Yield frame payloads from an iterable of byte chunks.

    The decoder is closed once chunks are exhausted.
    """
    decoder = decoder or FrameDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    decoder.close()
