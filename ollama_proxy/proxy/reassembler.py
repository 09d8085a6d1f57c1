"""Reassembly of newline-delimited records from arbitrary byte chunks."""

from __future__ import annotations


class FrameReassembler:
    """Turns a sequence of byte chunks into complete text lines.

    Chunk boundaries are ignored: bytes are buffered until a newline arrives,
    and only newline-terminated segments are returned. The trailing segment of
    every split stays pending because it may still be growing. Splitting is
    done on bytes so a UTF-8 sequence cut in half by the transport decodes
    correctly once the rest arrives.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of bytes held back waiting for a newline."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[str]:
        """Append ``chunk`` and return every line it completed, in order."""
        if not chunk:
            return []
        # The pending bytes hold no newline; only the new chunk is searched.
        searched = len(self._buffer)
        self._buffer += chunk
        lines: list[str] = []
        start = 0
        newline = self._buffer.find(b"\n", searched)
        while newline != -1:
            lines.append(_decode(bytes(self._buffer[start:newline])))
            start = newline + 1
            newline = self._buffer.find(b"\n", start)
        if start:
            del self._buffer[:start]
        return lines

    def close(self) -> int:
        """Drop any unterminated trailing record and return its size in bytes."""
        dropped = len(self._buffer)
        self._buffer.clear()
        return dropped


def _decode(segment: bytes) -> str:
    if segment.endswith(b"\r"):
        segment = segment[:-1]
    return segment.decode("utf-8", errors="replace")
