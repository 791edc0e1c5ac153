"""
Newline-delimited JSON framing.

Splits an arbitrarily chunked byte or text stream into complete lines,
carrying a partial trailing fragment across chunk boundaries.
"""

from collections.abc import Iterable, Iterator
import codecs


class LineFramer:
    """
    Incremental line splitter for NDJSON streams.

    Every non-blank logical line is produced exactly once and in order,
    no matter where the chunk boundaries fall. Whitespace-only lines are
    discarded.

    Usage:
        framer = LineFramer()
        for chunk in chunks:
            for line in framer.feed(chunk):
                handle(line)
        for line in framer.flush():
            handle(line)
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    @property
    def pending(self) -> str:
        """Trailing fragment not yet terminated by a newline."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        """Append a chunk and return every line it completed."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []

        self._buffer += chunk
        parts = self._buffer.split("\n")
        self._buffer = parts.pop()
        return [part for part in parts if part.strip()]

    def flush(self) -> list[str]:
        """Signal end of stream; return the pending fragment if it is non-blank."""
        tail = self._decoder.decode(b"", final=True)
        remainder = self._buffer + tail
        self._buffer = ""
        # A decoder tail can itself contain newlines
        return [part for part in remainder.split("\n") if part.strip()]


def iter_lines(chunks: Iterable[bytes | str], encoding: str = "utf-8") -> Iterator[str]:
    """Yield complete non-blank lines from an iterable of chunks."""
    framer = LineFramer(encoding=encoding)
    for chunk in chunks:
        yield from framer.feed(chunk)
    yield from framer.flush()
