"""Newline framing for streamed JSON responses."""

from __future__ import annotations

from simple_lnd.exceptions import MalformedMessageError


class LineFramer:
    """Turn a sequence of byte chunks into newline-terminated text records.

    Holds at most one partial record between pushes. Records split across
    chunks, including inside a multi-byte UTF-8 sequence, are reassembled
    before decoding.

    Usage:
        framer = LineFramer()
        for chunk in chunks:
            for line in framer.push(chunk):
                ...
        for line in framer.end():
            ...
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def push(self, chunk: bytes) -> list[str]:
        """Append a chunk and return every record it completes.

        Raises MalformedMessageError for a record that is not valid UTF-8.
        """
        if not chunk:
            return []

        self._buffer += chunk
        end = self._buffer.rfind(b"\n")
        if end == -1:
            return []

        complete = bytes(self._buffer[:end])
        del self._buffer[: end + 1]
        return [decode_record(line) for line in complete.split(b"\n")]

    def end(self) -> list[str]:
        """Flush the trailing unterminated record, if any."""
        if not self._buffer:
            return []
        rest = bytes(self._buffer)
        self._buffer.clear()
        return [decode_record(rest)]

    def __len__(self) -> int:
        return len(self._buffer)


def decode_record(line: bytes) -> str:
    """Decode one record as UTF-8, dropping a trailing carriage return."""
    if line.endswith(b"\r"):
        line = line[:-1]
    try:
        return line.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedMessageError(line.decode("utf-8", errors="replace"), str(e)) from e
