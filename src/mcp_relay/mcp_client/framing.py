"""
Byte-stream framing for JSON-RPC messages.

Two framings are supported on stdio pipes:

* ``newline`` - one JSON document per line (the MCP default);
* ``content-length`` - LSP-style ``Content-Length: N\\r\\n\\r\\n`` headers
  followed by exactly N bytes of JSON.

`FrameBuffer` accumulates partial reads and yields complete messages only.
"""
import json
from typing import Any

from ..models.common import FramingType
from .exceptions import MCPMalformedMessageError, MCPTransportError

HEADER_TERMINATOR = b"\r\n\r\n"
# Upper bound on a header block; anything larger is not a header.
MAX_HEADER_BYTES = 8192


def encode_frame(message: dict[str, Any] | list[Any], framing: FramingType | str = FramingType.NEWLINE) -> bytes:
    """Serializes one message for the wire."""
    body = json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if FramingType(framing) == FramingType.CONTENT_LENGTH:
        return f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body
    return body + b"\n"


def decode_body(raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MCPMalformedMessageError(f"Frame is not valid JSON: {e}", raw=raw[:200]) from e


class FrameBuffer:
    """Incremental decoder. Feed it raw chunks, pop complete frames."""

    def __init__(self, framing: FramingType | str = FramingType.NEWLINE, max_frame_bytes: int = 10 * 1024 * 1024):
        self.framing = FramingType(framing)
        self.max_frame_bytes = max_frame_bytes
        self._buffer = bytearray()
        self._expected_length: int | None = None

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def next_frame(self) -> bytes | None:
        """Returns the next complete raw frame, or None if more bytes are needed.

        Raises MCPTransportError(io_failure) when a frame exceeds the size limit;
        the stream cannot be resynchronised after that.
        """
        if self.framing == FramingType.CONTENT_LENGTH:
            return self._next_content_length_frame()
        return self._next_line_frame()

    def pop(self) -> Any | None:
        """Like `next_frame` but decodes the JSON body.

        Blank lines between newline-delimited frames are skipped.
        """
        while True:
            raw = self.next_frame()
            if raw is None:
                return None
            if raw.strip():
                return decode_body(raw)

    def _next_line_frame(self) -> bytes | None:
        newline = self._buffer.find(b"\n")
        if newline == -1:
            if len(self._buffer) > self.max_frame_bytes:
                raise MCPTransportError(
                    f"Incoming frame exceeds {self.max_frame_bytes} bytes without a newline",
                    kind=MCPTransportError.IO_FAILURE,
                )
            return None
        if newline > self.max_frame_bytes:
            raise MCPTransportError(
                f"Incoming frame of {newline} bytes exceeds limit of {self.max_frame_bytes}",
                kind=MCPTransportError.IO_FAILURE,
            )
        frame = bytes(self._buffer[:newline]).rstrip(b"\r")
        del self._buffer[: newline + 1]
        return frame

    def _next_content_length_frame(self) -> bytes | None:
        if self._expected_length is None:
            end = self._buffer.find(HEADER_TERMINATOR)
            if end == -1:
                if len(self._buffer) > MAX_HEADER_BYTES:
                    raise MCPTransportError("Frame header block too large", kind=MCPTransportError.IO_FAILURE)
                return None
            header_block = bytes(self._buffer[:end]).decode("ascii", errors="replace")
            del self._buffer[: end + len(HEADER_TERMINATOR)]
            self._expected_length = self._parse_content_length(header_block)
            if self._expected_length > self.max_frame_bytes:
                raise MCPTransportError(
                    f"Incoming frame of {self._expected_length} bytes exceeds limit of {self.max_frame_bytes}",
                    kind=MCPTransportError.IO_FAILURE,
                )
        if len(self._buffer) < self._expected_length:
            return None
        frame = bytes(self._buffer[: self._expected_length])
        del self._buffer[: self._expected_length]
        self._expected_length = None
        return frame

    @staticmethod
    def _parse_content_length(header_block: str) -> int:
        for line in header_block.split("\r\n"):
            name, _, value = line.partition(":")
            if name.strip().lower() == "content-length":
                try:
                    length = int(value.strip())
                except ValueError:
                    break
                if length < 0:
                    break
                return length
        raise MCPTransportError(
            f"Missing or invalid Content-Length header: {header_block!r}",
            kind=MCPTransportError.IO_FAILURE,
        )
