"""Content-Length message framing.

Frame format:
    Content-Length: <length>\r\n
    [Other-Header: <value>]\r\n
    \r\n
    <json-rpc-message>

The Content-Length header is required and gives the byte count of the
UTF-8 JSON body. Headers are separated from the body by a blank line.
The same framing is used over the child's stdio pipes and over TCP.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from copilot_engine.errors import FramingError

HEADER_ENCODING = "ascii"
CONTENT_ENCODING = "utf-8"
CRLF = b"\r\n"
HEADER_SEPARATOR = b"\r\n\r\n"
DEFAULT_MAX_MESSAGE_SIZE = 64 * 1024 * 1024


def parse_header(header_bytes: bytes) -> int:
    """Parse a header block and return the Content-Length.

    Args:
        header_bytes: Raw header lines without the trailing blank line.

    Returns:
        The body length in bytes.

    Raises:
        FramingError: If headers are malformed or Content-Length is missing/invalid.

    Example:
        >>> parse_header(b"Content-Length: 42\\r\\nContent-Type: application/json")
        42
    """
    if not header_bytes:
        raise FramingError("Empty header block")

    try:
        header_text = header_bytes.decode(HEADER_ENCODING)
    except UnicodeDecodeError as e:
        raise FramingError(f"Header contains non-ASCII characters: {e}") from e

    length_value: str | None = None
    for line in header_text.split("\r\n"):
        if not line:
            continue

        name, sep, value = line.partition(":")
        if not sep:
            raise FramingError(f"Malformed header line (no colon): {line!r}")
        name = name.strip()
        if not name:
            raise FramingError(f"Empty header name in line: {line!r}")

        # Header names are case-insensitive
        if name.lower() == "content-length":
            length_value = value.strip()

    if length_value is None:
        raise FramingError("Missing required Content-Length header")

    try:
        length = int(length_value)
    except ValueError as e:
        raise FramingError(f"Invalid Content-Length value: {length_value!r}") from e

    if length < 0:
        raise FramingError(f"Negative Content-Length: {length}")

    return length


def _decode_body(body_bytes: bytes) -> dict[str, Any]:
    try:
        content = body_bytes.decode(CONTENT_ENCODING)
    except UnicodeDecodeError as e:
        raise FramingError(f"Invalid UTF-8 in message body: {e}") from e

    try:
        message = json.loads(content)
    except json.JSONDecodeError as e:
        raise FramingError(f"Invalid JSON in message body: {e}") from e

    if not isinstance(message, dict):
        raise FramingError(f"JSON-RPC message must be an object, got {type(message).__name__}")

    return message


def encode_message(msg: dict[str, Any]) -> bytes:
    """Serialize a message into one complete frame.

    Raises:
        FramingError: If the message cannot be serialized to JSON.
    """
    try:
        body_bytes = json.dumps(msg, separators=(",", ":"), ensure_ascii=False).encode(
            CONTENT_ENCODING
        )
    except (TypeError, ValueError) as e:
        raise FramingError(f"Message cannot be serialized to JSON: {e}") from e

    header = f"Content-Length: {len(body_bytes)}\r\n\r\n".encode(HEADER_ENCODING)
    return header + body_bytes


def decode_message(data: bytes) -> dict[str, Any]:
    """Decode exactly one complete frame.

    Raises:
        FramingError: If the frame is malformed, truncated or has trailing bytes.
    """
    header_bytes, sep, body_bytes = data.partition(HEADER_SEPARATOR)
    if not sep:
        raise FramingError("Missing header terminator")

    length = parse_header(header_bytes)
    if len(body_bytes) < length:
        raise FramingError(
            f"Incomplete message body: expected {length} bytes, got {len(body_bytes)}"
        )
    if len(body_bytes) > length:
        raise FramingError(f"{len(body_bytes) - length} unexpected bytes after message body")

    return _decode_body(body_bytes)


async def read_message(
    reader: asyncio.StreamReader,
    *,
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
) -> dict[str, Any] | None:
    """Read the next frame from the CLI server's stdout pipe or TCP socket.

    Header lines are consumed up to the blank line, then exactly
    Content-Length body bytes. Unknown headers are ignored.

    Args:
        reader: The connection's inbound stream.
        max_message_size: Largest body accepted, checked before reading it.

    Returns:
        The decoded JSON object, or None when the server closed the stream
        between frames.

    Raises:
        FramingError: If the frame is invalid or the stream ends mid-frame.
    """
    header_bytes = b""

    while True:
        try:
            line = await reader.readuntil(CRLF)
        except asyncio.IncompleteReadError as e:
            if header_bytes == b"" and not e.partial:
                return None  # Clean EOF at message boundary
            raise FramingError("Unexpected EOF while reading headers") from e
        except asyncio.LimitOverrunError as e:
            raise FramingError(f"Header line too long: {e}") from e

        if line == CRLF:
            if not header_bytes:
                raise FramingError("Empty header block")
            break

        header_bytes += line

    content_length = parse_header(header_bytes[:-2])

    if content_length > max_message_size:
        raise FramingError(f"Message size {content_length} exceeds maximum {max_message_size}")

    try:
        body_bytes = await reader.readexactly(content_length)
    except asyncio.IncompleteReadError as e:
        raise FramingError(
            f"Incomplete message body: expected {content_length} bytes, got {len(e.partial)}"
        ) from e

    return _decode_body(body_bytes)


async def write_message(
    writer: asyncio.StreamWriter,
    msg: dict[str, Any],
    *,
    drain: bool = True,
) -> None:
    """Send one frame to the CLI server's stdin pipe or TCP socket.

    Callers serialize writes; the frame is handed to the transport whole.

    Args:
        writer: The connection's outbound stream.
        msg: Request, response or notification object.
        drain: Wait for the transport buffer to flush before returning.

    Raises:
        FramingError: If the message cannot be serialized to JSON.
    """
    writer.write(encode_message(msg))

    if drain:
        await writer.drain()
