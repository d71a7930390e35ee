"""Content-Length framing and the JSON-RPC connection built on it."""

from copilot_engine.protocol.framing import (
    decode_message,
    encode_message,
    parse_header,
    read_message,
    write_message,
)
from copilot_engine.protocol.jsonrpc import JsonRpcConnection, JsonRpcMessage

__all__ = [
    "JsonRpcConnection",
    "JsonRpcMessage",
    "decode_message",
    "encode_message",
    "parse_header",
    "read_message",
    "write_message",
]
