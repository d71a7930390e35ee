"""Stand-in for the copilot executable, spawned by transport tests.

Usage:
    python fake_cli.py [mode] --server --stdio ...

Modes:
    serve   answer ping over stdio until stdin closes (default)
    crash   write to stderr and exit with code 3
    port    announce a TCP port on stdout and serve ping there
"""

from __future__ import annotations

import json
import socket
import sys


def read_frame(stream) -> dict | None:
    length = None
    while True:
        line = stream.readline()
        if not line:
            return None
        if line in (b"\r\n", b"\n"):
            break
        name, _, value = line.decode("ascii").partition(":")
        if name.strip().lower() == "content-length":
            length = int(value.strip())
    body = stream.read(length)
    return json.loads(body.decode("utf-8"))


def write_frame(stream, message: dict) -> None:
    body = json.dumps(message).encode("utf-8")
    stream.write(b"Content-Length: %d\r\n\r\n" % len(body) + body)
    stream.flush()


def serve(reader, writer) -> None:
    while True:
        message = read_frame(reader)
        if message is None:
            return
        if "id" not in message or "method" not in message:
            continue
        if message["method"] == "ping":
            result = {"message": "pong", "timestamp": 0, "protocolVersion": 2}
            write_frame(writer, {"jsonrpc": "2.0", "id": message["id"], "result": result})
        else:
            error = {"code": -32601, "message": f"Method not found: {message['method']}"}
            write_frame(writer, {"jsonrpc": "2.0", "id": message["id"], "error": error})


def main(argv: list[str]) -> int:
    mode = argv[0] if argv and not argv[0].startswith("--") else "serve"
    print(f"fake cli args: {' '.join(argv)}", file=sys.stderr, flush=True)

    if mode == "crash":
        print("fatal: not authenticated", file=sys.stderr, flush=True)
        return 3

    if mode == "port":
        listener = socket.socket()
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        print(f"CLI server listening on port {listener.getsockname()[1]}", flush=True)
        conn, _ = listener.accept()
        with conn, conn.makefile("rb") as reader, conn.makefile("wb") as writer:
            serve(reader, writer)
        return 0

    serve(sys.stdin.buffer, sys.stdout.buffer)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
