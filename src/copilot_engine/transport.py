"""Connection to the Copilot CLI server process.

Two ways to reach the server:

- spawn ``copilot --server`` and talk over its stdin/stdout (default), or
  over a TCP port it announces on stdout
- attach to an already running server at ``cli_url``

The transport hands a (reader, writer) stream pair to the JSON-RPC layer and
owns whatever sits underneath it: the child process, its stderr, the socket.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from copilot_engine.errors import ConfigurationError, TransportError
from copilot_engine.logging import get_logger

if TYPE_CHECKING:
    from copilot_engine.config.schema import ClientOptions

_log = get_logger("transport")

AUTH_TOKEN_ENV = "COPILOT_SDK_AUTH_TOKEN"
STDERR_TAIL_LINES = 100
_PORT_ANNOUNCEMENT = re.compile(r"listening on port (\d+)", re.IGNORECASE)


class ConnectionState(Enum):
    """Connection lifecycle of a client."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


def parse_cli_url(url: str) -> tuple[str, int]:
    """Split a server address into host and port.

    Accepts ``"8080"``, ``"host:8080"``, ``"http://host:8080"`` and
    ``"https://host:8080"``. A bare port means localhost.

    Raises:
        ConfigurationError: If the address is malformed or the port is not
            an integer in [1, 65535].
    """
    text = url.strip()
    if not text:
        raise ConfigurationError("Invalid cli_url: empty address")

    if text.isdigit():
        host, port_text = "localhost", text
    else:
        if "://" not in text:
            text = f"tcp://{text}"
        parts = urlsplit(text)
        if parts.scheme not in ("tcp", "http", "https"):
            raise ConfigurationError(
                f"Invalid cli_url {url!r}: unsupported scheme {parts.scheme!r}"
            )
        if parts.path not in ("", "/") or parts.query or parts.fragment:
            raise ConfigurationError(f"Invalid cli_url {url!r}: unexpected path or query")
        netloc = parts.netloc
        host, sep, port_text = netloc.rpartition(":")
        if not sep:
            raise ConfigurationError(f"Invalid cli_url {url!r}: missing port")
        host = host.strip("[]") or "localhost"

    try:
        port = int(port_text)
    except ValueError:
        raise ConfigurationError(f"Invalid cli_url {url!r}: port must be a number") from None

    if not 1 <= port <= 65535:
        raise ConfigurationError(f"Invalid cli_url {url!r}: port {port} out of range 1-65535")

    return host, port


def build_cli_args(options: ClientOptions) -> list[str]:
    """Command line for a spawned server (without the executable)."""
    args = list(options.cli_args)
    args += ["--server", "--no-auto-update", "--log-level", options.log_level]
    if options.use_stdio:
        args.append("--stdio")
    elif options.port > 0:
        args += ["--port", str(options.port)]
    if options.github_token:
        args += ["--auth-token-env", AUTH_TOKEN_ENV]
    if not options.logged_in_user:
        args.append("--no-auto-login")
    return args


def build_cli_env(options: ClientOptions) -> dict[str, str]:
    """Environment for a spawned server.

    Entries in options.env with a None value are removed from the inherited
    environment.
    """
    env = os.environ.copy()
    # Debug output on stdout would corrupt the stdio channel
    env.pop("NODE_DEBUG", None)
    for key, value in (options.env or {}).items():
        if value is None:
            env.pop(key, None)
        else:
            env[key] = value
    if options.github_token:
        env[AUTH_TOKEN_ENV] = options.github_token
    return env


class ServerTransport:
    """Opens and tears down the streams to one server instance."""

    def __init__(self, options: ClientOptions) -> None:
        self.options = options
        self.process: asyncio.subprocess.Process | None = None
        self.port: int | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._stderr_lines: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._pump_tasks: list[asyncio.Task[None]] = []

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.process is not None else None

    def stderr_output(self) -> str:
        """Last lines the server wrote to stderr."""
        return "\n".join(self._stderr_lines)

    def describe_failure(self, message: str) -> str:
        """Append exit code and stderr tail to an error message."""
        if self.returncode is not None:
            message = f"{message} (CLI server exited with code {self.returncode})"
        stderr = self.stderr_output()
        if stderr:
            message = f"{message}\nstderr: {stderr}"
        return message

    async def open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Spawn or attach, returning the stream pair to speak JSON-RPC over.

        Raises:
            TransportError: If the process cannot be started or the socket
                cannot be opened.
        """
        if self.options.cli_url is not None:
            host, port = parse_cli_url(self.options.cli_url)
            return await self._connect(host, port)

        await self._spawn()
        assert self.process is not None

        if self.options.use_stdio:
            assert self.process.stdout is not None and self.process.stdin is not None
            self._writer = self.process.stdin
            return self.process.stdout, self.process.stdin

        port = await self._wait_for_port()
        return await self._connect("localhost", port)

    async def _connect(
        self, host: str, port: int
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.options.startup_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportError(
                self.describe_failure(f"Cannot connect to CLI server at {host}:{port}: {e}")
            ) from e
        self.port = port
        self._writer = writer
        _log.info("Connected to CLI server at %s:%d", host, port)
        return reader, writer

    async def _spawn(self) -> None:
        command = [self.options.cli_path, *build_cli_args(self.options)]
        _log.debug("Starting CLI server: %s", " ".join(command))
        try:
            self.process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.options.cwd,
                env=build_cli_env(self.options),
            )
        except OSError as e:
            raise TransportError(
                f"Failed to start CLI server {self.options.cli_path!r}: {e}"
            ) from e

        _log.info("CLI server started (pid %s)", self.process.pid)
        if self.process.stderr is not None:
            self._pump_tasks.append(
                asyncio.create_task(self._pump_stderr(self.process.stderr), name="cli-stderr")
            )

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            self._stderr_lines.append(text)
            _log.debug("[cli stderr] %s", text)

    async def _pump_stdout(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            _log.debug("[cli stdout] %s", line.decode("utf-8", errors="replace").rstrip())

    async def _wait_for_port(self) -> int:
        assert self.process is not None and self.process.stdout is not None
        stdout = self.process.stdout

        async def read_announcement() -> int:
            while True:
                line = await stdout.readline()
                if not line:
                    raise TransportError(
                        self.describe_failure("CLI server exited before announcing its port")
                    )
                text = line.decode("utf-8", errors="replace")
                match = _PORT_ANNOUNCEMENT.search(text)
                if match:
                    return int(match.group(1))
                _log.debug("[cli stdout] %s", text.rstrip())

        try:
            port = await asyncio.wait_for(read_announcement(), timeout=self.options.startup_timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                self.describe_failure("Timeout waiting for CLI server to start")
            ) from None

        # Keep draining stdout so the child never blocks on a full pipe
        self._pump_tasks.append(asyncio.create_task(self._pump_stdout(stdout), name="cli-stdout"))
        return port

    async def wait_exited(self, timeout: float) -> int | None:
        """Give a dying process time to exit and flush stderr.

        Returns:
            The exit code, or None if the process is still running.
        """
        if self.process is None:
            return None
        try:
            await asyncio.wait_for(self.process.wait(), timeout=timeout)
            await asyncio.wait_for(
                asyncio.gather(*self._pump_tasks, return_exceptions=True), timeout=timeout
            )
        except asyncio.TimeoutError:
            pass
        return self.returncode

    async def close(self) -> list[Exception]:
        """Shut the process down: wait, terminate, then kill.

        Returns:
            Errors hit along the way; nothing is raised.
        """
        errors: list[Exception] = []
        process = self.process

        if process is not None and process.returncode is None:
            timeout = self.options.stop_timeout
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                try:
                    process.terminate()
                    await asyncio.wait_for(process.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    _log.warning("CLI server did not exit after SIGTERM, killing it")
                    process.kill()
                    await process.wait()
                except ProcessLookupError:
                    pass  # Already gone
            except OSError as e:
                errors.append(e)

        await self._stop_pumps()
        self._writer = None
        return errors

    def kill(self) -> None:
        """Tear everything down immediately without waiting."""
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        if self.process is not None and self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass  # Already gone
        for task in self._pump_tasks:
            task.cancel()
        self._pump_tasks.clear()

    async def _stop_pumps(self) -> None:
        for task in self._pump_tasks:
            task.cancel()
        for task in self._pump_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._pump_tasks.clear()
