"""One-shot helpers: ask a question without managing sessions by hand.

Each helper runs on a client the caller passes in, or starts a private
client from ``client_options`` and stops it when done. Nothing is shared
between calls.

    async with CopilotClient() as client:
        answer = await query("What is 2+2?", client=client, model="gpt-5")

    async with aclosing(query_stream("Tell me a story")) as events:
        async for event in events:
            ...
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from copilot_engine.client import CopilotClient
from copilot_engine.config import ClientOptions
from copilot_engine.errors import ConfigurationError
from copilot_engine.logging import get_logger
from copilot_engine.session.events import SessionEvent
from copilot_engine.session.session import DEFAULT_WAIT_TIMEOUT, CopilotSession

_log = get_logger("helpers")

DEFAULT_MAX_EVENTS = 256


@asynccontextmanager
async def _client_for(
    client: CopilotClient | None,
    client_options: ClientOptions | dict[str, Any] | None,
) -> AsyncIterator[CopilotClient]:
    if client is not None:
        if client_options is not None:
            raise ConfigurationError("Pass either client or client_options, not both")
        yield client
        return

    if isinstance(client_options, dict):
        owned = CopilotClient(**client_options)
    else:
        owned = CopilotClient(client_options)
    _log.debug("Starting a private client for a one-shot query")
    async with owned:
        yield owned


def _content(reply: SessionEvent | None) -> str | None:
    if reply is None:
        return None
    return reply.data.get("content")


async def query(
    prompt: str,
    *,
    client: CopilotClient | None = None,
    session: CopilotSession | None = None,
    client_options: ClientOptions | dict[str, Any] | None = None,
    timeout: float = DEFAULT_WAIT_TIMEOUT,
    **session_options: Any,
) -> str | None:
    """Send one prompt and return the assistant's reply text.

    Args:
        prompt: The message to send.
        client: Started client to use. Without one, a private client is
            built from client_options and stopped afterwards.
        session: Existing session to send on; it is kept open, so several
            calls share one conversation.
        client_options: Options for the private client.
        timeout: Seconds to wait for the session to go idle.
        **session_options: SessionConfig fields for the temporary session.

    Returns:
        Content of the turn's last assistant message, or None if the turn
        produced none.

    Raises:
        ConfigurationError: Conflicting arguments or invalid options.
        SendTimeoutError: The turn did not finish within timeout.
        SessionError: The turn ended with session.error.
    """
    if session is not None:
        if client is not None or client_options is not None or session_options:
            raise ConfigurationError(
                "A session cannot be combined with client or session options"
            )
        return _content(await session.send_and_wait(prompt, timeout=timeout))

    async with _client_for(client, client_options) as active:
        async with await active.create_session(**session_options) as temporary:
            return _content(await temporary.send_and_wait(prompt, timeout=timeout))


async def query_stream(
    prompt: str,
    *,
    client: CopilotClient | None = None,
    client_options: ClientOptions | dict[str, Any] | None = None,
    max_events: int = DEFAULT_MAX_EVENTS,
    timeout: float | None = None,
    **session_options: Any,
) -> AsyncIterator[SessionEvent]:
    """Send one prompt on a temporary session and yield the turn's events.

    Iteration ends after session.idle or session.error, or after
    max_events events. The session is destroyed when the generator
    finishes or is closed; wrap it in ``contextlib.aclosing`` when you
    may stop early.
    """
    if max_events <= 0:
        return

    async with _client_for(client, client_options) as active:
        async with await active.create_session(**session_options) as temporary:
            async with await temporary.send_stream(prompt, timeout=timeout) as stream:
                remaining = max_events
                async for event in stream:
                    yield event
                    remaining -= 1
                    if remaining == 0:
                        _log.debug(
                            "Stopping stream for %s after %d events",
                            temporary.session_id,
                            max_events,
                        )
                        return
