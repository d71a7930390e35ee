"""Command-line interface for copilot-engine."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from rich.console import Console
from rich.table import Table

from copilot_engine import __version__
from copilot_engine.client import CopilotClient
from copilot_engine.config.loader import load_client_options
from copilot_engine.errors import CopilotError
from copilot_engine.logging import setup_logging
from copilot_engine.session.events import EventType
from copilot_engine.session.permissions import approve_all
from copilot_engine.session.session import CopilotSession

console = Console()
err_console = Console(stderr=True)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="copilot-engine",
        description="Talk to a Copilot CLI server from the command line",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Options file (default: ./copilot-engine.yaml)",
    )
    parser.add_argument(
        "--cli-path",
        help="Copilot CLI executable to spawn",
    )
    parser.add_argument(
        "--cli-url",
        help="Attach to a running server (port, host:port or URL)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("ping", help="Check the server and its protocol version")
    subparsers.add_parser("models", help="List available models")
    subparsers.add_parser("sessions", help="List stored sessions")

    chat_parser = subparsers.add_parser("chat", help="Chat with a new session")
    chat_parser.add_argument(
        "--model",
        help="Model id (see 'models')",
    )
    chat_parser.add_argument(
        "--prompt", "-p",
        help="Send one prompt and exit instead of starting a prompt loop",
    )

    return parser


def run_cli(args: Sequence[str]) -> int:
    """Run the CLI with the given arguments."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return 1

    setup_logging(verbose=parsed.verbose)

    overrides: dict[str, Any] = {}
    if parsed.cli_path:
        overrides["cli_path"] = parsed.cli_path
    if parsed.cli_url:
        overrides["cli_url"] = parsed.cli_url
    if parsed.verbose >= 2:
        overrides["log_level"] = "debug"

    try:
        options = load_client_options(parsed.config, **overrides)
    except CopilotError as e:
        err_console.print(f"[red]{e}[/red]")
        return 2

    commands = {
        "ping": _cmd_ping,
        "models": _cmd_models,
        "sessions": _cmd_sessions,
        "chat": _cmd_chat,
    }
    try:
        return asyncio.run(_run(CopilotClient(options), commands[parsed.command], parsed))
    except KeyboardInterrupt:
        return 130


async def _run(client: CopilotClient, command: Any, parsed: argparse.Namespace) -> int:
    try:
        async with client:
            return await command(client, parsed)
    except CopilotError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        return 1


async def _cmd_ping(client: CopilotClient, parsed: argparse.Namespace) -> int:
    response = await client.ping("copilot-engine")
    status = await client.get_status()
    console.print(f"[bold]Server:[/bold] {status.version or 'unknown'}")
    console.print(f"[bold]Protocol version:[/bold] {response.protocol_version}")
    return 0


async def _cmd_models(client: CopilotClient, parsed: argparse.Namespace) -> int:
    models = await client.list_models()
    if not models:
        console.print("[dim]No models available[/dim]")
        return 0

    table = Table(title="Available Models")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Vision")
    table.add_column("Policy")

    for model in models:
        supports = model.capabilities.supports if model.capabilities else None
        table.add_row(
            model.id,
            model.name or "-",
            "yes" if supports and supports.vision else "no",
            model.policy_state or "-",
        )

    console.print(table)
    return 0


async def _cmd_sessions(client: CopilotClient, parsed: argparse.Namespace) -> int:
    sessions = await client.list_sessions()
    if not sessions:
        console.print("[dim]No stored sessions[/dim]")
        return 0

    table = Table(title="Sessions")
    table.add_column("Session ID")
    table.add_column("Modified")
    table.add_column("Summary")
    table.add_column("CWD")

    for meta in sessions:
        table.add_row(
            meta.session_id,
            meta.modified_time.isoformat(timespec="seconds") if meta.modified_time else "-",
            meta.summary or "-",
            meta.context.cwd if meta.context and meta.context.cwd else "-",
        )

    console.print(table)
    return 0


async def _cmd_chat(client: CopilotClient, parsed: argparse.Namespace) -> int:
    session = await client.create_session(
        model=parsed.model,
        streaming=True,
        on_permission_request=approve_all,
    )
    async with session:
        if parsed.prompt:
            return await _stream_turn(session, parsed.prompt)

        prompt: PromptSession[str] = PromptSession(auto_suggest=AutoSuggestFromHistory())
        console.print(f"[bold]Copilot[/bold] session {session.session_id}")
        console.print("Type [bold]/quit[/bold] to exit.\n")

        while True:
            try:
                line = await prompt.prompt_async("you> ")
            except KeyboardInterrupt:
                continue
            except EOFError:
                break

            line = line.strip()
            if not line:
                continue
            if line == "/quit":
                break
            await _stream_turn(session, line)

    return 0


async def _stream_turn(session: CopilotSession, prompt: str) -> int:
    streamed = False
    async with await session.send_stream(prompt) as stream:
        async for event in stream:
            if event.type == EventType.ASSISTANT_MESSAGE_DELTA.value:
                console.print(event.data.get("deltaContent", ""), end="")
                streamed = True
            elif event.type == EventType.ASSISTANT_MESSAGE.value:
                if not streamed:
                    console.print(event.data.get("content", ""), end="")
                console.print()
                streamed = False
            elif event.type == EventType.TOOL_EXECUTION_START.value:
                console.print(f"[dim]> {event.data.get('toolName', 'tool')}[/dim]")
            elif event.type == EventType.SESSION_ERROR.value:
                err_console.print(f"[red]{event.data.get('message', 'Session error')}[/red]")
                return 1
    return 0
