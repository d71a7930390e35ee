"""Root pytest configuration for all tests."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from copilot_engine.client import CopilotClient
from tests.mock_server import MockCopilotServer

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(scope="session")
def anyio_backend():
    """Set anyio backend to asyncio."""
    return "asyncio"


@pytest_asyncio.fixture
async def server() -> AsyncIterator[MockCopilotServer]:
    """A running mock Copilot server on a free local port."""
    mock = MockCopilotServer()
    await mock.start()
    yield mock
    await mock.stop()


@pytest_asyncio.fixture
async def client(server: MockCopilotServer) -> AsyncIterator[CopilotClient]:
    """A started client attached to the mock server."""
    copilot = CopilotClient(cli_url=server.url, auto_restart=False, log_level="debug")
    await copilot.start()
    yield copilot
    await copilot.stop()
