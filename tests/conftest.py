"""Shared pytest fixtures for relay tests."""

from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from src.relay.config import UpstreamConfig
from src.relay.registry import SessionRegistry
from src.relay.upstream import UpstreamConnectionManager
from tests.helpers.relay_fakes import FakeUpstreamSocket


@pytest.fixture
def upstream_sockets() -> list[FakeUpstreamSocket]:
    """Every upstream socket opened during a test, in order."""
    return []


@pytest_asyncio.fixture
async def upstream(
    upstream_sockets: list[FakeUpstreamSocket],
) -> AsyncIterator[UpstreamConnectionManager]:
    """Upstream manager that opens a fresh fake socket per connection."""

    def open_socket(*args: Any, **kwargs: Any) -> FakeUpstreamSocket:
        sock = FakeUpstreamSocket()
        upstream_sockets.append(sock)
        return sock

    with patch("src.relay.upstream.connect", AsyncMock(side_effect=open_socket)):
        manager = UpstreamConnectionManager(UpstreamConfig(api_key="sk-test"))
        yield manager
        await manager.close_all()


@pytest.fixture
def registry(upstream: UpstreamConnectionManager) -> SessionRegistry:
    """Session registry over the fake upstream."""
    return SessionRegistry(upstream)
