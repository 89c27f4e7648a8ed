"""Fixtures for relay integration tests."""

import socket
from collections.abc import AsyncIterator

import pytest_asyncio

from src.relay.config import HttpConfig, RelayConfig, ServerConfig, UpstreamConfig
from src.relay.registry import SessionRegistry
from src.relay.server import RelayServer
from src.relay.upstream import UpstreamConnectionManager


def get_free_port() -> int:
    """Get a free TCP port for binding.

    The port is released before it is returned, so another process could
    claim it first; acceptable for tests.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port: int = s.getsockname()[1]
    return port


@pytest_asyncio.fixture
async def running_relay(
    upstream: UpstreamConnectionManager, registry: SessionRegistry
) -> AsyncIterator[RelayServer]:
    """Relay server listening on a free local port, backed by the fake upstream."""
    config = RelayConfig(
        server=ServerConfig(host="127.0.0.1", port=get_free_port()),
        upstream=UpstreamConfig(api_key="sk-test"),
        http=HttpConfig(enabled=False),
    )
    relay = RelayServer(config, upstream=upstream, registry=registry)
    await relay.start()
    try:
        yield relay
    finally:
        await relay.shutdown()
