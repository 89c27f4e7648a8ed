"""Unit tests for upstream connection management.

Tests connection handshake (including timeout), event sending with id
assignment, inbound dispatch to the registered handler, one-shot waits and
idempotent teardown.
"""

import asyncio
import re
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from src.relay.config import UpstreamConfig
from src.relay.errors import (
    ConnectionNotFoundError,
    ConnectTimeoutError,
    UpstreamConnectError,
    WaitTimeoutError,
)
from src.relay.upstream import UpstreamConnectionManager, generate_event_id
from tests.helpers.relay_fakes import FakeUpstreamSocket


@pytest.fixture
def upstream_config() -> UpstreamConfig:
    """Upstream config with a short handshake timeout."""
    return UpstreamConfig(
        api_key="sk-test",
        organization_id="org-test",
        model="test-model",
        endpoint="wss://upstream.example/v1/realtime",
        connect_timeout_s=0.1,
    )


@pytest.fixture
def fake_socket() -> FakeUpstreamSocket:
    """In-memory upstream socket."""
    return FakeUpstreamSocket()


@pytest_asyncio.fixture
async def manager(
    upstream_config: UpstreamConfig, fake_socket: FakeUpstreamSocket
) -> AsyncIterator[UpstreamConnectionManager]:
    """Manager whose connect() returns the fake socket."""
    with patch("src.relay.upstream.connect", AsyncMock(return_value=fake_socket)):
        mgr = UpstreamConnectionManager(upstream_config)
        yield mgr
        await mgr.close_all()


class TestEventIds:
    """Test event identifier generation."""

    def test_format(self) -> None:
        """Ids are a millisecond timestamp plus eight hex chars."""
        assert re.fullmatch(r"evt_\d{13}_[0-9a-f]{8}", generate_event_id())

    def test_ids_differ(self) -> None:
        """Consecutive ids do not collide."""
        ids = {generate_event_id() for _ in range(100)}
        assert len(ids) == 100


class TestCreateConnection:
    """Test opening upstream connections."""

    @pytest.mark.asyncio
    async def test_create_connection_registers(self, upstream_config: UpstreamConfig) -> None:
        """A successful handshake registers the connection."""
        connect = AsyncMock(return_value=FakeUpstreamSocket())
        with patch("src.relay.upstream.connect", connect):
            mgr = UpstreamConnectionManager(upstream_config)
            connection_id = await mgr.create_connection("client-1")

            assert mgr.has_connection(connection_id)
            assert mgr.connection_count == 1

            url = connect.call_args.args[0]
            headers = connect.call_args.kwargs["additional_headers"]
            assert url == "wss://upstream.example/v1/realtime?model=test-model"
            assert headers["Authorization"] == "Bearer sk-test"
            assert headers["OpenAI-Beta"] == "realtime=v1"
            assert headers["OpenAI-Organization"] == "org-test"
            assert "OpenAI-Project" not in headers

            await mgr.close_all()

    @pytest.mark.asyncio
    async def test_create_connection_timeout(self, upstream_config: UpstreamConfig) -> None:
        """A handshake that never completes fails with ConnectTimeoutError."""

        async def hang(*args: Any, **kwargs: Any) -> None:
            await asyncio.sleep(3600)

        with patch("src.relay.upstream.connect", side_effect=hang):
            mgr = UpstreamConnectionManager(upstream_config)
            with pytest.raises(ConnectTimeoutError):
                await mgr.create_connection("client-1")

            assert mgr.connection_count == 0

    @pytest.mark.asyncio
    async def test_create_connection_refused(self, upstream_config: UpstreamConfig) -> None:
        """Transport failures surface as UpstreamConnectError."""
        with patch("src.relay.upstream.connect", AsyncMock(side_effect=OSError("refused"))):
            mgr = UpstreamConnectionManager(upstream_config)
            with pytest.raises(UpstreamConnectError) as exc_info:
                await mgr.create_connection("client-1")

            assert not isinstance(exc_info.value, ConnectTimeoutError)
            assert mgr.connection_count == 0


class TestSendEvent:
    """Test sending events upstream."""

    @pytest.mark.asyncio
    async def test_assigns_event_id(
        self, manager: UpstreamConnectionManager, fake_socket: FakeUpstreamSocket
    ) -> None:
        """Events without an id get one assigned and returned."""
        connection_id = await manager.create_connection("client-1")

        event_id = await manager.send_event(connection_id, {"type": "response.create"})

        assert event_id.startswith("evt_")
        assert fake_socket.sent_events == [{"type": "response.create", "event_id": event_id}]

    @pytest.mark.asyncio
    async def test_keeps_caller_event_id(
        self, manager: UpstreamConnectionManager, fake_socket: FakeUpstreamSocket
    ) -> None:
        """A caller-supplied id is preserved."""
        connection_id = await manager.create_connection("client-1")

        event_id = await manager.send_event(
            connection_id, {"type": "response.cancel", "event_id": "client-evt"}
        )

        assert event_id == "client-evt"
        assert fake_socket.sent_events[0]["event_id"] == "client-evt"

    @pytest.mark.asyncio
    async def test_unknown_connection(self, manager: UpstreamConnectionManager) -> None:
        """Sending on an unknown connection fails."""
        with pytest.raises(ConnectionNotFoundError):
            await manager.send_event("missing", {"type": "response.create"})


class TestInboundEvents:
    """Test inbound dispatch to handlers."""

    @pytest.mark.asyncio
    async def test_handler_receives_events_in_order(
        self, manager: UpstreamConnectionManager, fake_socket: FakeUpstreamSocket
    ) -> None:
        """Decoded events reach the handler in arrival order."""
        received: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        connection_id = await manager.create_connection("client-1")
        manager.set_message_handler(connection_id, received.put_nowait)

        fake_socket.feed({"type": "session.created", "session": {"id": "sess_1"}})
        fake_socket.feed({"type": "response.done"})

        first = await asyncio.wait_for(received.get(), timeout=1.0)
        second = await asyncio.wait_for(received.get(), timeout=1.0)
        assert first["type"] == "session.created"
        assert second["type"] == "response.done"

    @pytest.mark.asyncio
    async def test_async_handler(
        self, manager: UpstreamConnectionManager, fake_socket: FakeUpstreamSocket
    ) -> None:
        """Coroutine handlers are awaited."""
        received: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

        async def handler(event: dict[str, Any]) -> None:
            await received.put(event)

        connection_id = await manager.create_connection("client-1")
        manager.set_message_handler(connection_id, handler)
        fake_socket.feed({"type": "conversation.created"})

        event = await asyncio.wait_for(received.get(), timeout=1.0)
        assert event["type"] == "conversation.created"

    @pytest.mark.asyncio
    async def test_malformed_frame_dropped(
        self, manager: UpstreamConnectionManager, fake_socket: FakeUpstreamSocket
    ) -> None:
        """Undecodable frames are dropped without reaching the handler."""
        received: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        connection_id = await manager.create_connection("client-1")
        manager.set_message_handler(connection_id, received.put_nowait)

        fake_socket.feed("not json")
        fake_socket.feed("[1, 2]")
        fake_socket.feed({"type": "response.done"})

        event = await asyncio.wait_for(received.get(), timeout=1.0)
        assert event["type"] == "response.done"
        assert received.empty()

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_reader(
        self, manager: UpstreamConnectionManager, fake_socket: FakeUpstreamSocket
    ) -> None:
        """A failing handler does not stop delivery of later events."""
        received: list[str] = []
        done = asyncio.Event()

        def handler(event: dict[str, Any]) -> None:
            received.append(event["type"])
            if event["type"] == "first":
                raise RuntimeError("handler failure")
            done.set()

        connection_id = await manager.create_connection("client-1")
        manager.set_message_handler(connection_id, handler)
        fake_socket.feed({"type": "first"})
        fake_socket.feed({"type": "second"})

        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert received == ["first", "second"]

    def test_set_handler_unknown_connection(self, manager: UpstreamConnectionManager) -> None:
        """Attaching a handler to an unknown connection fails."""
        with pytest.raises(ConnectionNotFoundError):
            manager.set_message_handler("missing", lambda event: None)


class TestWaitForEvent:
    """Test one-shot event waits."""

    @pytest.mark.asyncio
    async def test_resolves_with_matching_event(
        self, manager: UpstreamConnectionManager, fake_socket: FakeUpstreamSocket
    ) -> None:
        """The wait resolves with the next event of the requested type."""
        connection_id = await manager.create_connection("client-1")
        waiter = asyncio.create_task(
            manager.wait_for_event(connection_id, "session.created", timeout=1.0)
        )
        await asyncio.sleep(0)

        fake_socket.feed({"type": "rate_limits.updated"})
        fake_socket.feed({"type": "session.created", "session": {"id": "sess_9"}})

        event = await waiter
        assert event["session"]["id"] == "sess_9"

    @pytest.mark.asyncio
    async def test_times_out(self, manager: UpstreamConnectionManager) -> None:
        """No matching event within the bound raises WaitTimeoutError."""
        connection_id = await manager.create_connection("client-1")

        with pytest.raises(WaitTimeoutError):
            await manager.wait_for_event(connection_id, "session.created", timeout=0.05)

    @pytest.mark.asyncio
    async def test_unknown_connection(self, manager: UpstreamConnectionManager) -> None:
        """Waiting on an unknown connection fails immediately."""
        with pytest.raises(ConnectionNotFoundError):
            await manager.wait_for_event("missing", "session.created")

    @pytest.mark.asyncio
    async def test_close_fails_pending_wait(self, manager: UpstreamConnectionManager) -> None:
        """Closing the connection fails outstanding waits."""
        connection_id = await manager.create_connection("client-1")
        waiter = asyncio.create_task(
            manager.wait_for_event(connection_id, "session.created", timeout=5.0)
        )
        await asyncio.sleep(0)

        await manager.close_connection(connection_id)

        with pytest.raises(ConnectionNotFoundError):
            await waiter


class TestCloseConnection:
    """Test connection teardown."""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(
        self, manager: UpstreamConnectionManager, fake_socket: FakeUpstreamSocket
    ) -> None:
        """Closing twice is safe and forgets the connection."""
        connection_id = await manager.create_connection("client-1")

        await manager.close_connection(connection_id)
        await manager.close_connection(connection_id)

        assert fake_socket.closed is True
        assert manager.connection_count == 0
        with pytest.raises(ConnectionNotFoundError):
            await manager.send_event(connection_id, {"type": "response.create"})
