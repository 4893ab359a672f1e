"""Tests for the session lifecycle controller."""

import asyncio
import json

import pytest
import pytest_asyncio

from msgbridge.errors import DeliveryFailedError, NotConnectedError
from msgbridge.fanout import FanoutHub, qr_event, status_event
from msgbridge.protocols import CloseKind, CloseReason, Credentials, SessionPhase
from msgbridge.reconnect import ReconnectPolicy
from msgbridge.session_controller import SessionController, classify_close

ALICE = {"id": "15551234567@s.whatsapp.net", "name": "Alice"}


class StubCodec:
    """QR encoder returning a predictable data URL."""

    def encode(self, payload: str) -> str:
        return f"data:image/png;base64,{payload}"


@pytest_asyncio.fixture(loop_scope="function")
async def make_controller(client_factory, credential_store, recorder):
    """Build controllers with fast retries; shut them all down afterwards."""
    created = []

    def build(**kwargs):
        kwargs.setdefault("reconnect_policy", ReconnectPolicy(base_delay=0.01))
        kwargs.setdefault("publisher", recorder)
        controller = SessionController(
            client_factory=client_factory,
            credential_store=credential_store,
            qr_codec=StubCodec(),
            **kwargs,
        )
        created.append(controller)
        return controller

    yield build

    for controller in created:
        await controller.shutdown(logout=False)


async def open_session(controller, client_factory):
    """Start the controller and drive the client to an open session."""
    await controller.start()
    client_factory.latest.emit_open(**ALICE)
    await controller.drain()
    return client_factory.latest


class TestClassifyClose:
    """Test close classification."""

    def test_logged_out_is_terminal(self):
        assert classify_close(CloseReason(status_code=401)) is CloseKind.TERMINAL

    def test_other_codes_are_recoverable(self):
        for code in (408, 428, 440, 500, 515):
            assert classify_close(CloseReason(status_code=code)) is CloseKind.RECOVERABLE

    def test_missing_code_is_recoverable(self):
        assert classify_close(CloseReason()) is CloseKind.RECOVERABLE

    def test_custom_terminal_codes(self):
        reason = CloseReason(status_code=403)
        assert classify_close(reason, terminal_status_codes=[401, 403]) is CloseKind.TERMINAL


class TestStart:
    """Test start()."""

    @pytest.mark.asyncio
    async def test_start_without_stored_credentials_creates_fresh_set(
        self, make_controller, client_factory, credential_store
    ):
        """First start creates, saves and uses a new credential set."""
        controller = make_controller()

        await controller.start()

        assert controller.phase == SessionPhase.CONNECTING
        assert credential_store.saves == 1
        assert client_factory.latest.connected_with is credential_store.credentials

    @pytest.mark.asyncio
    async def test_start_uses_stored_credentials(
        self, make_controller, client_factory, credential_store
    ):
        """Stored credentials are reused without pairing from scratch."""
        stored = Credentials(session_id="abc", created_at="2025-01-01T00:00:00Z")
        credential_store.credentials = stored
        controller = make_controller()

        await controller.start()

        assert client_factory.latest.connected_with is stored
        assert credential_store.saves == 0

    @pytest.mark.asyncio
    async def test_start_is_noop_while_connecting(self, make_controller, client_factory):
        """A second start() does not open a second connection."""
        controller = make_controller()

        await controller.start()
        await controller.start()

        assert len(client_factory.clients) == 1

    @pytest.mark.asyncio
    async def test_start_is_noop_while_open(self, make_controller, client_factory):
        controller = make_controller()
        await open_session(controller, client_factory)

        await controller.start()

        assert len(client_factory.clients) == 1
        assert controller.phase == SessionPhase.OPEN

    @pytest.mark.asyncio
    async def test_store_unavailable_still_connects(
        self, make_controller, client_factory, credential_store
    ):
        """Credential store failures fall back to in-memory credentials."""
        credential_store.fail = True
        controller = make_controller()

        await controller.start()

        assert controller.phase == SessionPhase.CONNECTING
        assert client_factory.latest.connected_with is not None

    @pytest.mark.asyncio
    async def test_connect_failure_schedules_retry(self, make_controller, client_factory):
        """A failed connect moves to closed and retries later."""
        client_factory.fail_next()
        controller = make_controller()

        await controller.start()

        assert controller.phase == SessionPhase.CLOSED
        assert controller.reconnect_pending
        assert "bridge unreachable" in controller.status().last_error
        assert client_factory.clients[0].closed

        await asyncio.sleep(0.1)

        assert len(client_factory.clients) == 2
        assert controller.phase == SessionPhase.CONNECTING

    @pytest.mark.asyncio
    async def test_connect_failures_keep_retrying(self, make_controller, client_factory):
        """Retries continue at a flat interval until one succeeds."""
        client_factory.fail_next(3)
        controller = make_controller()

        await controller.start()
        await asyncio.sleep(0.3)

        assert len(client_factory.clients) == 4
        assert controller.phase == SessionPhase.CONNECTING
        assert controller.reconnect_state.attempt == 3
        assert controller.reconnect_state.next_delay == 0.01


class TestPairing:
    """Test pairing payload handling."""

    @pytest.mark.asyncio
    async def test_pairing_payload_publishes_qr(self, make_controller, client_factory, recorder):
        controller = make_controller()
        await controller.start()

        client_factory.latest.emit_qr("ref-1")
        await controller.drain()

        assert controller.phase == SessionPhase.AWAITING_PAIRING
        assert controller.pairing_payload == "ref-1"
        assert controller.pairing_image == "data:image/png;base64,ref-1"
        assert recorder.last == qr_event("data:image/png;base64,ref-1")

    @pytest.mark.asyncio
    async def test_rotated_payload_replaces_previous(self, make_controller, client_factory, recorder):
        """Each new payload supersedes the last one."""
        controller = make_controller()
        await controller.start()

        client_factory.latest.emit_qr("ref-1")
        client_factory.latest.emit_qr("ref-2")
        await controller.drain()

        assert controller.pairing_payload == "ref-2"
        assert [e["data"] for e in recorder.of("qr")] == [
            "data:image/png;base64,ref-1",
            "data:image/png;base64,ref-2",
        ]

    @pytest.mark.asyncio
    async def test_pairing_while_open_drops_previous_device(
        self, make_controller, client_factory, recorder
    ):
        """A fresh pairing payload unlinks the identity the session had."""
        controller = make_controller()
        await open_session(controller, client_factory)
        assert len(controller.registry) == 1

        client_factory.latest.emit_qr("ref-2")
        await controller.drain()

        assert controller.phase == SessionPhase.AWAITING_PAIRING
        assert len(controller.registry) == 0
        assert controller.status().identity is None
        assert controller.snapshot_events()[0] == status_event("disconnected", [])
        assert recorder.last == qr_event("data:image/png;base64,ref-2")

    @pytest.mark.asyncio
    async def test_snapshot_while_pairing(self, make_controller, client_factory):
        """New subscribers get status first, then the pending qr."""
        controller = make_controller()
        await controller.start()
        client_factory.latest.emit_qr("ref-1")
        await controller.drain()

        assert controller.snapshot_events() == [
            status_event("disconnected", []),
            qr_event("data:image/png;base64,ref-1"),
        ]


class TestConnectionOpen:
    """Test the open transition."""

    @pytest.mark.asyncio
    async def test_open_registers_device_and_publishes(
        self, make_controller, client_factory, recorder
    ):
        controller = make_controller()
        await controller.start()
        client_factory.latest.emit_qr("ref-1")

        client_factory.latest.emit_open(**ALICE)
        await controller.drain()

        assert controller.phase == SessionPhase.OPEN
        assert controller.pairing_image is None
        assert controller.registry.to_list() == [ALICE]
        assert recorder.last == status_event("connected", [ALICE])

    @pytest.mark.asyncio
    async def test_snapshot_when_open_has_no_qr(self, make_controller, client_factory):
        controller = make_controller()
        await open_session(controller, client_factory)

        assert controller.snapshot_events() == [status_event("connected", [ALICE])]

    @pytest.mark.asyncio
    async def test_status_view(self, make_controller, client_factory):
        controller = make_controller()
        await open_session(controller, client_factory)

        status = controller.status()

        assert status.connected
        assert status.to_dict() == {
            "status": "connected",
            "phase": "open",
            "identity": ALICE,
            "pairing_pending": False,
            "devices": [ALICE],
            "last_error": None,
        }

    @pytest.mark.asyncio
    async def test_open_resets_retry_state(self, make_controller, client_factory):
        client_factory.fail_next(2)
        controller = make_controller(
            reconnect_policy=ReconnectPolicy(base_delay=0.01, multiplier=2.0, max_delay=1.0)
        )

        await controller.start()
        await asyncio.sleep(0.15)
        assert controller.reconnect_state.attempt == 2

        client_factory.latest.emit_open(**ALICE)
        await controller.drain()

        assert controller.reconnect_state.attempt == 0
        assert controller.reconnect_state.next_delay == 0.01


class TestConnectionClose:
    """Test close classification and reconnection."""

    @pytest.mark.asyncio
    async def test_recoverable_close_reconnects(self, make_controller, client_factory, recorder):
        controller = make_controller()
        first = await open_session(controller, client_factory)

        first.emit_close(status_code=428, message="Connection closed")
        await controller.drain()

        assert controller.phase == SessionPhase.CLOSED
        assert len(controller.registry) == 0
        assert recorder.last == status_event("disconnected", [])
        assert controller.reconnect_pending
        assert first.closed

        await asyncio.sleep(0.1)

        assert len(client_factory.clients) == 2
        assert controller.phase == SessionPhase.CONNECTING

    @pytest.mark.asyncio
    async def test_transport_drop_reconnects(self, make_controller, client_factory):
        """A close without a status code is recoverable."""
        controller = make_controller()
        first = await open_session(controller, client_factory)

        first.emit_close()
        await controller.drain()
        await asyncio.sleep(0.1)

        assert len(client_factory.clients) == 2

    @pytest.mark.asyncio
    async def test_terminal_close_stops_reconnecting(
        self, make_controller, client_factory, recorder
    ):
        controller = make_controller()
        first = await open_session(controller, client_factory)

        first.emit_close(status_code=401, message="logged out")
        await controller.drain()
        await asyncio.sleep(0.1)

        assert controller.phase == SessionPhase.LOGGED_OUT
        assert not controller.reconnect_pending
        assert len(client_factory.clients) == 1
        assert "revoked" in controller.status().last_error.lower()
        assert recorder.last == status_event("disconnected", [])

    @pytest.mark.asyncio
    async def test_start_after_terminal_close_begins_pairing(
        self, make_controller, client_factory
    ):
        """Operator can start again after a terminal close."""
        controller = make_controller()
        first = await open_session(controller, client_factory)
        first.emit_close(status_code=401)
        await controller.drain()

        await controller.start()

        assert len(client_factory.clients) == 2
        assert controller.phase == SessionPhase.CONNECTING

    @pytest.mark.asyncio
    async def test_pairing_timeout_is_recoverable(self, make_controller, client_factory):
        controller = make_controller()
        await controller.start()
        client_factory.latest.emit_qr("ref-1")

        client_factory.latest.emit_close(status_code=408, message="QR refs attempts ended")
        await controller.drain()

        assert controller.phase == SessionPhase.CLOSED
        assert controller.pairing_image is None
        assert "timed out" in controller.status().last_error
        assert controller.reconnect_pending

    @pytest.mark.asyncio
    async def test_repeated_reconnects_keep_one_record(self, make_controller, client_factory):
        """Close/open cycles never duplicate a device."""
        controller = make_controller()
        await open_session(controller, client_factory)

        for _ in range(3):
            client_factory.latest.emit_close(status_code=428)
            await controller.drain()
            await asyncio.sleep(0.05)
            client_factory.latest.emit_open(**ALICE)
            await controller.drain()

        assert len(client_factory.clients) == 4
        assert controller.registry.to_list() == [ALICE]

    @pytest.mark.asyncio
    async def test_stale_close_from_replaced_client_is_dropped(
        self, make_controller, client_factory
    ):
        """Events from a superseded client do not affect the new one."""
        controller = make_controller()
        first = await open_session(controller, client_factory)
        first.emit_close(status_code=428)
        await controller.drain()
        await asyncio.sleep(0.1)
        client_factory.latest.emit_open(id="other@s.whatsapp.net", name="Bob")
        await controller.drain()

        first.emit_close(status_code=401)
        await controller.drain()

        assert controller.phase == SessionPhase.OPEN
        assert controller.registry.get("other@s.whatsapp.net") is not None


class TestSendMessage:
    """Test send_message()."""

    @pytest.mark.asyncio
    async def test_send_when_not_connected_raises(self, make_controller, client_factory):
        controller = make_controller()
        await controller.start()

        with pytest.raises(NotConnectedError):
            await controller.send_message("1555@s.whatsapp.net", "hello")

        assert client_factory.latest.sent == []

    @pytest.mark.asyncio
    async def test_send_while_closed_raises(self, make_controller, client_factory):
        controller = make_controller(reconnect_policy=ReconnectPolicy(base_delay=10.0))
        client = await open_session(controller, client_factory)
        client.emit_close(status_code=428)
        await controller.drain()
        assert controller.phase == SessionPhase.CLOSED

        with pytest.raises(NotConnectedError):
            await controller.send_message("1555@s.whatsapp.net", "hello")

        assert client.sent == []

    @pytest.mark.asyncio
    async def test_send_when_open(self, make_controller, client_factory):
        controller = make_controller()
        client = await open_session(controller, client_factory)

        result = await controller.send_message("1555@s.whatsapp.net", "hello")

        assert result.target_id == "1555@s.whatsapp.net"
        assert result.message_id == "msg-1"
        assert client.sent == [("1555@s.whatsapp.net", "hello")]

    @pytest.mark.asyncio
    async def test_transport_error_becomes_delivery_failure(self, make_controller, client_factory):
        controller = make_controller()
        client = await open_session(controller, client_factory)
        client.send_error = RuntimeError("socket reset")

        with pytest.raises(DeliveryFailedError) as exc_info:
            await controller.send_message("1555@s.whatsapp.net", "hello")

        assert exc_info.value.details == "socket reset"
        assert controller.phase == SessionPhase.OPEN

    @pytest.mark.asyncio
    async def test_delivery_failure_passes_through(self, make_controller, client_factory):
        controller = make_controller()
        client = await open_session(controller, client_factory)
        client.send_error = DeliveryFailedError("rejected")

        with pytest.raises(DeliveryFailedError) as exc_info:
            await controller.send_message("1555@s.whatsapp.net", "hello")

        assert exc_info.value.details == "rejected"


class TestLogout:
    """Test logout()."""

    @pytest.mark.asyncio
    async def test_logout_resets_and_restarts_pairing(
        self, make_controller, client_factory, credential_store, recorder
    ):
        controller = make_controller()
        first = await open_session(controller, client_factory)
        old_credentials = credential_store.credentials

        await controller.logout()

        assert first.logout_calls == 1
        assert first.closed
        assert credential_store.erases == 1
        assert len(controller.registry) == 0
        assert recorder.last == status_event("disconnected", [])

        # Fresh pairing started
        assert len(client_factory.clients) == 2
        assert controller.phase == SessionPhase.CONNECTING
        assert credential_store.credentials is not old_credentials

    @pytest.mark.asyncio
    async def test_logout_during_pairing(
        self, make_controller, client_factory, credential_store, recorder
    ):
        """Pending payload is discarded and pairing starts over."""
        controller = make_controller()
        await controller.start()
        client_factory.latest.emit_qr("ref-1")
        await controller.drain()

        await controller.logout()

        assert controller.pairing_payload is None
        assert credential_store.erases == 1
        assert controller.phase == SessionPhase.CONNECTING
        assert controller.snapshot_events() == [status_event("disconnected", [])]

        client_factory.latest.emit_qr("ref-2")
        await controller.drain()
        assert recorder.last == qr_event("data:image/png;base64,ref-2")

    @pytest.mark.asyncio
    async def test_logout_cancels_pending_reconnect(self, make_controller, client_factory):
        controller = make_controller(reconnect_policy=ReconnectPolicy(base_delay=0.05))
        first = await open_session(controller, client_factory)
        first.emit_close(status_code=428)
        await controller.drain()
        assert controller.reconnect_pending

        await controller.logout()
        await asyncio.sleep(0.15)

        # Only the logout's own restart connected
        assert len(client_factory.clients) == 2
        assert not controller.reconnect_pending

    @pytest.mark.asyncio
    async def test_logout_is_bounded_by_timeout(self, make_controller, client_factory):
        controller = make_controller(logout_timeout=0.05)
        first = await open_session(controller, client_factory)
        first.logout_hangs = True

        await asyncio.wait_for(controller.logout(), timeout=1.0)

        assert first.closed
        assert controller.phase == SessionPhase.CONNECTING

    @pytest.mark.asyncio
    async def test_logout_while_pairing_skips_remote_logout(self, make_controller, client_factory):
        """A client that never opened is only closed."""
        controller = make_controller()
        await controller.start()
        first = client_factory.latest
        first._open = False

        await controller.logout()

        assert first.logout_calls == 0
        assert first.closed

    @pytest.mark.asyncio
    async def test_events_from_logged_out_client_are_dropped(
        self, make_controller, client_factory, recorder
    ):
        controller = make_controller()
        first = await open_session(controller, client_factory)
        await controller.logout()
        published = len(recorder.events)

        first.emit_open(**ALICE)
        first.emit_qr("late")
        await controller.drain()

        assert controller.phase == SessionPhase.CONNECTING
        assert len(controller.registry) == 0
        assert len(recorder.events) == published

    @pytest.mark.asyncio
    async def test_logout_survives_store_failure(
        self, make_controller, client_factory, credential_store
    ):
        controller = make_controller()
        await open_session(controller, client_factory)
        credential_store.fail = True

        await controller.logout()

        assert controller.phase == SessionPhase.CONNECTING


class TestRemoveDevice:
    """Test remove_device()."""

    @pytest.mark.asyncio
    async def test_remove_known_device(self, make_controller, client_factory, recorder):
        controller = make_controller()
        await open_session(controller, client_factory)

        removed = await controller.remove_device(ALICE["id"])

        assert removed
        assert len(controller.registry) == 0
        assert recorder.last == status_event("connected", [])

    @pytest.mark.asyncio
    async def test_remove_unknown_device(self, make_controller, client_factory, recorder):
        controller = make_controller()
        await open_session(controller, client_factory)
        published = len(recorder.events)

        removed = await controller.remove_device("nobody")

        assert not removed
        assert len(recorder.events) == published


class TestCredentials:
    """Test credential updates from the client."""

    @pytest.mark.asyncio
    async def test_updated_credentials_are_saved(
        self, make_controller, client_factory, credential_store
    ):
        controller = make_controller()
        await controller.start()
        updated = Credentials(session_id="new", created_at="2025-01-01T00:00:00Z")

        client_factory.latest.emit_creds(updated)
        await controller.drain()

        assert credential_store.credentials is updated

    @pytest.mark.asyncio
    async def test_save_failure_does_not_change_phase(
        self, make_controller, client_factory, credential_store
    ):
        controller = make_controller()
        await open_session(controller, client_factory)
        credential_store.fail = True

        client_factory.latest.emit_creds(
            Credentials(session_id="new", created_at="2025-01-01T00:00:00Z")
        )
        await controller.drain()

        assert controller.phase == SessionPhase.OPEN


class TestShutdown:
    """Test shutdown()."""

    @pytest.mark.asyncio
    async def test_shutdown_logs_out_open_session(self, make_controller, client_factory):
        controller = make_controller()
        client = await open_session(controller, client_factory)

        await controller.shutdown()

        assert client.logout_calls == 1
        assert client.closed
        assert controller.phase == SessionPhase.CLOSED

    @pytest.mark.asyncio
    async def test_shutdown_without_logout(self, make_controller, client_factory):
        controller = make_controller()
        client = await open_session(controller, client_factory)

        await controller.shutdown(logout=False)

        assert client.logout_calls == 0
        assert client.closed

    @pytest.mark.asyncio
    async def test_nothing_published_after_shutdown(
        self, make_controller, client_factory, recorder
    ):
        controller = make_controller()
        client = await open_session(controller, client_factory)
        await controller.shutdown()
        published = len(recorder.events)

        client.emit_qr("late")
        client.emit_close(status_code=428)
        await asyncio.sleep(0.05)

        assert len(recorder.events) == published

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_reconnect(self, make_controller, client_factory):
        controller = make_controller(reconnect_policy=ReconnectPolicy(base_delay=0.05))
        client = await open_session(controller, client_factory)
        client.emit_close(status_code=428)
        await controller.drain()

        await controller.shutdown()
        await asyncio.sleep(0.15)

        assert len(client_factory.clients) == 1

    @pytest.mark.asyncio
    async def test_start_after_shutdown_is_ignored(self, make_controller, client_factory):
        controller = make_controller()
        await controller.shutdown()

        await controller.start()

        assert client_factory.clients == []


class ViewerChannel:
    """Real-time viewer channel; a stalled one never completes a send."""

    def __init__(self, stall: bool = False):
        self.stall = stall
        self.events: list[dict] = []
        self.close_code = None

    async def send_str(self, data: str) -> None:
        if self.stall:
            await asyncio.Event().wait()
        self.events.append(json.loads(data))

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        self.close_code = code
        return True


@pytest_asyncio.fixture(loop_scope="function")
async def hub():
    """Fan-out hub with a one second delivery deadline."""
    hub = FanoutHub(send_timeout=1.0)
    yield hub
    await hub.close()


class TestSlowViewer:
    """A stalled viewer must not hold up the controller or other viewers."""

    @pytest.mark.asyncio
    async def test_healthy_viewer_gets_consecutive_events_promptly(
        self, make_controller, client_factory, hub
    ):
        controller = make_controller(publisher=hub.broadcast)
        hub.snapshot_provider = controller.snapshot_events
        stalled, healthy = ViewerChannel(stall=True), ViewerChannel()
        await hub.subscribe(stalled)
        await hub.subscribe(healthy)
        await controller.start()

        async def pair_and_open():
            client_factory.latest.emit_qr("ref-1")
            client_factory.latest.emit_open(**ALICE)
            await controller.drain()
            while status_event("connected", [ALICE]) not in healthy.events:
                await asyncio.sleep(0.001)

        await asyncio.wait_for(pair_and_open(), timeout=0.5)

        assert healthy.events[-2:] == [
            qr_event("data:image/png;base64,ref-1"),
            status_event("connected", [ALICE]),
        ]
        assert stalled.close_code is None

    @pytest.mark.asyncio
    async def test_logout_not_blocked_by_stalled_viewer(
        self, make_controller, client_factory, hub
    ):
        controller = make_controller(publisher=hub.broadcast)
        await hub.subscribe(ViewerChannel(stall=True))
        await open_session(controller, client_factory)

        await asyncio.wait_for(controller.logout(), timeout=0.5)
        await asyncio.wait_for(controller.remove_device("unknown@s.whatsapp.net"), timeout=0.5)

        assert len(controller.registry) == 0
