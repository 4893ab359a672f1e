"""Session lifecycle controller.

Owns the single external messaging connection and the authoritative view
of its state: connection phase, pending pairing payload, and the device
registry. Nothing else connects, logs out, or mutates session state.

Client events arrive through an inbound queue and are handled one at a
time under the controller lock. Every client is tagged with a generation
number; events from a superseded client (after logout, close or shutdown)
are dropped.

Usage:
    controller = SessionController(
        client_factory=lambda emit: BridgeClient(url, emit),
        credential_store=FileCredentialStore(path),
        publisher=hub.broadcast,
    )
    await controller.start()
    ...
    await controller.shutdown()
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from msgbridge.credential_store import new_credentials
from msgbridge.device_registry import DeviceRecord, DeviceRegistry
from msgbridge.errors import (
    DeliveryFailedError,
    NotConnectedError,
    PairingTimeoutError,
    StoreUnavailableError,
    TerminalAuthFailureError,
)
from msgbridge.fanout import qr_event, status_event
from msgbridge.pairing import QrCodec
from msgbridge.protocols import (
    STATUS_LOGGED_OUT,
    STATUS_TIMED_OUT,
    ClientEvent,
    ClientFactory,
    CloseKind,
    CloseReason,
    ConnectionClosed,
    ConnectionOpened,
    Credentials,
    CredentialStoreProtocol,
    CredentialsUpdated,
    EmitCallback,
    Identity,
    MessageReceived,
    MessagingClientProtocol,
    PairingPayload,
    QrEncoderProtocol,
    SessionPhase,
)
from msgbridge.reconnect import ReconnectPolicy, ReconnectScheduler, ReconnectState

logger = logging.getLogger(__name__)


Publisher = Callable[[dict[str, Any]], Awaitable[None]]

# Phases from which start() may begin a new connection
STARTABLE_PHASES = (SessionPhase.IDLE, SessionPhase.CLOSED, SessionPhase.LOGGED_OUT)


def classify_close(
    reason: CloseReason,
    terminal_status_codes: Iterable[int] = (STATUS_LOGGED_OUT,),
) -> CloseKind:
    """Classify a close as terminal (credential revoked) or recoverable."""
    if reason.status_code is not None and reason.status_code in set(terminal_status_codes):
        return CloseKind.TERMINAL
    return CloseKind.RECOVERABLE


@dataclass
class SessionState:
    """Mutable session state. Owned by SessionController."""

    phase: SessionPhase = SessionPhase.IDLE
    pairing_payload: Optional[str] = None
    pairing_image: Optional[str] = None  # encoded pairing_payload
    identity: Optional[Identity] = None
    last_error: Optional[str] = None


@dataclass(frozen=True)
class SessionStatus:
    """Read-only view of the session."""

    phase: SessionPhase
    identity: Optional[Identity]
    pairing_pending: bool
    devices: list[DeviceRecord]
    last_error: Optional[str] = None

    @property
    def status(self) -> str:
        """connected / disconnected, as published to subscribers."""
        return "connected" if self.phase == SessionPhase.OPEN else "disconnected"

    @property
    def connected(self) -> bool:
        return self.phase == SessionPhase.OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "phase": self.phase.value,
            "identity": (
                {"id": self.identity.id, "name": self.identity.name}
                if self.identity
                else None
            ),
            "pairing_pending": self.pairing_pending,
            "devices": [d.to_dict() for d in self.devices],
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class SendResult:
    """Confirmation of a sent message."""

    target_id: str
    message_id: str


class SessionController:
    """Single authority over the messaging session."""

    def __init__(
        self,
        client_factory: ClientFactory,
        credential_store: CredentialStoreProtocol,
        publisher: Optional[Publisher] = None,
        qr_codec: Optional[QrEncoderProtocol] = None,
        registry: Optional[DeviceRegistry] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        terminal_status_codes: Iterable[int] = (STATUS_LOGGED_OUT,),
        logout_timeout: float = 5.0,
    ):
        """Initialize controller.

        Args:
            client_factory: Creates a messaging client bound to an emit callback.
            credential_store: Durable credential storage.
            publisher: Async callable receiving every published event.
            qr_codec: Encodes pairing payloads for subscribers.
            registry: Device registry (created if not given).
            reconnect_policy: Retry timing for recoverable closes.
            terminal_status_codes: Close codes that stop automatic reconnection.
            logout_timeout: Bound on waiting for the client's logout.
        """
        self._client_factory = client_factory
        self._store = credential_store
        self._publisher = publisher
        self._qr_codec = qr_codec or QrCodec()
        self._registry = registry or DeviceRegistry()
        self._retry = ReconnectScheduler(reconnect_policy)
        self._terminal_codes = frozenset(terminal_status_codes)
        self._logout_timeout = logout_timeout

        self._state = SessionState()
        self._client: Optional[MessagingClientProtocol] = None
        self._generation = 0
        self._lock = asyncio.Lock()

        # Inbound event channel: (generation, event)
        self._events: asyncio.Queue[tuple[int, ClientEvent]] = asyncio.Queue()
        self._consumer_task: Optional[asyncio.Task] = None
        self._shut_down = False

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def phase(self) -> SessionPhase:
        return self._state.phase

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    @property
    def reconnect_state(self) -> ReconnectState:
        return self._retry.state

    @property
    def reconnect_pending(self) -> bool:
        """True while a retry is scheduled."""
        return self._retry.pending

    @property
    def pairing_image(self) -> Optional[str]:
        """Encoded pairing payload, if pairing is pending."""
        return self._state.pairing_image

    @property
    def pairing_payload(self) -> Optional[str]:
        return self._state.pairing_payload

    def set_publisher(self, publisher: Optional[Publisher]) -> None:
        self._publisher = publisher

    # =========================================================================
    # Commands
    # =========================================================================

    async def start(self) -> None:
        """Begin connecting if the session is idle, closed or logged out.

        No-op while connecting, pairing or open. Connect failures schedule
        a retry and are never raised.
        """
        async with self._lock:
            if self._shut_down:
                return
            if self._state.phase not in STARTABLE_PHASES:
                logger.debug(f"start() ignored in phase {self._state.phase.value}")
                return

            self._retry.cancel()
            self._set_phase(SessionPhase.CONNECTING)
            self._ensure_consumer()

            credentials = self._load_credentials()

            self._generation += 1
            generation = self._generation
            try:
                client = self._client_factory(self._make_emitter(generation))
            except Exception as e:
                logger.error(f"Failed to create messaging client: {e}")
                await self._handle_connect_failure(e)
                return
            self._client = client

        # Lock released: events emitted while connecting can be processed
        try:
            await client.connect(credentials)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            async with self._lock:
                if generation != self._generation:
                    return
                logger.error(f"Failed to start connection: {e}")
                await self._handle_connect_failure(e)
            return

        logger.info("Connection requested")

    async def send_message(self, target_id: str, text: str) -> SendResult:
        """Send a text message over the open session.

        Raises:
            NotConnectedError: If the session is not open.
            DeliveryFailedError: If the transport rejects the send.
        """
        client = self._client
        if self._state.phase != SessionPhase.OPEN or client is None:
            raise NotConnectedError()

        try:
            message_id = await client.send_text(target_id, text)
        except DeliveryFailedError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise DeliveryFailedError(str(e)) from e

        logger.info(f"Message sent to {target_id}")
        return SendResult(target_id=target_id, message_id=message_id)

    async def logout(self) -> None:
        """Log out, erase credentials, and restart pairing from scratch.

        Valid in any phase. Cancels any scheduled reconnect.
        """
        async with self._lock:
            if self._shut_down:
                return

            logger.info("Logging out")
            self._retry.cancel()
            self._set_phase(SessionPhase.CLOSING)

            client = self._detach_client()
            if client is not None:
                if client.is_open:
                    await self._logout_client(client)
                await self._close_client(client)

            try:
                self._store.erase()
                logger.info("Stored credentials erased")
            except StoreUnavailableError as e:
                logger.error(f"Failed to erase credentials: {e}")

            self._state = SessionState()
            self._registry.clear()
            self._log_phase(SessionPhase.CLOSING, SessionPhase.IDLE)
            await self._publish(status_event("disconnected", []))

        await self.start()

    async def remove_device(self, device_id: str) -> bool:
        """Remove a device record and publish the updated status.

        Returns:
            True if the device was registered.
        """
        async with self._lock:
            removed = self._registry.remove(device_id)
            if removed:
                logger.info(f"Device {device_id} removed")
                await self._publish(self._status_event())
            return removed

    def status(self) -> SessionStatus:
        """Current session view. Never blocks."""
        return SessionStatus(
            phase=self._state.phase,
            identity=self._state.identity,
            pairing_pending=self._state.pairing_payload is not None,
            devices=self._registry.list(),
            last_error=self._state.last_error,
        )

    def snapshot_events(self) -> list[dict[str, Any]]:
        """Events a new subscriber receives: status, then qr if pending."""
        events = [self._status_event()]
        if self._state.pairing_image is not None:
            events.append(qr_event(self._state.pairing_image))
        return events

    async def drain(self) -> None:
        """Wait until every queued client event has been handled."""
        await self._events.join()

    async def shutdown(self, logout: bool = True) -> None:
        """Stop the session. No events are published afterwards.

        Args:
            logout: Attempt a bounded logout on a live client first.
        """
        async with self._lock:
            if self._shut_down:
                return
            self._shut_down = True

            logger.info("Shutting down session")
            self._retry.cancel()

            client = self._detach_client()
            if client is not None:
                if logout and client.is_open:
                    await self._logout_client(client)
                await self._close_client(client)

            self._state = SessionState(phase=SessionPhase.CLOSED)

        if self._consumer_task is not None:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

        logger.info("Session shut down")

    # =========================================================================
    # Client event handlers
    # =========================================================================

    async def on_pairing_payload(self, payload: str) -> None:
        """A pairing payload is available."""
        async with self._lock:
            await self._handle_pairing_payload(payload)

    async def on_connection_open(self, identity: Identity) -> None:
        """The session opened."""
        async with self._lock:
            await self._handle_connection_open(identity)

    async def on_connection_close(self, reason: CloseReason) -> None:
        """The session closed."""
        async with self._lock:
            await self._handle_connection_close(reason)

    async def on_credentials_updated(self, credentials: Credentials) -> None:
        """The client changed the credential set."""
        async with self._lock:
            self._handle_credentials_updated(credentials)

    async def _handle_pairing_payload(self, payload: str) -> None:
        try:
            image = self._qr_codec.encode(payload)
        except Exception as e:
            logger.error(f"Failed to encode pairing payload: {e}")
            return

        identity = self._state.identity
        if identity is not None:
            # Pairing again means the previous identity is no longer linked
            self._registry.remove(identity.id)

        self._set_phase(SessionPhase.AWAITING_PAIRING)
        self._state.pairing_payload = payload
        self._state.pairing_image = image
        self._state.identity = None
        logger.info("Pairing payload received")
        await self._publish(qr_event(image))

    async def _handle_connection_open(self, identity: Identity) -> None:
        self._set_phase(SessionPhase.OPEN)
        self._state.pairing_payload = None
        self._state.pairing_image = None
        self._state.identity = identity
        self._state.last_error = None
        self._registry.upsert(DeviceRecord(id=identity.id, name=identity.name))
        self._retry.reset()

        logger.info(f"Connected as {identity.name} ({identity.id})")
        await self._publish(status_event("connected", self._registry.to_list()))

    async def _handle_connection_close(self, reason: CloseReason) -> None:
        identity = self._state.identity
        if identity is not None:
            self._registry.remove(identity.id)

        self._state.identity = None
        self._state.pairing_payload = None
        self._state.pairing_image = None

        # The closed client emits nothing further that matters
        client = self._detach_client()
        if client is not None:
            await self._close_client(client)

        kind = classify_close(reason, self._terminal_codes)
        if kind is CloseKind.TERMINAL:
            self._retry.cancel()
            error: Exception = TerminalAuthFailureError(f"Credential revoked ({reason})")
            self._set_phase(SessionPhase.LOGGED_OUT)
        elif reason.status_code == STATUS_TIMED_OUT:
            error = PairingTimeoutError(f"Connection timed out ({reason})")
            self._set_phase(SessionPhase.CLOSED)
        else:
            error = ConnectionError(str(reason))
            self._set_phase(SessionPhase.CLOSED)
        self._state.last_error = str(error)

        await self._publish(status_event("disconnected", self._registry.to_list()))

        if kind is CloseKind.TERMINAL:
            logger.warning("Logged out by remote endpoint. Manual intervention required.")
        else:
            logger.warning(f"Connection closed: {reason}")
            self._retry.schedule(self.start)

    def _handle_credentials_updated(self, credentials: Credentials) -> None:
        try:
            self._store.save(credentials)
            logger.debug("Credentials saved")
        except StoreUnavailableError as e:
            logger.warning(f"Failed to save credentials, keeping them in memory: {e}")

    # =========================================================================
    # Internals
    # =========================================================================

    def _make_emitter(self, generation: int) -> EmitCallback:
        """Emit callback bound to one client generation."""

        def emit(event: ClientEvent) -> None:
            if self._shut_down:
                return
            self._events.put_nowait((generation, event))

        return emit

    def _ensure_consumer(self) -> None:
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self._consume_events())

    async def _consume_events(self) -> None:
        """Handle inbound client events one at a time."""
        while True:
            generation, event = await self._events.get()
            try:
                await self._dispatch(generation, event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__}: {e}")
            finally:
                self._events.task_done()

    async def _dispatch(self, generation: int, event: ClientEvent) -> None:
        async with self._lock:
            if generation != self._generation or self._shut_down:
                logger.debug(f"Dropping stale {type(event).__name__}")
                return

            if isinstance(event, PairingPayload):
                await self._handle_pairing_payload(event.payload)
            elif isinstance(event, ConnectionOpened):
                await self._handle_connection_open(event.identity)
            elif isinstance(event, ConnectionClosed):
                await self._handle_connection_close(event.reason)
            elif isinstance(event, CredentialsUpdated):
                self._handle_credentials_updated(event.credentials)
            elif isinstance(event, MessageReceived):
                if not event.from_me:
                    logger.debug(f"Message received from {event.sender}")
            else:
                logger.warning(f"Unknown client event: {event!r}")

    def _load_credentials(self) -> Credentials:
        """Load stored credentials, creating a fresh set if none exist."""
        credentials = None
        try:
            credentials = self._store.load()
        except StoreUnavailableError as e:
            logger.warning(f"Credential store unavailable, pairing from scratch: {e}")

        if credentials is None:
            credentials = new_credentials()
            try:
                self._store.save(credentials)
                logger.info("Created new credentials")
            except StoreUnavailableError as e:
                logger.warning(f"Failed to save new credentials, keeping them in memory: {e}")
        return credentials

    async def _handle_connect_failure(self, error: Exception) -> None:
        client = self._detach_client()
        if client is not None:
            await self._close_client(client)
        self._state.last_error = str(error) or type(error).__name__
        self._set_phase(SessionPhase.CLOSED)
        self._retry.schedule(self.start)

    def _detach_client(self) -> Optional[MessagingClientProtocol]:
        """Forget the current client; its later events are dropped."""
        client = self._client
        self._client = None
        self._generation += 1
        return client

    async def _logout_client(self, client: MessagingClientProtocol) -> None:
        try:
            await asyncio.wait_for(client.logout(), timeout=self._logout_timeout)
            logger.info("Logged out from messaging endpoint")
        except asyncio.TimeoutError:
            logger.warning(f"Logout timed out after {self._logout_timeout:g}s")
        except Exception as e:
            logger.warning(f"Logout request failed: {e}")

    async def _close_client(self, client: MessagingClientProtocol) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.debug(f"Error closing client: {e}")

    def _status_event(self) -> dict[str, Any]:
        return status_event(self.status().status, self._registry.to_list())

    async def _publish(self, event: dict[str, Any]) -> None:
        if self._publisher is None or self._shut_down:
            return
        try:
            await self._publisher(event)
        except Exception as e:
            logger.error(f"Failed to publish {event.get('event')} event: {e}")

    def _set_phase(self, phase: SessionPhase) -> None:
        old = self._state.phase
        self._state.phase = phase
        self._log_phase(old, phase)

    def _log_phase(self, old: SessionPhase, new: SessionPhase) -> None:
        if old != new:
            logger.info(f"Session phase: {old.value} -> {new.value}")
