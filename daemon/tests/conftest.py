"""Pytest configuration and shared fixtures."""

import asyncio
from typing import Optional

import pytest
import pytest_asyncio

from msgbridge.errors import ConnectError, StoreUnavailableError
from msgbridge.protocols import (
    CloseReason,
    ConnectionClosed,
    ConnectionOpened,
    Credentials,
    CredentialsUpdated,
    Identity,
    PairingPayload,
)


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from msgbridge.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors.

    aiohttp's ClientSession.close() doesn't wait for the underlying
    connector to fully close. This can cause "Unclosed client session"
    warnings when the event loop closes before cleanup completes.
    """
    yield
    await asyncio.sleep(0)


# =============================================================================
# Fakes
# =============================================================================

class FakeClient:
    """In-memory messaging client driven by the test."""

    def __init__(self, emit, connect_error: Optional[Exception] = None):
        self.emit = emit
        self.connect_error = connect_error
        self.connected_with: Optional[Credentials] = None
        self.sent: list[tuple[str, str]] = []
        self.send_error: Optional[Exception] = None
        self.logout_calls = 0
        self.logout_hangs = False
        self.closed = False
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open and not self.closed

    async def connect(self, credentials: Credentials) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_with = credentials
        self._open = True

    async def send_text(self, target_id: str, text: str) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((target_id, text))
        return f"msg-{len(self.sent)}"

    async def logout(self) -> None:
        self.logout_calls += 1
        if self.logout_hangs:
            await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True
        self._open = False

    # Event helpers

    def emit_qr(self, payload: str = "2@pairing-ref,abc,def") -> None:
        self.emit(PairingPayload(payload=payload))

    def emit_open(self, id: str = "15551234567@s.whatsapp.net", name: str = "Alice") -> None:
        self.emit(ConnectionOpened(identity=Identity(id=id, name=name)))

    def emit_close(self, status_code: Optional[int] = None, message: str = "") -> None:
        self.emit(ConnectionClosed(reason=CloseReason(status_code=status_code, message=message)))

    def emit_creds(self, credentials: Credentials) -> None:
        self.emit(CredentialsUpdated(credentials=credentials))


class FakeClientFactory:
    """Client factory recording every client it builds."""

    def __init__(self):
        self.clients: list[FakeClient] = []
        self.connect_errors: list[Exception] = []

    def __call__(self, emit) -> FakeClient:
        error = self.connect_errors.pop(0) if self.connect_errors else None
        client = FakeClient(emit, connect_error=error)
        self.clients.append(client)
        return client

    def fail_next(self, count: int = 1) -> None:
        """Make the next clients fail to connect."""
        self.connect_errors.extend(ConnectError("bridge unreachable") for _ in range(count))

    @property
    def latest(self) -> FakeClient:
        return self.clients[-1]


class MemoryCredentialStore:
    """Credential store keeping one credential set in memory."""

    def __init__(self, credentials: Optional[Credentials] = None):
        self.credentials = credentials
        self.saves = 0
        self.erases = 0
        self.fail = False

    def load(self) -> Optional[Credentials]:
        if self.fail:
            raise StoreUnavailableError("disk gone")
        return self.credentials

    def save(self, credentials: Credentials) -> None:
        if self.fail:
            raise StoreUnavailableError("disk gone")
        self.saves += 1
        self.credentials = credentials

    def erase(self) -> None:
        if self.fail:
            raise StoreUnavailableError("disk gone")
        self.erases += 1
        self.credentials = None


class Recorder:
    """Async publisher collecting every published event."""

    def __init__(self):
        self.events: list[dict] = []

    async def __call__(self, event: dict) -> None:
        self.events.append(event)

    def of(self, kind: str) -> list[dict]:
        return [e for e in self.events if e["event"] == kind]

    @property
    def last(self) -> dict:
        return self.events[-1]


@pytest.fixture
def client_factory():
    """Factory producing FakeClient instances."""
    return FakeClientFactory()


@pytest.fixture
def credential_store():
    """In-memory credential store."""
    return MemoryCredentialStore()


@pytest.fixture
def recorder():
    """Publisher recording events."""
    return Recorder()
