"""Protocols, enums and event types shared across msgbridge."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Union


class SessionPhase(Enum):
    """Phase of the single messaging session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    LOGGED_OUT = "logged_out"


class CloseKind(Enum):
    """Classification of a connection close."""

    RECOVERABLE = "recoverable"
    TERMINAL = "terminal"


# Close codes reported by the messaging endpoint
STATUS_LOGGED_OUT = 401
STATUS_TIMED_OUT = 408

UNKNOWN_DEVICE_NAME = "Unknown Device"


# ============================================================================
# Session data
# ============================================================================


@dataclass(frozen=True)
class Identity:
    """Account identity reported when the connection opens."""

    id: str
    name: str

    @classmethod
    def from_partial(cls, id: Optional[str], name: Optional[str]) -> "Identity":
        """Build an identity, filling in whatever the endpoint left out."""
        return cls(
            id=id or f"device_{int(time.time() * 1000)}",
            name=name or UNKNOWN_DEVICE_NAME,
        )


@dataclass(frozen=True)
class CloseReason:
    """Why the external connection closed.

    status_code is None when the transport dropped without the endpoint
    reporting a reason.
    """

    status_code: Optional[int] = None
    message: str = ""

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message or "connection lost"
        if self.message:
            return f"{self.status_code}: {self.message}"
        return str(self.status_code)


@dataclass
class Credentials:
    """Opaque credential set for the session."""

    session_id: str
    created_at: str  # ISO format
    keys: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "keys": dict(self.keys),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Credentials":
        """Create from dictionary."""
        return cls(
            session_id=d["session_id"],
            created_at=d["created_at"],
            keys=dict(d.get("keys") or {}),
        )


# ============================================================================
# Inbound client events
# ============================================================================


@dataclass(frozen=True)
class PairingPayload:
    """A new pairing payload is available for scanning."""

    payload: str


@dataclass(frozen=True)
class ConnectionOpened:
    """The session authenticated and is open."""

    identity: Identity


@dataclass(frozen=True)
class ConnectionClosed:
    """The session closed."""

    reason: CloseReason


@dataclass(frozen=True)
class CredentialsUpdated:
    """The client rotated or extended the credential set."""

    credentials: Credentials


@dataclass(frozen=True)
class MessageReceived:
    """An inbound chat message."""

    sender: str
    text: str
    from_me: bool = False


ClientEvent = Union[
    PairingPayload,
    ConnectionOpened,
    ConnectionClosed,
    CredentialsUpdated,
    MessageReceived,
]

EmitCallback = Callable[[ClientEvent], None]


# ============================================================================
# Collaborator protocols
# ============================================================================


class MessagingClientProtocol(Protocol):
    """Protocol for the external messaging client.

    Events are reported through the emit callback handed to the factory.
    """

    @property
    def is_open(self) -> bool:
        """True while the transport is live."""
        ...

    async def connect(self, credentials: Credentials) -> None:
        """Start connecting. Raises ConnectError on transport failure."""
        ...

    async def send_text(self, target_id: str, text: str) -> str:
        """Send a text message. Returns the message id."""
        ...

    async def logout(self) -> None:
        """Unlink the session on the remote endpoint."""
        ...

    async def close(self) -> None:
        """Close the transport without emitting further events."""
        ...


ClientFactory = Callable[[EmitCallback], MessagingClientProtocol]


class CredentialStoreProtocol(Protocol):
    """Protocol for credential persistence."""

    def load(self) -> Optional[Credentials]:
        """Load stored credentials. Raises StoreUnavailableError."""
        ...

    def save(self, credentials: Credentials) -> None:
        """Persist credentials. Raises StoreUnavailableError."""
        ...

    def erase(self) -> None:
        """Remove stored credentials. Raises StoreUnavailableError."""
        ...


class QrEncoderProtocol(Protocol):
    """Protocol for pairing payload image encoding."""

    def encode(self, payload: str) -> str:
        """Encode a raw payload as a displayable image representation."""
        ...


class ChannelProtocol(Protocol):
    """Protocol for a subscriber channel (aiohttp WebSocketResponse fits)."""

    @property
    def closed(self) -> bool:
        """True once the channel is closed."""
        ...

    async def send_str(self, data: str) -> None:
        """Send a text frame."""
        ...

    async def close(self, *, code: int = 1000, message: bytes = b"") -> Any:
        """Close the channel."""
        ...
