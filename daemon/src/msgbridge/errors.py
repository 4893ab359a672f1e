"""Base exceptions for msgbridge."""


class MsgBridgeError(Exception):
    """Base exception for all msgbridge errors."""

    pass


class NotConnectedError(MsgBridgeError):
    """Operation requires an open session."""

    def __init__(self, message: str = "Session is not connected"):
        super().__init__(message)


class DeliveryFailedError(MsgBridgeError):
    """Transport-level send failure. Never retried automatically."""

    def __init__(self, details: str):
        self.details = details
        super().__init__(f"Failed to send message: {details}")


class PairingTimeoutError(MsgBridgeError):
    """The client abandoned pairing before a device was linked."""

    pass


class TerminalAuthFailureError(MsgBridgeError):
    """Stored credential was revoked by the remote endpoint."""

    pass


class StoreUnavailableError(MsgBridgeError):
    """Credential persistence failed."""

    pass


class ConnectError(MsgBridgeError):
    """Client could not establish its transport."""

    pass
