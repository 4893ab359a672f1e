"""Messaging client that talks to a protocol bridge over WebSocket.

The bridge is a sidecar that speaks the messaging protocol itself and
exposes the session as JSON text frames:

    bridge -> daemon
        {"type": "qr", "qr": "<pairing payload>"}
        {"type": "open", "user": {"id": "...", "name": "..."}}
        {"type": "close", "status_code": 401, "message": "..."}
        {"type": "creds", "credentials": {...}}
        {"type": "message", "from": "...", "text": "...", "from_me": false}
        {"type": "ack", "ref": 1, "ok": true, "message_id": "..."}

    daemon -> bridge
        {"type": "hello", "credentials": {...}}
        {"type": "send", "ref": 1, "to": "...", "text": "..."}
        {"type": "logout", "ref": 2}

Losing the transport without a close frame is reported as a recoverable
close with no status code.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Optional

import aiohttp

from msgbridge.errors import ConnectError, DeliveryFailedError, MsgBridgeError
from msgbridge.protocols import (
    CloseReason,
    ConnectionClosed,
    ConnectionOpened,
    Credentials,
    CredentialsUpdated,
    EmitCallback,
    Identity,
    MessageReceived,
    PairingPayload,
)

logger = logging.getLogger(__name__)


class BridgeClient:
    """WebSocket client for the protocol bridge.

    Implements MessagingClientProtocol.
    """

    def __init__(
        self,
        url: str,
        emit: EmitCallback,
        connect_timeout: float = 30.0,
        request_timeout: float = 60.0,
        heartbeat: Optional[float] = 30.0,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize client.

        Args:
            url: Bridge WebSocket URL.
            emit: Callback receiving client events.
            connect_timeout: Bound on opening the WebSocket.
            request_timeout: Bound on waiting for a request ack.
            heartbeat: WebSocket ping interval (None disables).
            http_session: Optional aiohttp session (for testing).
        """
        self._url = url
        self._emit = emit
        self._connect_timeout = connect_timeout
        self._request_timeout = request_timeout
        self._heartbeat = heartbeat

        self._session = http_session
        self._owns_session = http_session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task] = None

        self._refs = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._closing = False
        self._close_emitted = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed and not self._closing

    async def connect(self, credentials: Credentials) -> None:
        """Open the bridge WebSocket and hand it the credentials.

        Returns once the transport is up; session events follow through
        the emit callback.

        Raises:
            ConnectError: If the bridge cannot be reached.
        """
        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self._url, heartbeat=self._heartbeat),
                timeout=self._connect_timeout,
            )
            await self._ws.send_json({"type": "hello", "credentials": credentials.to_dict()})
        except asyncio.TimeoutError as e:
            await self._release()
            raise ConnectError(f"Timed out connecting to bridge at {self._url}") from e
        except (aiohttp.ClientError, OSError) as e:
            await self._release()
            raise ConnectError(f"Cannot connect to bridge at {self._url}: {e}") from e

        logger.info(f"Connected to bridge at {self._url}")
        self._receive_task = asyncio.create_task(self._receive_loop(self._ws))

    async def send_text(self, target_id: str, text: str) -> str:
        """Send a text message.

        Returns:
            Message id assigned by the endpoint.

        Raises:
            DeliveryFailedError: If the bridge is down or rejects the send.
        """
        if not self.is_open:
            raise DeliveryFailedError("Bridge connection is not open")

        try:
            ack = await self._request({"type": "send", "to": target_id, "text": text})
        except asyncio.TimeoutError as e:
            raise DeliveryFailedError(
                f"No acknowledgement within {self._request_timeout:g}s"
            ) from e
        except (ConnectionError, aiohttp.ClientError) as e:
            raise DeliveryFailedError(str(e)) from e

        if not ack.get("ok"):
            raise DeliveryFailedError(str(ack.get("error") or "Rejected by bridge"))
        return str(ack.get("message_id") or "")

    async def logout(self) -> None:
        """Unlink the session on the endpoint.

        Raises:
            MsgBridgeError: If the bridge rejects the logout.
        """
        ack = await self._request({"type": "logout"})
        if not ack.get("ok"):
            raise MsgBridgeError(f"Logout rejected: {ack.get('error') or 'unknown error'}")

    async def close(self) -> None:
        """Close the transport. No events are emitted afterwards."""
        self._closing = True

        if self._receive_task is not None:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        self._fail_pending(ConnectionError("Bridge client closed"))
        await self._release()

    # =========================================================================
    # Internals
    # =========================================================================

    async def _release(self) -> None:
        """Close WebSocket and the owned HTTP session."""
        if self._ws is not None and not self._ws.closed:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error closing bridge WebSocket: {e}")
        self._ws = None

        if self._owns_session and self._session is not None:
            await self._session.close()
            # Allow event loop to clean up connector
            await asyncio.sleep(0)
            self._session = None

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Send a request frame and wait for its ack."""
        ws = self._ws
        if ws is None or ws.closed:
            raise ConnectionError("Bridge connection is not open")

        ref = next(self._refs)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        try:
            await ws.send_json({**payload, "ref": ref})
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        finally:
            self._pending.pop(ref, None)

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Read frames until the transport closes."""
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Bridge transport error: {ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Bridge receive error: {e}")

        self._fail_pending(ConnectionError("Bridge connection closed"))
        self._emit_closed(CloseReason(status_code=None, message="bridge connection lost"))

    def _handle_frame(self, data: str) -> None:
        try:
            frame = json.loads(data)
        except ValueError as e:
            logger.warning(f"Invalid frame from bridge: {e}")
            return
        if not isinstance(frame, dict):
            logger.warning("Invalid frame from bridge: not an object")
            return

        kind = frame.get("type")
        if kind == "qr":
            self._emit_event(PairingPayload(payload=str(frame.get("qr", ""))))
        elif kind == "open":
            user = frame.get("user") or {}
            identity = Identity.from_partial(user.get("id"), user.get("name"))
            self._emit_event(ConnectionOpened(identity=identity))
        elif kind == "close":
            self._emit_closed(
                CloseReason(
                    status_code=frame.get("status_code"),
                    message=str(frame.get("message") or ""),
                )
            )
        elif kind == "creds":
            try:
                credentials = Credentials.from_dict(frame["credentials"])
            except (KeyError, TypeError) as e:
                logger.warning(f"Malformed credentials frame: {e}")
                return
            self._emit_event(CredentialsUpdated(credentials=credentials))
        elif kind == "message":
            self._emit_event(
                MessageReceived(
                    sender=str(frame.get("from", "")),
                    text=str(frame.get("text", "")),
                    from_me=bool(frame.get("from_me", False)),
                )
            )
        elif kind == "ack":
            future = self._pending.get(frame.get("ref"))
            if future is not None and not future.done():
                future.set_result(frame)
        else:
            logger.debug(f"Ignoring bridge frame type {kind!r}")

    def _emit_closed(self, reason: CloseReason) -> None:
        """Emit the close event at most once."""
        if self._close_emitted:
            return
        self._close_emitted = True
        self._emit_event(ConnectionClosed(reason=reason))

    def _emit_event(self, event: Any) -> None:
        if self._closing:
            return
        try:
            self._emit(event)
        except Exception as e:
            logger.error(f"Event callback failed: {e}")
