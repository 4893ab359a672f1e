"""HTTP command surface for the daemon.

Single aiohttp server handling all routes:
- /health - Health check
- /status - Session status
- /devices - List devices, DELETE /devices/{id} to remove one
- /send-notification - Send a text message
- /qr - Current pairing QR image
- /logout - Log out and restart pairing
- /ws - Real-time status/qr events
"""

import logging
import ssl
from typing import Optional

from aiohttp import WSMsgType, web

from msgbridge.config import CorsConfig
from msgbridge.errors import DeliveryFailedError, NotConnectedError
from msgbridge.fanout import FanoutHub
from msgbridge.session_controller import SessionController

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 10 * 1024 * 1024


# =============================================================================
# CORS
# =============================================================================

def cors_middleware(config: CorsConfig):
    """Build a middleware answering preflights and tagging allowed origins."""
    allowed_origins = set(config.allowed_origins)
    allow_methods = ", ".join(config.allowed_methods)
    allow_headers = ", ".join(config.allowed_headers)

    def origin_allowed(origin: Optional[str]) -> bool:
        return bool(origin) and ("*" in allowed_origins or origin in allowed_origins)

    def apply_headers(headers, origin: str) -> None:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Methods"] = allow_methods
        headers["Access-Control-Allow-Headers"] = allow_headers
        headers["Vary"] = "Origin"

    @web.middleware
    async def middleware(request: web.Request, handler):
        origin = request.headers.get("Origin")

        # Preflight
        if (
            request.method == "OPTIONS"
            and "Access-Control-Request-Method" in request.headers
        ):
            if not origin_allowed(origin):
                return web.Response(status=403)
            response = web.Response(status=204)
            apply_headers(response.headers, origin)
            return response

        try:
            response = await handler(request)
        except web.HTTPException as e:
            if origin_allowed(origin):
                apply_headers(e.headers, origin)
            raise

        if origin_allowed(origin) and not response.prepared:
            apply_headers(response.headers, origin)
        return response

    return middleware


# =============================================================================
# Command Server
# =============================================================================

class CommandServer:
    """HTTP command surface over the session controller."""

    def __init__(
        self,
        controller: SessionController,
        hub: FanoutHub,
        target_suffix: str = "@s.whatsapp.net",
        cors: Optional[CorsConfig] = None,
        ws_heartbeat: Optional[float] = 30.0,
    ):
        """Initialize server.

        Args:
            controller: Session controller handling all commands.
            hub: Fan-out hub for /ws subscribers.
            target_suffix: Appended to phone numbers to form target ids.
            cors: CORS settings.
            ws_heartbeat: WebSocket ping interval for subscribers.
        """
        self.controller = controller
        self.hub = hub
        self.target_suffix = target_suffix
        self._ws_heartbeat = ws_heartbeat

        self.app = web.Application(
            client_max_size=MAX_BODY_SIZE,
            middlewares=[cors_middleware(cors or CorsConfig())],
        )
        self._setup_routes()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._port: int = 0

    def _setup_routes(self) -> None:
        """Set up all HTTP routes."""
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_get("/status", self._handle_status)

        # Device management
        self.app.router.add_get("/devices", self._handle_list_devices)
        self.app.router.add_delete("/devices/{device_id}", self._handle_remove_device)

        # Messaging
        self.app.router.add_post("/send-notification", self._handle_send)

        # Pairing
        self.app.router.add_get("/qr", self._handle_qr)
        self.app.router.add_post("/logout", self._handle_logout)

        # Real-time events
        self.app.router.add_get("/ws", self._handle_websocket)

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.Response(text="OK")

    async def _handle_status(self, request: web.Request) -> web.Response:
        status = self.controller.status()
        body = status.to_dict()
        body["message"] = f"Session is {status.status}"
        return web.json_response(body)

    async def _handle_list_devices(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "success",
            "devices": self.controller.registry.to_list(),
        })

    async def _handle_remove_device(self, request: web.Request) -> web.Response:
        device_id = request.match_info["device_id"]

        if not await self.controller.remove_device(device_id):
            return web.json_response(
                {"status": "error", "error": f"Device {device_id} not found"},
                status=404,
            )

        return web.json_response({
            "status": "success",
            "message": f"Device {device_id} removed",
        })

    async def _handle_send(self, request: web.Request) -> web.Response:
        """Send a text message to phoneNumber."""
        try:
            if request.content_type == "application/json":
                body = await request.json()
            else:
                body = dict(await request.post())
        except ValueError:
            return web.json_response({"error": "Invalid request body"}, status=400)

        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid request body"}, status=400)

        phone_number = body.get("phoneNumber")
        message = body.get("message")
        if not phone_number or not isinstance(phone_number, str):
            return web.json_response({"error": "phoneNumber is required"}, status=400)
        if not message or not isinstance(message, str):
            return web.json_response({"error": "message is required"}, status=400)

        target_id = f"{phone_number}{self.target_suffix}"
        try:
            result = await self.controller.send_message(target_id, message)
        except NotConnectedError:
            return web.json_response(
                {"error": "Messaging session is not connected"},
                status=503,
            )
        except DeliveryFailedError as e:
            return web.json_response(
                {"error": "Failed to send message", "details": e.details},
                status=502,
            )

        return web.json_response({
            "status": "success",
            "message": "Message sent successfully",
            "message_id": result.message_id,
        })

    async def _handle_qr(self, request: web.Request) -> web.Response:
        image = self.controller.pairing_image
        if image is None:
            return web.json_response(
                {"status": "error", "message": "QR code is not available"},
                status=404,
            )

        return web.json_response({
            "status": "success",
            "qr": image,
            "payload": self.controller.pairing_payload,
        })

    async def _handle_logout(self, request: web.Request) -> web.Response:
        try:
            await self.controller.logout()
        except Exception as e:
            logger.error(f"Failed to logout: {e}")
            return web.json_response(
                {"error": "Failed to logout", "details": str(e)},
                status=500,
            )

        return web.json_response({
            "status": "success",
            "message": "Logged out and restarted pairing",
        })

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """Stream status/qr events until the viewer disconnects."""
        ws = web.WebSocketResponse(heartbeat=self._ws_heartbeat)
        await ws.prepare(request)

        sub = await self.hub.subscribe(ws)
        if sub is None:
            return ws

        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.warning(f"WebSocket error: {ws.exception()}")
                    break
                # Viewers are receive-only; inbound frames are ignored
        finally:
            await self.hub.unsubscribe(ws)

        return ws

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(
        self,
        host: str,
        port: int,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> web.AppRunner:
        """Start the server.

        Args:
            host: Host to bind to.
            port: Port to bind to (0 for random).
            ssl_context: Serve HTTPS when given.

        Returns:
            App runner for cleanup.
        """
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port, ssl_context=ssl_context)
        await self._site.start()

        # Get actual port
        if self._site._server and self._site._server.sockets:
            self._port = self._site._server.sockets[0].getsockname()[1]
        else:
            self._port = port

        scheme = "https" if ssl_context else "http"
        logger.info(f"Server running on {scheme}://{host}:{self._port}")
        return self._runner

    def get_port(self) -> int:
        """Get the actual bound port."""
        return self._port

    async def close(self) -> None:
        """Close subscribers and stop server."""
        await self.hub.close()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        logger.info("Server closed")
