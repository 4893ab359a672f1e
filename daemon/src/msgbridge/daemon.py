"""Main daemon orchestration - ties all components together."""

import asyncio
import logging
import signal
import ssl
from pathlib import Path
from typing import Optional

from msgbridge.bridge_client import BridgeClient
from msgbridge.config import Config
from msgbridge.credential_store import FileCredentialStore
from msgbridge.fanout import FanoutHub
from msgbridge.protocols import (
    ClientFactory,
    CredentialStoreProtocol,
    EmitCallback,
    MessagingClientProtocol,
)
from msgbridge.reconnect import ReconnectPolicy
from msgbridge.server import CommandServer
from msgbridge.session_controller import SessionController

logger = logging.getLogger(__name__)


class StartupError(Exception):
    """Error during daemon startup."""

    pass


class Daemon:
    """Main daemon orchestrating all components.

    Responsibilities:
    - Build the session controller, fan-out hub and HTTP server
    - Start serving, then start the messaging session
    - Handle graceful shutdown
    """

    def __init__(
        self,
        config: Config,
        client_factory: Optional[ClientFactory] = None,
        credential_store: Optional[CredentialStoreProtocol] = None,
    ):
        """Initialize daemon.

        Args:
            config: Daemon configuration.
            client_factory: Optional injected client factory (for testing).
            credential_store: Optional injected credential store (for testing).
        """
        self._config = config
        self._running = False
        self._stop_event = asyncio.Event()

        self._hub = FanoutHub(send_timeout=config.fanout.send_timeout)

        self._controller = SessionController(
            client_factory=client_factory or self._create_bridge_client,
            credential_store=credential_store
            or FileCredentialStore(Path(config.credentials_dir)),
            publisher=self._hub.broadcast,
            reconnect_policy=ReconnectPolicy(
                base_delay=config.session.reconnect_delay,
                multiplier=config.session.backoff_multiplier,
                max_delay=config.session.max_reconnect_delay,
            ),
            terminal_status_codes=config.session.terminal_status_codes,
            logout_timeout=config.session.logout_timeout,
        )
        self._hub.snapshot_provider = self._controller.snapshot_events

        self._server = CommandServer(
            controller=self._controller,
            hub=self._hub,
            target_suffix=config.target_suffix,
            cors=config.cors,
        )

    @property
    def controller(self) -> SessionController:
        return self._controller

    @property
    def hub(self) -> FanoutHub:
        return self._hub

    @property
    def server(self) -> CommandServer:
        return self._server

    async def start(self) -> None:
        """Start the daemon.

        Raises:
            StartupError: If the server cannot be started.
        """
        logger.info("Starting daemon...")

        ssl_context = self._create_ssl_context()

        try:
            await self._server.start(
                host=self._config.bind_address,
                port=self._config.port,
                ssl_context=ssl_context,
            )
        except OSError as e:
            await self._server.close()
            raise StartupError(f"Cannot listen on port {self._config.port}: {e}") from e

        await self._controller.start()

        self._setup_signals()

        self._running = True
        logger.info("Daemon started successfully")

    async def run_forever(self) -> None:
        """Run daemon until shutdown signal."""
        if not self._running:
            await self.start()

        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self._shutdown()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        self._running = False
        self._stop_event.set()

    def _create_bridge_client(self, emit: EmitCallback) -> MessagingClientProtocol:
        bridge = self._config.bridge
        return BridgeClient(
            url=bridge.url,
            emit=emit,
            connect_timeout=bridge.connect_timeout,
            request_timeout=bridge.request_timeout,
            heartbeat=bridge.heartbeat,
        )

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        """Build the TLS context when a certificate is configured."""
        cert, key = self._config.tls_cert, self._config.tls_key
        if not cert:
            return None

        cert_path = Path(cert).expanduser()
        key_path = Path(key).expanduser() if key else None
        if not cert_path.exists():
            raise StartupError(f"TLS certificate not found: {cert_path}")
        if key_path is not None and not key_path.exists():
            raise StartupError(f"TLS key not found: {key_path}")

        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        try:
            context.load_cert_chain(str(cert_path), str(key_path) if key_path else None)
        except (ssl.SSLError, OSError) as e:
            raise StartupError(f"Invalid TLS certificate: {e}") from e
        return context

    def _setup_signals(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.create_task(self.stop()),
                )
            except (NotImplementedError, RuntimeError):
                # Not the main thread, or platform without signal support
                logger.debug(f"Cannot install handler for {sig.name}")

    async def _shutdown(self) -> None:
        """Perform graceful shutdown.

        Session first (logout, detach, close), then subscribers and HTTP.
        """
        logger.info("Shutting down daemon...")

        try:
            await self._controller.shutdown(logout=self._config.session.logout_on_shutdown)
        except Exception as e:
            logger.error(f"Error during session shutdown: {e}")

        await self._server.close()

        self._running = False
        logger.info("Daemon shutdown complete")
