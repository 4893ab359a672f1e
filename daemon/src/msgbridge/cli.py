"""CLI entry point for msgbridge."""

from pathlib import Path
from typing import Any

import click

from msgbridge import __version__
from msgbridge.config import Config, load_config
from msgbridge.logging import setup_logging


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """msgbridge - Messaging session bridge with live pairing status."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


# =============================================================================
# Daemon API helpers
# =============================================================================

# Upper bound for one daemon call; logout waits on the bridge
REQUEST_TIMEOUT = 60.0


def _base_url(config: Config) -> str:
    scheme = "https" if config.tls_cert else "http"
    return f"{scheme}://127.0.0.1:{config.port}"


async def _call_daemon(
    config: Config,
    method: str,
    path: str,
    payload: dict[str, Any] | None = None,
) -> tuple[int, dict[str, Any]]:
    """Make one request to the running daemon.

    Returns:
        Tuple of (HTTP status, decoded JSON body or {}).
    """
    import aiohttp

    # Local daemon may use a self-signed certificate
    verify = config.tls_cert is None

    timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
    async with aiohttp.ClientSession(timeout=timeout) as http:
        async with http.request(
            method,
            f"{_base_url(config)}{path}",
            json=payload,
            ssl=verify,
        ) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None
            return resp.status, data if isinstance(data, dict) else {}


def _request(
    ctx: click.Context,
    method: str,
    path: str,
    payload: dict[str, Any] | None = None,
) -> tuple[int, dict[str, Any]]:
    """Synchronous wrapper that reports any transport failure and exits."""
    import asyncio

    import aiohttp

    try:
        return asyncio.run(_call_daemon(ctx.obj["config"], method, path, payload))
    except aiohttp.ClientSSLError as e:
        click.echo(f"Error: TLS handshake with daemon failed: {e}", err=True)
        raise SystemExit(1)
    except aiohttp.ClientConnectorError:
        click.echo("Error: Cannot connect to daemon. Is it running?", err=True)
        click.echo("Start the daemon with: msgbridge daemon start", err=True)
        raise SystemExit(1)
    except asyncio.TimeoutError:
        click.echo(f"Error: Daemon did not respond within {REQUEST_TIMEOUT:g}s", err=True)
        raise SystemExit(1)
    except aiohttp.ClientError as e:
        click.echo(f"Error: Request to daemon failed: {e}", err=True)
        raise SystemExit(1)


def _fail(data: dict[str, Any], fallback: str) -> None:
    message = data.get("error") or data.get("message") or fallback
    details = data.get("details")
    if details:
        message = f"{message}: {details}"
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(1)


# =============================================================================
# Daemon commands
# =============================================================================

@main.group()
def daemon() -> None:
    """Daemon control commands."""
    pass


@daemon.command()
@click.pass_context
def start(ctx: click.Context) -> None:
    """Start the daemon."""
    import asyncio

    from msgbridge.daemon import Daemon, StartupError
    from msgbridge.daemon_lock import DaemonAlreadyRunningError, DaemonLock

    config = ctx.obj["config"]
    lock = DaemonLock(Path(config.lock_file))

    # Acquire lock before starting
    try:
        lock.acquire()
    except DaemonAlreadyRunningError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    async def _start():
        daemon = Daemon(config=config)

        try:
            await daemon.start()
            click.echo(f"Daemon started on port {daemon.server.get_port()}")
            click.echo("Press Ctrl+C to stop")
            await daemon.run_forever()
        except StartupError as e:
            click.echo(f"Startup error: {e}", err=True)
            raise SystemExit(1)
        except KeyboardInterrupt:
            click.echo("\nShutting down...")
        finally:
            await daemon.stop()

    try:
        asyncio.run(_start())
    except KeyboardInterrupt:
        pass
    finally:
        lock.release()


@daemon.command("status")
@click.pass_context
def daemon_status(ctx: click.Context) -> None:
    """Show whether the daemon process is running."""
    from msgbridge.daemon_lock import DaemonLock

    lock = DaemonLock(Path(ctx.obj["config"].lock_file))

    pid = lock.get_owner_pid()
    if pid is None:
        click.echo("Daemon status: not running")
    elif lock.owner_running():
        click.echo(f"Daemon status: running (PID {pid})")
    else:
        click.echo("Daemon status: not running (stale lock file)")


# =============================================================================
# Session commands
# =============================================================================

@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show messaging session status."""
    code, data = _request(ctx, "GET", "/status")
    if code != 200:
        _fail(data, f"HTTP {code}")

    click.echo(f"Session: {data.get('status', 'unknown')} ({data.get('phase', '?')})")

    identity = data.get("identity")
    if identity:
        click.echo(f"Account: {identity['name']} ({identity['id']})")
    if data.get("pairing_pending"):
        click.echo("Pairing: waiting for scan (run 'msgbridge qr')")
    if data.get("last_error"):
        click.echo(f"Last error: {data['last_error']}")

    click.echo(f"Devices: {len(data.get('devices', []))}")


@main.command()
@click.argument("phone_number")
@click.argument("message")
@click.pass_context
def send(ctx: click.Context, phone_number: str, message: str) -> None:
    """Send MESSAGE to PHONE_NUMBER."""
    code, data = _request(
        ctx,
        "POST",
        "/send-notification",
        {"phoneNumber": phone_number, "message": message},
    )
    if code != 200:
        _fail(data, f"HTTP {code}")

    message_id = data.get("message_id")
    if message_id:
        click.echo(f"Message sent (id {message_id}).")
    else:
        click.echo("Message sent.")


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default=None,
    help="Save QR code to file.",
)
@click.pass_context
def qr(ctx: click.Context, output: str | None) -> None:
    """Show the current pairing QR code."""
    from msgbridge.pairing import QrCodec

    code, data = _request(ctx, "GET", "/qr")
    if code == 404:
        click.echo("No pairing code available. The session may already be linked.", err=True)
        raise SystemExit(1)
    if code != 200:
        _fail(data, f"HTTP {code}")

    payload = data.get("payload")
    if not payload:
        click.echo("Error: Daemon returned no pairing payload", err=True)
        raise SystemExit(1)

    codec = QrCodec()
    if output:
        codec.to_png(payload, output)
        click.echo(f"QR code saved to: {output}")
    else:
        click.echo(codec.to_terminal(payload))
        click.echo("Scan this QR code from the messaging app's linked devices screen")


@main.command()
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_context
def logout(ctx: click.Context, force: bool) -> None:
    """Log out, erase credentials and start a new pairing."""
    if not force:
        if not click.confirm("Log out and erase stored credentials?"):
            click.echo("Aborted.")
            return

    code, data = _request(ctx, "POST", "/logout")
    if code != 200:
        _fail(data, f"HTTP {code}")
    click.echo("Logged out. A new pairing code will be available shortly.")


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"msgbridge version {__version__}")


# =============================================================================
# Device commands
# =============================================================================

@main.group()
def devices() -> None:
    """Device management commands."""
    pass


@devices.command("list")
@click.pass_context
def devices_list(ctx: click.Context) -> None:
    """List connected devices."""
    code, data = _request(ctx, "GET", "/devices")
    if code != 200:
        _fail(data, f"HTTP {code}")

    all_devices = data.get("devices", [])
    if not all_devices:
        click.echo("No connected devices.")
        return

    click.echo(f"{'ID':<36} {'NAME'}")
    click.echo("-" * 60)
    for device in all_devices:
        click.echo(f"{device['id']:<36} {device['name']}")


@devices.command("remove")
@click.argument("device_id")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_context
def devices_remove(ctx: click.Context, device_id: str, force: bool) -> None:
    """Remove a device from the registry."""
    if not force:
        if not click.confirm(f"Remove device '{device_id}'?"):
            click.echo("Aborted.")
            return

    code, data = _request(ctx, "DELETE", f"/devices/{device_id}")
    if code == 404:
        click.echo(f"Error: Device '{device_id}' not found.", err=True)
        raise SystemExit(1)
    if code != 200:
        _fail(data, f"HTTP {code}")
    click.echo("Device removed.")
