"""Configuration management for msgbridge."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml


DEFAULT_CORS_ORIGINS = [
    "https://localhost:5173",
]


@dataclass
class SessionConfig:
    """Session lifecycle configuration."""

    reconnect_delay: float = 5.0  # seconds between retries
    backoff_multiplier: float = 1.0  # 1.0 keeps the retry interval flat
    max_reconnect_delay: float = 60.0  # cap when backoff_multiplier > 1
    terminal_status_codes: list[int] = field(default_factory=lambda: [401])
    logout_timeout: float = 5.0
    logout_on_shutdown: bool = True


@dataclass
class FanoutConfig:
    """Real-time subscriber configuration."""

    send_timeout: float = 5.0  # per-subscriber delivery deadline


@dataclass
class BridgeConfig:
    """Protocol bridge connection configuration."""

    url: str = "ws://127.0.0.1:8080/session"
    connect_timeout: float = 30.0
    request_timeout: float = 60.0
    heartbeat: float = 30.0  # WebSocket ping interval


@dataclass
class CorsConfig:
    """CORS configuration for the HTTP API."""

    allowed_origins: list[str] = field(default_factory=lambda: DEFAULT_CORS_ORIGINS.copy())
    allowed_methods: list[str] = field(
        default_factory=lambda: ["GET", "POST", "PUT", "PATCH", "DELETE"]
    )
    allowed_headers: list[str] = field(
        default_factory=lambda: ["Content-Type", "Authorization"]
    )


@dataclass
class Config:
    """Daemon configuration."""

    port: int = 3000
    bind_address: str = "0.0.0.0"
    log_level: str = "INFO"
    log_file: str | None = None
    credentials_dir: str = "~/.config/msgbridge/auth"
    lock_file: str = "~/.config/msgbridge/daemon.lock"
    target_suffix: str = "@s.whatsapp.net"
    tls_cert: str | None = None
    tls_key: str | None = None
    session: SessionConfig = field(default_factory=SessionConfig)
    fanout: FanoutConfig = field(default_factory=FanoutConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    cors: CorsConfig = field(default_factory=CorsConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "msgbridge" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        data = yaml.safe_load(content)
    except yaml.YAMLError:
        return None
    return data if isinstance(data, dict) else None


def _apply_env(config: Config, environ: Mapping[str, str]) -> Config:
    """Apply environment overrides (PORT)."""
    port = environ.get("PORT")
    if port:
        try:
            config.port = int(port)
        except ValueError:
            pass
    return config


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.
        environ: Injectable environment for testing. Defaults to os.environ.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader
    env = os.environ if environ is None else environ

    data = reader(config_path)

    if data is None:
        return _apply_env(Config(), env)

    # Parse session config section
    session_data = data.get("session", {})
    session_config = SessionConfig(
        reconnect_delay=session_data.get(
            "reconnect_delay", SessionConfig.reconnect_delay
        ),
        backoff_multiplier=session_data.get(
            "backoff_multiplier", SessionConfig.backoff_multiplier
        ),
        max_reconnect_delay=session_data.get(
            "max_reconnect_delay", SessionConfig.max_reconnect_delay
        ),
        terminal_status_codes=session_data.get("terminal_status_codes", [401]),
        logout_timeout=session_data.get("logout_timeout", SessionConfig.logout_timeout),
        logout_on_shutdown=session_data.get(
            "logout_on_shutdown", SessionConfig.logout_on_shutdown
        ),
    )

    # Parse fanout config section
    fanout_data = data.get("fanout", {})
    fanout_config = FanoutConfig(
        send_timeout=fanout_data.get("send_timeout", FanoutConfig.send_timeout),
    )

    # Parse bridge config section
    bridge_data = data.get("bridge", {})
    bridge_config = BridgeConfig(
        url=bridge_data.get("url", BridgeConfig.url),
        connect_timeout=bridge_data.get("connect_timeout", BridgeConfig.connect_timeout),
        request_timeout=bridge_data.get("request_timeout", BridgeConfig.request_timeout),
        heartbeat=bridge_data.get("heartbeat", BridgeConfig.heartbeat),
    )

    # Parse cors config section
    cors_data = data.get("cors", {})
    cors_defaults = CorsConfig()
    cors_config = CorsConfig(
        allowed_origins=cors_data.get("allowed_origins", cors_defaults.allowed_origins),
        allowed_methods=cors_data.get("allowed_methods", cors_defaults.allowed_methods),
        allowed_headers=cors_data.get("allowed_headers", cors_defaults.allowed_headers),
    )

    config = Config(
        port=data.get("port", Config.port),
        bind_address=data.get("bind_address", Config.bind_address),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        credentials_dir=data.get("credentials_dir", Config.credentials_dir),
        lock_file=data.get("lock_file", Config.lock_file),
        target_suffix=data.get("target_suffix", Config.target_suffix),
        tls_cert=data.get("tls_cert", Config.tls_cert),
        tls_key=data.get("tls_key", Config.tls_key),
        session=session_config,
        fanout=fanout_config,
        bridge=bridge_config,
        cors=cors_config,
    )
    return _apply_env(config, env)
