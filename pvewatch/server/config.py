"""Configuration management for pvewatch.

Supports YAML-based configuration with environment variable overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

REDACTED = "********"

TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class ServerConfig:
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 15000
    url_prefix: str = ""


@dataclass
class ProxmoxConfig:
    """Upstream Proxmox API configuration."""

    base_url: str = ""
    token_id: Optional[str] = None
    token_secret: Optional[str] = None
    insecure_tls: bool = False
    ca_bundle: Optional[str] = None
    timeout: float = 10.0  # per HTTP request, seconds
    mock: bool = False


@dataclass
class StreamConfig:
    """Event stream and cache tuning."""

    poll_interval: float = 5.0  # seconds between upstream polls
    cache_ttl: float = 2.0
    cache_max_entries: int = 100
    cache_cleanup_interval: float = 60.0
    request_timeout: float = 10.0  # bound on one snapshot fetch
    write_timeout: float = 5.0  # bound on one write to a subscriber
    max_sessions: Optional[int] = None  # unbounded when None
    # Client side
    heartbeat_interval: float = 10.0
    retry_delay: float = 3.0
    max_retries: int = 5


MIN_POLL_INTERVAL = 0.5


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES


@dataclass
class Config:
    """Main configuration container."""

    deployment_name: str = "Proxmox Monitor"

    server: ServerConfig = field(default_factory=ServerConfig)
    proxmox: ProxmoxConfig = field(default_factory=ProxmoxConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)

    logging_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        deployment = data.get("deployment", {})

        # Parse server config
        server_data = data.get("server", {})
        server = ServerConfig(
            host=server_data.get("host", "0.0.0.0"),
            port=int(server_data.get("port", 15000)),
            url_prefix=server_data.get("url_prefix", ""),
        )

        # Parse upstream config
        pve_data = data.get("proxmox", {})
        proxmox = ProxmoxConfig(
            base_url=pve_data.get("base_url", ""),
            token_id=pve_data.get("token_id"),
            token_secret=pve_data.get("token_secret"),
            insecure_tls=_as_bool(pve_data.get("insecure_tls", False)),
            ca_bundle=pve_data.get("ca_bundle"),
            timeout=float(pve_data.get("timeout", 10.0)),
            mock=_as_bool(pve_data.get("mock", False)),
        )

        # Parse stream config
        stream_data = data.get("stream", {})
        cache_data = stream_data.get("cache", {})
        client_data = stream_data.get("client", {})
        max_sessions = stream_data.get("max_sessions")
        stream = StreamConfig(
            poll_interval=max(MIN_POLL_INTERVAL, float(stream_data.get("poll_interval", 5.0))),
            cache_ttl=float(cache_data.get("ttl", 2.0)),
            cache_max_entries=int(cache_data.get("max_entries", 100)),
            cache_cleanup_interval=float(cache_data.get("cleanup_interval", 60.0)),
            request_timeout=float(stream_data.get("request_timeout", 10.0)),
            write_timeout=float(stream_data.get("write_timeout", 5.0)),
            max_sessions=int(max_sessions) if max_sessions is not None else None,
            heartbeat_interval=float(client_data.get("heartbeat_interval", 10.0)),
            retry_delay=float(client_data.get("retry_delay", 3.0)),
            max_retries=int(client_data.get("max_retries", 5)),
        )

        return cls(
            deployment_name=deployment.get("name", "Proxmox Monitor"),
            server=server,
            proxmox=proxmox,
            stream=stream,
            logging_level=str(data.get("logging", {}).get("level", "INFO")).upper(),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load config from YAML file."""
        if not path.exists():
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def load(cls, config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Load config from path or defaults, then apply the environment.

        Checks in order:
        1. Provided path
        2. PVEWATCH_CONFIG env var
        3. ./configs/config.yaml
        4. ./config.yaml
        5. ~/.pvewatch/config.yaml
        6. Default config
        """
        environ = os.environ if environ is None else environ
        paths_to_try = []

        if config_path:
            paths_to_try.append(Path(config_path))

        if env_path := environ.get("PVEWATCH_CONFIG"):
            paths_to_try.append(Path(env_path))

        paths_to_try.extend([
            Path("./configs/config.yaml"),
            Path("./config.yaml"),
            Path.home() / ".pvewatch" / "config.yaml",
        ])

        config = cls()
        for path in paths_to_try:
            if path.exists():
                config = cls.from_yaml(path)
                break

        config.apply_env(environ)
        return config

    def apply_env(self, environ: Mapping[str, str]) -> None:
        """Override settings from environment variables."""
        if value := environ.get("PROXMOX_BASE_URL"):
            self.proxmox.base_url = value
        if value := environ.get("PROXMOX_API_TOKEN_ID"):
            self.proxmox.token_id = value
        if value := environ.get("PROXMOX_API_TOKEN_SECRET"):
            self.proxmox.token_secret = value
        if "PROXMOX_INSECURE_TLS" in environ:
            self.proxmox.insecure_tls = _as_bool(environ["PROXMOX_INSECURE_TLS"])
        if "ENABLE_MOCK" in environ:
            self.proxmox.mock = _as_bool(environ["ENABLE_MOCK"])
        if value := environ.get("POLL_INTERVAL_MS"):
            self.stream.poll_interval = max(MIN_POLL_INTERVAL, int(value) / 1000)
        if value := environ.get("SERVER_CACHE_TTL_MS"):
            self.stream.cache_ttl = max(0.0, int(value) / 1000)
        if value := environ.get("PORT"):
            self.server.port = int(value)

    def validate(self) -> None:
        """Raise ValueError when the configuration cannot run."""
        if not self.proxmox.mock:
            if not self.proxmox.base_url:
                raise ValueError("PROXMOX_BASE_URL is required unless mock mode is enabled")
            if not self.proxmox.base_url.startswith(("http://", "https://")):
                raise ValueError(f"Invalid Proxmox base URL: {self.proxmox.base_url!r}")
            if not self.proxmox.token_id or not self.proxmox.token_secret:
                raise ValueError("PROXMOX_API_TOKEN_ID and PROXMOX_API_TOKEN_SECRET are required unless mock mode is enabled")
        if not 0 < self.server.port < 65536:
            raise ValueError(f"Invalid port: {self.server.port}")
        if self.stream.max_sessions is not None and self.stream.max_sessions < 1:
            raise ValueError("stream.max_sessions must be at least 1")
        if self.stream.max_retries < 1:
            raise ValueError("stream.client.max_retries must be at least 1")

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary. The API token secret is redacted."""
        return {
            "deployment": {
                "name": self.deployment_name,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "url_prefix": self.server.url_prefix,
            },
            "proxmox": {
                "base_url": self.proxmox.base_url,
                "token_id": self.proxmox.token_id,
                "token_secret": REDACTED if self.proxmox.token_secret else None,
                "insecure_tls": self.proxmox.insecure_tls,
                "ca_bundle": self.proxmox.ca_bundle,
                "timeout": self.proxmox.timeout,
                "mock": self.proxmox.mock,
            },
            "stream": {
                "poll_interval": self.stream.poll_interval,
                "request_timeout": self.stream.request_timeout,
                "write_timeout": self.stream.write_timeout,
                "max_sessions": self.stream.max_sessions,
                "cache": {
                    "ttl": self.stream.cache_ttl,
                    "max_entries": self.stream.cache_max_entries,
                    "cleanup_interval": self.stream.cache_cleanup_interval,
                },
                "client": {
                    "heartbeat_interval": self.stream.heartbeat_interval,
                    "retry_delay": self.stream.retry_delay,
                    "max_retries": self.stream.max_retries,
                },
            },
            "logging": {"level": self.logging_level},
        }
