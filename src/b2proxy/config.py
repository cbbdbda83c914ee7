"""Configuration loading and Pydantic models for b2proxy."""

from pathlib import Path
from typing import Any

import httpx
import yaml
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """Server binding and runtime configuration."""

    host: str = "0.0.0.0"
    port: int = 8787
    log_level: str = "INFO"
    log_format: str = "text"
    upstream_log_level: str = "WARNING"
    shutdown_timeout: int = 30


class B2Config(BaseModel):
    """Backblaze B2 API endpoints and defaults."""

    api_url: str = "https://api.backblazeb2.com"
    api_version: str = "v2"
    default_content_type: str = "b2/x-auto"


class UpstreamConfig(BaseModel):
    """Limits applied to each call made to B2."""

    connect_timeout: float = 10.0
    timeout: float = 60.0
    disconnect_poll_seconds: float = 0.5

    def httpx_timeout(self) -> httpx.Timeout:
        """Build the per-call httpx timeout."""
        return httpx.Timeout(self.timeout, connect=self.connect_timeout)


class ObservabilityConfig(BaseModel):
    """Metrics and health endpoint toggles."""

    metrics: bool = True
    health_check: bool = True


class ProxyConfig(BaseModel):
    """Top-level b2proxy configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    b2: B2Config = Field(default_factory=B2Config)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_server(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the server section from YAML data into a dict for Pydantic.

    Handles nested structure: server.logging.level -> log_level, etc.
    """
    if data is None:
        return {}
    result: dict[str, Any] = {
        "host": data.get("host", "0.0.0.0"),
        "port": data.get("port", 8787),
        "shutdown_timeout": data.get("shutdown_timeout", 30),
    }
    logging_section = data.get("logging")
    if isinstance(logging_section, dict):
        result["log_level"] = logging_section.get("level", "INFO")
        result["log_format"] = logging_section.get("format", "text")
        result["upstream_log_level"] = logging_section.get("upstream_level", "WARNING")
    return result


def _parse_b2(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the b2 section from YAML data."""
    if data is None:
        return {}
    return {
        "api_url": data.get("api_url", "https://api.backblazeb2.com"),
        "api_version": data.get("api_version", "v2"),
        "default_content_type": data.get("default_content_type", "b2/x-auto"),
    }


def _parse_upstream(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the upstream section from YAML data.

    Handles nested structure: upstream.timeouts.connect -> connect_timeout.
    """
    if data is None:
        return {}
    result: dict[str, Any] = {
        "disconnect_poll_seconds": data.get("disconnect_poll_seconds", 0.5),
    }
    timeouts = data.get("timeouts")
    if isinstance(timeouts, dict):
        result["connect_timeout"] = timeouts.get("connect", 10.0)
        result["timeout"] = timeouts.get("request", 60.0)
    return result


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {
        "metrics": data.get("metrics", True),
        "health_check": data.get("health_check", True),
    }


def load_config(path: Path) -> ProxyConfig:
    """Load a ProxyConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated ProxyConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return ProxyConfig(
        server=ServerConfig(**_parse_server(raw.get("server"))),
        b2=B2Config(**_parse_b2(raw.get("b2"))),
        upstream=UpstreamConfig(**_parse_upstream(raw.get("upstream"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )
