"""CLI entry point for b2proxy.

    b2proxy --config b2proxy.yaml --b2-api-url http://localhost:9999 --upstream-timeout 30

Command-line flags override the matching YAML settings; anything not given
on the command line keeps its configured value.
"""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

from b2proxy.config import ProxyConfig, load_config
from b2proxy.logging_config import configure_logging
from b2proxy.server import create_app

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# (argparse dest, config section, config field)
_OVERRIDES = (
    ("host", "server", "host"),
    ("port", "server", "port"),
    ("log_level", "server", "log_level"),
    ("log_format", "server", "log_format"),
    ("upstream_log_level", "server", "upstream_log_level"),
    ("shutdown_timeout", "server", "shutdown_timeout"),
    ("b2_api_url", "b2", "api_url"),
    ("b2_api_version", "b2", "api_version"),
    ("default_content_type", "b2", "default_content_type"),
    ("connect_timeout", "upstream", "connect_timeout"),
    ("upstream_timeout", "upstream", "timeout"),
    ("metrics", "observability", "metrics"),
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Every override defaults to None so that unset flags leave the config alone.
    """
    parser = argparse.ArgumentParser(
        prog="b2proxy",
        description="b2proxy - single-request upload proxy for Backblaze B2",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("b2proxy.yaml"),
        help="Path to YAML configuration file (default: b2proxy.yaml)",
    )

    server = parser.add_argument_group("server")
    server.add_argument("--host", type=str, default=None, help="Host address to bind to")
    server.add_argument("--port", type=int, default=None, help="Port to listen on")
    server.add_argument("--log-level", type=str.upper, default=None, choices=_LOG_LEVELS)
    server.add_argument("--log-format", type=str, default=None, choices=["text", "json"])
    server.add_argument(
        "--upstream-log-level",
        type=str.upper,
        default=None,
        choices=_LOG_LEVELS,
        help="Level for httpx/httpcore request logs (they include upload URLs)",
    )
    server.add_argument(
        "--shutdown-timeout", type=int, default=None, help="Graceful shutdown timeout in seconds"
    )

    b2 = parser.add_argument_group("b2")
    b2.add_argument(
        "--b2-api-url",
        type=str,
        default=None,
        help="Base URL for b2_authorize_account (e.g. a local B2 emulator)",
    )
    b2.add_argument("--b2-api-version", type=str, default=None, help="B2 API version, e.g. v2")
    b2.add_argument(
        "--default-content-type",
        type=str,
        default=None,
        help="Content type used when the caller sends none (default: b2/x-auto)",
    )

    upstream = parser.add_argument_group("upstream")
    upstream.add_argument(
        "--connect-timeout", type=float, default=None, help="Seconds to connect to B2"
    )
    upstream.add_argument(
        "--upstream-timeout",
        type=float,
        default=None,
        help="Seconds allowed for each B2 call (read/write/pool)",
    )
    upstream.add_argument(
        "--metrics",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Expose Prometheus metrics on /metrics",
    )
    return parser.parse_args(argv)


def apply_overrides(config: ProxyConfig, args: argparse.Namespace) -> ProxyConfig:
    """Copy every flag that was given onto ``config`` and return it."""
    for dest, section, field in _OVERRIDES:
        value = getattr(args, dest, None)
        if value is not None:
            setattr(getattr(config, section), field, value)
    return config


def main(argv: list[str] | None = None) -> None:
    """Load config, apply overrides and serve the proxy with uvicorn."""
    args = parse_args(argv)

    # Basic stderr logger until the configured one is installed
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    logger = logging.getLogger("b2proxy")

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    apply_overrides(config, args)

    configure_logging(
        level=config.server.log_level,
        fmt=config.server.log_format,
        upstream_level=config.server.upstream_log_level,
    )

    logger.info(
        "Starting b2proxy on %s:%d (b2 api=%s %s, timeout=%.1fs connect=%.1fs)",
        config.server.host,
        config.server.port,
        config.b2.api_url,
        config.b2.api_version,
        config.upstream.timeout,
        config.upstream.connect_timeout,
    )

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        timeout_graceful_shutdown=config.server.shutdown_timeout,
        timeout_keep_alive=5,
    )


if __name__ == "__main__":
    main()
