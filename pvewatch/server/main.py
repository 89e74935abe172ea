#!/usr/bin/env python3
"""
pvewatch - Main entry point.

``pvewatch serve`` runs the dashboard API and event stream;
``pvewatch watch URL`` follows an event stream from a terminal.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

import aiohttp
from aiohttp import web

from ..collectors.base import UpstreamClient
from ..collectors.mock import MockCollector
from ..collectors.proxmox import ProxmoxCollector
from ..data.models import ErrorEvent, EventMessage, HeartbeatEvent, StatusEvent
from ..events.consumer import ConnectionState, ReconnectingConsumer, open_sse_stream
from .config import Config
from .routes import create_app

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def create_client(config: Config) -> UpstreamClient:
    """Create the upstream collector based on config."""
    if config.proxmox.mock:
        logger.info("[config] Mock mode enabled; using simulated cluster")
        return MockCollector()
    return ProxmoxCollector(
        config.proxmox.base_url,
        config.proxmox.token_id,
        config.proxmox.token_secret,
        timeout=config.proxmox.timeout,
        verify=not config.proxmox.insecure_tls,
        ca_bundle=config.proxmox.ca_bundle,
    )


def run_server(args) -> None:
    """Run the dashboard server."""
    config = Config.load(args.config)

    # Override config with CLI args
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.url_prefix:
        config.server.url_prefix = args.url_prefix
    if args.poll_interval:
        config.stream.poll_interval = max(0.5, args.poll_interval)
    if args.mock:
        config.proxmox.mock = True
    if args.insecure is not None:
        config.proxmox.insecure_tls = args.insecure
    if args.ca_bundle:
        config.proxmox.ca_bundle = args.ca_bundle
    if args.log_level:
        config.logging_level = args.log_level.upper()

    configure_logging(config.logging_level)
    logger.info("[config] Loaded: deployment=%r, mock=%s", config.deployment_name, config.proxmox.mock)

    try:
        config.validate()
    except ValueError as exc:
        logger.error("[config] %s", exc)
        sys.exit(2)

    client = create_client(config)
    app = create_app(config, client)

    logger.info("[dashboard] Serving on http://%s:%s", config.server.host, config.server.port)
    if config.server.url_prefix:
        logger.info("[dashboard] URL prefix: %s", config.server.url_prefix)

    web.run_app(app, host=config.server.host, port=config.server.port, print=None)
    logger.info("[dashboard] Shut down")


def _describe_event(event: EventMessage) -> str:
    if isinstance(event, HeartbeatEvent):
        return f"heartbeat ts={event.ts}"
    if isinstance(event, StatusEvent):
        summary = event.status
        cpu = f"{summary.cpu * 100:.0f}%" if summary.cpu is not None else "-"
        return f"status    {event.node:<20} {summary.status.value:<8} cpu={cpu}"
    if isinstance(event, ErrorEvent):
        return f"error     {event.message}"
    return repr(event)


async def watch_stream(args) -> int:
    """Follow an event stream until interrupted or out of retries."""

    def on_message(event: EventMessage) -> None:
        if isinstance(event, HeartbeatEvent) and not args.show_heartbeats:
            return
        print(_describe_event(event), flush=True)

    def on_state_change(state: ConnectionState) -> None:
        print(f"[{state.value}]", flush=True)

    async with aiohttp.ClientSession() as session:
        consumer = ReconnectingConsumer(
            lambda: open_sse_stream(session, args.url),
            retry_delay=args.retry_delay,
            max_retries=args.max_retries,
            heartbeat_interval=args.heartbeat_interval,
            on_message=on_message,
            on_state_change=on_state_change,
        )
        consumer.connect()
        try:
            await consumer.wait_settled()
        finally:
            exhausted = consumer.exhausted
            await consumer.disconnect()
    if exhausted:
        print(f"Giving up: {consumer.retry_state.last_error}", file=sys.stderr)
        return 1
    return 0


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog="pvewatch",
        description="Proxmox VE cluster monitor",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser(
        "serve",
        help="Run the dashboard API and event stream",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    serve.add_argument("--config", type=str, help="Path to config YAML file")
    serve.add_argument("--host", default=None, help="Bind address (config default 0.0.0.0)")
    serve.add_argument("--port", type=int, default=None, help="Port to listen on (config default 15000)")
    serve.add_argument(
        "--url-prefix",
        default=None,
        help="Path prefix for reverse proxy setup",
    )
    serve.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between upstream polls (min 0.5)",
    )
    serve.add_argument(
        "--mock",
        action="store_true",
        help="Serve a simulated cluster instead of a real one",
    )

    # TLS options
    serve.add_argument(
        "--insecure",
        dest="insecure",
        action="store_true",
        default=None,
        help="Skip TLS verification for the Proxmox API",
    )
    serve.add_argument(
        "--secure",
        dest="insecure",
        action="store_false",
        help="Require TLS verification",
    )
    serve.add_argument(
        "--ca-bundle",
        type=str,
        help="Path to a custom CA bundle",
    )
    serve.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        type=str.upper,
        default=None,
        help="Logging level (config default INFO)",
    )
    serve.set_defaults(func=run_server)

    watch = subparsers.add_parser(
        "watch",
        help="Follow an event stream from the terminal",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    watch.add_argument("url", help="Event stream URL, e.g. http://localhost:15000/api/proxmox/events")
    watch.add_argument("--max-retries", type=int, default=5, help="Consecutive failures before giving up")
    watch.add_argument("--retry-delay", type=float, default=3.0, help="Seconds between reconnect attempts")
    watch.add_argument(
        "--heartbeat-interval",
        type=float,
        default=10.0,
        help="Expected heartbeat interval; silence for twice this forces a reconnect",
    )
    watch.add_argument("--show-heartbeats", action="store_true", help="Print heartbeat events")
    watch.add_argument("--log-level", type=str.upper, default="WARNING", help="Logging level")
    watch.set_defaults(func=run_watch)

    return parser.parse_args(argv)


def run_watch(args) -> None:
    configure_logging(args.log_level)
    try:
        code = asyncio.run(watch_stream(args))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


def main(argv: Optional[List[str]] = None):
    """Entry point for the pvewatch command."""
    args = parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
