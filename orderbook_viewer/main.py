#!/usr/bin/env python3
"""
Order Book Viewer - live order book mirror in the terminal.

Usage:
    python -m orderbook_viewer.main --product PI_XBTUSD --levels 15

    Or with everything from the environment / .env:
    python -m orderbook_viewer.main

Controls:
    q - Quit
    t - Toggle feed between the configured products
    c - Reconnect
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from .config import Settings


def configure_logging(level: str, log_file: str) -> None:
    """Log to a rotating file; the terminal belongs to the UI."""
    path = Path(log_file)
    if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)

    handler = TimedRotatingFileHandler(path, when="midnight", backupCount=7, encoding="utf-8")
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    ))

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)


async def main(settings: Settings) -> None:
    """Main entry point - runs the connection machine and the UI together."""

    # Import here to avoid slow startup for --help
    from .datafeed.transport import WebSocketTransport
    from .engine.machine import ConnectionMachine
    from .ui.book_view import run_ui

    print(f"Starting Order Book Viewer on {settings.websocket_url}...")
    print(f"  Feed: {settings.feed}")
    print(f"  Products: {', '.join(settings.products)}")
    print(f"  Levels: {settings.levels}")
    print()

    transport = WebSocketTransport(
        connect_timeout=settings.connect_timeout,
        heartbeat=settings.heartbeat,
    )

    async with ConnectionMachine(transport) as machine:
        await run_ui(machine, settings)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Order Book Viewer - live order book mirror over WebSocket",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m orderbook_viewer.main
    python -m orderbook_viewer.main --product PI_ETHUSD --levels 10
    python -m orderbook_viewer.main --url wss://example.com/ws --feed book_ui_1
        """
    )

    parser.add_argument(
        "--url",
        help="WebSocket endpoint (default: ORDERBOOK_WEBSOCKET_URL or built-in)"
    )

    parser.add_argument(
        "--feed",
        help="Feed name to subscribe to"
    )

    parser.add_argument(
        "--product",
        action="append",
        dest="products",
        help="Product id; repeat to toggle between several (default: ORDERBOOK_PRODUCT_IDS)"
    )

    parser.add_argument(
        "--levels",
        type=int,
        help="Number of price levels per side"
    )

    parser.add_argument(
        "--log-level",
        help="Logging level (default: INFO)"
    )

    return parser


def load_settings(argv: list[str] | None = None) -> Settings:
    """Settings from the environment, overridden by CLI flags."""
    args = build_parser().parse_args(argv)

    overrides = {
        "websocket_url": args.url,
        "feed": args.feed,
        "product_ids": ",".join(args.products) if args.products else None,
        "levels": args.levels,
        "log_level": args.log_level,
    }
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def cli() -> None:
    """CLI entry point."""
    settings = load_settings()

    if not settings.products:
        print("No product ids configured.", file=sys.stderr)
        sys.exit(2)

    configure_logging(settings.log_level, settings.log_file)

    try:
        asyncio.run(main(settings))
    except KeyboardInterrupt:
        print("\nShutdown requested.")
        sys.exit(0)


if __name__ == "__main__":
    cli()
