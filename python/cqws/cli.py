"""cqws CLI entry point: connect and log incoming events."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from typing import List

from .client import ClientConfig, CQWebSocket
from .errors import TransportError
from .events import EventCategory, LifecycleEvent, MessageEvent
from .tags import Tag

LOG = logging.getLogger("cqws.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tail events from a OneBot websocket endpoint")
    parser.add_argument("--url", default=os.environ.get("CQWS_URL"), help="Websocket URL (default ws://127.0.0.1:6700)")
    parser.add_argument("--token", default=os.environ.get("CQWS_ACCESS_TOKEN"), help="Access token")
    parser.add_argument("--log-level", default=os.environ.get("CQWS_LOG", "INFO"), help="Logging level (default INFO)")
    parser.add_argument(
        "--reconnect-attempts",
        type=int,
        help="Give up after this many reconnect attempts (default: retry forever)",
    )
    parser.add_argument(
        "--backoff",
        choices=("fixed", "exponential"),
        default="fixed",
        help="Reconnect delay policy",
    )
    parser.add_argument(
        "--category",
        action="append",
        default=None,
        help="Event category to log (repeatable, default: message, notice, request)",
    )
    return parser


def describe(event: MessageEvent) -> str:
    parts = []
    for segment in event.segments:
        if isinstance(segment, Tag):
            parts.append(f"<{segment.kind}>")
        else:
            parts.append(segment.text)
    origin = f"group {event.group_id}" if event.group_id else f"user {event.user_id}"
    return f"[{event.category.value}] {origin}: {''.join(parts)}"


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    overrides = {}
    if args.url:
        overrides["url"] = args.url
    if args.token:
        overrides["access_token"] = args.token
    config = ClientConfig.from_env(**overrides)
    config.reconnect.strategy = args.backoff
    if args.reconnect_attempts is not None:
        config.reconnect.max_attempts = args.reconnect_attempts
    client = CQWebSocket(config)
    finished = threading.Event()

    def log_event(event) -> None:
        if isinstance(event, MessageEvent):
            LOG.info("%s", describe(event))
        else:
            LOG.info("[%s] %s", event.category.value, event.raw)

    def give_up(event: LifecycleEvent) -> None:
        LOG.error("reconnect attempts exhausted")
        finished.set()

    for category in args.category or ("message", "notice", "request"):
        client.on(category, log_event)
    client.on(EventCategory.SOCKET_RECONNECT_FAILED, give_up)
    client.on(EventCategory.SOCKET_OPEN, lambda event: LOG.info("connected to %s", config.url))
    try:
        client.connect()
    except TransportError as exc:
        if not config.reconnect.enabled:
            print(f"Connect failed: {exc}")
            return 1
        LOG.warning("%s; retrying", exc)
    try:
        finished.wait()
    except KeyboardInterrupt:
        print()
    finally:
        client.close()
    return 1 if finished.is_set() else 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
