"""Command-line entry point for the marker synchronisation server."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import replace
from typing import Optional, Sequence

from .config import ServerCtx, load_server_ctx
from .errors import TransportFailure
from .feedback import FeedbackDispatcher
from .registry import MarkerRegistry
from .websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


class MarkerSyncServer:
    """Registry, feedback dispatcher and websocket transport wired together."""

    def __init__(self, ctx: ServerCtx) -> None:
        self._ctx = ctx
        cfg = ctx.cfg
        self.transport = WebSocketTransport(
            cfg.host,
            cfg.port,
            namespace=cfg.namespace,
            send_timeout_s=cfg.send_timeout_s,
            debug_policy=ctx.debug_policy,
        )
        self.registry = MarkerRegistry(namespace=cfg.namespace, debug_policy=ctx.debug_policy)
        self.dispatcher = FeedbackDispatcher(
            self.registry,
            conflict_window_s=cfg.feedback_conflict_s,
            publish_on_feedback=cfg.publish_on_feedback,
            debug_policy=ctx.debug_policy,
        )
        self.registry.attach(self.transport)
        self.dispatcher.attach(self.transport)

    def start(self) -> None:
        self.transport.start()

    def shutdown(self) -> None:
        """Erase every marker, publish the erasure, then stop the transport."""

        self.registry.clear()
        try:
            self.registry.publish()
        except TransportFailure as exc:
            logger.warning("final publish failed: %s", exc)
        self.transport.stop()


def main(argv: Optional[Sequence[str]] = None) -> None:
    import argparse
    parser = argparse.ArgumentParser(description='interactive marker sync server')
    parser.add_argument('--host', default=None, help='Bind address (default: MARKER_SYNC_HOST or 0.0.0.0)')
    parser.add_argument('--port', type=int, default=None, help='WebSocket port (default: MARKER_SYNC_PORT or 8091)')
    parser.add_argument('--namespace', default=None, help='Namespace tagged on every update frame')
    parser.add_argument('--debug', action='store_true', help='Enable DEBUG logging for marker_sync modules')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(name)s - %(levelname)s - %(message)s')
    if args.debug:
        logging.getLogger('marker_sync').setLevel(logging.DEBUG)

    ctx = load_server_ctx(os.environ)
    overrides = {}
    if args.host is not None:
        overrides['host'] = args.host
    if args.port is not None:
        overrides['port'] = int(args.port)
    if args.namespace is not None:
        overrides['namespace'] = args.namespace
    if overrides:
        ctx = replace(ctx, cfg=replace(ctx.cfg, **overrides))

    server = MarkerSyncServer(ctx)
    server.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("interrupted; shutting down")
    finally:
        server.shutdown()


if __name__ == '__main__':
    main()
