"""WebSocket transport: one JSON text frame per update batch.

The asyncio loop runs on a daemon thread so the registry can be driven from
ordinary threads. Subscribe and feedback hooks run in the loop's executor,
which lets a hook publish (and wait on a send) without stalling the loop.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
from dataclasses import replace
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from marker_sync.protocol import UpdateBatch, decode_feedback, encode_batch

from .config import DebugPolicy
from .transport import DeliveryReport, FeedbackHook, SubscribeHook, default_client_id
from .util import safe_send

logger = logging.getLogger(__name__)


class WebSocketTransport:
    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8091,
        *,
        namespace: str = "",
        send_timeout_s: float = 5.0,
        debug_policy: Optional[DebugPolicy] = None,
    ) -> None:
        self.host = host
        self._requested_port = int(port)
        self._bound_port: Optional[int] = None
        self.namespace = str(namespace)
        self._send_timeout_s = float(send_timeout_s)
        policy = debug_policy or DebugPolicy()
        self._log_transport = policy.logging.log_transport

        self._lock = threading.Lock()
        self._clients: Dict[str, Any] = {}
        self._subscribe_hooks: List[SubscribeHook] = []
        self._feedback_hooks: List[FeedbackHook] = []

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._server: Any = None

    @property
    def port(self) -> int:
        """The bound port once started (useful with port 0)."""

        return self._bound_port if self._bound_port is not None else self._requested_port

    @property
    def running(self) -> bool:
        return self._loop is not None and self._server is not None

    def clients(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._clients)

    # ------------------------------------------------------------------
    def start(self, timeout: float = 5.0) -> None:
        if self._loop is not None:
            raise RuntimeError("websocket transport already started")
        loop = asyncio.new_event_loop()
        thread = threading.Thread(target=self._run_loop, args=(loop,), name="marker-sync-ws", daemon=True)
        self._loop = loop
        self._thread = thread
        thread.start()
        try:
            asyncio.run_coroutine_threadsafe(self._open(), loop).result(timeout)
        except Exception:
            self.stop()
            raise
        logger.info("marker sync WS listening on %s:%d (namespace=%s)", self.host, self.port, self.namespace)

    def stop(self, timeout: float = 5.0) -> None:
        loop, thread = self._loop, self._thread
        if loop is None:
            return
        if loop.is_running():
            try:
                asyncio.run_coroutine_threadsafe(self._close(), loop).result(timeout)
            except Exception:
                logger.debug("websocket transport shutdown incomplete", exc_info=True)
            loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout)
        loop.close()
        self._loop = None
        self._thread = None
        self._server = None
        with self._lock:
            self._clients.clear()
        logger.info("marker sync WS stopped")

    # ------------------------------------------------------------------
    def broadcast(self, batch: UpdateBatch) -> DeliveryReport:
        with self._lock:
            targets = list(self._clients.items())
        return self._deliver(batch, targets)

    def send(self, client_id: str, batch: UpdateBatch) -> DeliveryReport:
        with self._lock:
            ws = self._clients.get(client_id)
        if ws is None:
            return DeliveryReport(failed=(client_id,))
        return self._deliver(batch, [(client_id, ws)])

    def on_subscribe(self, callback: SubscribeHook) -> None:
        with self._lock:
            self._subscribe_hooks.append(callback)

    def on_feedback(self, callback: FeedbackHook) -> None:
        with self._lock:
            self._feedback_hooks.append(callback)

    # ------------------------------------------------------------------
    @staticmethod
    def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        loop.run_forever()

    async def _open(self) -> None:
        # permessage-deflate off; frames are small and latency matters more
        self._server = await websockets.serve(
            self._handle_client,
            self.host,
            self._requested_port,
            compression=None,
            max_size=None,
        )
        sockets = list(self._server.sockets or ())
        if sockets:
            self._bound_port = int(sockets[0].getsockname()[1])

    async def _close(self) -> None:
        with self._lock:
            conns = list(self._clients.values())
        for ws in conns:
            try:
                await ws.close()
            except Exception:
                logger.debug("client close failed during shutdown", exc_info=True)
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    def _deliver(self, batch: UpdateBatch, targets: List[Tuple[str, Any]]) -> DeliveryReport:
        if not targets:
            return DeliveryReport()
        loop = self._loop
        if loop is None or not loop.is_running():
            return DeliveryReport(failed=tuple(client_id for client_id, _ in targets))
        text = encode_batch(batch)
        future = asyncio.run_coroutine_threadsafe(self._send_all(text, targets), loop)
        try:
            report = future.result(self._send_timeout_s)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.warning("batch seq=%d timed out after %.1fs", batch.seq, self._send_timeout_s)
            return DeliveryReport(failed=tuple(client_id for client_id, _ in targets))
        if self._log_transport:
            logger.info(
                "sent seq=%d full_sync=%s bytes=%d delivered=%d failed=%d",
                batch.seq,
                batch.full_sync,
                len(text),
                len(report.delivered),
                len(report.failed),
            )
        return report

    async def _send_all(self, text: str, targets: List[Tuple[str, Any]]) -> DeliveryReport:
        results = await asyncio.gather(*(safe_send(ws, text, peer=client_id) for client_id, ws in targets))
        delivered: List[str] = []
        failed: List[str] = []
        for (client_id, _), ok in zip(targets, results):
            if ok:
                delivered.append(client_id)
            else:
                failed.append(client_id)
                self._drop_client(client_id)
        return DeliveryReport(delivered=tuple(delivered), failed=tuple(failed))

    def _drop_client(self, client_id: str) -> None:
        with self._lock:
            self._clients.pop(client_id, None)

    async def _handle_client(self, ws: Any) -> None:
        loop = asyncio.get_running_loop()
        client_id = default_client_id("ws")
        with self._lock:
            self._clients[client_id] = ws
            subscribe_hooks = list(self._subscribe_hooks)
        remote = getattr(ws, "remote_address", None)
        (logger.info if self._log_transport else logger.debug)(
            "marker client connected id=%s remote=%s", client_id, remote
        )
        try:
            for hook in subscribe_hooks:
                try:
                    await loop.run_in_executor(None, hook, client_id)
                except Exception:
                    logger.exception("subscribe hook failed for %s", client_id)
            async for message in ws:
                await self._ingest_frame(loop, client_id, message)
        except ConnectionClosed:
            logger.debug("marker client %s connection closed", client_id)
        finally:
            self._drop_client(client_id)
            (logger.info if self._log_transport else logger.debug)("marker client disconnected id=%s", client_id)

    async def _ingest_frame(self, loop: asyncio.AbstractEventLoop, client_id: str, message: Any) -> None:
        try:
            event = decode_feedback(message)
        except ValueError as exc:
            logger.warning("ignoring malformed frame from %s: %s", client_id, exc)
            return
        event = replace(event, client_id=client_id)
        with self._lock:
            hooks = list(self._feedback_hooks)
        for hook in hooks:
            try:
                await loop.run_in_executor(None, hook, event)
            except Exception:
                logger.exception("feedback hook failed for marker '%s'", event.marker_name)


__all__ = ["WebSocketTransport"]
