from __future__ import annotations

import asyncio
from typing import List, Union

from marker_sync.server.util import safe_send


class _Peer:
    def __init__(self, *, fail_send: bool = False, fail_close: bool = False) -> None:
        self.fail_send = fail_send
        self.fail_close = fail_close
        self.frames: List[Union[str, bytes]] = []
        self.closed = False

    async def send(self, frame: Union[str, bytes]) -> None:
        if self.fail_send:
            raise ConnectionResetError("peer went away")
        self.frames.append(frame)

    async def close(self) -> None:
        self.closed = True
        if self.fail_close:
            raise RuntimeError("close failed")


def test_safe_send_writes_frame() -> None:
    peer = _Peer()

    ok = asyncio.run(safe_send(peer, '{"type":"markers.update"}'))

    assert ok is True
    assert peer.frames == ['{"type":"markers.update"}']
    assert peer.closed is False


def test_safe_send_closes_peer_on_failure() -> None:
    peer = _Peer(fail_send=True)

    ok = asyncio.run(safe_send(peer, b"\x00\x01", peer="c1"))

    assert ok is False
    assert peer.frames == []
    assert peer.closed is True


def test_safe_send_reports_failure_when_close_also_fails() -> None:
    peer = _Peer(fail_send=True, fail_close=True)

    async def runner() -> bool:
        return await safe_send(peer, "frame")

    assert asyncio.run(runner()) is False
    assert peer.closed is True
