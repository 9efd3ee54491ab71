# companion_relay/core/registry.py
"""
In-memory connection registry for a single process.

Maps conversation ids to the live connections bound to them and fans
payloads out to exactly that set. A connection is anything with an
`async send_text(str)` method (a FastAPI/Starlette WebSocket qualifies);
an optional `async close(code=...)` is used to hang up on dropped peers.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Hashable, List, Optional, Protocol, Set

from companion_relay.utils.logging import get_logger

logger = get_logger(__name__)

# "Try again later": the peer was too slow or its send failed
DROPPED_CLOSE_CODE = 1013


class Connection(Protocol):
    async def send_text(self, data: str) -> None: ...


class ConnectionRegistry:
    """Tracks which connections belong to which conversation and broadcasts to them."""

    def __init__(self, send_timeout_seconds: float = 10.0) -> None:
        self._lock = asyncio.Lock()
        self._connections: Dict[Hashable, Set[Connection]] = {}
        self._bound_to: Dict[Connection, Hashable] = {}
        self._send_timeout = send_timeout_seconds

    async def register(self, conversation_id: Hashable, connection: Connection) -> None:
        async with self._lock:
            previous = self._bound_to.get(connection)
            if previous is not None and previous != conversation_id:
                self._discard_locked(previous, connection)
            self._connections.setdefault(conversation_id, set()).add(connection)
            self._bound_to[connection] = conversation_id
        logger.info("[registry] conversation_id=%s registered connection (live=%d)",
                    conversation_id, self.connection_count(conversation_id))

    async def deregister(self, connection: Connection, conversation_id: Optional[Hashable] = None) -> None:
        async with self._lock:
            bound = self._bound_to.get(connection)
            if bound is None:
                return
            if conversation_id is not None and conversation_id != bound:
                return
            self._discard_locked(bound, connection)
        logger.info("[registry] conversation_id=%s deregistered connection", bound)

    def _discard_locked(self, conversation_id: Hashable, connection: Connection) -> None:
        self._bound_to.pop(connection, None)
        connections = self._connections.get(conversation_id)
        if not connections:
            return
        connections.discard(connection)
        if not connections:
            self._connections.pop(conversation_id, None)

    async def broadcast(self, conversation_id: Hashable, payload: Any) -> int:
        """
        Send `payload` (serialized once) to every connection bound to the
        conversation at the time of the call. Returns the number of
        successful deliveries. Failed recipients are dropped from the
        registry; the rest still receive the payload.
        """
        async with self._lock:
            targets = list(self._connections.get(conversation_id, ()))

        if not targets:
            return 0

        data = json.dumps(payload, ensure_ascii=False)
        results = await asyncio.gather(
            *(self._send(ws, data) for ws in targets),
            return_exceptions=True,
        )

        disconnected: List[Connection] = []
        for ws, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("[registry] conversation_id=%s send failed err_type=%s err=%s; dropping connection",
                               conversation_id, type(result).__name__, result)
                disconnected.append(ws)

        if disconnected:
            async with self._lock:
                for ws in disconnected:
                    if self._bound_to.get(ws) == conversation_id:
                        self._discard_locked(conversation_id, ws)
            # dropped connections are closed so the client reconnects and rebinds
            await asyncio.gather(*(self._close(ws, conversation_id) for ws in disconnected))

        delivered = len(targets) - len(disconnected)
        logger.info("[registry] conversation_id=%s broadcast delivered=%d failed=%d bytes=%d",
                    conversation_id, delivered, len(disconnected), len(data))
        return delivered

    async def _send(self, connection: Connection, data: str) -> None:
        await asyncio.wait_for(connection.send_text(data), timeout=self._send_timeout)

    async def _close(self, connection: Connection, conversation_id: Hashable) -> None:
        close = getattr(connection, "close", None)
        if close is None:
            return
        try:
            await asyncio.wait_for(close(code=DROPPED_CLOSE_CODE), timeout=self._send_timeout)
        except Exception as e:
            logger.info("[registry] conversation_id=%s could not close dropped connection: %r",
                        conversation_id, e)

    def connection_count(self, conversation_id: Optional[Hashable] = None) -> int:
        if conversation_id is None:
            return len(self._bound_to)
        return len(self._connections.get(conversation_id, ()))

    def conversation_ids(self) -> List[Hashable]:
        return list(self._connections)

    def conversation_of(self, connection: Connection) -> Optional[Hashable]:
        return self._bound_to.get(connection)
