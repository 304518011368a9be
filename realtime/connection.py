import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from constants import OUTBOX_SIZE
from logging_config import get_logger
from schemas.chat import Identity

logger = get_logger(__name__)

PING_EVENT = "ping"


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through the websocket, returning False instead of raising when it is gone."""
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError, OSError) as e:
        logger.debug(f"Failed to send websocket message: {e}")
        return False


class Endpoint:
    """One live connection, bound to exactly one identity for its lifetime.

    Delivery never suspends: events are queued on a bounded FIFO outbox and a
    writer task pushes them to the socket. Events queued by one sender reach
    this endpoint in the order they were queued.
    """

    def __init__(self, websocket: WebSocket, identity: Identity, outbox_size: int = OUTBOX_SIZE):
        self.endpoint_id = uuid.uuid4().hex
        self.identity = identity
        self.websocket = websocket
        self.connected_at = datetime.now(timezone.utc).isoformat()
        self.closed = False
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self._writer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<Endpoint {self.endpoint_id[:8]} identity={self.identity.id}>"

    def deliver(self, event: str, payload: Any) -> bool:
        """Queue an event for this connection. Best effort, at most once."""
        if self.closed:
            return False
        try:
            self._outbox.put_nowait({"event": event, "data": payload})
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for {self!r}, dropping {event}")
            return False
        return True

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            if not await safe_send_json(self.websocket, frame):
                # Stale endpoint: the receive loop or the sweeper cleans up presence
                logger.info(f"Send to {self!r} failed, stopping writer")
                self.closed = True
                return

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        if self._writer is not None and self._writer is not asyncio.current_task():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        if (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        ):
            try:
                await self.websocket.close(code=code, reason=reason)
            except (RuntimeError, OSError) as e:
                logger.debug(f"Error closing WebSocket for {self!r}: {e}")


async def iter_keepalive_messages(
    endpoint: Endpoint,
    *,
    ping_interval: float,
    idle_timeout: float,
) -> AsyncIterator[str]:
    """Yield text frames from the endpoint's socket.

    Pings through the outbox when idle and stops after idle_timeout seconds
    without inbound traffic, or once the writer has given up on the socket.
    """
    websocket = endpoint.websocket
    last_activity = time.monotonic()
    while True:
        try:
            message = await asyncio.wait_for(websocket.receive_text(), timeout=ping_interval)
        except asyncio.TimeoutError:
            if endpoint.closed or websocket.application_state != WebSocketState.CONNECTED:
                break
            if time.monotonic() - last_activity >= idle_timeout:
                logger.info(f"Keepalive expired for {endpoint!r}, dropping connection")
                break
            endpoint.deliver(PING_EVENT, {})
            continue
        except (RuntimeError, WebSocketDisconnect):
            break
        except KeyError:
            # binary frame
            last_activity = time.monotonic()
            logger.warning(f"Ignoring non-text frame from {endpoint!r}")
            continue
        last_activity = time.monotonic()
        yield message
