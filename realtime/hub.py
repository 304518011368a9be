import asyncio
from typing import Optional

from constants import HEARTBEAT_INTERVAL, HEARTBEAT_TIMEOUT, DEDUP_CACHE_SIZE
from logging_config import get_logger
from realtime.bridge import WritePathBridge
from realtime.errors import MalformedEvent
from realtime.events import (
    ChatMessage,
    InboundEvent,
    JoinPrivateChat,
    JoinRoom,
    Pong,
    PrivateMessage,
    SignalingEvent,
    Typing,
    parse_event,
)
from realtime.gatekeeper import IdentityProvider
from realtime.presence import PresenceRegistry
from realtime.relay import MessageRelay
from realtime.rooms import RoomMultiplexer, derive_private_key, is_private_key, is_private_participant
from realtime.signaling import SignalingRelay

logger = get_logger(__name__)


class ChatHub:
    """The one handle every connection handler works through.

    Owns the presence registry and room multiplexer and the relays built on
    them. Nothing in the hub is module-global.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT,
        dedup_cache_size: int = DEDUP_CACHE_SIZE,
    ):
        self.identity_provider = identity_provider
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.presence = PresenceRegistry()
        self.rooms = RoomMultiplexer()
        self.messages = MessageRelay(self.presence, self.rooms)
        self.signaling = SignalingRelay(self.presence, self.rooms)
        self.bridge = WritePathBridge(self.messages, cache_size=dedup_cache_size)
        self._sweeper: Optional[asyncio.Task] = None

    async def connect(self, endpoint) -> None:
        await self.presence.register(endpoint.identity, endpoint)

    async def disconnect(self, endpoint) -> None:
        """Forget everything about endpoint. Safe to call more than once."""
        rooms = await self.rooms.leave_all(endpoint)
        await self.presence.unregister(endpoint.identity.id, endpoint)
        logger.debug(f"Cleaned up {endpoint!r}: left {len(rooms)} rooms")

    async def handle_frame(self, endpoint, frame) -> None:
        """Validate and dispatch one inbound frame. Malformed frames are logged and ignored."""
        await self.presence.touch(endpoint.identity.id, endpoint)
        try:
            event = parse_event(frame)
        except MalformedEvent as e:
            logger.warning(f"Ignoring malformed event from {endpoint.identity.display_name}: {e}")
            return
        await self.dispatch(endpoint, event)

    async def dispatch(self, endpoint, event: InboundEvent) -> None:
        identity = endpoint.identity
        room = getattr(event, "room", None)
        if room and is_private_key(room) and not is_private_participant(room, identity.id):
            logger.warning(f"Ignoring {event.event} from {identity.display_name}: not a participant of {room}")
            return
        if isinstance(event, JoinRoom):
            await self.rooms.join(endpoint, event.room)
        elif isinstance(event, ChatMessage):
            await self.messages.send_room(endpoint, event.room, event.content, reply_to=event.reply_to)
        elif isinstance(event, PrivateMessage):
            await self.messages.send_private(endpoint, event.target_id, event.content, reply_to=event.reply_to)
        elif isinstance(event, JoinPrivateChat):
            await self.rooms.join(endpoint, derive_private_key(identity.id, event.other_id), announce=False)
        elif isinstance(event, Typing):
            await self.messages.send_typing(endpoint, event.is_typing, room=event.room, target_id=event.target_id)
        elif isinstance(event, SignalingEvent):
            await self.signaling.forward(endpoint, event)
        elif isinstance(event, Pong):
            pass
        else:
            logger.warning(f"No handler for event {event.event}")

    async def sweep(self) -> int:
        """Drop connections whose keepalive expired without a clean close."""
        expired = await self.presence.expire_stale(self.heartbeat_timeout)
        for endpoint in expired:
            await self.rooms.leave_all(endpoint)
            await endpoint.close(code=1001, reason="Keepalive expired")
        return len(expired)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Presence sweep failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())
            logger.debug("Started presence sweeper")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
            logger.debug("Stopped presence sweeper")
