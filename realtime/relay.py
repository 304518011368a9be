from typing import Iterable, Optional

from logging_config import get_logger
from realtime.presence import PresenceRegistry
from realtime.rooms import RoomMultiplexer, derive_private_key
from schemas.chat import Envelope

logger = get_logger(__name__)

NEW_MESSAGE_EVENT = "new-message"
USER_TYPING_EVENT = "user-typing"


class MessageRelay:
    """Resolves chat recipients and delivers envelopes.

    Delivery is best effort and at most once per recipient: a recipient
    that is offline, or whose outbox is full, simply misses the event.
    Offline recipients catch up through message history.
    """

    def __init__(self, presence: PresenceRegistry, rooms: RoomMultiplexer):
        self.presence = presence
        self.rooms = rooms

    async def send_room(self, sender, room: str, content: str, reply_to: Optional[str] = None) -> Envelope:
        identity = sender.identity
        envelope = Envelope(
            room=room,
            content=content,
            sender_id=identity.id,
            sender_name=identity.display_name,
            reply_to=reply_to,
        )
        delivered = await self.deliver_to_room(room, NEW_MESSAGE_EVENT, envelope.to_payload(), echo_to=sender)
        logger.info(f"{identity.display_name} sent message {envelope.id} in room {room} ({delivered} deliveries)")
        return envelope

    async def send_private(self, sender, target_id: str, content: str, reply_to: Optional[str] = None) -> Envelope:
        identity = sender.identity
        envelope = Envelope(
            room=derive_private_key(identity.id, target_id),
            content=content,
            sender_id=identity.id,
            sender_name=identity.display_name,
            target_id=target_id,
            is_private=True,
            reply_to=reply_to,
        )
        payload = envelope.to_payload()
        target = self.presence.lookup(target_id)
        if target is None:
            logger.debug(f"Private message {envelope.id}: receiver {target_id} not online, dropping")
        elif target is not sender:
            target.deliver(NEW_MESSAGE_EVENT, payload)
        sender.deliver(NEW_MESSAGE_EVENT, payload)
        logger.info(f"{identity.display_name} sent private message {envelope.id} to {target_id}")
        return envelope

    async def send_typing(self, sender, is_typing: bool, room: Optional[str] = None, target_id: Optional[str] = None) -> int:
        """Notify others only; the sender never gets its own typing event."""
        identity = sender.identity
        payload = {"username": identity.display_name, "user_id": identity.id, "is_typing": is_typing}
        if room:
            payload["room"] = room
            return await self.rooms.broadcast(room, USER_TYPING_EVENT, payload, exclude=[sender])
        payload["room"] = derive_private_key(identity.id, target_id)
        target = self.presence.lookup(target_id)
        if target is None or target is sender:
            return 0
        return int(target.deliver(USER_TYPING_EVENT, payload))

    async def deliver_to_room(self, room: str, event: str, payload, echo_to=None, exclude: Optional[Iterable[object]] = None) -> int:
        """Broadcast to room members, plus exactly one copy to echo_to whether or not it joined."""
        excluded = set(exclude or ())
        if echo_to is not None:
            excluded.add(echo_to)
        delivered = await self.rooms.broadcast(room, event, payload, exclude=excluded)
        if echo_to is not None and echo_to.deliver(event, payload):
            delivered += 1
        return delivered

    def deliver_to_identities(self, identity_ids: Iterable[str], event: str, payload) -> int:
        """One copy per distinct live endpoint among identity_ids; absent identities are skipped."""
        recipients = []
        for identity_id in identity_ids:
            endpoint = self.presence.lookup(identity_id) if identity_id is not None else None
            if endpoint is not None and endpoint not in recipients:
                recipients.append(endpoint)
        return sum(1 for endpoint in recipients if endpoint.deliver(event, payload))
