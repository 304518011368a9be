from logging_config import get_logger
from realtime.events import SignalingEvent
from realtime.presence import PresenceRegistry
from realtime.rooms import RoomMultiplexer

logger = get_logger(__name__)


class SignalingRelay:
    """Routes call negotiation events between peers.

    Holds no call state and never validates the order of request, offer,
    answer, and end: each event is forwarded on its own, with the
    negotiation payload untouched. Room events go to the other members;
    targeted events go to the target's live endpoint or nowhere.
    """

    def __init__(self, presence: PresenceRegistry, rooms: RoomMultiplexer):
        self.presence = presence
        self.rooms = rooms

    async def forward(self, sender, event: SignalingEvent) -> int:
        identity = sender.identity
        payload = event.forwarded_payload()
        payload["sender_id"] = identity.id
        payload["sender_name"] = identity.display_name
        payload.setdefault("caller", identity.display_name)

        if event.room:
            delivered = await self.rooms.broadcast(event.room, event.event, payload, exclude=[sender])
            logger.info(f"{identity.display_name} sent {event.event} to room {event.room} ({delivered} peers)")
            return delivered

        target = self.presence.lookup(event.target_id)
        if target is None:
            logger.debug(f"{event.event} from {identity.display_name}: {event.target_id} not online, dropping")
            return 0
        delivered = int(target.deliver(event.event, payload))
        logger.info(f"{identity.display_name} sent {event.event} to {event.target_id}")
        return delivered
