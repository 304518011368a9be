from collections import OrderedDict

from constants import DEDUP_CACHE_SIZE
from logging_config import get_logger
from realtime.relay import MessageRelay, NEW_MESSAGE_EVENT
from schemas.chat import StoredMessage

logger = get_logger(__name__)

MESSAGE_UPDATED_EVENT = "message-updated"


class WritePathBridge:
    """Pushes durable writes into the live fan-out.

    Only called after the store accepted the write. Messages written through
    the REST path reach live clients here and nowhere else; each
    (message id, revision) pair is pushed at most once.
    """

    def __init__(self, relay: MessageRelay, cache_size: int = DEDUP_CACHE_SIZE):
        self.relay = relay
        self.cache_size = cache_size
        self._pushed: OrderedDict = OrderedDict()

    def _first_push(self, message: StoredMessage, event: str) -> bool:
        key = (event, message.id, message.revision)
        if key in self._pushed:
            self._pushed.move_to_end(key)
            logger.debug(f"Skipping duplicate {event} for message {message.id} revision {message.revision}")
            return False
        self._pushed[key] = True
        if len(self._pushed) > self.cache_size:
            self._pushed.popitem(last=False)
        return True

    async def message_created(self, message: StoredMessage) -> int:
        if not self._first_push(message, NEW_MESSAGE_EVENT):
            return 0
        payload = message.model_dump(mode="json")
        if message.is_private:
            delivered = self.relay.deliver_to_identities([message.target_id, message.sender_id], NEW_MESSAGE_EVENT, payload)
        else:
            sender = self.relay.presence.lookup(message.sender_id)
            delivered = await self.relay.deliver_to_room(message.room, NEW_MESSAGE_EVENT, payload, echo_to=sender)
        logger.info(f"Pushed stored message {message.id} in room {message.room} to {delivered} endpoints")
        return delivered

    async def message_updated(self, message: StoredMessage) -> int:
        if not self._first_push(message, MESSAGE_UPDATED_EVENT):
            return 0
        payload = message.model_dump(mode="json")
        if message.is_private:
            delivered = self.relay.deliver_to_identities([message.sender_id, message.target_id], MESSAGE_UPDATED_EVENT, payload)
        else:
            delivered = await self.relay.deliver_to_room(message.room, MESSAGE_UPDATED_EVENT, payload)
        logger.info(f"Pushed update of message {message.id} (revision {message.revision}) to {delivered} endpoints")
        return delivered
