import math
from typing import Callable, Iterable, Optional

import redis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, HISTORY_PAGE_SIZE, SEARCH_LIMIT
from redis_keys import REDIS_USER_KEY, REDIS_MESSAGE_KEY, REDIS_ROOM_MESSAGES_KEY, REDIS_MESSAGE_SCAN_PATTERN
from logging_config import get_logger
from schemas.chat import Envelope, Identity, StoredMessage
from schemas.messages import HistoryPage

logger = get_logger(__name__)


def _score(message: StoredMessage) -> float:
    return message.timestamp.timestamp() * 1000


class RedisBackend:
    """Message Store and identity directory backed by Redis.

    All methods are blocking; async callers run them through the threadpool.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        if redis_client is None:
            redis_client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        self.redis_client = redis_client

    def ping(self) -> bool:
        try:
            self.redis_client.ping()
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise
        logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        return True

    # Identity directory

    def get_user(self, user_id: str) -> Optional[Identity]:
        logger.debug(f"Fetching user {user_id}")
        user_data = self.redis_client.hgetall(REDIS_USER_KEY.format(user_id=user_id))
        if not user_data:
            logger.debug(f"User {user_id} not found in Redis")
            return None
        display_name = user_data.get("display_name") or user_data.get("username")
        if not display_name:
            logger.warning(f"User {user_id} has no display name, treating as unknown")
            return None
        return Identity(id=user_data.get("id", user_id), display_name=display_name)

    # Message store

    def append(self, envelope: Envelope) -> StoredMessage:
        stored = StoredMessage(**envelope.model_dump())
        pipe = self.redis_client.pipeline()
        pipe.set(REDIS_MESSAGE_KEY.format(message_id=stored.id), stored.model_dump_json())
        pipe.zadd(REDIS_ROOM_MESSAGES_KEY.format(slug=stored.room), {stored.id: _score(stored)})
        pipe.execute()
        logger.debug(f"Stored message {stored.id} in room {stored.room}")
        return stored

    def get_message(self, message_id: str) -> Optional[StoredMessage]:
        raw = self.redis_client.get(REDIS_MESSAGE_KEY.format(message_id=message_id))
        if raw is None:
            logger.debug(f"Message {message_id} not found")
            return None
        return StoredMessage.model_validate_json(raw)

    def update_message(self, message_id: str, mutate: Callable[[StoredMessage], None]) -> Optional[StoredMessage]:
        """Apply `mutate` to the stored message and persist it with the next revision.

        The read and the write happen under WATCH, so a concurrent update makes the
        transaction fail and `mutate` is re-applied to the fresh copy. Exceptions
        raised by `mutate` abort the update. Returns None when the message is unknown.
        """
        message_key = REDIS_MESSAGE_KEY.format(message_id=message_id)
        with self.redis_client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(message_key)
                    raw = pipe.get(message_key)
                    if raw is None:
                        logger.debug(f"Message {message_id} not found for update")
                        return None
                    message = StoredMessage.model_validate_json(raw)
                    mutate(message)
                    updated = message.model_copy(update={"revision": message.revision + 1})
                    pipe.multi()
                    pipe.set(message_key, updated.model_dump_json())
                    if updated.is_deleted:
                        pipe.zrem(REDIS_ROOM_MESSAGES_KEY.format(slug=updated.room), updated.id)
                    pipe.execute()
                    logger.debug(f"Saved message {updated.id} at revision {updated.revision}")
                    return updated
                except redis.WatchError:
                    logger.debug(f"Message {message_id} changed during update, retrying")

    def _load_many(self, message_ids: Iterable[str]) -> list[StoredMessage]:
        keys = [REDIS_MESSAGE_KEY.format(message_id=message_id) for message_id in message_ids]
        if not keys:
            return []
        return [StoredMessage.model_validate_json(raw) for raw in self.redis_client.mget(keys) if raw]

    def query_history(self, room: str, page: int = 1, limit: int = HISTORY_PAGE_SIZE) -> HistoryPage:
        """Newest-first pagination; each page is returned oldest-first."""
        page = max(page, 1)
        limit = max(limit, 1)
        room_key = REDIS_ROOM_MESSAGES_KEY.format(slug=room)
        total = self.redis_client.zcard(room_key)
        start = (page - 1) * limit
        message_ids = self.redis_client.zrevrange(room_key, start, start + limit - 1)
        messages = [m for m in self._load_many(message_ids) if not m.is_deleted]
        messages.reverse()
        logger.debug(f"History for room {room}: page {page}, {len(messages)} of {total} messages")
        return HistoryPage(
            messages=messages,
            total_pages=math.ceil(total / limit),
            current_page=page,
            total_messages=total,
        )

    def search(
        self, query: str, room: Optional[str] = None, limit: int = SEARCH_LIMIT, viewer_id: Optional[str] = None
    ) -> list[StoredMessage]:
        """Newest-first substring matches. With `viewer_id`, private messages of other pairs are skipped."""
        needle = query.lower()
        if room:
            message_ids = self.redis_client.zrange(REDIS_ROOM_MESSAGES_KEY.format(slug=room), 0, -1)
            candidates = self._load_many(message_ids)
        else:
            keys = list(self.redis_client.scan_iter(match=REDIS_MESSAGE_SCAN_PATTERN))
            candidates = [StoredMessage.model_validate_json(raw) for raw in self.redis_client.mget(keys) if raw] if keys else []
        matches = [
            m for m in candidates
            if not m.is_deleted and needle in m.content.lower() and (viewer_id is None or m.visible_to(viewer_id))
        ]
        matches.sort(key=lambda m: m.timestamp, reverse=True)
        logger.debug(f"Search '{query}' in room {room or '*'} matched {len(matches)} messages")
        return matches[:limit]
