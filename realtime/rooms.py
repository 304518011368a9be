import asyncio
from typing import Dict, Iterable, List, Optional, Set

from constants import PRIVATE_ROOM_PREFIX
from logging_config import get_logger

logger = get_logger(__name__)

USER_JOINED_EVENT = "user-joined"


def derive_private_key(id_a: str, id_b: str) -> str:
    """Room key shared by two identities, the same whichever side computes it."""
    first, second = sorted((str(id_a), str(id_b)))
    return f"{PRIVATE_ROOM_PREFIX}_{first}_{second}"


def is_private_key(room_key: str) -> bool:
    return room_key.startswith(f"{PRIVATE_ROOM_PREFIX}_")


def is_private_participant(room_key: str, identity_id: str) -> bool:
    """Whether `identity_id` is one of the two sides of a private room key."""
    if not is_private_key(room_key):
        return False
    pair = room_key[len(PRIVATE_ROOM_PREFIX) + 1:]
    identity_id = str(identity_id)
    others = []
    if pair.startswith(f"{identity_id}_"):
        others.append(pair[len(identity_id) + 1:])
    if pair.endswith(f"_{identity_id}"):
        others.append(pair[:-(len(identity_id) + 1)])
    return any(derive_private_key(identity_id, other) == room_key for other in others)


class RoomMultiplexer:
    """Room membership and group fan-out.

    Rooms are created on first join and dropped once their last member
    leaves. Membership is keyed by endpoint, so a reconnect starts with no
    rooms.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[object]] = {}
        self._memberships: Dict[object, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def join(self, endpoint, room_key: str, announce: bool = True) -> bool:
        """Add endpoint to room_key. Returns False if it was already a member."""
        async with self._lock:
            members = self._rooms.setdefault(room_key, set())
            if endpoint in members:
                logger.debug(f"{endpoint!r} already in room {room_key}")
                return False
            others = list(members)
            members.add(endpoint)
            self._memberships.setdefault(endpoint, set()).add(room_key)
            if announce:
                name = endpoint.identity.display_name
                announcement = {"username": name, "user_id": endpoint.identity.id, "room": room_key, "message": f"{name} joined the room"}
                for member in others:
                    member.deliver(USER_JOINED_EVENT, announcement)
        logger.info(f"{endpoint.identity.display_name} joined room: {room_key} ({len(others) + 1} members)")
        return True

    async def leave_all(self, endpoint) -> List[str]:
        async with self._lock:
            room_keys = self._memberships.pop(endpoint, set())
            for room_key in room_keys:
                members = self._rooms.get(room_key)
                if members is None:
                    continue
                members.discard(endpoint)
                if not members:
                    del self._rooms[room_key]
                    logger.debug(f"Room {room_key} is empty, dropping it")
        return sorted(room_keys)

    def members(self, room_key: str) -> List[object]:
        return list(self._rooms.get(room_key, ()))

    def rooms_of(self, endpoint) -> Set[str]:
        return set(self._memberships.get(endpoint, ()))

    def room_keys(self) -> List[str]:
        return list(self._rooms)

    async def broadcast(self, room_key: str, event: str, payload, exclude: Optional[Iterable[object]] = None) -> int:
        """Deliver to every current member of room_key except those in exclude."""
        excluded = set(exclude or ())
        async with self._lock:
            recipients = [member for member in self._rooms.get(room_key, ()) if member not in excluded]
            delivered = sum(1 for member in recipients if member.deliver(event, payload))
        logger.debug(f"Broadcast {event} to {delivered}/{len(recipients)} members of room {room_key}")
        return delivered
