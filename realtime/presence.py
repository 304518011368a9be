import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from logging_config import get_logger
from schemas.chat import Identity, OnlineUser

logger = get_logger(__name__)

ONLINE_USERS_EVENT = "online-users"


@dataclass
class PresenceEntry:
    identity: Identity
    endpoint: object
    last_seen: float = field(default_factory=time.monotonic)


class PresenceRegistry:
    """Which identities have a live connection, and to which endpoint.

    At most one endpoint per identity: a new registration overwrites the old
    one (last connect wins). Every change broadcasts the full roster to all
    registered endpoints while the lock is held, so rosters go out in the same
    order as the changes that produced them.
    """

    def __init__(self):
        self._entries: Dict[str, PresenceEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def register(self, identity: Identity, endpoint) -> Optional[object]:
        """Bind identity to endpoint. Returns the endpoint it replaced, if any."""
        async with self._lock:
            previous = self._entries.get(identity.id)
            self._entries[identity.id] = PresenceEntry(identity=identity, endpoint=endpoint)
            if previous is not None and previous.endpoint is not endpoint:
                logger.info(f"Identity {identity.id} reconnected, {previous.endpoint!r} superseded by {endpoint!r}")
            else:
                logger.info(f"Identity {identity.id} ({identity.display_name}) online via {endpoint!r}")
            self._broadcast_roster()
        return previous.endpoint if previous is not None else None

    async def unregister(self, identity_id: str, endpoint=None) -> bool:
        """Remove an identity. No-op when absent, or when endpoint is given and no longer current."""
        async with self._lock:
            entry = self._entries.get(identity_id)
            if entry is None:
                logger.debug(f"Unregister for {identity_id}: not registered")
                return False
            if endpoint is not None and entry.endpoint is not endpoint:
                logger.debug(f"Unregister for {identity_id} from superseded {endpoint!r} ignored")
                return False
            del self._entries[identity_id]
            logger.info(f"Identity {identity_id} offline")
            self._broadcast_roster()
        return True

    def lookup(self, identity_id: str):
        entry = self._entries.get(str(identity_id))
        return entry.endpoint if entry is not None else None

    def snapshot(self) -> List[OnlineUser]:
        roster = [
            OnlineUser(
                id=entry.identity.id,
                display_name=entry.identity.display_name,
                endpoint_id=entry.endpoint.endpoint_id,
                connected_at=entry.endpoint.connected_at,
            )
            for entry in self._entries.values()
        ]
        roster.sort(key=lambda user: (user.display_name.lower(), user.id))
        return roster

    async def touch(self, identity_id: str, endpoint) -> None:
        async with self._lock:
            entry = self._entries.get(identity_id)
            if entry is not None and entry.endpoint is endpoint:
                entry.last_seen = time.monotonic()

    async def expire_stale(self, max_idle: float) -> List[object]:
        """Drop entries with no traffic for max_idle seconds and return their endpoints."""
        cutoff = time.monotonic() - max_idle
        async with self._lock:
            stale = [identity_id for identity_id, entry in self._entries.items() if entry.last_seen < cutoff]
            expired = [self._entries.pop(identity_id).endpoint for identity_id in stale]
            if expired:
                logger.info(f"Expired {len(expired)} stale presence entries: {stale}")
                self._broadcast_roster()
        return expired

    def _broadcast_roster(self) -> None:
        roster = [user.model_dump(mode="json") for user in self.snapshot()]
        for entry in self._entries.values():
            entry.endpoint.deliver(ONLINE_USERS_EVENT, roster)
