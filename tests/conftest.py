import math
import threading
import time
import uuid
from datetime import datetime, timezone

import jwt
import pytest

from realtime.gatekeeper import JwtIdentityProvider
from schemas.chat import Identity, StoredMessage
from schemas.messages import HistoryPage

TEST_SECRET = "test-secret-for-the-chat-relay-suite"


class RecordingEndpoint:
    """Stands in for a live connection and records what it is sent."""

    def __init__(self, identity: Identity):
        self.endpoint_id = uuid.uuid4().hex
        self.identity = identity
        self.connected_at = datetime.now(timezone.utc).isoformat()
        self.closed = False
        self.received = []

    def __repr__(self):
        return f"<RecordingEndpoint {self.identity.id}>"

    def deliver(self, event, payload):
        if self.closed:
            return False
        self.received.append((event, payload))
        return True

    async def close(self, code=1000, reason=""):
        self.closed = True

    def events(self, name):
        return [payload for event, payload in self.received if event == name]


class MemoryStore:
    """Dict-backed Message Store and identity directory for tests."""

    def __init__(self, users=()):
        self.users = {user.id: user for user in users}
        self.messages = {}
        self._lock = threading.Lock()

    def ping(self):
        return True

    def get_user(self, user_id):
        return self.users.get(user_id)

    def append(self, envelope):
        stored = StoredMessage(**envelope.model_dump())
        self.messages[stored.id] = stored
        return stored

    def get_message(self, message_id):
        message = self.messages.get(message_id)
        return message.model_copy(deep=True) if message is not None else None

    def update_message(self, message_id, mutate):
        with self._lock:
            message = self.get_message(message_id)
            if message is None:
                return None
            mutate(message)
            updated = message.model_copy(update={"revision": message.revision + 1})
            self.messages[updated.id] = updated
            return updated.model_copy(deep=True)

    def query_history(self, room, page=1, limit=50):
        in_room = sorted(
            (m for m in self.messages.values() if m.room == room and not m.is_deleted),
            key=lambda m: m.timestamp,
            reverse=True,
        )
        start = (page - 1) * limit
        chunk = list(reversed(in_room[start:start + limit]))
        return HistoryPage(
            messages=chunk,
            total_pages=math.ceil(len(in_room) / limit),
            current_page=page,
            total_messages=len(in_room),
        )

    def search(self, query, room=None, limit=20, viewer_id=None):
        matches = [
            m for m in self.messages.values()
            if not m.is_deleted and (room is None or m.room == room) and query.lower() in m.content.lower()
            and (viewer_id is None or m.visible_to(viewer_id))
        ]
        matches.sort(key=lambda m: m.timestamp, reverse=True)
        return matches[:limit]


def make_token(user_id, secret=TEST_SECRET, expires_in=3600):
    return jwt.encode({"userId": user_id, "exp": int(time.time()) + expires_in}, secret, algorithm="HS256")


@pytest.fixture
def alice():
    return Identity(id="u-alice", display_name="alice")


@pytest.fixture
def bob():
    return Identity(id="u-bob", display_name="bob")


@pytest.fixture
def carol():
    return Identity(id="u-carol", display_name="carol")


@pytest.fixture
def store(alice, bob, carol):
    return MemoryStore(users=[alice, bob, carol])


@pytest.fixture
def identity_provider(store):
    return JwtIdentityProvider(store, secret=TEST_SECRET)
