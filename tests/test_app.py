import asyncio
import threading

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app import create_app
from conftest import MemoryStore, RecordingEndpoint, make_token
from realtime.rooms import derive_private_key
from schemas.chat import Envelope


@pytest.fixture
def client(store, identity_provider):
    app = create_app(store=store, identity_provider=identity_provider, heartbeat_interval=30, heartbeat_timeout=120)
    with TestClient(app) as client:
        yield client


def connect(client, identity):
    return client.websocket_connect(f"/ws?token={make_token(identity.id)}")


def auth(identity):
    return {"Authorization": f"Bearer {make_token(identity.id)}"}


def roster_ids(frame):
    assert frame["event"] == "online-users"
    return [user["id"] for user in frame["data"]]


def test_handshake_without_token_is_rejected(client) -> None:
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws"):
            pass
    assert excinfo.value.code == 1008


def test_handshake_with_unknown_user_is_rejected(client) -> None:
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(f"/ws?token={make_token('u-ghost')}"):
            pass
    assert excinfo.value.code == 1008


def test_room_and_private_messages_end_to_end(client, alice, bob) -> None:
    with connect(client, alice) as ws_alice:
        assert roster_ids(ws_alice.receive_json()) == [alice.id]
        with client.websocket_connect("/ws", headers=auth(bob)) as ws_bob:
            assert roster_ids(ws_bob.receive_json()) == [alice.id, bob.id]
            assert roster_ids(ws_alice.receive_json()) == [alice.id, bob.id]

            # alice has not joined lobby and neither has bob: only alice's echo
            ws_alice.send_json({"event": "message", "data": {"room": "lobby", "content": "hi"}})
            frame = ws_alice.receive_json()
            assert frame["event"] == "new-message"
            assert frame["data"]["content"] == "hi"
            assert frame["data"]["sender_name"] == "alice"

            ws_bob.send_json({"event": "private-message", "data": {"targetUserId": alice.id, "msg": "hey"}})
            echo = ws_bob.receive_json()
            copy = ws_alice.receive_json()
            assert echo == copy
            assert copy["event"] == "new-message"
            assert copy["data"]["room"] == derive_private_key(alice.id, bob.id)
            assert copy["data"]["is_private"] is True

        assert roster_ids(ws_alice.receive_json()) == [alice.id]


def test_join_typing_and_room_fanout(client, alice, bob) -> None:
    with connect(client, alice) as ws_alice, connect(client, bob) as ws_bob:
        ws_alice.receive_json()
        ws_alice.receive_json()
        ws_bob.receive_json()

        ws_alice.send_json({"event": "join-room", "data": "lobby"})
        ws_alice.send_json({"event": "message", "data": {"room": "lobby", "content": "sync"}})
        assert ws_alice.receive_json()["data"]["content"] == "sync"

        ws_bob.send_json({"event": "join-room", "data": {"room": "lobby"}})
        ws_bob.send_json({"event": "join-room", "data": {"room": "lobby"}})
        ws_bob.send_json({"event": "typing", "data": {"room": "lobby", "isTyping": True}})
        ws_bob.send_json({"event": "message", "data": {"room": "lobby", "content": "after join"}})

        joined = ws_alice.receive_json()
        assert joined["event"] == "user-joined"
        assert joined["data"]["username"] == "bob"
        typing = ws_alice.receive_json()
        assert typing["event"] == "user-typing"
        assert typing["data"] == {"username": "bob", "user_id": bob.id, "is_typing": True, "room": "lobby"}
        message = ws_alice.receive_json()
        assert message["event"] == "new-message"
        assert message["data"]["content"] == "after join"

        own = ws_bob.receive_json()
        assert own["event"] == "new-message"
        assert own["data"]["id"] == message["data"]["id"]


def test_malformed_frames_leave_connection_open(client, alice) -> None:
    with connect(client, alice) as ws_alice:
        ws_alice.receive_json()
        ws_alice.send_text("not json at all")
        ws_alice.send_json({"event": "message", "data": {}})
        ws_alice.send_json({"event": "no-such-event", "data": {}})
        ws_alice.send_json({"event": "message", "data": {"room": "lobby", "content": "still here"}})
        frame = ws_alice.receive_json()
        assert frame["event"] == "new-message"
        assert frame["data"]["content"] == "still here"


def test_call_offer_is_relayed_to_target(client, alice, bob) -> None:
    with connect(client, alice) as ws_alice, connect(client, bob) as ws_bob:
        ws_alice.receive_json()
        ws_alice.receive_json()
        ws_bob.receive_json()

        ws_bob.send_json({"event": "call-offer", "data": {"target_id": alice.id, "offer": {"sdp": "v=0"}, "type": "video"}})
        frame = ws_alice.receive_json()
        assert frame["event"] == "call-offer"
        assert frame["data"]["offer"] == {"sdp": "v=0"}
        assert frame["data"]["caller"] == "bob"


def test_rest_write_path_pushes_into_live_fanout(client, store, alice, bob) -> None:
    with connect(client, alice) as ws_alice:
        ws_alice.receive_json()
        ws_alice.send_json({"event": "join-room", "data": "lobby"})
        # round trip so the join is applied before the REST calls
        ws_alice.send_json({"event": "message", "data": {"room": "lobby", "content": "sync"}})
        assert ws_alice.receive_json()["data"]["content"] == "sync"

        response = client.post("/api/messages/send", json={"content": "persisted", "room": "lobby"}, headers=auth(alice))
        assert response.status_code == 201
        stored = response.json()
        assert stored["sender_id"] == alice.id
        assert stored["id"] in store.messages

        pushed = ws_alice.receive_json()
        assert pushed["event"] == "new-message"
        assert pushed["data"]["id"] == stored["id"]

        forbidden = client.put(f"/api/messages/{stored['id']}", json={"content": "hijack"}, headers=auth(bob))
        assert forbidden.status_code == 403

        edited = client.put(f"/api/messages/{stored['id']}", json={"content": "edited"}, headers=auth(alice))
        assert edited.status_code == 200
        assert edited.json()["is_edited"] is True
        update = ws_alice.receive_json()
        assert update["event"] == "message-updated"
        assert update["data"]["content"] == "edited"
        assert update["data"]["revision"] == 1

        reacted = client.post(f"/api/messages/{stored['id']}/reactions", json={"emoji": "👍"}, headers=auth(bob))
        assert reacted.status_code == 200
        update = ws_alice.receive_json()
        assert update["event"] == "message-updated"
        assert [r["user_id"] for r in update["data"]["reactions"]] == [bob.id]

        history = client.get("/api/messages/room/lobby", headers=auth(bob)).json()
        assert history["total_messages"] == 1
        assert history["messages"][0]["content"] == "edited"

        assert client.delete(f"/api/messages/{stored['id']}", headers=auth(alice)).status_code == 200
        assert ws_alice.receive_json()["data"]["is_deleted"] is True
        assert client.get("/api/messages/room/lobby", headers=auth(alice)).json()["total_messages"] == 0


def test_rest_private_send_reaches_both_parties(client, alice, bob) -> None:
    with connect(client, alice) as ws_alice:
        ws_alice.receive_json()
        response = client.post("/api/messages/send", json={"content": "dm", "receiver_id": alice.id}, headers=auth(bob))
        assert response.status_code == 201
        frame = ws_alice.receive_json()
        assert frame["event"] == "new-message"
        assert frame["data"]["room"] == derive_private_key(alice.id, bob.id)

    history = client.get(f"/api/messages/private/{bob.id}", headers=auth(alice)).json()
    assert [m["content"] for m in history["messages"]] == ["dm"]


def test_rest_validation_and_auth(client, alice) -> None:
    assert client.post("/api/messages/send", json={"content": "x", "room": "lobby"}).status_code == 401
    assert client.post("/api/messages/send", json={"content": "x"}, headers=auth(alice)).status_code == 400
    assert client.put("/api/messages/missing", json={"content": "x"}, headers=auth(alice)).status_code == 404

    stored = client.post("/api/messages/send", json={"content": "find me", "room": "lobby"}, headers=auth(alice)).json()
    bad_emoji = client.post(f"/api/messages/{stored['id']}/reactions", json={"emoji": "🦄"}, headers=auth(alice))
    assert bad_emoji.status_code == 400

    results = client.get("/api/messages/search/FIND", params={"room": "lobby"}, headers=auth(alice)).json()
    assert [m["id"] for m in results] == [stored["id"]]


def test_idle_connection_is_pinged_then_dropped(store, identity_provider, alice) -> None:
    app = create_app(store=store, identity_provider=identity_provider, heartbeat_interval=0.05, heartbeat_timeout=0.3)
    with TestClient(app) as client:
        with connect(client, alice) as ws_alice:
            events = []
            with pytest.raises(WebSocketDisconnect):
                while True:
                    events.append(ws_alice.receive_json()["event"])
        assert events[0] == "online-users"
        assert "ping" in events
        assert app.state.hub.presence.lookup(alice.id) is None


class OverlappingStore(MemoryStore):
    """Holds every update at a barrier so concurrent writers are in flight together."""

    def __init__(self, users, parties=2):
        super().__init__(users)
        self.barrier = threading.Barrier(parties, timeout=5)

    def update_message(self, message_id, mutate):
        self.barrier.wait()
        return super().update_message(message_id, mutate)


def test_overlapping_reactions_are_both_kept_and_pushed(identity_provider, alice, bob, carol) -> None:
    store = OverlappingStore([alice, bob, carol])
    app = create_app(store=store, identity_provider=identity_provider)
    stored = store.append(Envelope(room="lobby", content="vote", sender_id=alice.id, sender_name=alice.display_name))

    async def scenario():
        watcher = RecordingEndpoint(alice)
        await app.state.hub.presence.register(alice, watcher)
        await app.state.hub.rooms.join(watcher, "lobby")
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as http:
            responses = await asyncio.gather(
                http.post(f"/api/messages/{stored.id}/reactions", json={"emoji": "👍"}, headers=auth(bob)),
                http.post(f"/api/messages/{stored.id}/reactions", json={"emoji": "❤️"}, headers=auth(carol)),
            )
        return responses, watcher

    responses, watcher = asyncio.run(scenario())

    assert [r.status_code for r in responses] == [200, 200]
    final = store.get_message(stored.id)
    assert final.revision == 2
    assert sorted((r.user_id, r.emoji) for r in final.reactions) == [(bob.id, "👍"), (carol.id, "❤️")]

    pushes = watcher.events("message-updated")
    assert sorted(p["revision"] for p in pushes) == [1, 2]
    latest = max(pushes, key=lambda p: p["revision"])
    assert sorted(r["user_id"] for r in latest["reactions"]) == [bob.id, carol.id]


def test_private_history_and_search_are_limited_to_participants(client, alice, bob, carol) -> None:
    sent = client.post("/api/messages/send", json={"content": "secret plan", "receiver_id": bob.id}, headers=auth(alice))
    assert sent.status_code == 201
    room = sent.json()["room"]

    assert client.get(f"/api/messages/room/{room}", headers=auth(bob)).json()["total_messages"] == 1
    assert client.get(f"/api/messages/room/{room}", headers=auth(carol)).status_code == 403
    assert client.get("/api/messages/search/secret", params={"room": room}, headers=auth(carol)).status_code == 403
    assert client.get("/api/messages/search/secret", headers=auth(carol)).json() == []
    assert [m["id"] for m in client.get("/api/messages/search/secret", headers=auth(bob)).json()] == [sent.json()["id"]]

    intrude = client.post("/api/messages/send", json={"content": "hi", "room": room}, headers=auth(carol))
    assert intrude.status_code == 403
    react = client.post(f"/api/messages/{sent.json()['id']}/reactions", json={"emoji": "👍"}, headers=auth(carol))
    assert react.status_code == 404
