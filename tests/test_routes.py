import pytest
from fastapi.testclient import TestClient

from app import create_app
from connections import ConnectionManager
from relay import ChatRelay
from store import ResilientMessageStore


@pytest.fixture
def client():
    relay = ChatRelay(ConnectionManager(), ResilientMessageStore(), credentials={"admin": "secret"})
    with TestClient(create_app(relay)) as client:
        yield client


def test_empty_stats(client):
    rooms = client.get("/api/rooms")
    assert rooms.status_code == 200
    assert rooms.json() == {"totalRooms": 0, "totalUsers": 0, "rooms": []}

    stats = client.get("/api/message-stats").json()
    assert stats == {"totalMessages": 0, "messagesPerRoom": {}, "cleanupRuns": 0}


def test_health(client):
    assert client.get("/api/health").json() == {
        "status": "ok",
        "keepAliveEnabled": True,
        "backend": "fallback",
        "sessions": 0,
    }


def test_websocket_chat_flow(client):
    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json() == {"event": "room-joined", "data": {"roomId": "001"}}

        ws.send_json({"event": "chat-message", "data": {"username": "ann", "message": "hello"}})
        message = ws.receive_json()
        assert message["event"] == "chat-message"
        assert message["data"]["username"] == "ann"
        assert message["data"]["message"] == "hello"
        assert message["data"]["room"] == "001"

        ws.send_json({"event": "join-room", "data": {"roomId": "042"}})
        assert ws.receive_json() == {"event": "room-left", "data": {"roomId": "001"}}
        assert ws.receive_json() == {"event": "room-joined", "data": {"roomId": "042"}}

        ws.send_json({"event": "get-rooms", "data": {}})
        assert ws.receive_json() == {"event": "rooms-list", "data": [{"id": "042", "userCount": 1}]}

        rooms = client.get("/api/rooms").json()
        assert rooms["totalUsers"] == 1
        assert rooms["rooms"] == [{"id": "042", "userCount": 1}]

        stats = client.get("/api/message-stats").json()
        assert stats["totalMessages"] == 1
        assert stats["messagesPerRoom"] == {"001": 1}


def test_websocket_rejects_bad_frames(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_text("{oops")
        assert ws.receive_json() == {"event": "error", "data": {"message": "Malformed event."}}

        ws.send_json({"event": "join-room", "data": {"roomId": "500"}})
        assert ws.receive_json() == {"event": "error", "data": {"message": "Room must be between 001 and 100."}}
