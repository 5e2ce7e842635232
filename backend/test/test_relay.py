"""시그널링 릴레이 테스트 (RoomManager, SignalingHub, FastAPI 라우트)."""
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from peerlink.errors import RelayError
from peerlink.relay import RelayConfig, Room, RoomManager, SignalingHub


class RecordingSocket:
    def __init__(self):
        self.sent = []
        self.closed = False

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def close(self) -> None:
        self.closed = True

    def last(self) -> dict:
        return self.sent[-1]

    def of(self, type_: str):
        return [m for m in self.sent if m.get("type") == type_]


# ----------------------------------------------------------------------
# RoomManager
# ----------------------------------------------------------------------

class TestRoomManager:
    def test_streamer_listed_first_then_viewers_in_join_order(self):
        manager = RoomManager()
        manager.join_room("room-42", "viewer-1", is_streamer=False)
        manager.join_room("room-42", "streamer-1", is_streamer=True)
        manager.join_room("room-42", "viewer-2", is_streamer=False)

        assert manager.get_room_peers("room-42") == [
            ("streamer-1", True), ("viewer-1", False), ("viewer-2", False),
        ]
        assert manager.get_other_peers("room-42", "viewer-1") == [
            ("streamer-1", True), ("viewer-2", False),
        ]

    def test_second_streamer_is_refused(self):
        manager = RoomManager()
        manager.join_room("room-42", "streamer-1", is_streamer=True)

        with pytest.raises(RelayError, match="Room already has a streamer"):
            manager.join_room("room-42", "streamer-2", is_streamer=True)
        assert manager.get_peer_room("streamer-2") is None

    def test_room_is_full(self):
        manager = RoomManager(max_viewers_per_room=2)
        manager.join_room("room-42", "v1", is_streamer=False)
        manager.join_room("room-42", "v2", is_streamer=False)

        with pytest.raises(RelayError, match="Room is full"):
            manager.join_room("room-42", "v3", is_streamer=False)
        assert manager.get_room("room-42").viewer_count == 2

    def test_maximum_rooms_reached_creates_nothing(self):
        manager = RoomManager(max_rooms=1)
        manager.join_room("room-1", "v1", is_streamer=False)

        with pytest.raises(RelayError, match="Maximum rooms reached"):
            manager.join_room("room-2", "v2", is_streamer=False)
        assert manager.room_count == 1
        # existing rooms still accept peers
        manager.join_room("room-1", "v2", is_streamer=False)

    def test_room_id_required(self):
        with pytest.raises(RelayError, match="Room ID required"):
            RoomManager().join_room("", "v1", is_streamer=False)

    def test_joining_another_room_leaves_the_first(self):
        manager = RoomManager()
        manager.join_room("room-1", "v1", is_streamer=False)
        manager.join_room("room-2", "v1", is_streamer=False)

        assert manager.get_peer_room("v1") == "room-2"
        assert manager.get_room("room-1") is None

    def test_leave_deletes_empty_room(self):
        manager = RoomManager()
        manager.join_room("room-42", "s1", is_streamer=True)
        manager.join_room("room-42", "v1", is_streamer=False)

        assert manager.leave_room("s1").room_id == "room-42"
        assert manager.get_room("room-42").streamer_id is None
        manager.leave_room("v1")

        assert manager.get_room("room-42") is None
        assert manager.leave_room("v1") is None

    def test_room_list_summary(self):
        manager = RoomManager()
        manager.join_room("room-42", "s1", is_streamer=True)
        manager.join_room("room-42", "v1", is_streamer=False)
        manager.join_room("room-7", "v2", is_streamer=False)

        assert sorted(manager.get_room_list(), key=lambda r: r["id"]) == [
            {"id": "room-42", "streamer": True, "viewers": 1},
            {"id": "room-7", "streamer": False, "viewers": 1},
        ]

    def test_cleanup_removes_only_idle_empty_rooms(self):
        manager = RoomManager(clock=lambda: 1000.0)
        manager.rooms["idle"] = Room(room_id="idle", max_viewers=5, last_activity=100.0)
        manager.rooms["recent"] = Room(room_id="recent", max_viewers=5, last_activity=900.0)
        manager.join_room("busy", "v1", is_streamer=False)
        manager.get_room("busy").last_activity = 0.0

        removed = manager.cleanup_stale_rooms(room_timeout=300)

        assert removed == ["idle"]
        assert set(manager.rooms) == {"recent", "busy"}


# ----------------------------------------------------------------------
# SignalingHub
# ----------------------------------------------------------------------

@pytest.fixture
def hub():
    return SignalingHub(RoomManager(max_viewers_per_room=2))


async def connect(hub):
    socket = RecordingSocket()
    peer = await hub.register(socket)
    return peer, socket


async def join(hub, peer, room_id, is_streamer):
    await hub.handle_text(peer, json.dumps({
        "type": "join", "roomId": room_id, "payload": {"isStreamer": is_streamer},
    }))


@pytest.mark.asyncio
async def test_register_announces_peer_id(hub):
    peer, socket = await connect(hub)

    assert socket.sent == [{
        "type": "room-info",
        "peerId": peer.peer_id,
        "payload": {"message": "Connected to signaling server"},
        "timestamp": socket.sent[0]["timestamp"],
    }]
    assert hub.get_stats()["peers"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("raw, error", [
    ("not json", "Invalid message format"),
    ("[1, 2]", "Invalid message format"),
    ('{"type": "bogus"}', "Unknown message type: bogus"),
    ('{"type": "join", "payload": {}}', "Room ID required"),
    ('{"type": "offer", "payload": {}}', "Target peer ID required"),
    ('{"type": "offer", "targetPeerId": "nobody"}', "Target peer not found"),
])
async def test_bad_messages_get_error_replies(hub, raw, error):
    peer, socket = await connect(hub)

    await hub.handle_text(peer, raw)

    assert socket.last()["type"] == "error"
    assert socket.last()["payload"] == {"error": error}


@pytest.mark.asyncio
async def test_join_replies_with_room_info_and_announces_peer(hub):
    streamer, streamer_ws = await connect(hub)
    viewer, viewer_ws = await connect(hub)
    await join(hub, viewer, "room-42", False)

    await join(hub, streamer, "room-42", True)

    info = streamer_ws.last()
    assert info["type"] == "room-info"
    assert info["roomId"] == "room-42"
    assert info["peerId"] == streamer.peer_id
    assert info["payload"]["streamerId"] == streamer.peer_id
    assert info["payload"]["viewerCount"] == 1
    assert info["payload"]["peers"] == [{"peerId": viewer.peer_id, "isStreamer": False}]

    joined = viewer_ws.of("peer-joined")
    assert len(joined) == 1
    assert joined[0]["peerId"] == streamer.peer_id
    assert joined[0]["payload"] == {"isStreamer": True}


@pytest.mark.asyncio
async def test_refused_join_reports_relay_error(hub):
    first, _ = await connect(hub)
    second, second_ws = await connect(hub)
    await join(hub, first, "room-42", True)

    await join(hub, second, "room-42", True)

    assert second_ws.last()["payload"] == {"error": "Room already has a streamer"}
    assert hub.room_manager.get_peer_room(second.peer_id) is None


@pytest.mark.asyncio
async def test_relay_rewrites_sender_and_drops_target(hub):
    streamer, _ = await connect(hub)
    viewer, viewer_ws = await connect(hub)
    await join(hub, streamer, "room-42", True)
    await join(hub, viewer, "room-42", False)

    await hub.handle_text(streamer, json.dumps({
        "type": "offer",
        "targetPeerId": viewer.peer_id,
        "peerId": "spoofed",
        "payload": {"type": "offer", "sdp": "v=0"},
    }))

    offer = viewer_ws.last()
    assert offer["type"] == "offer"
    assert offer["peerId"] == streamer.peer_id
    assert offer["roomId"] == "room-42"
    assert "targetPeerId" not in offer
    assert offer["payload"] == {"type": "offer", "sdp": "v=0"}


@pytest.mark.asyncio
async def test_relay_refuses_peers_in_different_rooms(hub):
    a, a_ws = await connect(hub)
    b, b_ws = await connect(hub)
    await join(hub, a, "room-1", True)
    await join(hub, b, "room-2", False)

    await hub.handle_text(a, json.dumps({"type": "answer", "targetPeerId": b.peer_id, "payload": {}}))

    assert a_ws.last()["payload"] == {"error": "Peers not in same room"}
    assert b_ws.of("answer") == []


@pytest.mark.asyncio
async def test_leave_and_disconnect_announce_peer_left(hub):
    streamer, streamer_ws = await connect(hub)
    v1, v1_ws = await connect(hub)
    v2, _ = await connect(hub)
    for peer, is_streamer in ((streamer, True), (v1, False), (v2, False)):
        await join(hub, peer, "room-42", is_streamer)

    await hub.handle_text(v1, json.dumps({"type": "leave"}))
    await hub.unregister(v2)

    assert v1_ws.last()["payload"] == {"message": "Left room"}
    left = [m["peerId"] for m in streamer_ws.of("peer-left")]
    assert left == [v1.peer_id, v2.peer_id]
    assert hub.room_manager.get_room("room-42").viewer_count == 0

    await hub.unregister(streamer)
    assert hub.room_manager.get_room("room-42") is None


@pytest.mark.asyncio
async def test_shutdown_notifies_and_closes_everyone(hub):
    _, a_ws = await connect(hub)
    _, b_ws = await connect(hub)

    await hub.shutdown()

    for socket in (a_ws, b_ws):
        assert socket.last()["type"] == "error"
        assert socket.last()["payload"] == {"message": "Server shutting down"}
        assert socket.closed
    assert hub.peers == {}


# ----------------------------------------------------------------------
# FastAPI app
# ----------------------------------------------------------------------

@pytest.fixture
def api():
    from app import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def token_required(monkeypatch):
    config = RelayConfig(ACCESS_TOKEN="secret")
    monkeypatch.setattr("routes.deps.relay_config", config)
    return config


def test_root_and_health(api):
    assert api.get("/").json() == {"status": "ok", "service": "PeerLink Signaling Relay"}

    health = api.get("/api/health").json()
    assert health["status"] == "ok"
    assert set(health) == {"status", "peers", "rooms"}


def test_rooms_requires_bearer_token_when_configured(api, token_required):
    assert api.get("/api/rooms").status_code == 401
    assert api.get("/api/rooms", headers={"Authorization": "Token secret"}).status_code == 401
    assert api.get("/api/rooms", headers={"Authorization": "Bearer wrong"}).status_code == 401

    response = api.get("/api/rooms", headers={"Authorization": "Bearer secret"})
    assert response.status_code == 200
    assert "rooms" in response.json()


def test_turn_credentials_lists_ice_servers(api):
    servers = api.get("/api/turn-credentials").json()

    assert isinstance(servers, list)
    assert all("urls" in server for server in servers)


def test_websocket_rejects_bad_token(api, token_required):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with api.websocket_connect("/signaling?token=wrong") as ws:
            ws.receive_json()
    assert excinfo.value.code == 4001


def test_websocket_join_and_relay_flow(api):
    with api.websocket_connect("/signaling") as streamer, api.websocket_connect("/signaling") as viewer:
        streamer_id = streamer.receive_json()["peerId"]
        viewer_id = viewer.receive_json()["peerId"]

        viewer.send_json({"type": "join", "roomId": "ws-room", "payload": {"isStreamer": False}})
        assert viewer.receive_json()["roomId"] == "ws-room"

        streamer.send_json({"type": "join", "roomId": "ws-room", "payload": {"isStreamer": True}})
        info = streamer.receive_json()
        assert info["payload"]["peers"] == [{"peerId": viewer_id, "isStreamer": False}]

        joined = viewer.receive_json()
        assert joined["type"] == "peer-joined"
        assert joined["peerId"] == streamer_id

        streamer.send_json({
            "type": "offer",
            "targetPeerId": viewer_id,
            "payload": {"type": "offer", "sdp": "v=0"},
        })
        offer = viewer.receive_json()
        assert offer["type"] == "offer"
        assert offer["peerId"] == streamer_id

        rooms = api.get("/api/rooms").json()["rooms"]
        assert {"id": "ws-room", "streamer": True, "viewers": 1} in rooms
