"""PeerLink 테스트 공용 fixture.

실제 네트워크, 카메라, ICE 없이 상태 머신을 검증하기 위한 인메모리 대체물:
    - FakeWebSocket / FakeConnector: 시그널링 WebSocket
    - FakePeerConnection: RTCPeerConnection (pyee 이벤트, SDP에 트랙 종류 기록)
    - FakePlayerFactory: 캡처 장치 (MediaPlayer)
    - GatedPlayerFactory: 장치 열기 도중의 leave/중복 시작 재현
    - RelayBridge: 실제 SignalingHub에 클라이언트 FakeWebSocket을 연결
"""
import asyncio
import json
import threading
from typing import Any, Dict, List, Optional

import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from peerlink.relay import RoomManager, SignalingHub
from peerlink.webrtc.envelope import EnvelopeType, make_envelope

CANDIDATE_SDP = "candidate:842163049 1 udp 1677729535 192.0.2.1 50000 typ srflx raddr 10.0.0.1 rport 50000"


async def settle(rounds: int = 30) -> None:
    """대기 중인 태스크(mailbox 워커, 이벤트 핸들러)가 진행되도록 루프를 돌립니다."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTrack(MediaStreamTrack):
    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    async def recv(self):
        await asyncio.sleep(3600)


# ----------------------------------------------------------------------
# Signaling transport
# ----------------------------------------------------------------------

class FakeWebSocket:
    """클라이언트 측 WebSocket 대체물.

    incoming 큐에 넣은 텍스트를 순서대로 내보내고, None을 넣으면 원격
    종료처럼 반복이 끝납니다. send()한 메시지는 sent에 쌓입니다.
    """

    def __init__(self, on_send=None):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[dict] = []
        self.closed = False
        self._on_send = on_send

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        message = json.loads(text)
        self.sent.append(message)
        if self._on_send is not None:
            await self._on_send(text)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(None)

    def feed(self, message: Any) -> None:
        self.incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self) -> None:
        """원격 측에서 연결이 끊긴 것처럼 만듭니다."""
        self.closed = True
        self.incoming.put_nowait(None)

    def sent_of(self, type_: str) -> List[dict]:
        return [m for m in self.sent if m.get("type") == type_]

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """SignalingLink connector. failures에 넣은 예외를 차례로 발생시킵니다."""

    def __init__(self, socket_factory=None):
        self.sockets: List[FakeWebSocket] = []
        self.failures: List[BaseException] = []
        self.calls = 0
        self._socket_factory = socket_factory or (lambda: FakeWebSocket())

    async def __call__(self, url: str) -> FakeWebSocket:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        ws = self._socket_factory()
        self.sockets.append(ws)
        return ws

    @property
    def current(self) -> Optional[FakeWebSocket]:
        return self.sockets[-1] if self.sockets else None


# ----------------------------------------------------------------------
# Media primitive
# ----------------------------------------------------------------------

class FakePeerConnection(AsyncIOEventEmitter):
    """RTCPeerConnection 대체물.

    offer/answer SDP에 로컬 트랙 종류를 기록하고, 원격 SDP를 적용하면 그
    종류의 트랙을 "track" 이벤트로 내보냅니다. 양쪽 description이 모두
    설정되면 connected로 전환합니다.
    """

    def __init__(self, ice_servers=None):
        super().__init__()
        self.ice_servers = ice_servers
        self.local_tracks: List[MediaStreamTrack] = []
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.connectionState = "new"
        self.candidates: List[Any] = []
        self.close_calls = 0
        self.fail_remote_description = False

    def addTrack(self, track):
        self.local_tracks.append(track)

    def _sdp(self, kind: str) -> str:
        kinds = ",".join(t.kind for t in self.local_tracks)
        return f"v=0\r\ns=fake-{kind}\r\nx-tracks:{kinds}\r\n"

    async def createOffer(self):
        return RTCSessionDescription(sdp=self._sdp("offer"), type="offer")

    async def createAnswer(self):
        if self.remoteDescription is None:
            raise ValueError("no remote offer")
        return RTCSessionDescription(sdp=self._sdp("answer"), type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self._maybe_connect()

    async def setRemoteDescription(self, description):
        if self.fail_remote_description:
            raise ValueError("unparseable session description")
        self.remoteDescription = description
        for line in description.sdp.split("\r\n"):
            if line.startswith("x-tracks:"):
                for kind in filter(None, line[len("x-tracks:"):].split(",")):
                    self.emit("track", FakeTrack(kind))
        self._maybe_connect()

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise AssertionError("candidate applied before remote description")
        self.candidates.append(candidate)

    async def close(self):
        self.close_calls += 1
        self.connectionState = "closed"

    def set_state(self, state: str) -> None:
        self.connectionState = state
        self.emit("connectionstatechange")

    def _maybe_connect(self):
        if self.localDescription is not None and self.remoteDescription is not None:
            if self.connectionState == "new":
                self.set_state("connected")


class PeerConnectionFactory:
    def __init__(self, auto_connect: bool = True):
        self.created: List[FakePeerConnection] = []
        self.auto_connect = auto_connect

    def __call__(self, ice_servers):
        pc = FakePeerConnection(ice_servers)
        if not self.auto_connect:
            pc._maybe_connect = lambda: None
        self.created.append(pc)
        return pc


class FakePlayer:
    def __init__(self, video=None, audio=None):
        self.video = video
        self.audio = audio


class FakePlayerFactory:
    """MediaPlayer 팩토리 대체물 (트랙은 이벤트 루프 스레드에서 미리 생성)."""

    def __init__(self, errors: Optional[Dict[str, BaseException]] = None):
        self.errors = errors or {}
        self.video_track = FakeTrack("video")
        self.audio_track = FakeTrack("audio")
        self.opened: List[str] = []

    def __call__(self, device: str, fmt: Optional[str], options: Dict[str, str]):
        if device in self.errors:
            raise self.errors[device]
        self.opened.append(device)
        if device.startswith("/dev/video"):
            return FakePlayer(video=self.video_track)
        return FakePlayer(audio=self.audio_track)


class GatedPlayerFactory(FakePlayerFactory):
    """gate가 열릴 때까지 장치 열기를 막는 팩토리 (워커 스레드에서 호출됨)."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()
        self.calls = 0

    def __call__(self, device: str, fmt: Optional[str], options: Dict[str, str]):
        self.calls += 1
        self.entered.set()
        self.gate.wait(timeout=5)
        return super().__call__(device, fmt, options)


# ----------------------------------------------------------------------
# In-memory relay
# ----------------------------------------------------------------------

class ServerSocket:
    """SignalingHub 쪽 WebSocket. send_text()는 클라이언트 FakeWebSocket으로 전달됩니다."""

    def __init__(self, client_ws: FakeWebSocket):
        self.client_ws = client_ws

    async def send_text(self, text: str) -> None:
        if not self.client_ws.closed:
            self.client_ws.feed(text)

    async def close(self) -> None:
        self.client_ws.drop()


class RelayBridge:
    """실제 SignalingHub를 인메모리로 연결하는 connector."""

    def __init__(self, hub: Optional[SignalingHub] = None):
        self.hub = hub or SignalingHub(RoomManager())
        self.sockets: List[FakeWebSocket] = []

    async def __call__(self, url: str) -> FakeWebSocket:
        peer_holder = {}

        async def forward(text: str) -> None:
            await self.hub.handle_text(peer_holder["peer"], text)

        ws = FakeWebSocket(on_send=forward)
        original_close = ws.close

        async def close():
            await original_close()
            await self.hub.unregister(peer_holder["peer"])

        ws.close = close
        peer_holder["peer"] = await self.hub.register(ServerSocket(ws))
        self.sockets.append(ws)
        return ws


def room_info(peer_id: str, room_id: Optional[str] = None, **payload) -> str:
    return make_envelope(EnvelopeType.ROOM_INFO, room_id=room_id, peer_id=peer_id, payload=payload or None).to_json()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


@pytest.fixture
def player_factory():
    return FakePlayerFactory()


@pytest.fixture
def relay():
    return RelayBridge()
