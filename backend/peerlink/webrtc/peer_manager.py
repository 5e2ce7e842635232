"""WebRTC 피어 연결 관리 모듈.

이 모듈은 원격 피어마다 하나의 협상 상태 머신(PeerSession)을 관리합니다.
스트리머 한 명이 여러 뷰어에게 미디어를 보내는 1:N 구조에서 각 피어와의
offer/answer/ICE 교환을 독립적으로 진행하고, 실패하거나 떠난 피어의
리소스를 정확히 한 번 회수합니다.

주요 기능:
    - 피어별 RTCPeerConnection 생성 및 로컬 트랙 연결
    - offer/answer 교환 (initiator/responder 역할 구분)
    - ICE candidate 적용 (remote description 이전 도착분은 보류 후 적용)
    - 연결 상태 추적 및 실패/종료 시 정리
    - 수신 트랙을 피어별 RemoteStream으로 집계

Architecture:
    - sessions: Dict[str, PeerSession] - 피어 ID → 세션 (단일 writer: 이벤트 루프)
    - 피어별 mailbox(asyncio.Queue) + 워커 태스크: 한 피어의 느린 협상이
      다른 피어의 메시지 처리를 막지 않음, 피어 내 메시지 순서는 보존

PeerSession States:
    new → negotiating → connected ⇄ disconnected
    any → failed (전송 계층 최종 실패, 협상 오류)
    any → closed (peer-left, leave, disconnect)

Examples:
    기본 사용법:
        >>> manager = PeerConnectionManager(link.send, local_tracks=bridge.local_tracks)
        >>> manager.create_session("viewer-1", is_initiator=True)  # offer 자동 전송
        >>> manager.handle_remote_answer("viewer-1", {"type": "answer", "sdp": "..."})
        >>> manager.close_session("viewer-1")

See Also:
    room_session.py: 룸 이벤트 해석 및 협상 메시지 라우팅
    aiortc Documentation: https://aiortc.readthedocs.io/
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import NegotiationError
from .config import IceServer
from .envelope import EnvelopeType, SignalingEnvelope, make_envelope
from .events import fire
from .tracks import RemoteStream

logger = logging.getLogger(__name__)


class PeerState(str, Enum):
    """PeerSession 연결 상태."""

    NEW = "new"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({PeerState.FAILED, PeerState.CLOSED})


class PeerRole(str, Enum):
    """협상에서의 역할. initiator가 offer를 만든다."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


def create_rtc_peer_connection(ice_servers: List[IceServer]) -> RTCPeerConnection:
    """기본 피어 연결 팩토리: 설정된 STUN/TURN 서버로 RTCPeerConnection 생성."""
    config = RTCConfiguration(iceServers=[
        RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
        for server in ice_servers
    ])
    return RTCPeerConnection(configuration=config)


def candidate_from_payload(payload: Any) -> Optional[RTCIceCandidate]:
    """ice-candidate payload를 aiortc RTCIceCandidate로 변환합니다.

    Args:
        payload: {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}

    Returns:
        Optional[RTCIceCandidate]: 변환된 후보. 빈 candidate(end-of-candidates)는 None

    Raises:
        ValueError: payload 형식이 잘못된 경우
    """
    if not isinstance(payload, dict):
        raise ValueError("candidate payload must be an object")
    sdp = payload.get("candidate")
    if not sdp:
        return None
    if not isinstance(sdp, str):
        raise ValueError("candidate must be a string")
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    # foundation component protocol priority ip port "typ" type
    if len(sdp.split()) < 8:
        raise ValueError(f"incomplete candidate: {sdp!r}")
    try:
        candidate = candidate_from_sdp(sdp)
    except (IndexError, ValueError) as e:
        raise ValueError(f"unparseable candidate: {sdp!r}") from e
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def candidate_to_payload(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """RTCIceCandidate를 wire payload로 변환합니다 (브라우저 toJSON()과 같은 형태)."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


@dataclass
class PeerSession:
    """원격 피어 하나와의 협상 상태.

    Attributes:
        peer_id (str): 원격 피어 ID
        role (PeerRole): initiator(offer 송신) 또는 responder
        pc (RTCPeerConnection): 기반 피어 연결
        state (PeerState): 현재 상태
        local_tracks_attached (bool): 로컬 트랙이 연결되었는지 여부
        remote_stream (RemoteStream): 수신 트랙 묶음 (이 세션이 독점 소유)
        remote_description_set (bool): remote description 적용 여부
        pending_candidates (List[Any]): remote description 이전에 도착한 candidate
    """

    peer_id: str
    role: PeerRole
    pc: Any
    state: PeerState = PeerState.NEW
    local_tracks_attached: bool = False
    remote_stream: Optional[RemoteStream] = None
    remote_description_set: bool = False
    local_offer_sent: bool = False
    stream_announced: bool = False
    pending_candidates: List[Any] = field(default_factory=list)
    mailbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    worker: Optional[asyncio.Task] = None

    def __post_init__(self):
        if self.remote_stream is None:
            self.remote_stream = RemoteStream(self.peer_id)

    @property
    def is_initiator(self) -> bool:
        return self.role is PeerRole.INITIATOR


class PeerConnectionManager:
    """원격 피어별 협상 상태 머신을 관리하는 클래스.

    Attributes:
        sessions (Dict[str, PeerSession]): 피어 ID → 살아있는 세션
        ice_servers (List[IceServer]): 피어 연결에 사용할 STUN/TURN 서버
        on_remote_stream (Callable[[RemoteStream, str], None]): 피어의 첫 트랙 수신 시
        on_state_change (Callable[[str, PeerState], None]): 세션 상태 변경 시
        on_error (Callable[[Exception], None]): 피어 실패 보고
        on_sessions_drained (Callable[[], None]): 마지막 세션이 제거되었을 때

    WebRTC Connection Lifecycle:
        1. create_session(): 피어 연결 생성, 로컬 트랙 연결, initiator면 offer 전송
        2. handle_remote_offer/answer/candidate(): 피어 mailbox에 적재 → 워커가 순서대로 처리
        3. connectionstatechange: connected/disconnected/failed/closed 반영
        4. close_session()/close_all(): 세션 제거 및 리소스 정리 (정확히 한 번)
    """

    def __init__(
        self,
        send: Callable[[SignalingEnvelope], None],
        *,
        ice_servers: Optional[List[IceServer]] = None,
        local_tracks: Optional[Callable[[], List[MediaStreamTrack]]] = None,
        peer_connection_factory: Optional[Callable[[List[IceServer]], Any]] = None,
    ):
        self._send = send
        self.ice_servers: List[IceServer] = list(ice_servers or [])
        self._local_tracks = local_tracks or (lambda: [])
        self._pc_factory = peer_connection_factory or create_rtc_peer_connection

        # peer_id -> PeerSession
        self.sessions: Dict[str, PeerSession] = {}

        # peer_id -> candidates received before any session existed
        self._early_candidates: Dict[str, List[Any]] = {}

        # pc.close() tasks in flight
        self._closing: Set[asyncio.Task] = set()

        self.on_remote_stream: Optional[Callable[[RemoteStream, str], Any]] = None
        self.on_state_change: Optional[Callable[[str, PeerState], Any]] = None
        self.on_error: Optional[Callable[[Exception], Any]] = None
        self.on_sessions_drained: Optional[Callable[[], Any]] = None

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(self, peer_id: str, is_initiator: bool) -> PeerSession:
        """새 피어 세션을 만들고 협상을 시작합니다.

        RTCPeerConnection을 생성하고 이벤트 핸들러를 등록한 뒤, 로컬 캡처
        트랙이 있으면 먼저 연결합니다. initiator이면 첫 offer가 이미 로컬
        트랙을 광고하도록 트랙 연결 후 offer 생성을 예약합니다.

        Args:
            peer_id (str): 원격 피어 ID
            is_initiator (bool): True면 offer를 만들어 전송

        Returns:
            PeerSession: 생성된 세션. 이미 있으면 기존 세션

        Note:
            - 세션은 동기적으로 sessions에 등록됨 (이후 도착하는 메시지가 바로 라우팅됨)
            - 피어보다 먼저 도착한 ICE candidate는 세션으로 옮겨져 보류됨
        """
        existing = self.sessions.get(peer_id)
        if existing is not None:
            logger.debug(f"[WebRTC] 피어 {peer_id[:8]} 세션 이미 존재 ({existing.state.value})")
            return existing

        role = PeerRole.INITIATOR if is_initiator else PeerRole.RESPONDER
        pc = self._pc_factory(self.ice_servers)
        session = PeerSession(peer_id=peer_id, role=role, pc=pc)
        self.sessions[peer_id] = session
        logger.info(f"[WebRTC] 피어 세션 생성: peer={peer_id[:8]}, role={role.value}")

        self._bind_events(session)

        tracks = self._local_tracks()
        for track in tracks:
            pc.addTrack(track)
        session.local_tracks_attached = bool(tracks)
        if tracks:
            logger.info(f"[WebRTC] 로컬 트랙 {len(tracks)}개 연결: {peer_id[:8]}")

        early = self._early_candidates.pop(peer_id, None)
        if early:
            session.pending_candidates.extend(early)
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} 선도착 ICE 후보 {len(early)}개 보류")

        self._transition(session, PeerState.NEGOTIATING)
        session.worker = asyncio.create_task(self._run_mailbox(session))
        if is_initiator:
            session.mailbox.put_nowait(("create-offer", None))
        return session

    def close_session(self, peer_id: str) -> bool:
        """피어 세션을 정상 종료(closed)합니다. 존재하지 않아도 안전함."""
        self._early_candidates.pop(peer_id, None)
        return self._retire(peer_id, PeerState.CLOSED)

    def close_all(self) -> None:
        """모든 세션을 closed로 정리합니다 (leave/disconnect 일괄 종료).

        호출이 반환되면 모든 세션은 맵에서 제거되어 있고, 진행 중이던 협상
        워커는 취소되어 이후 메시지를 보내지 않습니다.
        """
        self._early_candidates.clear()
        for peer_id in list(self.sessions.keys()):
            self._retire(peer_id, PeerState.CLOSED)

    async def cleanup_all(self) -> None:
        """모든 세션을 정리하고 피어 연결 종료가 끝날 때까지 기다립니다."""
        self.close_all()
        await self.wait_closed()

    async def wait_closed(self) -> None:
        """진행 중인 pc.close() 작업을 기다립니다."""
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    # ------------------------------------------------------------------
    # Inbound negotiation messages
    # ------------------------------------------------------------------

    def handle_remote_offer(self, peer_id: str, payload: Any) -> None:
        """원격 offer를 처리합니다. 처음 보는 피어면 responder 세션을 만듭니다."""
        session = self.sessions.get(peer_id)
        if session is None:
            session = self.create_session(peer_id, is_initiator=False)
        session.mailbox.put_nowait(("offer", payload))

    def handle_remote_answer(self, peer_id: str, payload: Any) -> None:
        """원격 answer를 해당 피어의 mailbox에 넣습니다."""
        session = self.sessions.get(peer_id)
        if session is None:
            logger.warning(f"[WebRTC] 알 수 없는 피어 {peer_id[:8]}의 answer 무시")
            return
        session.mailbox.put_nowait(("answer", payload))

    def handle_remote_candidate(self, peer_id: str, payload: Any) -> None:
        """원격 ICE candidate를 처리합니다.

        세션이 아직 없으면 피어별 선도착 버퍼에 보관했다가 세션 생성 시
        넘겨주고, 세션이 있으면 mailbox 순서대로 처리합니다. 어느 경우에도
        remote description이 설정되기 전에는 적용하지 않고 보류합니다.
        """
        session = self.sessions.get(peer_id)
        if session is None:
            self._early_candidates.setdefault(peer_id, []).append(payload)
            logger.debug(f"[WebRTC] 세션 없는 피어 {peer_id[:8]}의 ICE 후보 보관")
            return
        session.mailbox.put_nowait(("candidate", payload))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, peer_id: str) -> Optional[PeerSession]:
        return self.sessions.get(peer_id)

    def has_session(self, peer_id: str) -> bool:
        return peer_id in self.sessions

    def session_states(self) -> List[PeerState]:
        return [session.state for session in self.sessions.values()]

    def get_remote_streams(self) -> Dict[str, RemoteStream]:
        """트랙을 하나 이상 받은 피어의 스트림 스냅샷 (복사본)."""
        return {
            peer_id: session.remote_stream
            for peer_id, session in self.sessions.items()
            if session.remote_stream.tracks
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _bind_events(self, session: PeerSession) -> None:
        pc = session.pc
        peer_id = session.peer_id

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            """수신 트랙을 피어 스트림에 추가하고 첫 트랙이면 스트림을 알립니다."""
            if not self._is_live(session):
                track.stop()
                return
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} {track.kind} 트랙 수신")
            session.remote_stream.add_track(track)
            if not session.stream_announced:
                session.stream_announced = True
                fire(self.on_remote_stream, session.remote_stream, peer_id)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} 연결 상태: {pc.connectionState}")
            self._on_transport_state(session, pc.connectionState)

        @pc.on("icecandidate")
        def on_ice_candidate(candidate: Optional[RTCIceCandidate]):
            if candidate is None or not self._is_live(session):
                return
            self._send(make_envelope(
                EnvelopeType.ICE_CANDIDATE,
                target_peer_id=peer_id,
                payload=candidate_to_payload(candidate),
            ))

    def _on_transport_state(self, session: PeerSession, transport_state: str) -> None:
        if not self._is_live(session):
            return
        if transport_state == "connected":
            self._transition(session, PeerState.CONNECTED)
        elif transport_state == "disconnected":
            if session.state in (PeerState.CONNECTED, PeerState.NEGOTIATING):
                self._transition(session, PeerState.DISCONNECTED)
        elif transport_state == "failed":
            self._retire(
                session.peer_id,
                PeerState.FAILED,
                NegotiationError(session.peer_id, "media transport failed"),
            )
        elif transport_state == "closed":
            self._retire(session.peer_id, PeerState.CLOSED)

    async def _run_mailbox(self, session: PeerSession) -> None:
        """피어 하나의 협상 메시지를 도착 순서대로 처리하는 워커."""
        handlers = {
            "create-offer": self._send_offer,
            "offer": self._accept_offer,
            "answer": self._accept_answer,
            "candidate": self._add_candidate,
        }
        while True:
            kind, payload = await session.mailbox.get()
            if not self._is_live(session):
                return
            try:
                await handlers[kind](session, payload)
            except NegotiationError as e:
                logger.error(f"[WebRTC] 피어 {session.peer_id[:8]} 협상 실패: {e}")
                self._retire(session.peer_id, PeerState.FAILED, e)
                return
            except (ValueError, InvalidAccessError, InvalidStateError) as e:
                error = NegotiationError(session.peer_id, f"{kind} rejected: {e}")
                error.__cause__ = e
                logger.error(f"[WebRTC] 피어 {session.peer_id[:8]} {kind} 처리 실패: {e}")
                self._retire(session.peer_id, PeerState.FAILED, error)
                return
            except Exception as e:
                logger.exception(f"[WebRTC] 피어 {session.peer_id[:8]} {kind} 처리 중 예기치 않은 오류")
                error = NegotiationError(session.peer_id, f"{kind} failed: {type(e).__name__}: {e}")
                error.__cause__ = e
                self._retire(session.peer_id, PeerState.FAILED, error)
                return

    async def _send_offer(self, session: PeerSession, _payload: Any) -> None:
        pc = session.pc
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        if not self._is_live(session):
            return
        self._send(make_envelope(
            EnvelopeType.OFFER,
            target_peer_id=session.peer_id,
            payload=self._description_payload(pc),
        ))
        session.local_offer_sent = True
        candidate_count = pc.localDescription.sdp.count("a=candidate:")
        logger.info(f"[WebRTC] offer 전송: {session.peer_id[:8]}, SDP 후보 수={candidate_count}")

    async def _accept_offer(self, session: PeerSession, payload: Any) -> None:
        if session.is_initiator:
            raise NegotiationError(session.peer_id, "received offer while acting as initiator")
        description = self._parse_description(session, payload, "offer")

        pc = session.pc
        await pc.setRemoteDescription(description)
        session.remote_description_set = True
        await self._flush_candidates(session)

        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        if not self._is_live(session):
            return
        self._send(make_envelope(
            EnvelopeType.ANSWER,
            target_peer_id=session.peer_id,
            payload=self._description_payload(pc),
        ))
        logger.info(f"[WebRTC] answer 전송: {session.peer_id[:8]}")

    async def _accept_answer(self, session: PeerSession, payload: Any) -> None:
        if not session.is_initiator or not session.local_offer_sent:
            raise NegotiationError(session.peer_id, "received answer without a pending local offer")
        if session.remote_description_set:
            raise NegotiationError(session.peer_id, "received duplicate answer")
        description = self._parse_description(session, payload, "answer")

        await session.pc.setRemoteDescription(description)
        session.remote_description_set = True
        logger.info(f"[WebRTC] answer 적용: {session.peer_id[:8]}")
        await self._flush_candidates(session)

    async def _add_candidate(self, session: PeerSession, payload: Any) -> None:
        if not session.remote_description_set:
            session.pending_candidates.append(payload)
            logger.debug(f"[WebRTC] 피어 {session.peer_id[:8]} ICE 후보 보류 (remote description 대기)")
            return
        await self._apply_candidate(session, payload)

    async def _flush_candidates(self, session: PeerSession) -> None:
        pending, session.pending_candidates = session.pending_candidates, []
        if pending:
            logger.info(f"[WebRTC] 피어 {session.peer_id[:8]} 보류된 ICE 후보 {len(pending)}개 적용")
        for payload in pending:
            await self._apply_candidate(session, payload)

    async def _apply_candidate(self, session: PeerSession, payload: Any) -> None:
        try:
            candidate = candidate_from_payload(payload)
        except ValueError as e:
            logger.warning(f"[WebRTC] 피어 {session.peer_id[:8]} 잘못된 ICE 후보 무시: {e}")
            return
        if candidate is None:
            return
        await session.pc.addIceCandidate(candidate)

    def _parse_description(self, session: PeerSession, payload: Any, expected: str) -> RTCSessionDescription:
        if not isinstance(payload, dict):
            raise NegotiationError(session.peer_id, f"{expected} payload must be an object")
        sdp = payload.get("sdp")
        sdp_type = payload.get("type", expected)
        if not isinstance(sdp, str) or not sdp:
            raise NegotiationError(session.peer_id, f"{expected} payload has no sdp")
        if sdp_type != expected:
            raise NegotiationError(session.peer_id, f"expected {expected} description, got {sdp_type!r}")
        return RTCSessionDescription(sdp=sdp, type=sdp_type)

    @staticmethod
    def _description_payload(pc: Any) -> Dict[str, str]:
        return {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp}

    def _is_live(self, session: PeerSession) -> bool:
        return self.sessions.get(session.peer_id) is session

    def _transition(self, session: PeerSession, state: PeerState) -> None:
        if session.state is state:
            return
        previous, session.state = session.state, state
        logger.info(f"[WebRTC] 피어 {session.peer_id[:8]} 상태: {previous.value} → {state.value}")
        fire(self.on_state_change, session.peer_id, state)

    def _retire(self, peer_id: str, state: PeerState, error: Optional[Exception] = None) -> bool:
        """세션을 맵에서 제거하고 리소스를 정리합니다.

        모든 종료 경로(peer-left, 실패, leave/disconnect)가 이 메서드를 거치며,
        맵에서 pop한 호출만 정리를 수행하므로 두 번 호출되어도 정리는 한 번만
        일어납니다.

        Cleanup Steps:
            1. sessions에서 제거
            2. 협상 워커 취소
            3. 수신 트랙 정지
            4. RTCPeerConnection 종료 예약
            5. 상태 변경/오류 알림, 마지막 세션이면 on_sessions_drained

        Returns:
            bool: 이번 호출에서 실제로 정리했으면 True
        """
        session = self.sessions.pop(peer_id, None)
        if session is None:
            return False

        worker = session.worker
        if worker is not None and worker is not asyncio.current_task() and not worker.done():
            worker.cancel()
        session.pending_candidates.clear()
        session.remote_stream.stop()
        self._schedule_close(session.pc)

        self._transition(session, state)
        logger.info(f"[WebRTC] 피어 {peer_id[:8]} 세션 종료 ({state.value}), 남은 세션 {len(self.sessions)}개")
        if error is not None:
            fire(self.on_error, error)
        if not self.sessions:
            fire(self.on_sessions_drained)
        return True

    def _schedule_close(self, pc: Any) -> None:
        task = asyncio.ensure_future(pc.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
