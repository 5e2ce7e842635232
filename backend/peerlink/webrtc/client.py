"""피어 세션 클라이언트 (공개 API).

시그널링 연결, 재연결 감독, 룸 세션, 피어 연결 관리, 로컬 캡처를 하나의
명시적인 객체로 묶습니다. 프로세스 전역 상태가 없으므로 한 프로세스에서
여러 클라이언트를 독립적으로 실행할 수 있습니다.

Public API:
    - connect(): 릴레이 연결 (open까지 대기)
    - start_streaming(room_id): 캡처 획득 후 스트리머로 참여
    - join_as_viewer(room_id): 뷰어로 참여 (원격 스트림은 on_remote_stream으로 전달)
    - leave_room(), disconnect(): 즉시 효과가 나타나는 정리
    - get_state(), get_remote_streams(), get_local_stream()

Examples:
    >>> client = create_client(ClientConfig(
    ...     signaling_url="ws://localhost:8000/signaling",
    ...     on_remote_stream=lambda stream, peer_id: print(peer_id, stream),
    ... ))
    >>> await client.connect()
    >>> await client.join_as_viewer("room-42")
    >>> client.get_state()
    <ConnectionState.CONNECTING: 'connecting'>
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..errors import (
    CaptureCancelledError,
    PeerLinkError,
    ReconnectExhaustedError,
    SignalingLostError,
    SignalingUnavailableError,
)
from .config import IceServer, ReconnectConfig, ice_config, signaling_config
from .envelope import SignalingEnvelope
from .events import fire
from .peer_manager import TERMINAL_STATES, PeerConnectionManager, PeerState
from .reconnect import ReconnectSupervisor
from .room_session import LocalRole, RoomSession
from .signaling import Connector, SignalingLink
from .tracks import CaptureConstraints, LocalStreamHandle, MediaSessionBridge, PlayerFactory, RemoteStream

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """시그널링 연결과 모든 피어 세션을 합친 집계 상태."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass
class ClientConfig:
    """클라이언트 설정. 콜백은 모두 선택 사항입니다.

    Attributes:
        signaling_url (str): 릴레이 WebSocket URL
        ice_servers (List[IceServer]): STUN/TURN 서버 ({"urls": ...} dict도 허용)
        on_local_stream (Callable[[LocalStreamHandle], None]): 로컬 캡처 시작 시
        on_remote_stream (Callable[[RemoteStream, str], None]): 피어별 첫 트랙 수신 시
        on_state_change (Callable[[ConnectionState], None]): 집계 상태 변경 시
        on_error (Callable[[Exception], None]): 오류 보고 (기본: 로그 기록)
        reconnect (ReconnectConfig): 재연결 백오프 설정
        capture (CaptureConstraints): 캡처 장치/해상도 요청
        open_timeout (float): 시그널링 open 대기 시간 (초)
        join_timeout (float): room-info 대기 시간 (초)
    """

    signaling_url: str = signaling_config.SIGNALING_URL
    ice_servers: List[Any] = field(default_factory=ice_config.ice_servers)
    on_local_stream: Optional[Callable[[LocalStreamHandle], Any]] = None
    on_remote_stream: Optional[Callable[[RemoteStream, str], Any]] = None
    on_state_change: Optional[Callable[[ConnectionState], Any]] = None
    on_error: Optional[Callable[[Exception], Any]] = None
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    capture: CaptureConstraints = field(default_factory=CaptureConstraints)
    open_timeout: float = signaling_config.OPEN_TIMEOUT
    join_timeout: float = signaling_config.JOIN_TIMEOUT

    def __post_init__(self):
        self.ice_servers = [IceServer.coerce(server) for server in self.ice_servers]


class PeerSessionClient:
    """스트리머/뷰어 피어 세션 클라이언트.

    Attributes:
        config (ClientConfig): 클라이언트 설정
        link (SignalingLink): 릴레이 연결
        supervisor (ReconnectSupervisor): 재연결 감독
        media (MediaSessionBridge): 로컬 캡처 소유자
        peers (PeerConnectionManager): 피어별 협상 상태 머신
        room (RoomSession): 룸 멤버십과 이벤트 라우팅

    Note:
        - 연결이 예기치 않게 끊기면 피어 세션은 모두 closed 처리되고, 재연결에
          성공하면 같은 룸/역할로 자동 재참여
        - 재연결이 소진되면 상태는 failed, 룸과 로컬 캡처는 정리됨
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        connector: Optional[Connector] = None,
        peer_connection_factory: Optional[Callable[[List[IceServer]], Any]] = None,
        player_factory: Optional[PlayerFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or ClientConfig()

        self._started = False
        self._connecting = False
        self._failed = False
        self._state = ConnectionState.NEW
        self._tasks: Set[asyncio.Task] = set()

        # Bumped by every room request (start, join, leave, disconnect)
        self._room_epoch = 0
        # Epoch of the newest start_streaming, which owns the shared capture
        self._capture_epoch = 0

        self.link = SignalingLink(
            self.config.signaling_url,
            on_message=self._on_message,
            on_open=self._on_link_open,
            on_close=self._on_link_lost,
            connector=connector,
            open_timeout=self.config.open_timeout,
        )
        self.supervisor = ReconnectSupervisor(
            self.link.connect,
            on_exhausted=self._on_reconnect_exhausted,
            base_delay=self.config.reconnect.BASE_DELAY,
            max_delay=self.config.reconnect.MAX_DELAY,
            max_attempts=self.config.reconnect.MAX_ATTEMPTS,
            sleep=sleep,
        )
        self.media = MediaSessionBridge(player_factory)
        self.peers = PeerConnectionManager(
            self.link.send,
            ice_servers=self.config.ice_servers,
            local_tracks=self.media.local_tracks,
            peer_connection_factory=peer_connection_factory,
        )
        self.peers.on_remote_stream = self._on_remote_stream
        self.peers.on_state_change = self._on_peer_state
        self.peers.on_error = self._report_error
        self.peers.on_sessions_drained = self._refresh_state
        self.room = RoomSession(
            self.link.send,
            self.peers,
            self.media,
            join_timeout=self.config.join_timeout,
            on_error=self._report_error,
            on_change=self._refresh_state,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """시그널링 릴레이에 연결합니다.

        Raises:
            SignalingUnavailableError: 연결 실패 (자동 재시도하지 않음)
        """
        if self.link.is_open:
            return
        self._started = True
        self._failed = False
        self.supervisor.cancel()
        self._connecting = True
        self._refresh_state()
        try:
            await self.link.connect()
        except SignalingUnavailableError as e:
            logger.error(f"[WebRTC] 시그널링 연결 실패: {e}")
            raise
        finally:
            self._connecting = False
            self._refresh_state()

    async def start_streaming(self, room_id: str) -> LocalStreamHandle:
        """로컬 캡처를 시작하고 스트리머로 룸에 참여합니다.

        Args:
            room_id (str): 참여할 룸 ID

        Returns:
            LocalStreamHandle: 로컬 캡처 핸들

        Raises:
            SignalingUnavailableError: 시그널링에 연결되어 있지 않은 경우
            CaptureDeniedError, CaptureUnavailableError: 장치를 열 수 없는 경우
            CaptureCancelledError: 장치를 여는 동안 leave_room(), disconnect() 또는
                다른 룸 요청이 들어온 경우 (join은 보내지 않음)
            JoinTimeoutError, RelayError: 참여 실패 (캡처는 해제됨)
        """
        self._require_link(room_id)
        if self.room.membership is not None:
            self.leave_room()

        epoch = self._capture_epoch = self._next_room_epoch()
        handle = await self.media.acquire_local_capture(self.config.capture)
        if epoch != self._room_epoch:
            # A newer start shares this capture and keeps it
            if self._capture_epoch == epoch:
                self.media.release()
            logger.info(f"[WebRTC] 캡처 중 다른 룸 요청, 스트리밍 시작 취소: room={room_id}")
            raise CaptureCancelledError(f"Streaming start for room {room_id} was superseded")

        fire(self.config.on_local_stream, handle)
        try:
            await self.room.join(room_id, LocalRole.STREAMER)
        except (PeerLinkError, asyncio.CancelledError):
            if epoch == self._room_epoch:
                self.media.release()
            raise
        return handle

    async def join_as_viewer(self, room_id: str) -> None:
        """뷰어로 룸에 참여합니다. 원격 스트림은 on_remote_stream으로 전달됩니다."""
        self._require_link(room_id)
        if self.room.membership is not None:
            self.leave_room()
        self._next_room_epoch()
        await self.room.join(room_id, LocalRole.VIEWER)

    def leave_room(self) -> None:
        """룸을 떠납니다. 반환 시점에 모든 피어 세션은 closed, 캡처는 해제됨."""
        self._next_room_epoch()
        self.room.leave()
        self._refresh_state()

    def disconnect(self) -> None:
        """룸을 떠나고 시그널링 연결을 닫습니다 (재연결하지 않음)."""
        self._next_room_epoch()
        self.supervisor.cancel()
        self.room.leave()
        self.link.close()
        self._connecting = False
        self._refresh_state()
        logger.info("[WebRTC] 클라이언트 연결 해제")

    async def aclose(self) -> None:
        """disconnect() 후 백그라운드 종료 작업까지 기다립니다."""
        self.disconnect()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.peers.wait_closed()
        await self.link.wait_closed()

    def get_state(self) -> ConnectionState:
        """시그널링 연결과 피어 세션 상태를 합친 현재 상태."""
        if self._failed:
            return ConnectionState.FAILED
        if not self._started:
            return ConnectionState.NEW
        if not self.link.is_open:
            if self._connecting or self.supervisor.pending:
                return ConnectionState.CONNECTING
            return ConnectionState.DISCONNECTED

        states = self.peers.session_states()
        if PeerState.CONNECTED in states:
            return ConnectionState.CONNECTED
        if PeerState.NEGOTIATING in states:
            return ConnectionState.CONNECTING
        membership = self.room.membership
        if PeerState.DISCONNECTED in states or (membership is not None and membership.media_lost):
            return ConnectionState.DISCONNECTED
        return ConnectionState.CONNECTING

    def get_remote_streams(self) -> Dict[str, RemoteStream]:
        """피어 ID → 원격 스트림 스냅샷 (복사본이므로 자유롭게 순회 가능)."""
        return dict(self.peers.get_remote_streams())

    def get_local_stream(self) -> Optional[LocalStreamHandle]:
        return self.media.handle

    # ------------------------------------------------------------------
    # Link / supervisor events
    # ------------------------------------------------------------------

    def _on_message(self, envelope: SignalingEnvelope) -> None:
        self.room.dispatch(envelope)
        self._refresh_state()

    def _on_link_open(self) -> None:
        self.supervisor.notify_open()
        self._failed = False
        if self.room.suspended:
            self._spawn(self._resume_room())
        self._refresh_state()

    def _on_link_lost(self) -> None:
        # Retry must be pending before sessions close (state reads connecting)
        self.supervisor.notify_lost()
        if not self.supervisor.exhausted:
            self.room.suspend()
        self._refresh_state()

    def _on_reconnect_exhausted(self, error: ReconnectExhaustedError) -> None:
        self._failed = True
        self.room.abandon()
        self._report_error(error)
        self._refresh_state()

    async def _resume_room(self) -> None:
        epoch = self._room_epoch
        try:
            await self.room.resume()
        except SignalingLostError:
            logger.info("[WebRTC] 재참여 중 연결 끊김, 다음 재연결에서 재시도")
        except PeerLinkError as e:
            # Refused or timed-out rejoin ends streaming
            if epoch == self._room_epoch and self.room.membership is None:
                if self.media.release():
                    logger.warning("[WebRTC] 재참여 실패로 로컬 캡처 해제")
            self._report_error(e)
        self._refresh_state()

    # ------------------------------------------------------------------
    # Peer events
    # ------------------------------------------------------------------

    def _on_remote_stream(self, stream: RemoteStream, peer_id: str) -> None:
        logger.info(f"[WebRTC] 원격 스트림 수신: {peer_id[:8]}")
        fire(self.config.on_remote_stream, stream, peer_id)

    def _on_peer_state(self, peer_id: str, state: PeerState) -> None:
        if state in TERMINAL_STATES:
            self.room.note_media_ended()
        self._refresh_state()

    def _report_error(self, error: Exception) -> None:
        if self.config.on_error is None:
            logger.error(f"[WebRTC] {type(error).__name__}: {error}")
            return
        fire(self.config.on_error, error)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _refresh_state(self) -> None:
        state = self.get_state()
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.info(f"[WebRTC] 연결 상태: {previous.value} → {state.value}")
        fire(self.config.on_state_change, state)

    def _next_room_epoch(self) -> int:
        self._room_epoch += 1
        return self._room_epoch

    def _require_link(self, room_id: str) -> None:
        if not room_id:
            raise ValueError("room_id must be a non-empty string")
        if not self.link.is_open:
            raise SignalingUnavailableError("Not connected to signaling server")

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def create_client(config: Optional[ClientConfig] = None, **kwargs: Any) -> PeerSessionClient:
    """PeerSessionClient 팩토리.

    Args:
        config (Optional[ClientConfig]): 클라이언트 설정 (기본: 환경변수 기반)
        **kwargs: connector, peer_connection_factory 등 PeerSessionClient 옵션
    """
    return PeerSessionClient(config, **kwargs)
