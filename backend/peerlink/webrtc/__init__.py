"""WebRTC 모듈.

시그널링 릴레이 연결, 재연결, 룸 세션, 피어별 협상, 로컬 캡처 기능을
제공합니다.

Classes:
    PeerSessionClient: 공개 API (connect, start_streaming, join_as_viewer, ...)
    PeerConnectionManager: 피어별 협상 상태 머신 관리
    RoomSession: 룸 이벤트 해석 및 메시지 라우팅
    SignalingLink: 릴레이 WebSocket 연결
    ReconnectSupervisor: 지수 백오프 재연결
    MediaSessionBridge: 로컬 캡처 획득/해제

Config:
    ice_config: ICE 서버 설정
    signaling_config: 시그널링 연결 설정
    reconnect_config: 재연결 백오프 설정
    capture_config: 캡처 장치 설정
"""

from .envelope import EnvelopeType, SignalingEnvelope, make_envelope, parse_envelope
from .signaling import SignalingLink
from .reconnect import ReconnectSupervisor, backoff_delay
from .tracks import CaptureConstraints, LocalStreamHandle, MediaSessionBridge, RemoteStream
from .peer_manager import PeerConnectionManager, PeerRole, PeerSession, PeerState
from .room_session import LocalRole, RoomMembership, RoomSession
from .client import ClientConfig, ConnectionState, PeerSessionClient, create_client
from .config import (
    ice_config,
    signaling_config,
    reconnect_config,
    capture_config,
    IceServer,
    ICEServerConfig,
    SignalingConfig,
    ReconnectConfig,
    CaptureConfig,
)

__all__ = [
    # Envelope
    "EnvelopeType",
    "SignalingEnvelope",
    "make_envelope",
    "parse_envelope",
    # Classes
    "SignalingLink",
    "ReconnectSupervisor",
    "backoff_delay",
    "CaptureConstraints",
    "LocalStreamHandle",
    "MediaSessionBridge",
    "RemoteStream",
    "PeerConnectionManager",
    "PeerRole",
    "PeerSession",
    "PeerState",
    "LocalRole",
    "RoomMembership",
    "RoomSession",
    "ClientConfig",
    "ConnectionState",
    "PeerSessionClient",
    "create_client",
    # Config
    "ice_config",
    "signaling_config",
    "reconnect_config",
    "capture_config",
    "IceServer",
    "ICEServerConfig",
    "SignalingConfig",
    "ReconnectConfig",
    "CaptureConfig",
]
