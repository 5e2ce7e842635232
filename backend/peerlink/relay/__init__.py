"""시그널링 릴레이 모듈.

스트리머/뷰어 피어 사이의 연결 수립 메시지를 중계합니다.

Classes:
    SignalingHub: WebSocket 피어 등록 및 메시지 중계
    RoomManager: 룸 및 참가자 관리
    Room: 스트리머 한 명과 뷰어들로 구성된 룸
    RelayPeer: 릴레이에 연결된 피어

Config:
    relay_config: 룸 제한 및 정리 주기 설정
"""

from .config import RelayConfig, relay_config
from .room_manager import Room, RoomManager
from .hub import RelayPeer, SignalingHub

__all__ = [
    # Classes
    "SignalingHub",
    "RoomManager",
    "Room",
    "RelayPeer",
    # Config
    "relay_config",
    "RelayConfig",
]
