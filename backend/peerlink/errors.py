"""PeerLink 예외 정의 모듈.

피어 세션 관리자에서 발생하는 모든 오류는 PeerLinkError를 상속합니다.
애플리케이션 계층은 오류 종류에 따라 재시도 여부와 표시 방법을 결정합니다.

Hierarchy:
    PeerLinkError
    ├── SignalingUnavailableError   최초 시그널링 연결 실패
    ├── SignalingLostError          일시적 연결 끊김 (재연결 대상)
    ├── ReconnectExhaustedError     재연결 시도 소진 (최종 실패)
    ├── CaptureError
    │   ├── CaptureDeniedError      장치 접근 권한 거부
    │   ├── CaptureUnavailableError 장치 열기 실패
    │   └── CaptureCancelledError   장치를 여는 중 캡처가 해제됨
    ├── NegotiationError            단일 피어의 SDP/ICE 협상 실패
    ├── MalformedEnvelopeError      파싱 불가능한 시그널링 메시지
    └── RelayError                  릴레이가 보낸 error 메시지
        └── JoinTimeoutError        join 응답(room-info) 대기 시간 초과
"""
from typing import Optional


class PeerLinkError(Exception):
    """PeerLink 서브시스템의 최상위 예외."""


class SignalingUnavailableError(PeerLinkError):
    """시그널링 릴레이에 연결할 수 없음."""


class SignalingLostError(PeerLinkError):
    """열려 있던 시그널링 연결이 예기치 않게 끊어짐.

    재연결 감독자가 내부적으로 처리하며, 재시도가 모두 소진되기 전까지는
    애플리케이션에 노출되지 않습니다.
    """


class ReconnectExhaustedError(PeerLinkError):
    """재연결 최대 시도 횟수를 초과함."""

    def __init__(self, attempts: int):
        super().__init__(f"Reconnection failed after {attempts} attempts")
        self.attempts = attempts


class CaptureError(PeerLinkError):
    """로컬 미디어 장치 획득 실패. 자동 재시도하지 않음."""


class CaptureDeniedError(CaptureError):
    """카메라/마이크 접근 권한이 거부됨."""


class CaptureUnavailableError(CaptureError):
    """카메라/마이크 장치를 열 수 없음."""


class CaptureCancelledError(CaptureError):
    """장치를 여는 동안 leave_room/disconnect 또는 다른 룸 요청으로 취소됨."""


class NegotiationError(PeerLinkError):
    """특정 피어와의 세션 협상 실패.

    해당 PeerSession만 실패 처리되며 다른 피어나 시그널링 연결에는
    영향을 주지 않습니다.
    """

    def __init__(self, peer_id: str, message: str):
        super().__init__(f"[{peer_id}] {message}")
        self.peer_id = peer_id


class MalformedEnvelopeError(PeerLinkError):
    """JSON 파싱 실패 또는 알 수 없는 type의 시그널링 메시지."""


class RelayError(PeerLinkError):
    """릴레이가 error 메시지로 보고한 오류."""

    def __init__(self, message: str, room_id: Optional[str] = None):
        super().__init__(message)
        self.room_id = room_id


class JoinTimeoutError(RelayError):
    """join 요청 후 room-info 응답이 제한 시간 내에 오지 않음."""
