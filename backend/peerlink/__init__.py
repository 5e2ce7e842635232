"""PeerLink 패키지.

스트리머 한 대와 여러 뷰어 사이의 P2P 미디어 세션을 시그널링 릴레이를
통해 수립, 유지, 정리합니다. 미디어는 릴레이를 거치지 않습니다.

Modules:
    webrtc: 클라이언트 측 피어 세션 관리자
    relay: 시그널링 릴레이 룸 관리
    errors: 예외 계층
    logging_config: 진입점(릴레이, CLI)용 로깅 설정
"""

from .errors import (
    PeerLinkError,
    SignalingUnavailableError,
    SignalingLostError,
    ReconnectExhaustedError,
    CaptureError,
    CaptureDeniedError,
    CaptureUnavailableError,
    CaptureCancelledError,
    NegotiationError,
    MalformedEnvelopeError,
    RelayError,
    JoinTimeoutError,
)
from .webrtc import (
    ClientConfig,
    ConnectionState,
    PeerSessionClient,
    create_client,
)

__version__ = "0.1.0"
