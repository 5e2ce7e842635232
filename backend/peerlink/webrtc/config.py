"""WebRTC 클라이언트 설정.

시그널링 릴레이 주소, TURN/STUN 서버, 재연결 백오프, 캡처 장치 등
환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"[WebRTC Config] {name} 값이 올바르지 않음 ({value}), 기본값 {default} 사용")
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"[WebRTC Config] {name} 값이 올바르지 않음 ({value}), 기본값 {default} 사용")
        return default


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class IceServer:
    """ICE 서버 항목 하나 ({urls, username?, credential?})."""

    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None

    @classmethod
    def coerce(cls, value: Union["IceServer", str, Dict[str, Any]]) -> "IceServer":
        """IceServer, URL 문자열, {"urls": ...} dict를 IceServer로 변환합니다."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls(urls=value)
        if isinstance(value, dict) and value.get("urls"):
            return cls(
                urls=value["urls"],
                username=value.get("username"),
                credential=value.get("credential"),
            )
        raise ValueError(f"Invalid ICE server entry: {value!r}")


@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정."""

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (무료)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
        "stun:stun3.l.google.com:19302",
        "stun:stun4.l.google.com:19302",
    )

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def ice_servers(self) -> List[IceServer]:
        """설정된 STUN/TURN 서버 목록 (전용 STUN → 공개 STUN → TURN 순)."""
        servers = []
        if self.STUN_SERVER_URL:
            servers.append(IceServer(urls=self.STUN_SERVER_URL))
        servers.extend(IceServer(urls=url) for url in self.DEFAULT_STUN_SERVERS)
        if self.has_turn_server:
            servers.append(IceServer(
                urls=self.TURN_SERVER_URL,
                username=self.TURN_USERNAME,
                credential=self.TURN_CREDENTIAL,
            ))
        return servers


# ============================================================
# 시그널링 연결 설정
# ============================================================

@dataclass(frozen=True)
class SignalingConfig:
    """시그널링 릴레이 연결 설정."""

    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:8000/signaling")

    # WebSocket open 대기 시간 (초)
    OPEN_TIMEOUT: float = _env_float("SIGNALING_OPEN_TIMEOUT", 10.0)

    # join 후 room-info 대기 시간 (초)
    JOIN_TIMEOUT: float = _env_float("SIGNALING_JOIN_TIMEOUT", 10.0)


# ============================================================
# 재연결 백오프
# ============================================================

@dataclass(frozen=True)
class ReconnectConfig:
    """시그널링 재연결 백오프 설정.

    delay(attempt) = min(BASE_DELAY * 2**attempt, MAX_DELAY)
    """

    BASE_DELAY: float = _env_float("RECONNECT_BASE_DELAY", 1.0)
    MAX_DELAY: float = _env_float("RECONNECT_MAX_DELAY", 30.0)
    MAX_ATTEMPTS: int = _env_int("RECONNECT_MAX_ATTEMPTS", 5)


# ============================================================
# 로컬 캡처 장치
# ============================================================

@dataclass(frozen=True)
class CaptureConfig:
    """카메라/마이크 장치 설정 (aiortc MediaPlayer 입력)."""

    VIDEO_DEVICE: str = os.getenv("CAPTURE_VIDEO_DEVICE", "/dev/video0")
    VIDEO_FORMAT: str = os.getenv("CAPTURE_VIDEO_FORMAT", "v4l2")
    AUDIO_DEVICE: str = os.getenv("CAPTURE_AUDIO_DEVICE", "default")
    AUDIO_FORMAT: str = os.getenv("CAPTURE_AUDIO_FORMAT", "pulse")

    # 희망 해상도/프레임레이트
    WIDTH: int = 1280
    HEIGHT: int = 720
    FRAME_RATE: int = 30


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
signaling_config = SignalingConfig()
reconnect_config = ReconnectConfig()
capture_config = CaptureConfig()


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[WebRTC Config] 시그널링 URL: {signaling_config.SIGNALING_URL}")
logger.info(f"[WebRTC Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
if ice_config.STUN_SERVER_URL:
    logger.info(f"[WebRTC Config] STUN URL: {ice_config.STUN_SERVER_URL}")
else:
    logger.info(f"[WebRTC Config] STUN URL: 기본 Google STUN 사용")
logger.info(
    f"[WebRTC Config] 재연결: base={reconnect_config.BASE_DELAY}s, "
    f"cap={reconnect_config.MAX_DELAY}s, max={reconnect_config.MAX_ATTEMPTS}회"
)
