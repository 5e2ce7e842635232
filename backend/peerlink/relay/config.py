"""시그널링 릴레이 설정.

룸 개수/뷰어 수 제한, 빈 룸 정리 주기, 접근 토큰 등 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


@dataclass(frozen=True)
class RelayConfig:
    """릴레이 룸 관리 설정."""

    # 동시에 존재할 수 있는 최대 룸 수
    MAX_ROOMS: int = int(os.getenv("RELAY_MAX_ROOMS", "1000"))

    # 룸당 최대 뷰어 수
    MAX_VIEWERS_PER_ROOM: int = int(os.getenv("RELAY_MAX_VIEWERS_PER_ROOM", "50"))

    # 빈 룸을 삭제하기까지의 유휴 시간 (초)
    ROOM_TIMEOUT: float = float(os.getenv("RELAY_ROOM_TIMEOUT", "300"))

    # 빈 룸 정리 주기 (초)
    CLEANUP_INTERVAL: float = float(os.getenv("RELAY_CLEANUP_INTERVAL", "60"))

    # WebSocket 접근 토큰 (비어 있으면 인증 없음)
    ACCESS_TOKEN: str = os.getenv("RELAY_ACCESS_TOKEN", "")

    @property
    def requires_token(self) -> bool:
        return bool(self.ACCESS_TOKEN)


relay_config = RelayConfig()

logger.info(
    f"[Relay Config] max_rooms={relay_config.MAX_ROOMS}, "
    f"max_viewers={relay_config.MAX_VIEWERS_PER_ROOM}, "
    f"room_timeout={relay_config.ROOM_TIMEOUT}s, "
    f"token_required={relay_config.requires_token}"
)
