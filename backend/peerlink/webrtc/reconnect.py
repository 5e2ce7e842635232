"""시그널링 재연결 감독 모듈.

예기치 않은 연결 종료 시 지수 백오프로 재연결을 시도하고, 최대 시도
횟수를 넘으면 더 이상 예약하지 않고 최종 오류를 보고합니다.

    delay(attempt) = min(base * 2**attempt, cap)

기본값(base=1s, cap=30s, max_attempts=5)에서 연속 실패 시 대기 시간은
1s, 2s, 4s, 8s, 16s 이며 여섯 번째 종료에서 ReconnectExhaustedError가
발생합니다. 재연결에 성공하면 attempt는 0으로 초기화됩니다.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..errors import ReconnectExhaustedError, SignalingUnavailableError

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """attempt번째 재연결 전 대기 시간 (초)."""
    return min(base * (2 ** attempt), cap)


class ReconnectSupervisor:
    """시그널링 연결의 재연결을 관리하는 클래스.

    Attributes:
        attempt (int): 다음 재연결 시도 번호 (0부터 시작)
        base_delay (float): 첫 대기 시간 (초)
        max_delay (float): 대기 시간 상한 (초)
        max_attempts (int): 최대 재연결 시도 횟수
        exhausted (bool): 재시도가 소진되었는지 여부

    Note:
        - notify_lost()는 명시적 disconnect가 아닌 종료에만 호출해야 함
        - 재연결 시도 자체가 실패하면 연속 종료로 간주해 다음 시도를 예약
        - sleep은 테스트에서 대기 없이 백오프를 검증하기 위해 주입 가능
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[None]],
        *,
        on_exhausted: Optional[Callable[[ReconnectExhaustedError], None]] = None,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._connect = connect
        self.on_exhausted = on_exhausted
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self._sleep = sleep

        self.attempt = 0
        self.exhausted = False
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        """재연결 시도가 예약되어 있거나 진행 중인지 여부."""
        return self._task is not None and not self._task.done()

    def delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.max_delay)

    def notify_open(self) -> None:
        """연결 성공 시 호출. 시도 횟수를 초기화합니다."""
        if self.attempt:
            logger.info(f"[Signaling] 재연결 성공 ({self.attempt}번째 시도)")
        self.attempt = 0
        self.exhausted = False

    def notify_lost(self) -> Optional[float]:
        """예기치 않은 종료 시 호출. 다음 시도를 예약합니다.

        Returns:
            Optional[float]: 예약된 대기 시간. 소진되었거나 이미 예약된 경우 None
        """
        if self.pending:
            return None

        if self.attempt >= self.max_attempts:
            self.exhausted = True
            error = ReconnectExhaustedError(self.attempt)
            logger.error(f"[Signaling] 재연결 중단: {error}")
            if self.on_exhausted:
                self.on_exhausted(error)
            return None

        delay = self.delay(self.attempt)
        self.attempt += 1
        logger.warning(
            f"[Signaling] {delay:.0f}초 후 재연결 시도 ({self.attempt}/{self.max_attempts})"
        )
        self._task = asyncio.create_task(self._retry(delay))
        return delay

    def cancel(self) -> None:
        """예약된 재연결을 취소합니다 (명시적 disconnect)."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _retry(self, delay: float) -> None:
        await self._sleep(delay)
        try:
            await self._connect()
        except SignalingUnavailableError as e:
            logger.warning(f"[Signaling] 재연결 실패: {e}")
            self._task = None
            self.notify_lost()
            return
        self._task = None
