"""애플리케이션 콜백 호출 헬퍼."""
import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def fire(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """콜백을 호출하고 예외가 디스패치 루프로 전파되지 않게 합니다.

    코루틴 함수가 전달되면 태스크로 스케줄링합니다 (결과를 기다리지 않음).
    """
    if callback is None:
        return
    try:
        result = callback(*args)
    except Exception:
        logger.exception(f"[WebRTC] 콜백 {getattr(callback, '__name__', callback)!r} 실행 중 오류")
        return
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        task.add_done_callback(_log_task_error)


def _log_task_error(task: "asyncio.Future") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"[WebRTC] 비동기 콜백 오류: {type(error).__name__}: {error}", exc_info=error)
