"""시그널링 릴레이 연결 모듈.

릴레이와의 WebSocket 연결 하나를 소유하고, 송신 메시지를 직렬화하며
수신 메시지를 봉투로 변환해 소유자에게 전달합니다. 프로토콜 의미
(join, offer 등)는 해석하지 않습니다.

Flow:
    1. connect(): WebSocket open 대기 → reader/writer 태스크 시작 → on_open()
    2. reader: 수신 순서대로 parse_envelope() → on_message(envelope)
    3. writer: send()로 쌓인 메시지를 순서대로 전송
    4. 원격 종료 감지 시 on_close() (로컬 close()로 닫은 경우는 호출하지 않음)

Examples:
    >>> link = SignalingLink("ws://localhost:8000/signaling",
    ...                      on_message=handle, on_close=lost)
    >>> await link.connect()
    >>> link.send(make_envelope(EnvelopeType.JOIN, room_id="room-42"))
    >>> link.close()
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..errors import MalformedEnvelopeError, SignalingUnavailableError
from .envelope import SignalingEnvelope, parse_envelope

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]


async def websocket_connector(url: str):
    """기본 전송 계층: websockets 클라이언트 연결."""
    return await websockets.connect(url, ping_interval=20, ping_timeout=10)


class SignalingLink:
    """릴레이 제어 연결 하나를 관리하는 클래스.

    인스턴스당 실제 연결은 항상 최대 하나입니다. 열린 상태에서 connect()를
    다시 호출하면 기존 연결을 먼저 정리합니다.

    Attributes:
        url (str): 릴레이 WebSocket URL
        open_timeout (float): open 대기 시간 (초)
        on_message (Callable[[SignalingEnvelope], None]): 수신 봉투 콜백
        on_open (Callable[[], None]): 연결 성공 콜백
        on_close (Callable[[], None]): 예기치 않은 종료 콜백
    """

    # close() 시 남은 송신 메시지를 비우는 최대 대기 시간 (초)
    CLOSE_FLUSH_TIMEOUT = 2.0

    def __init__(
        self,
        url: str,
        *,
        on_message: Optional[Callable[[SignalingEnvelope], None]] = None,
        on_open: Optional[Callable[[], None]] = None,
        on_close: Optional[Callable[[], None]] = None,
        connector: Optional[Connector] = None,
        open_timeout: float = 10.0,
    ):
        self.url = url
        self.open_timeout = open_timeout
        self.on_message = on_message
        self.on_open = on_open
        self.on_close = on_close
        self._connector = connector or websocket_connector

        self._ws: Any = None
        self._outbox: Optional[asyncio.Queue] = None
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None

        # Background close tasks (awaited by wait_closed)
        self._closing: Set[asyncio.Task] = set()

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        """릴레이에 연결하고 open될 때까지 대기합니다.

        Raises:
            SignalingUnavailableError: 즉시 실패, 핸드셰이크 거부, 타임아웃
        """
        if self._ws is not None:
            logger.info("[Signaling] 기존 연결 정리 후 재연결")
            self.close()

        logger.info(f"[Signaling] 릴레이 연결 시도: {self.url}")
        try:
            ws = await asyncio.wait_for(self._connector(self.url), timeout=self.open_timeout)
        except asyncio.TimeoutError as e:
            raise SignalingUnavailableError(
                f"Signaling relay did not open within {self.open_timeout}s"
            ) from e
        except (OSError, InvalidURI, InvalidHandshake) as e:
            raise SignalingUnavailableError(f"Failed to connect to signaling server: {e}") from e

        self._ws = ws
        self._outbox = asyncio.Queue()
        self._reader = asyncio.create_task(self._read_loop(ws))
        self._writer = asyncio.create_task(self._write_loop(ws, self._outbox))
        logger.info("[Signaling] 릴레이 연결 완료")

        if self.on_open:
            self.on_open()

    def send(self, envelope: SignalingEnvelope) -> None:
        """봉투를 송신 큐에 넣습니다 (fire-and-forget).

        Note:
            - 연결이 열려 있지 않으면 조용히 버림 (전달 보장 없음)
            - 전송 순서는 send() 호출 순서와 같음
        """
        if self._outbox is None:
            logger.debug(f"[Signaling] 연결 없음, {envelope.type.value} 메시지 버림")
            return
        self._outbox.put_nowait(envelope.to_json())

    def close(self) -> None:
        """로컬에서 연결을 닫습니다. on_close는 호출되지 않습니다.

        이미 큐에 들어간 메시지(예: leave)는 닫기 전에 전송을 시도하며,
        이후 수신되는 메시지는 전달되지 않습니다.
        """
        ws, outbox, reader, writer = self._ws, self._outbox, self._reader, self._writer
        self._ws = None
        self._outbox = None
        self._reader = None
        self._writer = None
        if ws is None:
            return

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        # Sentinel: writer drains the queue then exits
        outbox.put_nowait(None)

        task = asyncio.ensure_future(self._finish_close(ws, writer))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        logger.info("[Signaling] 릴레이 연결 종료 요청")

    async def wait_closed(self) -> None:
        """close()로 시작된 백그라운드 종료 작업을 기다립니다."""
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    async def _finish_close(self, ws: Any, writer: Optional[asyncio.Task]) -> None:
        if writer is not None:
            try:
                await asyncio.wait_for(writer, timeout=self.CLOSE_FLUSH_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("[Signaling] 송신 큐 비우기 시간 초과")
        try:
            await ws.close()
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"[Signaling] close 중 예외 무시: {e}")

    async def _write_loop(self, ws: Any, outbox: asyncio.Queue) -> None:
        while True:
            text = await outbox.get()
            if text is None:
                return
            try:
                await ws.send(text)
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"[Signaling] 송신 실패 (연결 종료): {e}")
                return

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    envelope = parse_envelope(raw)
                except MalformedEnvelopeError as e:
                    logger.warning(f"[Signaling] 잘못된 메시지 무시: {e}")
                    continue

                if self.on_message is None:
                    continue
                try:
                    self.on_message(envelope)
                except Exception:
                    logger.exception(f"[Signaling] {envelope.type.value} 메시지 처리 중 오류")
        except (ConnectionClosed, OSError) as e:
            logger.warning(f"[Signaling] 연결 끊김: {e}")

        # Only report closures of the live connection (not ones we closed ourselves)
        if self._ws is not ws:
            return
        writer = self._writer
        self._ws = None
        self._outbox = None
        self._reader = None
        self._writer = None
        if writer is not None:
            writer.cancel()
        logger.warning("[Signaling] 릴레이 연결이 예기치 않게 종료됨")
        if self.on_close:
            self.on_close()
