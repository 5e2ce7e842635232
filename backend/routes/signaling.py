"""시그널링 WebSocket 라우터.

스트리머/뷰어 피어의 룸 참가/퇴장과 offer/answer/ice-candidate 중계를
위한 WebSocket 엔드포인트를 제공합니다.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from peerlink.relay import SignalingHub
from .deps import verify_ws_token

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 허브 참조 (app.py에서 설정됨)
_hub: Optional[SignalingHub] = None


def init_hub(hub: SignalingHub):
    """허브 인스턴스를 초기화합니다.

    app.py에서 호출하여 글로벌 허브 참조를 설정합니다.

    Args:
        hub: SignalingHub 인스턴스
    """
    global _hub
    _hub = hub
    logger.info("시그널링 라우터 허브 초기화 완료")


def get_hub() -> Optional[SignalingHub]:
    return _hub


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket, token: Optional[str] = Query(None)):
    """시그널링 WebSocket 엔드포인트.

    연결되면 피어 ID를 room-info로 알려주고, 이후 수신하는 텍스트 메시지를
    순서대로 허브에 전달합니다. 연결이 끊기면 룸에서 자동으로 퇴장합니다.

    Args:
        websocket: FastAPI WebSocket 연결 객체
        token: 접근 토큰 (쿼리 파라미터, RELAY_ACCESS_TOKEN 설정 시 필수)
    """
    if _hub is None:
        logger.error("허브가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    # 연결 수락 전 토큰 검증
    if not verify_ws_token(token):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()
    peer = await _hub.register(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            await _hub.handle_text(peer, raw)
    except WebSocketDisconnect:
        logger.info(f"피어 {peer.peer_id[:8]} WebSocket 연결 종료")
    finally:
        await _hub.unregister(peer)
