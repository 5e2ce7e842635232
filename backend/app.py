"""FastAPI Signaling Relay for Streamer/Viewer Rooms.

스트리머 한 대와 여러 뷰어 사이의 P2P 미디어 세션을 위한 시그널링
릴레이 서버입니다. 연결 수립 메타데이터(join, offer, answer,
ice-candidate)만 WebSocket으로 중계하며 미디어는 피어 사이에서 직접
전송됩니다.

주요 기능:
    - 룸 기반 피어 관리 (룸당 스트리머 한 명, 뷰어 수 제한)
    - 같은 룸의 대상 피어에게만 협상 메시지 전달
    - 참가자 입/퇴장 알림, 오래된 빈 룸 주기적 정리
    - 상태/룸 통계/ICE 서버 조회 API

Architecture:
    - SignalingHub: 피어 등록 및 메시지 중계
    - RoomManager: 룸 및 참가자 상태 관리
    - routes/: /signaling WebSocket, /api/* HTTP 엔드포인트

Usage:
    uvicorn app:app --host 0.0.0.0 --port 8000
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from peerlink.logging_config import LOG_RETENTION_DAYS, cleanup_old_logs, setup_logging
from peerlink.relay import RoomManager, SignalingHub, relay_config
from routes import health_router, init_signaling_hub, signaling_router

# Load environment variables from config/.env
load_dotenv(Path(__file__).parent / "config" / ".env")

setup_logging("relay")
logger = logging.getLogger(__name__)

# 로컬 네트워크, ngrok/cloudflare 터널에서의 접속 허용
CORS_ORIGIN_REGEX = (
    r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}|172\.\d{1,3}\.\d{1,3}\.\d{1,3}):\d+$"
    r"|^https://.*\.ngrok(-free)?\.(app|dev|io)$"
    r"|^https://.*\.trycloudflare\.com$"
)

hub = SignalingHub(RoomManager(
    max_rooms=relay_config.MAX_ROOMS,
    max_viewers_per_room=relay_config.MAX_VIEWERS_PER_ROOM,
))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """릴레이 생명주기.

    Note:
        - 시작: 오래된 로그 정리, 빈 룸 정리 태스크 시작
        - 종료: 정리 태스크 취소, 모든 피어에게 종료 알림 후 연결 종료
    """
    logger.info("[Relay] 시그널링 릴레이 시작")

    removed = cleanup_old_logs()
    if removed:
        logger.info(f"오래된 로그 파일 {removed}개 정리 ({LOG_RETENTION_DAYS}일 이상)")

    sweeper = asyncio.create_task(
        hub.run_cleanup(relay_config.CLEANUP_INTERVAL, relay_config.ROOM_TIMEOUT)
    )
    try:
        yield
    finally:
        logger.info("[Relay] 서버 종료 중...")
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await hub.shutdown()


app = FastAPI(title="PeerLink Signaling Relay", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["Authorization"],
)

app.include_router(health_router)
app.include_router(signaling_router)
init_signaling_hub(hub)


@app.get("/")
async def root():
    return {"status": "ok", "service": "PeerLink Signaling Relay"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
