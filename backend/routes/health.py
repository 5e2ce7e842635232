"""Health Check API 라우터.

릴레이 상태와 룸 통계, ICE 서버 설정을 제공하는 엔드포인트들입니다.
"""

from fastapi import APIRouter, Depends

from peerlink.webrtc import ice_config
from .deps import verify_auth_header
from .signaling import get_hub

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check():
    """릴레이 상태를 확인합니다.

    Returns:
        dict: {"status": "ok" | "not_ready", "peers": 연결 수, "rooms": 룸 수}
    """
    hub = get_hub()
    if hub is None:
        return {"status": "not_ready", "peers": 0, "rooms": 0}
    stats = hub.get_stats()
    return {"status": "ok", "peers": stats["peers"], "rooms": stats["rooms"]}


@router.get("/rooms")
async def get_rooms(_: bool = Depends(verify_auth_header)):
    """활성화된 모든 룸의 목록을 조회합니다.

    Returns:
        dict: {"rooms": [{"id", "streamer", "viewers"}, ...]}
    """
    hub = get_hub()
    if hub is None:
        return {"rooms": []}
    return {"rooms": hub.room_manager.get_room_list()}


@router.get("/turn-credentials")
async def get_turn_credentials(_: bool = Depends(verify_auth_header)):
    """클라이언트가 사용할 STUN/TURN 서버 목록을 제공합니다.

    TURN credentials는 서버 환경변수에서만 관리하고, 인증된 클라이언트에게만
    전달합니다.

    Returns:
        list: [{"urls": ..., "username"?: ..., "credential"?: ...}, ...]
    """
    servers = []
    for server in ice_config.ice_servers():
        entry = {"urls": server.urls}
        if server.username:
            entry["username"] = server.username
            entry["credential"] = server.credential
        servers.append(entry)
    return servers
