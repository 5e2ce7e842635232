"""릴레이 접근 토큰 검증.

RELAY_ACCESS_TOKEN이 설정된 경우에만 검증하며, 비어 있으면 모든 요청을
허용합니다. HTTP는 "Authorization: Bearer <token>" 헤더, WebSocket은
?token= 쿼리 파라미터로 전달합니다.
"""

import hmac
from typing import Optional

from fastapi import Header, HTTPException

from peerlink.relay import relay_config


def _token_matches(candidate: Optional[str]) -> bool:
    if candidate is None:
        return False
    return hmac.compare_digest(candidate.encode(), relay_config.ACCESS_TOKEN.encode())


async def verify_auth_header(authorization: Optional[str] = Header(None)) -> bool:
    """HTTP 엔드포인트용 의존성.

    Raises:
        HTTPException: 401 (헤더 없음, Bearer 형식 아님, 토큰 불일치)
    """
    if not relay_config.requires_token:
        return True
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token or " " in token:
        raise HTTPException(status_code=401, detail="Invalid authorization format")
    if not _token_matches(token):
        raise HTTPException(status_code=401, detail="Invalid token")
    return True


def verify_ws_token(token: Optional[str]) -> bool:
    """WebSocket 연결 수락 전 토큰 확인."""
    return not relay_config.requires_token or _token_matches(token)
