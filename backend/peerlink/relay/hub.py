"""시그널링 릴레이 허브.

WebSocket으로 연결된 피어들의 시그널링 메시지를 해석하고 전달합니다.
릴레이는 연결 수립 메타데이터(join, offer, answer, ice-candidate)만
중계하며 미디어는 다루지 않습니다.

처리하는 메시지 타입:
    - join: 룸 참가 (roomId, payload.isStreamer)
    - leave: 현재 룸에서 퇴장
    - offer / answer / ice-candidate: 같은 룸의 targetPeerId에게 전달

Flow:
    1. register(): 피어 ID(UUID) 할당 → room-info{peerId} 전송
    2. handle_text(): 메시지 처리 (오류는 error 메시지로 응답)
    3. unregister(): 연결 종료 시 암묵적 퇴장
"""
import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from ..errors import RelayError
from ..webrtc.envelope import EnvelopeType, SignalingEnvelope, make_envelope
from .room_manager import Room, RoomManager

logger = logging.getLogger(__name__)

RELAYED_TYPES = {
    EnvelopeType.OFFER.value,
    EnvelopeType.ANSWER.value,
    EnvelopeType.ICE_CANDIDATE.value,
}


@dataclass
class RelayPeer:
    """릴레이에 연결된 피어.

    Attributes:
        peer_id (str): 릴레이가 할당한 피어 ID (재사용되지 않음)
        websocket (WebSocket): 피어와의 WebSocket 연결
        connected_at (float): 연결 시각
    """

    peer_id: str
    websocket: Any
    connected_at: float = field(default_factory=time.time)


class SignalingHub:
    """연결된 피어와 룸 사이의 시그널링 메시지를 중계하는 클래스.

    Attributes:
        room_manager (RoomManager): 룸 상태
        peers (Dict[str, RelayPeer]): 피어 ID → 연결된 피어
    """

    def __init__(self, room_manager: Optional[RoomManager] = None):
        self.room_manager = room_manager or RoomManager()
        self.peers: Dict[str, RelayPeer] = {}

    async def register(self, websocket: WebSocket) -> RelayPeer:
        """새 연결에 피어 ID를 할당하고 알려줍니다."""
        peer = RelayPeer(peer_id=str(uuid.uuid4()), websocket=websocket)
        self.peers[peer.peer_id] = peer
        logger.info(f"[Relay] 피어 {peer.peer_id[:8]} 연결됨 (총 {len(self.peers)}명)")
        await self._send(peer, make_envelope(
            EnvelopeType.ROOM_INFO,
            peer_id=peer.peer_id,
            payload={"message": "Connected to signaling server"},
        ))
        return peer

    async def unregister(self, peer: RelayPeer) -> None:
        """연결 종료 처리. 룸에 있었으면 퇴장을 알립니다."""
        if self.peers.pop(peer.peer_id, None) is None:
            return
        await self._leave(peer)
        logger.info(f"[Relay] 피어 {peer.peer_id[:8]} 연결 해제 (총 {len(self.peers)}명)")

    async def handle_text(self, peer: RelayPeer, raw: str) -> None:
        """수신한 텍스트 메시지 하나를 처리합니다."""
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            await self._send_error(peer, "Invalid message format")
            return
        if not isinstance(message, dict):
            await self._send_error(peer, "Invalid message format")
            return

        message_type = message.get("type")
        if message_type == EnvelopeType.JOIN.value:
            await self._handle_join(peer, message)
        elif message_type == EnvelopeType.LEAVE.value:
            await self._handle_leave(peer)
        elif message_type in RELAYED_TYPES:
            await self._handle_relay(peer, message)
        else:
            await self._send_error(peer, f"Unknown message type: {message_type}")

    async def broadcast(self, room_id: str, envelope: SignalingEnvelope, exclude: Optional[List[str]] = None) -> None:
        """룸의 모든 참가자에게 메시지를 전송합니다."""
        exclude = exclude or []
        for peer_id, _ in self.room_manager.get_room_peers(room_id):
            if peer_id in exclude:
                continue
            peer = self.peers.get(peer_id)
            if peer is not None:
                await self._send(peer, envelope)

    async def shutdown(self) -> None:
        """서버 종료 시 모든 피어에게 알리고 연결을 닫습니다."""
        for peer in list(self.peers.values()):
            await self._send_error(peer, "Server shutting down", key="message")
            try:
                await peer.websocket.close()
            except RuntimeError as e:
                logger.debug(f"[Relay] 피어 {peer.peer_id[:8]} 종료 중 예외 무시: {e}")
        self.peers.clear()
        self.room_manager.rooms.clear()
        self.room_manager.peer_to_room.clear()
        logger.info("[Relay] 시그널링 허브 종료")

    async def run_cleanup(self, interval: float, room_timeout: float) -> None:
        """interval마다 오래된 빈 룸을 정리합니다 (취소될 때까지 실행)."""
        while True:
            await asyncio.sleep(interval)
            removed = self.room_manager.cleanup_stale_rooms(room_timeout)
            if removed:
                logger.info(f"[Relay] 빈 룸 {len(removed)}개 정리")

    def get_stats(self) -> dict:
        return {
            "peers": len(self.peers),
            "rooms": self.room_manager.room_count,
            "room_list": self.room_manager.get_room_list(),
        }

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def _handle_join(self, peer: RelayPeer, message: dict) -> None:
        room_id = message.get("roomId")
        payload = message.get("payload") if isinstance(message.get("payload"), dict) else {}
        is_streamer = bool(payload.get("isStreamer", False))

        if not room_id:
            await self._send_error(peer, "Room ID required")
            return

        # Leave current room first (peers there are told)
        await self._leave(peer)

        try:
            room = self.room_manager.join_room(room_id, peer.peer_id, is_streamer)
        except RelayError as e:
            await self._send_error(peer, str(e))
            return

        others = self.room_manager.get_other_peers(room_id, peer.peer_id)
        await self._send(peer, make_envelope(
            EnvelopeType.ROOM_INFO,
            room_id=room_id,
            peer_id=peer.peer_id,
            payload={
                "isStreamer": is_streamer,
                "streamerId": room.streamer_id,
                "viewerCount": room.viewer_count,
                "peers": [{"peerId": other_id, "isStreamer": other_is_streamer}
                          for other_id, other_is_streamer in others],
            },
        ))
        await self.broadcast(
            room_id,
            make_envelope(
                EnvelopeType.PEER_JOINED,
                room_id=room_id,
                peer_id=peer.peer_id,
                payload={"isStreamer": is_streamer},
            ),
            exclude=[peer.peer_id],
        )

    async def _handle_leave(self, peer: RelayPeer) -> None:
        if self.room_manager.get_peer_room(peer.peer_id) is None:
            return
        await self._leave(peer)
        await self._send(peer, make_envelope(EnvelopeType.ROOM_INFO, payload={"message": "Left room"}))

    async def _handle_relay(self, peer: RelayPeer, message: dict) -> None:
        target_peer_id = message.get("targetPeerId")
        if not target_peer_id:
            await self._send_error(peer, "Target peer ID required")
            return

        target = self.peers.get(target_peer_id)
        if target is None:
            await self._send_error(peer, "Target peer not found")
            return

        room_id = self.room_manager.get_peer_room(peer.peer_id)
        if room_id != self.room_manager.get_peer_room(target_peer_id):
            await self._send_error(peer, "Peers not in same room")
            return

        await self._send(target, make_envelope(
            EnvelopeType(message["type"]),
            room_id=room_id,
            peer_id=peer.peer_id,
            payload=message.get("payload"),
        ))

        room = self.room_manager.get_room(room_id) if room_id else None
        if room is not None:
            room.touch()

    # ------------------------------------------------------------------
    # Utility Methods
    # ------------------------------------------------------------------

    async def _leave(self, peer: RelayPeer) -> Optional[Room]:
        room = self.room_manager.leave_room(peer.peer_id)
        if room is None:
            return None
        await self.broadcast(room.room_id, make_envelope(
            EnvelopeType.PEER_LEFT,
            room_id=room.room_id,
            peer_id=peer.peer_id,
        ))
        return room

    async def _send(self, peer: RelayPeer, envelope: SignalingEnvelope) -> None:
        try:
            await peer.websocket.send_text(envelope.to_json())
        except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
            logger.warning(f"[Relay] 피어 {peer.peer_id[:8]}에 {envelope.type.value} 전송 실패: {e}")

    async def _send_error(self, peer: RelayPeer, error: str, key: str = "error") -> None:
        logger.warning(f"[Relay] 피어 {peer.peer_id[:8]} 오류 응답: {error}")
        await self._send(peer, make_envelope(EnvelopeType.ERROR, payload={key: error}))
