"""룸 세션 모듈.

릴레이가 보내는 룸 이벤트(room-info, peer-joined, peer-left, error)를
해석하고, 협상 메시지(offer/answer/ice-candidate)를 PeerConnectionManager로
라우팅합니다.

Initiation Rule:
    - 스트리머는 isStreamer=false로 알려진 모든 피어에게 offer를 보냄
      (멤버십당 피어별 정확히 한 번)
    - 뷰어는 어떤 경우에도 먼저 offer를 보내지 않고 수동적으로 대기
    - isStreamer=true로 알려진 피어에게는 offer를 보내지 않음

Membership States:
    None → joining(active=False) → joined(active=True)
    joined → suspended(active=False): 시그널링 연결 끊김, 룸/역할 유지
    suspended → joined: 재연결 후 resume()
    any → None: leave(), abandon()
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Set

from ..errors import JoinTimeoutError, PeerLinkError, RelayError, SignalingLostError
from .envelope import EnvelopeType, SignalingEnvelope, make_envelope
from .events import fire
from .peer_manager import PeerConnectionManager
from .tracks import MediaSessionBridge

logger = logging.getLogger(__name__)


class LocalRole(str, Enum):
    """룸 안에서의 로컬 역할."""

    STREAMER = "streamer"
    VIEWER = "viewer"


@dataclass
class RoomMembership:
    """현재 참여 중(또는 참여 시도 중)인 룸.

    Attributes:
        room_id (str): 룸 ID
        local_role (LocalRole): 스트리머/뷰어
        local_peer_id (Optional[str]): 릴레이가 할당한 로컬 피어 ID
        active (bool): room-info로 참여가 확인되었는지 여부
        media_lost (bool): 참여 후 미디어 세션이 하나라도 종료되었는지 여부
    """

    room_id: str
    local_role: LocalRole
    local_peer_id: Optional[str] = None
    active: bool = False
    media_lost: bool = False

    @property
    def is_streamer(self) -> bool:
        return self.local_role is LocalRole.STREAMER


class RoomSession:
    """룸 참여 상태와 이벤트 라우팅을 담당하는 클래스.

    Attributes:
        membership (Optional[RoomMembership]): 현재 멤버십
        local_peer_id (Optional[str]): 릴레이가 마지막으로 알려준 로컬 피어 ID
        join_timeout (float): room-info 대기 시간 (초)
        on_error (Callable[[Exception], None]): 릴레이 오류 보고
        on_change (Callable[[], None]): 멤버십 변경 알림 (집계 상태 재계산용)
    """

    def __init__(
        self,
        send: Callable[[SignalingEnvelope], None],
        peers: PeerConnectionManager,
        media: MediaSessionBridge,
        *,
        join_timeout: float = 10.0,
        on_error: Optional[Callable[[Exception], Any]] = None,
        on_change: Optional[Callable[[], Any]] = None,
    ):
        self._send = send
        self.peers = peers
        self.media = media
        self.join_timeout = join_timeout
        self.on_error = on_error
        self.on_change = on_change

        self.membership: Optional[RoomMembership] = None
        self.local_peer_id: Optional[str] = None
        self._join_waiter: Optional[asyncio.Future] = None

        # peers already offered to in the current membership
        self._initiated: Set[str] = set()

    @property
    def joined(self) -> bool:
        return self.membership is not None and self.membership.active

    @property
    def suspended(self) -> bool:
        return (
            self.membership is not None
            and not self.membership.active
            and self._join_waiter is None
        )

    async def join(self, room_id: str, role: LocalRole) -> RoomMembership:
        """룸에 참여하고 room-info 응답을 기다립니다.

        Args:
            room_id (str): 룸 ID (빈 문자열 불가)
            role (LocalRole): 참여 역할

        Returns:
            RoomMembership: 확인된 멤버십

        Raises:
            ValueError: room_id가 비어 있는 경우
            JoinTimeoutError: join_timeout 내에 room-info가 오지 않은 경우
            RelayError: 릴레이가 join을 거부한 경우 (예: "Room is full")
            SignalingLostError: 응답 대기 중 시그널링 연결이 끊긴 경우
        """
        if not room_id:
            raise ValueError("room_id must be a non-empty string")

        membership = RoomMembership(room_id=room_id, local_role=role)
        self.membership = membership
        return await self._await_join(membership)

    async def resume(self) -> Optional[RoomMembership]:
        """연결이 끊겨 중단된 멤버십을 같은 룸/역할로 다시 참여시킵니다.

        재참여 도중 연결이 다시 끊기면 멤버십은 중단 상태로 남아 다음
        재연결에서 다시 시도됩니다.
        """
        if not self.suspended:
            return None
        membership = self.membership
        logger.info(f"[WebRTC] 룸 재참여: room={membership.room_id}, role={membership.local_role.value}")
        return await self._await_join(membership, keep_on_loss=True)

    async def _await_join(self, membership: RoomMembership, keep_on_loss: bool = False) -> RoomMembership:
        self._initiated.clear()
        membership.active = False
        membership.media_lost = False
        waiter = asyncio.get_running_loop().create_future()
        self._join_waiter = waiter

        logger.info(f"[WebRTC] 룸 참여 요청: room={membership.room_id}, role={membership.local_role.value}")
        self._send(make_envelope(
            EnvelopeType.JOIN,
            room_id=membership.room_id,
            payload={"isStreamer": membership.is_streamer},
        ))
        fire(self.on_change)

        try:
            await asyncio.wait_for(waiter, timeout=self.join_timeout)
        except asyncio.TimeoutError:
            self._fail_join(membership)
            raise JoinTimeoutError(
                f"No room-info for room {membership.room_id} within {self.join_timeout}s",
                room_id=membership.room_id,
            ) from None
        except SignalingLostError:
            if not keep_on_loss:
                self._fail_join(membership)
            raise
        except PeerLinkError:
            self._fail_join(membership)
            raise
        finally:
            if self._join_waiter is waiter:
                self._join_waiter = None

        return membership

    def leave(self) -> bool:
        """룸을 떠나고 모든 피어 세션과 로컬 캡처를 정리합니다.

        Returns:
            bool: 떠날 룸이 있었으면 True
        """
        membership = self.membership
        if membership is None:
            self.peers.close_all()
            self.media.release()
            return False

        self._send(make_envelope(EnvelopeType.LEAVE, room_id=membership.room_id))
        self._teardown(RelayError("Left room before joining", room_id=membership.room_id))
        logger.info(f"[WebRTC] 룸 퇴장: {membership.room_id}")
        fire(self.on_change)
        return True

    def suspend(self) -> None:
        """시그널링 연결이 끊겼을 때 호출. 세션만 정리하고 멤버십은 유지합니다."""
        waiter = self._join_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(SignalingLostError("Signaling connection lost while joining"))
        if self.membership is not None:
            self.membership.active = False
            self.membership.media_lost = False
            logger.info(f"[WebRTC] 룸 멤버십 일시 중단: {self.membership.room_id}")
        self._initiated.clear()
        self.peers.close_all()
        fire(self.on_change)

    def abandon(self) -> None:
        """재연결이 최종 실패했을 때 호출. 멤버십과 로컬 캡처를 모두 정리합니다."""
        room_id = self.membership.room_id if self.membership else None
        self._teardown(SignalingLostError("Signaling connection abandoned"))
        if room_id:
            logger.warning(f"[WebRTC] 룸 멤버십 폐기: {room_id}")
        fire(self.on_change)

    def note_media_ended(self) -> None:
        """참여 중인 룸에서 미디어 세션이 종료되었음을 기록합니다."""
        if self.joined:
            self.membership.media_lost = True

    def dispatch(self, envelope: SignalingEnvelope) -> None:
        """수신 봉투 하나를 처리합니다 (도착 순서대로 동기 호출)."""
        kind = envelope.type
        if kind is EnvelopeType.ROOM_INFO:
            self._on_room_info(envelope)
        elif kind is EnvelopeType.PEER_JOINED:
            self._on_peer_joined(envelope)
        elif kind is EnvelopeType.PEER_LEFT:
            self._on_peer_left(envelope)
        elif kind is EnvelopeType.ERROR:
            self._on_relay_error(envelope)
        elif kind in (EnvelopeType.OFFER, EnvelopeType.ANSWER, EnvelopeType.ICE_CANDIDATE):
            self._route_negotiation(envelope)
        else:
            logger.debug(f"[WebRTC] 처리하지 않는 메시지 무시: {kind.value}")

    # ------------------------------------------------------------------
    # Inbound handlers
    # ------------------------------------------------------------------

    def _on_room_info(self, envelope: SignalingEnvelope) -> None:
        peer_id = envelope.peer_id or envelope.payload_field("peerId")
        if peer_id:
            self.local_peer_id = peer_id

        membership = self.membership
        waiter = self._join_waiter
        if membership is None or waiter is None or waiter.done():
            logger.debug(f"[WebRTC] room-info 수신: peer={str(peer_id)[:8]}, message={envelope.payload_field('message')}")
            return
        if envelope.room_id != membership.room_id:
            return

        membership.local_peer_id = self.local_peer_id
        membership.active = True
        waiter.set_result(membership)
        logger.info(
            f"[WebRTC] 룸 참여 완료: room={membership.room_id}, "
            f"peer={str(membership.local_peer_id)[:8]}, viewers={envelope.payload_field('viewerCount', 0)}"
        )

        # Viewers that were already in the room before the streamer joined
        if membership.is_streamer:
            for peer in envelope.payload_field("peers") or []:
                if isinstance(peer, dict):
                    self._maybe_initiate(peer.get("peerId"), bool(peer.get("isStreamer", False)))
        fire(self.on_change)

    def _on_peer_joined(self, envelope: SignalingEnvelope) -> None:
        if not self._accepts(envelope):
            return
        peer_id = envelope.peer_id or envelope.payload_field("peerId")
        is_streamer = bool(envelope.payload_field("isStreamer", False))
        logger.info(f"[WebRTC] 피어 입장: {str(peer_id)[:8]} (streamer={is_streamer})")
        if self.membership.is_streamer:
            self._maybe_initiate(peer_id, is_streamer)

    def _on_peer_left(self, envelope: SignalingEnvelope) -> None:
        if not self._accepts(envelope):
            return
        peer_id = envelope.peer_id or envelope.payload_field("peerId")
        if not peer_id:
            return
        logger.info(f"[WebRTC] 피어 퇴장: {peer_id[:8]}")
        self.peers.close_session(peer_id)

    def _on_relay_error(self, envelope: SignalingEnvelope) -> None:
        message = (
            envelope.payload_field("error")
            or envelope.payload_field("message")
            or "Unknown relay error"
        )
        room_id = envelope.room_id or (self.membership.room_id if self.membership else None)
        error = RelayError(str(message), room_id=room_id)
        logger.warning(f"[WebRTC] 릴레이 오류: {message}")

        waiter = self._join_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(error)
            return
        fire(self.on_error, error)

    def _route_negotiation(self, envelope: SignalingEnvelope) -> None:
        if not self.joined:
            logger.debug(f"[WebRTC] 룸 밖에서 받은 {envelope.type.value} 무시")
            return
        peer_id = envelope.counterpart
        if peer_id == self.local_peer_id:
            return

        if envelope.type is EnvelopeType.OFFER:
            self.peers.handle_remote_offer(peer_id, envelope.payload)
        elif envelope.type is EnvelopeType.ANSWER:
            self.peers.handle_remote_answer(peer_id, envelope.payload)
        else:
            self.peers.handle_remote_candidate(peer_id, envelope.payload)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _accepts(self, envelope: SignalingEnvelope) -> bool:
        if not self.joined:
            return False
        return envelope.room_id is None or envelope.room_id == self.membership.room_id

    def _maybe_initiate(self, peer_id: Optional[str], is_streamer: bool) -> None:
        if not peer_id or is_streamer or peer_id == self.local_peer_id:
            return
        if peer_id in self._initiated:
            return
        self._initiated.add(peer_id)
        self.peers.create_session(peer_id, is_initiator=True)

    def _fail_join(self, membership: RoomMembership) -> None:
        if self.membership is membership:
            self.membership = None
            self._initiated.clear()
            fire(self.on_change)

    def _teardown(self, join_error: PeerLinkError) -> None:
        waiter, self._join_waiter = self._join_waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_exception(join_error)
        self.membership = None
        self._initiated.clear()
        self.peers.close_all()
        self.media.release()
