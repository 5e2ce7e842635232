"""릴레이 룸 관리 모듈.

이 모듈은 시그널링 릴레이의 룸(방)과 피어(참가자) 상태를 관리합니다.
각 룸은 스트리머 최대 한 명과 여러 뷰어로 구성되며, 미디어는 릴레이를
거치지 않고 피어 사이에서 직접 전송됩니다.

주요 기능:
    - 룸 생성 및 삭제 (참가 시 자동 생성, 비면 자동 삭제)
    - 스트리머/뷰어 참가 규칙 (룸당 스트리머 한 명, 뷰어 수 제한)
    - 오래된 빈 룸 정리

Architecture:
    - rooms: Dict[str, Room] - 룸 ID → 룸
    - peer_to_room: Dict[str, str] - 피어 ID → 룸 ID (빠른 조회용)

Examples:
    >>> manager = RoomManager(max_rooms=10, max_viewers_per_room=2)
    >>> manager.join_room("room-42", "streamer-1", is_streamer=True)
    >>> manager.join_room("room-42", "viewer-1", is_streamer=False)
    >>> manager.get_room_peers("room-42")
    [('streamer-1', True), ('viewer-1', False)]
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import RelayError

logger = logging.getLogger(__name__)


@dataclass
class Room:
    """스트리머 한 명과 뷰어들로 구성된 룸.

    Attributes:
        room_id (str): 룸 ID
        max_viewers (int): 최대 뷰어 수
        streamer_id (Optional[str]): 스트리머 피어 ID
        viewers (Dict[str, float]): 뷰어 피어 ID → 참가 시각 (참가 순서 유지)
        created_at (float): 생성 시각
        last_activity (float): 마지막 활동 시각 (monotonic)
    """

    room_id: str
    max_viewers: int
    streamer_id: Optional[str] = None
    viewers: Dict[str, float] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.monotonic)

    @property
    def is_empty(self) -> bool:
        return self.streamer_id is None and not self.viewers

    @property
    def viewer_count(self) -> int:
        return len(self.viewers)

    def touch(self, now: Optional[float] = None) -> None:
        self.last_activity = time.monotonic() if now is None else now


class RoomManager:
    """룸과 피어 참가 상태를 관리하는 클래스.

    Attributes:
        rooms (Dict[str, Room]): 룸 ID를 키로 하는 룸 딕셔너리
        peer_to_room (Dict[str, str]): 피어 ID → 룸 ID 역 매핑
        max_rooms (int): 최대 룸 수
        max_viewers_per_room (int): 룸당 최대 뷰어 수

    Thread Safety:
        - asyncio 환경에서 단일 스레드로 동작 (모든 메서드는 동기)
    """

    def __init__(
        self,
        max_rooms: int = 1000,
        max_viewers_per_room: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        # room_id -> Room
        self.rooms: Dict[str, Room] = {}

        # peer_id -> room_id (for quick lookup)
        self.peer_to_room: Dict[str, str] = {}

        self.max_rooms = max_rooms
        self.max_viewers_per_room = max_viewers_per_room
        self._clock = clock

    def join_room(self, room_id: str, peer_id: str, is_streamer: bool) -> Room:
        """피어를 룸에 추가합니다.

        이미 다른 룸에 있으면 먼저 퇴장시키고, 룸이 없으면 생성합니다.

        Args:
            room_id (str): 참가할 룸 ID
            peer_id (str): 참가하는 피어 ID
            is_streamer (bool): 스트리머로 참가하는지 여부

        Returns:
            Room: 참가한 룸

        Raises:
            RelayError: "Room ID required", "Maximum rooms reached",
                "Room already has a streamer", "Room is full"

        Note:
            - 참가 실패 시에도 이전 룸에서는 이미 퇴장한 상태
        """
        if not room_id:
            raise RelayError("Room ID required")

        if peer_id in self.peer_to_room:
            self.leave_room(peer_id)

        room = self.rooms.get(room_id)
        if room is None:
            if len(self.rooms) >= self.max_rooms:
                raise RelayError("Maximum rooms reached", room_id=room_id)
            room = Room(room_id=room_id, max_viewers=self.max_viewers_per_room, last_activity=self._clock())
            self.rooms[room_id] = room
            logger.info(f"[Relay] Room '{room_id}' created")

        try:
            if is_streamer:
                if room.streamer_id is not None and room.streamer_id != peer_id:
                    raise RelayError("Room already has a streamer", room_id=room_id)
                room.streamer_id = peer_id
            else:
                if room.viewer_count >= room.max_viewers:
                    raise RelayError("Room is full", room_id=room_id)
                room.viewers[peer_id] = time.time()
        except RelayError:
            self._delete_if_empty(room)
            raise

        self.peer_to_room[peer_id] = room_id
        room.touch(self._clock())
        logger.info(
            f"[Relay] Peer {peer_id[:8]} joined room '{room_id}' as "
            f"{'streamer' if is_streamer else 'viewer'}. Viewers: {room.viewer_count}"
        )
        return room

    def leave_room(self, peer_id: str) -> Optional[Room]:
        """피어를 현재 룸에서 제거합니다.

        Returns:
            Optional[Room]: 피어가 속해 있던 룸 (삭제되었더라도 반환).
                어떤 룸에도 속하지 않았으면 None
        """
        room_id = self.peer_to_room.pop(peer_id, None)
        if room_id is None:
            return None
        room = self.rooms.get(room_id)
        if room is None:
            return None

        if room.streamer_id == peer_id:
            room.streamer_id = None
        room.viewers.pop(peer_id, None)
        room.touch(self._clock())

        logger.info(f"[Relay] Peer {peer_id[:8]} left room '{room_id}'")
        self._delete_if_empty(room)
        return room

    def get_room(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def get_peer_room(self, peer_id: str) -> Optional[str]:
        return self.peer_to_room.get(peer_id)

    def get_room_peers(self, room_id: str) -> List[Tuple[str, bool]]:
        """룸의 (피어 ID, 스트리머 여부) 목록. 스트리머가 먼저, 뷰어는 참가 순."""
        room = self.rooms.get(room_id)
        if room is None:
            return []
        peers = []
        if room.streamer_id is not None:
            peers.append((room.streamer_id, True))
        peers.extend((viewer_id, False) for viewer_id in room.viewers)
        return peers

    def get_other_peers(self, room_id: str, exclude_peer_id: str) -> List[Tuple[str, bool]]:
        return [peer for peer in self.get_room_peers(room_id) if peer[0] != exclude_peer_id]

    def get_room_list(self) -> List[dict]:
        """모든 룸의 요약 정보.

        Returns:
            List[dict]: {"id": 룸 ID, "streamer": 스트리머 존재 여부, "viewers": 뷰어 수}
        """
        return [
            {"id": room.room_id, "streamer": room.streamer_id is not None, "viewers": room.viewer_count}
            for room in self.rooms.values()
        ]

    @property
    def room_count(self) -> int:
        return len(self.rooms)

    def cleanup_stale_rooms(self, room_timeout: float, now: Optional[float] = None) -> List[str]:
        """room_timeout보다 오래 유휴 상태인 빈 룸을 삭제합니다.

        Returns:
            List[str]: 삭제된 룸 ID 목록
        """
        now = self._clock() if now is None else now
        stale = [
            room_id for room_id, room in self.rooms.items()
            if room.is_empty and now - room.last_activity > room_timeout
        ]
        for room_id in stale:
            del self.rooms[room_id]
            logger.info(f"[Relay] Cleaned up stale room: {room_id}")
        return stale

    def _delete_if_empty(self, room: Room) -> None:
        if room.is_empty and self.rooms.get(room.room_id) is room:
            del self.rooms[room.room_id]
            logger.info(f"[Relay] Room '{room.room_id}' deleted (empty)")
