"""미디어 트랙 모듈.

로컬 캡처 장치(카메라/마이크)를 송신 트랙으로 변환하고, 원격 피어에서
수신한 트랙을 피어별 스트림으로 묶어 제공합니다.

Classes:
    CaptureConstraints: 캡처 장치/해상도 요청
    LocalStreamHandle: 로컬 캡처 장치 소유권 (트랙 묶음)
    RemoteStream: 원격 피어 하나에서 수신한 트랙 묶음
    MediaSessionBridge: 로컬 캡처 획득/해제 관리

Note:
    - 로컬 캡처는 MediaSessionBridge만 소유하며 개별 PeerSession은 트랙을
      읽기만 함 (모든 송신 세션이 같은 로컬 트랙 공유)
    - release()는 모든 종료 경로에서 호출되며 여러 번 호출해도 한 번만 해제됨
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av.error import FFmpegError

from ..errors import CaptureCancelledError, CaptureDeniedError, CaptureError, CaptureUnavailableError
from .config import capture_config

logger = logging.getLogger(__name__)

PlayerFactory = Callable[[str, Optional[str], Dict[str, str]], Any]


def open_media_player(device: str, fmt: Optional[str], options: Dict[str, str]) -> MediaPlayer:
    """기본 캡처 구현: aiortc MediaPlayer로 장치를 엽니다 (블로킹)."""
    return MediaPlayer(device, format=fmt, options=options)


@dataclass
class CaptureConstraints:
    """로컬 캡처 요청.

    Attributes:
        video (bool): 카메라 사용 여부
        audio (bool): 마이크 사용 여부
        width (int): 희망 가로 해상도
        height (int): 희망 세로 해상도
        frame_rate (int): 희망 프레임레이트
    """

    video: bool = True
    audio: bool = True
    width: int = capture_config.WIDTH
    height: int = capture_config.HEIGHT
    frame_rate: int = capture_config.FRAME_RATE
    video_device: str = capture_config.VIDEO_DEVICE
    video_format: Optional[str] = capture_config.VIDEO_FORMAT
    audio_device: str = capture_config.AUDIO_DEVICE
    audio_format: Optional[str] = capture_config.AUDIO_FORMAT

    def video_options(self) -> Dict[str, str]:
        return {
            "video_size": f"{self.width}x{self.height}",
            "framerate": str(self.frame_rate),
        }


class LocalStreamHandle:
    """로컬 캡처 장치 소유권.

    Attributes:
        id (str): 스트림 ID
        tracks (List[MediaStreamTrack]): 캡처 트랙 (video, audio 순)
        released (bool): 장치 트랙이 정지되었는지 여부
    """

    def __init__(self, tracks: List[MediaStreamTrack], players: Optional[List[Any]] = None):
        self.id = str(uuid.uuid4())
        self._tracks = list(tracks)
        self._players = list(players or [])
        self.released = False

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    @property
    def video_track(self) -> Optional[MediaStreamTrack]:
        return next((t for t in self._tracks if t.kind == "video"), None)

    @property
    def audio_track(self) -> Optional[MediaStreamTrack]:
        return next((t for t in self._tracks if t.kind == "audio"), None)

    def stop(self) -> None:
        """모든 장치 트랙을 정지합니다 (MediaPlayer 워커 스레드도 함께 종료)."""
        for track in self._tracks:
            track.stop()
        self.released = True


class RemoteStream:
    """원격 피어 하나에서 수신한 트랙 묶음.

    PeerSession이 독점 소유하며 피어가 나가거나 실패하면 모든 트랙이
    정지됩니다.

    Attributes:
        id (str): 스트림 ID
        peer_id (str): 송신 피어 ID
        stopped (bool): 트랙 정지 여부
    """

    def __init__(self, peer_id: str):
        self.id = str(uuid.uuid4())
        self.peer_id = peer_id
        self._tracks: List[MediaStreamTrack] = []
        self.stopped = False

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_tracks(self, kind: Optional[str] = None) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if kind is None or t.kind == kind]

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def stop(self) -> None:
        for track in self._tracks:
            track.stop()
        self.stopped = True

    def __repr__(self) -> str:
        kinds = ",".join(t.kind for t in self._tracks)
        return f"RemoteStream(peer={self.peer_id[:8]}, tracks=[{kinds}])"


class MediaSessionBridge:
    """로컬 캡처 장치를 획득/해제하는 클래스.

    Attributes:
        handle (Optional[LocalStreamHandle]): 현재 살아있는 캡처 핸들

    Examples:
        >>> bridge = MediaSessionBridge()
        >>> handle = await bridge.acquire_local_capture(CaptureConstraints())
        >>> bridge.local_tracks()
        [<VideoTrack>, <AudioTrack>]
        >>> bridge.release()
        True
    """

    def __init__(self, player_factory: Optional[PlayerFactory] = None):
        self._player_factory = player_factory or open_media_player
        self._handle: Optional[LocalStreamHandle] = None

        # One acquisition at a time; release() bumps the generation
        self._acquire_lock = asyncio.Lock()
        self._generation = 0

    @property
    def handle(self) -> Optional[LocalStreamHandle]:
        return self._handle

    def local_tracks(self) -> List[MediaStreamTrack]:
        """송신 세션에 붙일 로컬 트랙 (캡처가 없으면 빈 리스트)."""
        if self._handle is None:
            return []
        return self._handle.tracks

    async def acquire_local_capture(
        self, constraints: Optional[CaptureConstraints] = None
    ) -> LocalStreamHandle:
        """카메라/마이크를 열어 로컬 스트림 핸들을 만듭니다.

        Args:
            constraints (Optional[CaptureConstraints]): 장치/해상도 요청

        Returns:
            LocalStreamHandle: 캡처 트랙 묶음. 이미 캡처 중이면 기존 핸들

        Raises:
            CaptureDeniedError: 장치 접근 권한 거부
            CaptureUnavailableError: 장치 열기 실패 또는 트랙 없음
            CaptureCancelledError: 장치를 여는 동안 release()가 호출된 경우

        Note:
            - 비디오는 열렸는데 오디오에서 실패하면 이미 연 트랙을 정지한 뒤 예외 발생
            - 동시에 호출되면 뒤의 호출은 앞의 획득을 기다렸다가 같은 핸들을 받음
        """
        async with self._acquire_lock:
            if self._handle is not None:
                return self._handle

            generation = self._generation
            constraints = constraints or CaptureConstraints()
            players: List[Any] = []
            tracks: List[MediaStreamTrack] = []

            try:
                if constraints.video:
                    player = await self._open(
                        constraints.video_device, constraints.video_format, constraints.video_options()
                    )
                    players.append(player)
                    if player.video is not None:
                        tracks.append(player.video)
                if constraints.audio:
                    player = await self._open(constraints.audio_device, constraints.audio_format, {})
                    players.append(player)
                    if player.audio is not None:
                        tracks.append(player.audio)
            except CaptureError:
                for track in tracks:
                    track.stop()
                raise

            if self._generation != generation:
                for track in tracks:
                    track.stop()
                logger.info("[WebRTC] 장치를 여는 중 캡처 해제 요청, 열린 트랙 정지")
                raise CaptureCancelledError("Capture released while devices were opening")

            if not tracks:
                raise CaptureUnavailableError("Capture device produced no media tracks")

            self._handle = LocalStreamHandle(tracks, players)
            logger.info(f"[WebRTC] 로컬 캡처 시작: {[t.kind for t in tracks]}")
            return self._handle

    def release(self) -> bool:
        """로컬 캡처를 해제합니다. 진행 중인 획득도 취소됩니다.

        Returns:
            bool: 실제로 해제했으면 True, 이미 해제된 상태면 False
        """
        self._generation += 1
        handle, self._handle = self._handle, None
        if handle is None:
            return False
        handle.stop()
        logger.info("[WebRTC] 로컬 캡처 해제")
        return True

    async def _open(self, device: str, fmt: Optional[str], options: Dict[str, str]) -> Any:
        try:
            return await asyncio.to_thread(self._player_factory, device, fmt, options)
        except PermissionError as e:
            raise CaptureDeniedError(f"Access to capture device {device} denied") from e
        except (OSError, FFmpegError) as e:
            raise CaptureUnavailableError(f"Capture device {device} unavailable: {e}") from e
