"""PeerLink 명령행 클라이언트.

스트리머 또는 뷰어로 룸에 참여해 Ctrl+C로 중단할 때까지 실행합니다.
뷰어는 수신한 트랙을 MediaBlackhole로 소비해 미디어 흐름을 유지합니다.

Usage:
    python peer_client.py --role streamer --room room-42
    python peer_client.py --role viewer --room room-42 --url ws://relay:8000/signaling
"""
import argparse
import asyncio
import logging
from typing import Dict, Set

from aiortc.contrib.media import MediaBlackhole

from peerlink import PeerLinkError
from peerlink.logging_config import setup_logging
from peerlink.webrtc import ClientConfig, ConnectionState, RemoteStream, create_client, signaling_config

logger = logging.getLogger(__name__)


class TrackDrain:
    """뷰어가 받은 원격 트랙을 MediaBlackhole로 소비합니다."""

    def __init__(self):
        self._sinks: Dict[str, MediaBlackhole] = {}
        self._drained: Set[str] = set()

    async def drain(self, streams: Dict[str, RemoteStream]) -> None:
        for peer_id, stream in streams.items():
            for track in stream.tracks:
                if track.id in self._drained:
                    continue
                sink = MediaBlackhole()
                sink.addTrack(track)
                await sink.start()
                self._sinks[track.id] = sink
                self._drained.add(track.id)
                logger.info(f"[Client] 피어 {peer_id[:8]} {track.kind} 트랙 소비 시작")

    async def stop(self) -> None:
        for sink in self._sinks.values():
            await sink.stop()
        self._sinks.clear()


async def run(role: str, room_id: str, url: str) -> None:
    stopped = asyncio.Event()

    def on_state_change(state: ConnectionState):
        logger.info(f"[Client] 상태: {state.value}")
        if state is ConnectionState.FAILED:
            stopped.set()

    def on_error(error: Exception):
        logger.error(f"[Client] 오류: {type(error).__name__}: {error}")

    client = create_client(ClientConfig(
        signaling_url=url,
        on_state_change=on_state_change,
        on_error=on_error,
    ))
    drain = TrackDrain()

    try:
        await client.connect()
        if role == "streamer":
            handle = await client.start_streaming(room_id)
            logger.info(f"[Client] 스트리밍 시작: room={room_id}, tracks={[t.kind for t in handle.tracks]}")
        else:
            await client.join_as_viewer(room_id)
            logger.info(f"[Client] 뷰어 참여: room={room_id}")

        while not stopped.is_set():
            if role == "viewer":
                await drain.drain(client.get_remote_streams())
            try:
                await asyncio.wait_for(stopped.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
    except PeerLinkError as e:
        logger.error(f"[Client] 실행 실패: {e}")
    finally:
        await drain.stop()
        await client.aclose()


def main():
    parser = argparse.ArgumentParser(description="PeerLink 스트리머/뷰어 클라이언트")
    parser.add_argument("--role", choices=["streamer", "viewer"], required=True, help="참여 역할")
    parser.add_argument("--room", required=True, help="룸 ID")
    parser.add_argument("--url", default=signaling_config.SIGNALING_URL, help="시그널링 릴레이 URL")
    args = parser.parse_args()

    setup_logging("client")
    try:
        asyncio.run(run(args.role, args.room, args.url))
    except KeyboardInterrupt:
        logger.info("[Client] 사용자 중단")


if __name__ == "__main__":
    main()
