import asyncio

import pytest

from peerlink.errors import CaptureCancelledError, CaptureDeniedError, CaptureUnavailableError
from peerlink.webrtc.tracks import CaptureConstraints, MediaSessionBridge, RemoteStream

from conftest import FakePlayerFactory, FakeTrack, GatedPlayerFactory, settle


@pytest.mark.asyncio
async def test_acquire_returns_video_and_audio_tracks(player_factory):
    bridge = MediaSessionBridge(player_factory)

    handle = await bridge.acquire_local_capture(CaptureConstraints())

    assert [t.kind for t in handle.tracks] == ["video", "audio"]
    assert bridge.local_tracks() == handle.tracks
    assert handle.video_track is player_factory.video_track
    assert handle.audio_track is player_factory.audio_track


@pytest.mark.asyncio
async def test_acquire_twice_returns_the_live_handle(player_factory):
    bridge = MediaSessionBridge(player_factory)

    first = await bridge.acquire_local_capture()
    second = await bridge.acquire_local_capture()

    assert first is second
    assert player_factory.opened == ["/dev/video0", "default"]


@pytest.mark.asyncio
async def test_audio_only_constraints_skip_the_camera(player_factory):
    bridge = MediaSessionBridge(player_factory)

    handle = await bridge.acquire_local_capture(CaptureConstraints(video=False))

    assert [t.kind for t in handle.tracks] == ["audio"]
    assert player_factory.opened == ["default"]


@pytest.mark.asyncio
async def test_permission_error_is_capture_denied():
    factory = FakePlayerFactory(errors={"/dev/video0": PermissionError("denied")})
    bridge = MediaSessionBridge(factory)

    with pytest.raises(CaptureDeniedError):
        await bridge.acquire_local_capture()

    assert bridge.handle is None


@pytest.mark.asyncio
async def test_missing_device_is_capture_unavailable():
    factory = FakePlayerFactory(errors={"/dev/video0": FileNotFoundError("no such device")})
    bridge = MediaSessionBridge(factory)

    with pytest.raises(CaptureUnavailableError):
        await bridge.acquire_local_capture()


@pytest.mark.asyncio
async def test_partial_failure_stops_tracks_already_opened():
    factory = FakePlayerFactory(errors={"default": OSError("microphone busy")})
    bridge = MediaSessionBridge(factory)

    with pytest.raises(CaptureUnavailableError):
        await bridge.acquire_local_capture()

    assert factory.video_track.readyState == "ended"
    assert bridge.handle is None


@pytest.mark.asyncio
async def test_no_tracks_requested_is_unavailable(player_factory):
    bridge = MediaSessionBridge(player_factory)

    with pytest.raises(CaptureUnavailableError):
        await bridge.acquire_local_capture(CaptureConstraints(video=False, audio=False))


@pytest.mark.asyncio
async def test_release_stops_tracks_exactly_once(player_factory):
    bridge = MediaSessionBridge(player_factory)
    handle = await bridge.acquire_local_capture()

    assert bridge.release() is True
    assert bridge.release() is False

    assert handle.released
    assert all(t.readyState == "ended" for t in handle.tracks)
    assert bridge.local_tracks() == []


@pytest.mark.asyncio
async def test_release_while_opening_cancels_acquisition():
    factory = GatedPlayerFactory()
    bridge = MediaSessionBridge(factory)

    task = asyncio.create_task(bridge.acquire_local_capture())
    await asyncio.to_thread(factory.entered.wait, 5)
    assert bridge.release() is False
    factory.gate.set()

    with pytest.raises(CaptureCancelledError):
        await task

    assert bridge.handle is None
    assert factory.video_track.readyState == "ended"
    assert factory.audio_track.readyState == "ended"


@pytest.mark.asyncio
async def test_concurrent_acquisitions_share_one_handle():
    factory = GatedPlayerFactory()
    bridge = MediaSessionBridge(factory)

    first = asyncio.create_task(bridge.acquire_local_capture())
    second = asyncio.create_task(bridge.acquire_local_capture())
    await settle()
    factory.gate.set()

    first_handle, second_handle = await asyncio.gather(first, second)

    assert first_handle is second_handle
    assert factory.calls == 2  # one video open, one audio open
    assert not first_handle.released


def test_remote_stream_groups_tracks_by_kind():
    stream = RemoteStream("streamer-1")
    video, audio = FakeTrack("video"), FakeTrack("audio")

    stream.add_track(video)
    stream.add_track(audio)
    stream.add_track(video)

    assert stream.tracks == [video, audio]
    assert stream.get_tracks("audio") == [audio]

    stream.stop()
    assert stream.stopped
    assert video.readyState == "ended"
