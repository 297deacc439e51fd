"""Tests for the RoomSession state machine."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeTrack
from mesh_rtc.client.media import LocalMediaSource
from mesh_rtc.client.session import (
    Leave,
    MediaError,
    MediaReady,
    PeerAdded,
    PeerRemoved,
    RoomSession,
    SessionState,
    SocketConnected,
    SocketDisconnected,
    Spotlight,
    ToggleAudio,
    ToggleVideo,
)


def make_source():
    return LocalMediaSource([FakeTrack("audio"), FakeTrack("video")])


async def connected_session(**kwargs):
    session = RoomSession("r1", **kwargs)
    session.controller = MagicMock(close_all=AsyncMock())
    await session.dispatch(MediaReady(make_source()))
    await session.dispatch(SocketConnected())
    return session


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_happy_path(self):
        """Should move from requestingMedia through connecting to connected."""
        session = RoomSession("r1")
        assert session.state is SessionState.REQUESTING_MEDIA

        source = make_source()
        assert await session.dispatch(MediaReady(source))
        assert session.state is SessionState.CONNECTING
        assert session.local_media is source
        assert session.preview.current("video") is source.track("video")

        assert await session.dispatch(SocketConnected())
        assert session.state is SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_media_error_is_terminal(self):
        """Should end in error when media fails."""
        session = RoomSession("r1")
        assert await session.dispatch(MediaError("camera permission denied"))
        assert session.state is SessionState.ERROR
        assert session.error == "camera permission denied"

        assert await session.dispatch(Leave()) is False
        assert session.state is SessionState.ERROR

    @pytest.mark.asyncio
    async def test_socket_lost_while_connecting(self):
        """Should end disconnected when the socket drops while connecting."""
        session = RoomSession("r1")
        source = make_source()
        await session.dispatch(MediaReady(source))
        await session.dispatch(SocketDisconnected())

        assert session.state is SessionState.DISCONNECTED
        assert session.local_media is None
        assert source.stopped

    @pytest.mark.asyncio
    async def test_socket_lost_while_connected_cleans_up(self):
        """Should release media and peers when the socket drops."""
        session = await connected_session()
        source = session.local_media
        await session.dispatch(PeerAdded("B", object()))
        await session.dispatch(SocketDisconnected())

        assert session.state is SessionState.DISCONNECTED
        assert session.peers == {}
        assert source.stopped
        session.controller.close_all.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_terminal_state_ignores_events(self):
        """Should ignore events once terminal."""
        session = await connected_session()
        await session.dispatch(Leave())
        for event in (SocketConnected(), PeerAdded("B", object()), ToggleAudio(), Leave()):
            assert await session.dispatch(event) is False
        assert session.state is SessionState.LEFT
        assert session.peers == {}

    @pytest.mark.asyncio
    async def test_out_of_state_events_rejected(self):
        """Should reject events that do not apply to the current state."""
        session = RoomSession("r1")
        assert await session.dispatch(SocketConnected()) is False
        assert await session.dispatch(PeerAdded("B", object())) is False
        assert session.state is SessionState.REQUESTING_MEDIA

    @pytest.mark.asyncio
    async def test_listeners_called_on_accepted_events(self):
        """Should call listeners for accepted events only."""
        session = RoomSession("r1")
        seen = []
        session.on_change(lambda s: seen.append(s.state))
        await session.dispatch(SocketConnected())
        await session.dispatch(MediaReady(make_source()))
        assert seen == [SessionState.CONNECTING]


class TestLeave:
    @pytest.mark.asyncio
    async def test_leave_while_requesting_media(self):
        """Should allow leaving before media is ready."""
        session = RoomSession("r1")
        assert await session.dispatch(Leave())
        assert session.state is SessionState.LEFT

        # Acquisition completing afterwards releases the devices
        late = make_source()
        assert await session.dispatch(MediaReady(late)) is False
        assert late.stopped
        assert session.local_media is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("connect", [False, True])
    async def test_leave_releases_everything(self, connect):
        """Should stop local media and clear peers on leave."""
        session = RoomSession("r1")
        session.controller = MagicMock(close_all=AsyncMock())
        source = make_source()
        await session.dispatch(MediaReady(source))
        if connect:
            await session.dispatch(SocketConnected())
            await session.dispatch(PeerAdded("B", object()))
            await session.dispatch(Spotlight("B"))

        await session.dispatch(Leave())

        assert session.state is SessionState.LEFT
        assert session.peers == {}
        assert session.spotlight_peer_id is None
        assert session.local_media is None
        assert source.stopped
        assert all(t.readyState == "ended" for t in source.get_tracks())
        assert session.preview.current("video") is None


class TestPeers:
    @pytest.mark.asyncio
    async def test_peer_added_is_idempotent(self):
        """Should keep one entry for a peer added twice."""
        session = await connected_session()
        first = object()
        await session.dispatch(PeerAdded("B", first))
        await session.dispatch(PeerAdded("B", object()))
        assert list(session.peers) == ["B"]
        assert session.peers["B"] is first

    @pytest.mark.asyncio
    async def test_discovery_order_kept(self):
        """Should list peers in the order they were added."""
        session = await connected_session()
        for peer_id in ("C", "A", "B"):
            await session.dispatch(PeerAdded(peer_id, object()))
        assert list(session.peers) == ["C", "A", "B"]

    @pytest.mark.asyncio
    async def test_removing_spotlighted_peer_clears_spotlight(self):
        """Should clear the spotlight when its peer leaves."""
        session = await connected_session()
        await session.dispatch(PeerAdded("B", object()))
        await session.dispatch(PeerAdded("C", object()))
        await session.dispatch(Spotlight("B"))
        assert session.spotlight_peer_id == "B"

        await session.dispatch(PeerRemoved("B"))
        assert session.spotlight_peer_id is None
        assert list(session.peers) == ["C"]

    @pytest.mark.asyncio
    async def test_removing_other_peer_keeps_spotlight(self):
        """Should keep the spotlight when another peer leaves."""
        session = await connected_session()
        await session.dispatch(PeerAdded("B", object()))
        await session.dispatch(PeerAdded("C", object()))
        await session.dispatch(Spotlight("B"))
        await session.dispatch(PeerRemoved("C"))
        assert session.spotlight_peer_id == "B"

    @pytest.mark.asyncio
    async def test_spotlight_cleared_with_none(self):
        """Should clear the spotlight with None."""
        session = await connected_session()
        await session.dispatch(Spotlight("B"))
        await session.dispatch(Spotlight(None))
        assert session.spotlight_peer_id is None


class TestMute:
    @pytest.mark.asyncio
    async def test_toggle_audio_disables_tracks(self):
        """Should disable local audio tracks when audio is muted."""
        session = await connected_session()
        await session.dispatch(ToggleAudio())
        assert session.audio_muted
        assert not session.local_media.track("audio").enabled
        assert session.local_media.track("video").enabled

        await session.dispatch(ToggleAudio())
        assert not session.audio_muted
        assert session.local_media.track("audio").enabled

    @pytest.mark.asyncio
    async def test_toggle_video_disables_tracks(self):
        """Should disable local video tracks when video is muted."""
        session = await connected_session()
        await session.dispatch(ToggleVideo())
        assert session.video_muted
        assert not session.local_media.track("video").enabled

    @pytest.mark.asyncio
    async def test_initial_mute_applied_on_media_ready(self):
        """Should apply the initial mute when media becomes ready."""
        session = await connected_session(audio_muted=True)
        assert not session.local_media.track("audio").enabled
        assert session.local_media.track("video").enabled

    @pytest.mark.asyncio
    async def test_toggle_rejected_before_connected(self):
        """Should reject toggles before the session is connected."""
        session = RoomSession("r1")
        assert await session.dispatch(ToggleAudio()) is False
        assert not session.audio_muted
