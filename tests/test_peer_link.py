"""Tests for PeerLink negotiation, candidate buffering and teardown."""

from unittest.mock import AsyncMock

import pytest
from aiortc import RTCSessionDescription

from conftest import HOST_CANDIDATE, FakePeerConnection, FakeTrack
from mesh_rtc.client.peer_link import LinkState, PeerLink, Role
from mesh_rtc.errors import ProtocolError
from mesh_rtc.protocol import candidate_from_dict

OFFER = RTCSessionDescription(sdp="v=0\r\no=remote\r\n", type="offer")
ANSWER = RTCSessionDescription(sdp="v=0\r\no=remote\r\n", type="answer")


def make_link(role, pc=None):
    send = AsyncMock(return_value=True)
    return PeerLink("B", role, pc or FakePeerConnection(), send), send


class TestStart:
    @pytest.mark.asyncio
    async def test_offerer_sends_offer(self):
        """Should send an offer as soon as an offerer starts."""
        link, send = make_link(Role.OFFERER)
        await link.start()

        assert link.state is LinkState.NEGOTIATING
        assert link.pc.operations == [("local", "offer")]
        send.assert_awaited_once()
        args, kwargs = send.call_args
        assert args == ("handshake",)
        assert kwargs["peerId"] == "B"
        assert kwargs["description"]["type"] == "offer"

    @pytest.mark.asyncio
    async def test_answerer_waits(self):
        """Should send nothing when an answerer starts."""
        link, send = make_link(Role.ANSWERER)
        await link.start()
        assert link.state is LinkState.NEGOTIATING
        assert link.pc.operations == []
        send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_twice_sends_one_offer(self):
        """Should send one offer even if started twice."""
        link, send = make_link(Role.OFFERER)
        await link.start()
        await link.start()
        assert send.await_count == 1


class TestApplyDescription:
    @pytest.mark.asyncio
    async def test_answerer_answers_offer(self):
        """Should answer an incoming offer."""
        link, send = make_link(Role.ANSWERER)
        await link.start()
        await link.apply_description(OFFER)

        assert link.pc.operations == [("remote", "offer"), ("local", "answer")]
        assert send.call_args.kwargs["description"]["type"] == "answer"
        assert link.state is LinkState.CONNECTED

    @pytest.mark.asyncio
    async def test_offerer_applies_answer(self):
        """Should apply the answer and send nothing back."""
        link, send = make_link(Role.OFFERER)
        await link.start()
        await link.apply_description(ANSWER)

        assert link.pc.operations == [("local", "offer"), ("remote", "answer")]
        assert send.await_count == 1
        assert link.state is LinkState.CONNECTED

    @pytest.mark.asyncio
    async def test_offerer_rejects_offer(self):
        """Should raise ProtocolError when an offerer receives an offer."""
        link, _ = make_link(Role.OFFERER)
        await link.start()
        with pytest.raises(ProtocolError):
            await link.apply_description(OFFER)

    @pytest.mark.asyncio
    async def test_answerer_rejects_answer(self):
        """Should raise ProtocolError when an answerer receives an answer."""
        link, _ = make_link(Role.ANSWERER)
        await link.start()
        with pytest.raises(ProtocolError):
            await link.apply_description(ANSWER)

    @pytest.mark.asyncio
    async def test_second_offer_rejected(self):
        """Should reject a second offer on the same link."""
        link, _ = make_link(Role.ANSWERER)
        await link.start()
        await link.apply_description(OFFER)
        with pytest.raises(ProtocolError):
            await link.apply_description(OFFER)

    @pytest.mark.asyncio
    async def test_closed_link_ignores_description(self):
        """Should ignore descriptions after close."""
        link, send = make_link(Role.ANSWERER)
        await link.close()
        await link.apply_description(OFFER)
        assert link.pc.operations == []
        send.assert_not_awaited()


class TestCandidates:
    @pytest.mark.asyncio
    async def test_buffered_until_remote_description(self):
        """Should queue candidates that arrive before the remote description."""
        link, _ = make_link(Role.ANSWERER)
        await link.start()
        first = candidate_from_dict(HOST_CANDIDATE)
        second = candidate_from_dict(
            {**HOST_CANDIDATE, "candidate": HOST_CANDIDATE["candidate"].replace("192.168.1.10", "10.0.0.2")}
        )

        await link.add_remote_candidate(first)
        await link.add_remote_candidate(second)
        assert link.pending_candidates == [first, second]
        assert link.pc.operations == []

        await link.apply_description(OFFER)
        assert link.pc.operations == [
            ("remote", "offer"),
            ("candidate", "192.168.1.10"),
            ("candidate", "10.0.0.2"),
            ("local", "answer"),
        ]
        assert link.pending_candidates == []

    @pytest.mark.asyncio
    async def test_applied_directly_after_remote_description(self):
        """Should apply candidates at once after the remote description."""
        link, _ = make_link(Role.OFFERER)
        await link.start()
        await link.apply_description(ANSWER)
        await link.add_remote_candidate(candidate_from_dict(HOST_CANDIDATE))
        assert link.pc.operations[-1] == ("candidate", "192.168.1.10")
        assert link.pending_candidates == []

    @pytest.mark.asyncio
    async def test_closed_link_drops_candidates(self):
        """Should drop candidates after close."""
        link, _ = make_link(Role.ANSWERER)
        await link.add_remote_candidate(candidate_from_dict(HOST_CANDIDATE))
        await link.close()
        assert link.pending_candidates == []
        await link.add_remote_candidate(candidate_from_dict(HOST_CANDIDATE))
        assert link.pending_candidates == []


class TestTracks:
    def test_first_remote_track_reports_once(self):
        """Should report the remote media on the first track only."""
        link, _ = make_link(Role.ANSWERER)
        assert link.add_remote_track(FakeTrack("audio")) is True
        assert link.add_remote_track(FakeTrack("video")) is False
        assert link.add_remote_track(FakeTrack("video")) is False
        assert sorted(link.remote_media.tracks) == ["audio", "video"]

    @pytest.mark.asyncio
    async def test_track_on_closed_link_stopped(self):
        """Should stop a track that arrives after close."""
        link, _ = make_link(Role.ANSWERER)
        await link.close()
        track = FakeTrack("video")
        assert link.add_remote_track(track) is False
        assert track.readyState == "ended"
        assert link.remote_media is None

    @pytest.mark.asyncio
    async def test_replace_track_uses_sender(self):
        """Should swap the track on the matching sender."""
        link, _ = make_link(Role.OFFERER)
        link.attach([FakeTrack("audio"), FakeTrack("video")])
        await link.start()
        new_video = FakeTrack("video")

        assert await link.replace_track("video", new_video) is True
        assert link.senders["video"].replaced == [new_video]
        assert link.senders["audio"].replaced == []
        # No renegotiation
        assert link.pc.operations == [("local", "offer")]

    @pytest.mark.asyncio
    async def test_replace_track_skipped_when_closed(self):
        """Should not touch senders of a closed link."""
        link, _ = make_link(Role.OFFERER)
        link.attach([FakeTrack("video")])
        await link.start()
        await link.close()
        assert await link.replace_track("video", FakeTrack("video")) is False

    @pytest.mark.asyncio
    async def test_replace_track_awaits_async_sender(self):
        """Should await a sender whose replaceTrack is a coroutine."""
        link, _ = make_link(Role.OFFERER)
        link.attach([FakeTrack("video")])
        await link.start()
        sender = link.senders["video"]
        sender.replaceTrack = AsyncMock()
        new_video = FakeTrack("video")

        assert await link.replace_track("video", new_video) is True
        sender.replaceTrack.assert_awaited_once_with(new_video)


class TestClose:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        """Should close the connection once and return False afterwards."""
        link, _ = make_link(Role.ANSWERER)
        remote = FakeTrack("audio")
        link.add_remote_track(remote)

        assert await link.close() is True
        state_after_first = (link.state, link.pc.close_calls, link.pending_candidates)
        assert await link.close() is False
        assert (link.state, link.pc.close_calls, link.pending_candidates) == state_after_first
        assert link.pc.close_calls == 1
        assert remote.readyState == "ended"

    @pytest.mark.asyncio
    async def test_close_survives_transport_error(self):
        """Should mark the link closed even if the connection fails to close."""
        link, _ = make_link(Role.ANSWERER, pc=FakePeerConnection(fail_close=True))
        assert await link.close() is True
        assert link.state is LinkState.CLOSED
