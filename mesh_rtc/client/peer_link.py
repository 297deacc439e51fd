"""One real-time connection to one remote participant."""

import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCSessionDescription

from mesh_rtc.errors import ProtocolError
from mesh_rtc.protocol import MSG_HANDSHAKE, description_to_dict

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    CREATED = "created"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


class Role(str, Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


ACTIVE_STATES = (LinkState.NEGOTIATING, LinkState.CONNECTED)


class RemoteMedia:
    """Inbound tracks from one remote peer, keyed by kind."""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.tracks: Dict[str, MediaStreamTrack] = {}

    def add(self, track: MediaStreamTrack) -> None:
        self.tracks[track.kind] = track

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self.tracks.values())

    def stop(self) -> None:
        for track in self.tracks.values():
            track.stop()

    def __repr__(self) -> str:
        return f"RemoteMedia({self.peer_id!r}, kinds={sorted(self.tracks)})"


class PeerLink:
    """Handshake state and transport for one remote participant.

    Attributes:
        peer_id: Remote member id.
        role: Whether this side sends the offer. Fixed at creation.
        pc: The underlying RTCPeerConnection (owned).
        state: Lifecycle state.
        pending_candidates: Remote candidates received before the remote
            description was set, applied in arrival order once it is.
        remote_media: Inbound media, None until the first remote track.
        reported: Whether the session has been told about this peer.
        senders: Outbound RTP sender per media kind.
    """

    def __init__(
        self,
        peer_id: str,
        role: Role,
        pc,
        send: Callable[..., Awaitable[bool]],
    ):
        self.peer_id = peer_id
        self.role = role
        self.pc = pc
        self.state = LinkState.CREATED
        self.pending_candidates: List[RTCIceCandidate] = []
        self.remote_media: Optional[RemoteMedia] = None
        self.reported = False
        self.senders: Dict[str, object] = {}
        self.has_remote_description = False
        self._send = send

    @property
    def is_initiator(self) -> bool:
        return self.role is Role.OFFERER

    def attach(self, tracks: List[MediaStreamTrack]) -> None:
        """Add local tracks as outbound media. Tracks are referenced, not owned."""
        for track in tracks:
            self.senders[track.kind] = self.pc.addTrack(track)

    async def start(self) -> None:
        """Begin negotiating; the offerer creates and sends the offer."""
        if self.state is not LinkState.CREATED:
            return
        self.state = LinkState.NEGOTIATING
        if not self.is_initiator:
            logger.debug(f"[{self.peer_id}] waiting for offer")
            return

        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        if self.state is LinkState.CLOSED:
            return
        await self._send(
            MSG_HANDSHAKE,
            peerId=self.peer_id,
            description=description_to_dict(self.pc.localDescription),
        )
        logger.info(f"[{self.peer_id}] sent offer")

    async def apply_description(self, description: RTCSessionDescription) -> None:
        """Apply a remote offer or answer.

        An offer is answered through the relay. Either way the exchange is
        complete afterwards and the link becomes connected.

        Raises:
            ProtocolError: If the description does not fit this link's role
                or arrives after the exchange already completed.
        """
        if self.state is LinkState.CLOSED:
            logger.debug(f"[{self.peer_id}] ignoring {description.type}, link closed")
            return

        expected = "answer" if self.is_initiator else "offer"
        if description.type != expected:
            raise ProtocolError(
                f"{self.role.value} link for {self.peer_id} received an {description.type}"
            )
        if self.has_remote_description:
            raise ProtocolError(
                f"Link for {self.peer_id} received a second {description.type}"
            )

        await self.pc.setRemoteDescription(description)
        self.has_remote_description = True
        await self._flush_candidates()

        if description.type == "offer":
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
            if self.state is LinkState.CLOSED:
                return
            await self._send(
                MSG_HANDSHAKE,
                peerId=self.peer_id,
                description=description_to_dict(self.pc.localDescription),
            )
            logger.info(f"[{self.peer_id}] sent answer")

        if self.state is not LinkState.CLOSED:
            self.state = LinkState.CONNECTED

    async def add_remote_candidate(self, candidate: RTCIceCandidate) -> None:
        """Apply a remote candidate, or queue it until the remote description is set."""
        if self.state is LinkState.CLOSED:
            return
        if not self.has_remote_description:
            self.pending_candidates.append(candidate)
            logger.debug(
                f"[{self.peer_id}] buffered candidate ({len(self.pending_candidates)} pending)"
            )
            return
        await self.pc.addIceCandidate(candidate)

    async def _flush_candidates(self) -> None:
        while self.pending_candidates and self.state is not LinkState.CLOSED:
            candidate = self.pending_candidates.pop(0)
            await self.pc.addIceCandidate(candidate)
            logger.debug(f"[{self.peer_id}] applied buffered candidate")

    def add_remote_track(self, track: MediaStreamTrack) -> bool:
        """Record an inbound track.

        Returns:
            True the first time a usable remote track arrives on an open link,
            meaning the peer should now be reported to the session.
        """
        if self.state is LinkState.CLOSED:
            track.stop()
            return False
        if self.remote_media is None:
            self.remote_media = RemoteMedia(self.peer_id)
        self.remote_media.add(track)
        if self.reported:
            return False
        self.reported = True
        return True

    async def replace_track(self, kind: str, track: MediaStreamTrack) -> bool:
        """Swap the outbound track of one kind without renegotiating."""
        sender = self.senders.get(kind)
        if sender is None or self.state not in ACTIVE_STATES:
            return False
        result = sender.replaceTrack(track)
        if inspect.isawaitable(result):
            await result
        logger.info(f"[{self.peer_id}] replaced outbound {kind} track")
        return True

    async def close(self) -> bool:
        """Release the transport and inbound media.

        Returns:
            True if this call closed the link, False if it was already closed.
        """
        if self.state is LinkState.CLOSED:
            return False
        self.state = LinkState.CLOSED
        self.pending_candidates.clear()
        try:
            await self.pc.close()
        except Exception as e:
            logger.warning(f"[{self.peer_id}] error closing connection: {e}")
        if self.remote_media is not None:
            self.remote_media.stop()
        logger.info(f"[{self.peer_id}] link closed")
        return True

    def __repr__(self) -> str:
        return f"PeerLink({self.peer_id!r}, {self.role.value}, {self.state.value})"
