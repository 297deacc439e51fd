"""Connection controller for the peer links of one room session.

The controller reacts to relay messages:

- ``peer-discovered``: create a PeerLink for the announced peer. The side
  told to initiate sends the offer; the other waits for it.
- ``handshake``: apply the remote offer/answer to the matching link.
- ``candidate``: apply (or buffer) a remote network candidate.
- ``peer-removed``: close and drop the matching link.

It reports ``PeerAdded`` to the session when a link delivers its first remote
track and ``PeerRemoved`` when a reported link goes away. A handshake that
breaks protocol closes only the affected link.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
)

from mesh_rtc.client.media import LocalMediaSource
from mesh_rtc.client.peer_link import ACTIVE_STATES, LinkState, PeerLink, Role
from mesh_rtc.client.session import PeerAdded, PeerRemoved
from mesh_rtc.errors import ProtocolError
from mesh_rtc.protocol import (
    MSG_CANDIDATE,
    MSG_HANDSHAKE,
    MSG_PEER_DISCOVERED,
    MSG_PEER_REMOVED,
    candidate_from_dict,
    candidate_to_dict,
    description_from_dict,
)

logger = logging.getLogger(__name__)


def default_peer_connection_factory(ice_servers: Optional[List[str]] = None):
    """Build a factory creating RTCPeerConnections for the given STUN/TURN urls."""
    configuration = RTCConfiguration(
        iceServers=[RTCIceServer(urls=url) for url in ice_servers or []]
    )

    def factory():
        return RTCPeerConnection(configuration=configuration)

    return factory


class ConnectionController:
    """Owns every PeerLink of one room session.

    Attributes:
        links: PeerLink per remote member id, in discovery order.
        local_media: Local source whose tracks every link sends.
    """

    def __init__(
        self,
        send: Callable[..., Awaitable[bool]],
        notify: Callable[[Any], Awaitable[Any]],
        local_media: Optional[LocalMediaSource] = None,
        pc_factory: Optional[Callable[[], Any]] = None,
    ):
        """Initialize the controller.

        Args:
            send: Coroutine ``send(msg_type, **fields)`` writing to the relay.
            notify: Coroutine receiving PeerAdded/PeerRemoved session events.
            local_media: Local source attached to new links.
            pc_factory: Callable returning a new RTCPeerConnection.
        """
        self.links: Dict[str, PeerLink] = {}
        self.local_media = local_media
        self._send = send
        self._notify = notify
        self._pc_factory = pc_factory or default_peer_connection_factory()

    async def handle_message(self, msg_type: str, data: Dict[str, Any]) -> None:
        """Dispatch one relay message addressed to this client."""
        peer_id = data.get("peerId")
        if not isinstance(peer_id, str):
            logger.warning(f"Ignoring {msg_type} without a peer id")
            return

        if msg_type == MSG_PEER_DISCOVERED:
            await self.add_peer(peer_id, bool(data.get("shouldInitiate")))
        elif msg_type == MSG_HANDSHAKE:
            await self.handle_description(peer_id, data.get("description"))
        elif msg_type == MSG_CANDIDATE:
            await self.handle_candidate(peer_id, data.get("candidate"))
        elif msg_type == MSG_PEER_REMOVED:
            await self.remove_peer(peer_id)
        else:
            logger.debug(f"Controller ignoring message type: {msg_type}")

    async def add_peer(self, peer_id: str, should_initiate: bool) -> Optional[PeerLink]:
        """Create the link for a newly discovered peer and start negotiating."""
        if peer_id in self.links:
            logger.debug(f"[{peer_id}] already known, ignoring discovery")
            return None

        role = Role.OFFERER if should_initiate else Role.ANSWERER
        link = PeerLink(peer_id, role, self._pc_factory(), self._send)
        self.links[peer_id] = link
        self._register_handlers(link)
        logger.info(f"[{peer_id}] discovered, role: {role.value}")

        if self.local_media is not None:
            link.attach(self.local_media.get_tracks())

        try:
            await link.start()
        except Exception as e:
            logger.error(f"[{peer_id}] failed to start negotiation: {e}")
            await self.remove_peer(peer_id, report=True)
        return link

    def _register_handlers(self, link: PeerLink) -> None:
        pc = link.pc
        peer_id = link.peer_id

        @pc.on("icecandidate")
        async def on_ice_candidate(event):
            if event.candidate is None or link.state is LinkState.CLOSED:
                return
            await self._send(
                MSG_CANDIDATE,
                peerId=peer_id,
                candidate=candidate_to_dict(event.candidate),
            )
            logger.debug(f"[{peer_id}] sent local candidate")

        @pc.on("track")
        async def on_track(track):
            logger.info(f"[{peer_id}] received remote {track.kind} track")
            if link.add_remote_track(track):
                await self._notify(PeerAdded(peer_id, link.remote_media))

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"[{peer_id}] connection state: {pc.connectionState}")
            if pc.connectionState == "failed" and self.links.get(peer_id) is link:
                await self.remove_peer(peer_id)

    async def handle_description(self, peer_id: str, description: Any) -> None:
        """Apply a remote offer/answer; a protocol violation closes the link."""
        link = self.links.get(peer_id)
        if link is None:
            logger.warning(f"[{peer_id}] handshake for unknown peer, ignoring")
            return

        try:
            await link.apply_description(description_from_dict(description))
        except ProtocolError as e:
            logger.error(f"[{peer_id}] handshake rejected: {e}")
            await self.remove_peer(peer_id, report=True)
        except Exception as e:
            logger.error(f"[{peer_id}] handshake failed: {e}")
            await self.remove_peer(peer_id, report=True)

    async def handle_candidate(self, peer_id: str, candidate: Any) -> None:
        link = self.links.get(peer_id)
        if link is None:
            logger.debug(f"[{peer_id}] candidate for unknown peer, ignoring")
            return

        try:
            parsed = candidate_from_dict(candidate)
            if parsed is None:
                return
            await link.add_remote_candidate(parsed)
        except Exception as e:
            logger.warning(f"[{peer_id}] could not apply candidate: {e}")

    async def remove_peer(self, peer_id: str, report: bool = False) -> None:
        """Close a link and drop it.

        The session is told about the removal if the link had reported the
        peer, or unconditionally when ``report`` is set. Only the call that
        actually closed the link reports it.
        """
        link = self.links.get(peer_id)
        if link is None:
            return
        closed = await link.close()
        if self.links.get(peer_id) is link:
            del self.links[peer_id]
        if closed and (link.reported or report):
            await self._notify(PeerRemoved(peer_id))

    async def close_all(self) -> None:
        """Close every link without reporting to the session (used on teardown)."""
        links = list(self.links.values())
        self.links.clear()
        for link in links:
            await link.close()

    def active_links(self) -> List[PeerLink]:
        """Snapshot of links that are negotiating or connected."""
        return [link for link in self.links.values() if link.state in ACTIVE_STATES]
