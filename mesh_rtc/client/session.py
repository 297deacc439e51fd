"""Room session state machine.

One ``RoomSession`` exists per room membership. It is created when a join is
requested and discarded once it reaches a terminal state; rejoining starts a
new session.

States::

    requestingMedia --MEDIA_READY--> connecting --SOCKET_CONNECTED--> connected
    requestingMedia --MEDIA_ERROR--> error
    connecting/connected --SOCKET_DISCONNECTED--> disconnected
    any non-terminal --LEAVE--> left

``disconnected``, ``error`` and ``left`` are terminal. Entering
``disconnected`` or ``left`` runs cleanup first: local media is stopped,
every peer link is closed and the peer collection is cleared.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from mesh_rtc.client.media import LocalMediaSource, LocalPreview

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    REQUESTING_MEDIA = "requestingMedia"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    LEFT = "left"


TERMINAL_STATES = (SessionState.DISCONNECTED, SessionState.ERROR, SessionState.LEFT)


@dataclass(frozen=True)
class MediaReady:
    source: LocalMediaSource


@dataclass(frozen=True)
class MediaError:
    error: str


@dataclass(frozen=True)
class SocketConnected:
    pass


@dataclass(frozen=True)
class SocketDisconnected:
    pass


@dataclass(frozen=True)
class PeerAdded:
    peer_id: str
    media: Any


@dataclass(frozen=True)
class PeerRemoved:
    peer_id: str


@dataclass(frozen=True)
class Spotlight:
    peer_id: Optional[str]


@dataclass(frozen=True)
class ToggleAudio:
    pass


@dataclass(frozen=True)
class ToggleVideo:
    pass


@dataclass(frozen=True)
class Leave:
    pass


class RoomSession:
    """State of one room membership on the client.

    Attributes:
        room_id: Room this session belongs to.
        state: Current SessionState.
        local_media: Local capture source (owned), None until MEDIA_READY.
        peers: Remote media by peer id, in discovery order.
        spotlight_peer_id: Peer shown as primary, always a key of ``peers`` or None.
        audio_muted: Whether local audio tracks are disabled.
        video_muted: Whether local video tracks are disabled.
        error: Last session error message.
        preview: Local preview handle.
        controller: Owner of the peer links; closed on cleanup.
    """

    def __init__(
        self,
        room_id: str,
        audio_muted: bool = False,
        video_muted: bool = False,
        preview: Optional[LocalPreview] = None,
    ):
        self.room_id = room_id
        self.state = SessionState.REQUESTING_MEDIA
        self.local_media: Optional[LocalMediaSource] = None
        self.peers: Dict[str, Any] = {}
        self.spotlight_peer_id: Optional[str] = None
        self.audio_muted = audio_muted
        self.video_muted = video_muted
        self.error: Optional[str] = None
        self.preview = preview or LocalPreview()
        self.controller = None
        self._listeners: List[Callable[["RoomSession"], None]] = []

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_muted(self, kind: str) -> bool:
        return self.audio_muted if kind == "audio" else self.video_muted

    def on_change(self, callback: Callable[["RoomSession"], None]) -> None:
        """Call ``callback(session)`` after every accepted event."""
        self._listeners.append(callback)

    async def dispatch(self, event) -> bool:
        """Apply an event.

        Returns:
            True if the event was accepted in the current state.
        """
        if isinstance(event, MediaReady) and self.state is not SessionState.REQUESTING_MEDIA:
            # Acquisition finished after the session moved on
            logger.info(f"[{self.room_id}] discarding late local media ({self.state.value})")
            event.source.stop()
            return False

        if self.is_terminal:
            logger.debug(
                f"[{self.room_id}] ignoring {type(event).__name__}, session {self.state.value}"
            )
            return False

        if isinstance(event, Leave):
            await self._cleanup()
            self._transition(SessionState.LEFT)
        elif self.state is SessionState.REQUESTING_MEDIA:
            if not self._on_requesting_media(event):
                return self._reject(event)
        elif self.state is SessionState.CONNECTING:
            if isinstance(event, SocketConnected):
                self._transition(SessionState.CONNECTED)
            elif isinstance(event, SocketDisconnected):
                await self._cleanup()
                self._transition(SessionState.DISCONNECTED)
            else:
                return self._reject(event)
        elif self.state is SessionState.CONNECTED:
            if isinstance(event, SocketDisconnected):
                await self._cleanup()
                self._transition(SessionState.DISCONNECTED)
            elif not self._on_connected(event):
                return self._reject(event)

        self._notify()
        return True

    def _on_requesting_media(self, event) -> bool:
        if isinstance(event, MediaReady):
            self.local_media = event.source
            self.local_media.set_enabled("audio", not self.audio_muted)
            self.local_media.set_enabled("video", not self.video_muted)
            self.preview.show(self.local_media)
            self._transition(SessionState.CONNECTING)
            return True
        if isinstance(event, MediaError):
            self.error = event.error
            logger.error(f"[{self.room_id}] local media failed: {event.error}")
            self._transition(SessionState.ERROR)
            return True
        return False

    def _on_connected(self, event) -> bool:
        if isinstance(event, PeerAdded):
            if event.peer_id not in self.peers:
                self.peers[event.peer_id] = event.media
                logger.info(f"[{self.room_id}] peer added: {event.peer_id}")
        elif isinstance(event, PeerRemoved):
            if self.peers.pop(event.peer_id, None) is not None:
                logger.info(f"[{self.room_id}] peer removed: {event.peer_id}")
            if self.spotlight_peer_id == event.peer_id:
                self.spotlight_peer_id = None
        elif isinstance(event, Spotlight):
            self.spotlight_peer_id = event.peer_id
        elif isinstance(event, ToggleAudio):
            self.audio_muted = not self.audio_muted
            if self.local_media:
                self.local_media.set_enabled("audio", not self.audio_muted)
        elif isinstance(event, ToggleVideo):
            self.video_muted = not self.video_muted
            if self.local_media:
                self.local_media.set_enabled("video", not self.video_muted)
        else:
            return False
        return True

    async def _cleanup(self) -> None:
        if self.local_media is not None:
            self.local_media.stop()
            self.local_media = None
        if self.controller is not None:
            await self.controller.close_all()
        self.peers.clear()
        self.spotlight_peer_id = None
        self.error = None
        self.preview.clear()

    def _transition(self, state: SessionState) -> None:
        logger.info(f"[{self.room_id}] {self.state.value} -> {state.value}")
        self.state = state

    def _reject(self, event) -> bool:
        logger.debug(
            f"[{self.room_id}] {type(event).__name__} not accepted in {self.state.value}"
        )
        return False

    def _notify(self) -> None:
        for callback in self._listeners:
            callback(self)
