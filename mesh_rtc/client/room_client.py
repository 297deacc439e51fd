"""Room client: joins a room through the signaling relay.

Usage from code::

    client = RoomClient("standup", server_url="ws://localhost:8080")
    task = asyncio.create_task(client.run())
    ...
    await client.switch_device("video", "/dev/video2")
    await client.leave()
    await task
"""

import asyncio
import logging
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from mesh_rtc.client.controller import (
    ConnectionController,
    default_peer_connection_factory,
)
from mesh_rtc.client.media import (
    DeviceTrackProvider,
    MediaAcquirer,
    MediaConstraints,
    PlayerMediaAcquirer,
)
from mesh_rtc.client.session import (
    Leave,
    MediaError,
    MediaReady,
    RoomSession,
    SocketConnected,
    SocketDisconnected,
    Spotlight,
    ToggleAudio,
    ToggleVideo,
)
from mesh_rtc.client.track_replacement import TrackReplacementCoordinator
from mesh_rtc.config import get_config
from mesh_rtc.errors import DeviceError, MediaAcquisitionError, ProtocolError
from mesh_rtc.protocol import (
    MSG_ERROR,
    MSG_JOIN,
    MSG_LEAVE,
    MSG_WELCOME,
    format_message,
    parse_message,
)

logger = logging.getLogger(__name__)


def _release_late_media(acquiring: asyncio.Future) -> None:
    """Stop media that was opened after the run was cancelled."""
    if acquiring.cancelled() or acquiring.exception() is not None:
        return
    logger.info("Stopping local media acquired after the room was left")
    acquiring.result().stop()


class RoomClient:
    """Drives one room session from media acquisition to teardown.

    Attributes:
        room_id: Room to join.
        server_url: Signaling relay websocket URL.
        session: Current RoomSession (a new one per run).
        controller: Peer links of the current session.
        peer_id: Own member id, as assigned by the relay.
    """

    def __init__(
        self,
        room_id: str,
        server_url: Optional[str] = None,
        acquirer: Optional[MediaAcquirer] = None,
        device_provider: Optional[DeviceTrackProvider] = None,
        constraints: Optional[MediaConstraints] = None,
        pc_factory: Optional[Callable[[], Any]] = None,
        connect: Callable[..., Any] = websockets.connect,
        mute_audio_by_default: Optional[bool] = None,
    ):
        config = get_config()
        self.room_id = room_id
        self.server_url = server_url or config.get_websocket_url()
        self.acquirer = acquirer or PlayerMediaAcquirer(config.media)
        if device_provider is None and isinstance(self.acquirer, DeviceTrackProvider):
            device_provider = self.acquirer
        self.device_provider = device_provider
        self.constraints = constraints or MediaConstraints.from_config(config.media)
        if mute_audio_by_default is None:
            mute_audio_by_default = config.media.mute_audio_by_default
        self.mute_audio_by_default = mute_audio_by_default
        self._pc_factory = pc_factory or default_peer_connection_factory(config.ice_servers)
        self._connect = connect

        self.session: Optional[RoomSession] = None
        self.controller: Optional[ConnectionController] = None
        self.coordinator: Optional[TrackReplacementCoordinator] = None
        self.websocket = None
        self.peer_id: Optional[str] = None

    def new_session(self) -> RoomSession:
        """Start a fresh session in requestingMedia."""
        self.session = RoomSession(self.room_id, audio_muted=self.mute_audio_by_default)
        self.controller = None
        self.coordinator = None
        self.peer_id = None
        return self.session

    async def run(self) -> RoomSession:
        """Join the room and serve it until the session ends.

        Returns:
            The session, in a terminal state.
        """
        session = self.session
        if session is None or session.is_terminal:
            session = self.new_session()

        acquiring = asyncio.ensure_future(self.acquirer.acquire(self.constraints))
        try:
            source = await asyncio.shield(acquiring)
        except MediaAcquisitionError as e:
            await session.dispatch(MediaError(str(e)))
            return session
        except asyncio.CancelledError:
            acquiring.add_done_callback(_release_late_media)
            await self.leave()
            raise

        if not await session.dispatch(MediaReady(source)):
            return session

        try:
            async with self._connect(self.server_url) as websocket:
                self.websocket = websocket
                self.controller = ConnectionController(
                    send=self._send,
                    notify=session.dispatch,
                    local_media=source,
                    pc_factory=self._pc_factory,
                )
                session.controller = self.controller
                if self.device_provider is not None:
                    self.coordinator = TrackReplacementCoordinator(
                        session, self.controller, self.device_provider
                    )

                if not await session.dispatch(SocketConnected()):
                    return session
                await self._send(MSG_JOIN, room=self.room_id)
                logger.info(f"Joining room {self.room_id} via {self.server_url}")

                try:
                    async for message in websocket:
                        await self._handle_frame(message)
                except asyncio.CancelledError:
                    await self.leave()
                    raise
        except (OSError, WebSocketException) as e:
            logger.error(f"Signaling connection lost: {e}")
        finally:
            self.websocket = None
            if not session.is_terminal:
                await session.dispatch(SocketDisconnected())

        return session

    async def _handle_frame(self, message) -> None:
        try:
            msg_type, data = parse_message(message)
        except ProtocolError as e:
            logger.warning(f"Ignoring bad frame from relay: {e}")
            return

        if msg_type == MSG_WELCOME:
            self.peer_id = data["peerId"]
            logger.info(f"Relay assigned member id {self.peer_id}")
        elif msg_type == MSG_ERROR:
            logger.warning(f"Relay error ({data['reason']}): {data.get('message')}")
        elif self.controller is not None:
            await self.controller.handle_message(msg_type, data)

    async def _send(self, msg_type: str, **fields) -> bool:
        websocket = self.websocket
        if websocket is None:
            logger.debug(f"Not connected, dropping {msg_type}")
            return False
        try:
            await websocket.send(format_message(msg_type, **fields))
            return True
        except ConnectionClosed:
            logger.debug(f"Connection closed, dropping {msg_type}")
            return False

    async def leave(self) -> None:
        """Leave the room. Safe from any state, including media acquisition."""
        session = self.session
        if session is None or session.is_terminal:
            return
        websocket = self.websocket
        if websocket is not None:
            await self._send(MSG_LEAVE, room=self.room_id)
        await session.dispatch(Leave())
        if websocket is not None:
            await websocket.close()

    async def toggle_audio(self) -> bool:
        return await self._dispatch(ToggleAudio())

    async def toggle_video(self) -> bool:
        return await self._dispatch(ToggleVideo())

    async def spotlight(self, peer_id: Optional[str]) -> bool:
        return await self._dispatch(Spotlight(peer_id))

    async def switch_device(self, kind: str, device_id: str):
        """Replace the local ``kind`` track with one from ``device_id``."""
        if self.coordinator is None:
            raise DeviceError("Not connected to a room", kind, device_id)
        return await self.coordinator.replace_track(kind, device_id)

    async def _dispatch(self, event) -> bool:
        if self.session is None:
            return False
        return await self.session.dispatch(event)
