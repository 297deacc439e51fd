"""Propagate a capture-device switch to the preview and every active link."""

import logging

from aiortc import MediaStreamTrack

from mesh_rtc.client.controller import ConnectionController
from mesh_rtc.client.media import KINDS, DeviceTrackProvider, ToggleableTrack
from mesh_rtc.client.session import RoomSession
from mesh_rtc.errors import DeviceError

logger = logging.getLogger(__name__)


class TrackReplacementCoordinator:
    """Swaps the local track of one kind across a session.

    The new track replaces the outbound track on every negotiating or
    connected link in place, so no renegotiation round-trip is needed. Links
    are taken from a snapshot; links created or closed while the swap is in
    progress are not guaranteed to see it.
    """

    def __init__(
        self,
        session: RoomSession,
        controller: ConnectionController,
        provider: DeviceTrackProvider,
    ):
        self.session = session
        self.controller = controller
        self.provider = provider

    async def replace_track(self, kind: str, device_id: str) -> MediaStreamTrack:
        """Switch the local ``kind`` track to ``device_id``.

        The session's mute flag for ``kind`` is applied to the new track.

        Returns:
            The new local track.

        Raises:
            DeviceError: If no replacement could be produced or the session
                has no local media.
        """
        if kind not in KINDS:
            raise DeviceError(f"Unknown media kind: {kind}", kind, device_id)
        if self.session.local_media is None:
            raise DeviceError("Session has no local media", kind, device_id)

        replacement = await self.provider.get_replacement(kind, device_id)

        local_media = self.session.local_media
        if local_media is None or self.session.is_terminal:
            replacement.stop()
            raise DeviceError("Session ended during device switch", kind, device_id)

        track = ToggleableTrack(replacement, enabled=not self.session.is_muted(kind))
        local_media.replace(kind, track)
        self.session.preview.attach(track)

        links = self.controller.active_links()
        replaced = 0
        for link in links:
            if await link.replace_track(kind, track):
                replaced += 1

        logger.info(
            f"Switched {kind} to {device_id} "
            f"({replaced}/{len(links)} link(s) updated, muted={self.session.is_muted(kind)})"
        )
        return track
