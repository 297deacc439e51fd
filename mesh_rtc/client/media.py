"""Local media for a room session.

The session consumes capture devices through two capabilities only:

- ``MediaAcquirer.acquire(constraints)`` returns a ``LocalMediaSource``
- ``DeviceTrackProvider.get_replacement(kind, device_id)`` returns a new track

The default implementations open devices with aiortc's ``MediaPlayer``.
Every local track is wrapped in a ``ToggleableTrack`` so it can be muted
without renegotiating: a disabled track keeps producing frames, but they are
silent (audio) or black (video).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from mesh_rtc.config import MediaConfig
from mesh_rtc.errors import DeviceError, MediaAcquisitionError

logger = logging.getLogger(__name__)

KINDS = ("audio", "video")


class ToggleableTrack(MediaStreamTrack):
    """A local track that can be enabled and disabled in place.

    Attributes:
        source: The capture track frames are read from.
        enabled: When False, frames are replaced with silence or black.
    """

    def __init__(self, source: MediaStreamTrack, enabled: bool = True):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = enabled

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "video":
            return _black_frame(frame)
        return _silent_frame(frame)

    def stop(self):
        super().stop()
        self.source.stop()


def _black_frame(frame: av.VideoFrame) -> av.VideoFrame:
    blank = av.VideoFrame.from_ndarray(
        np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24"
    )
    blank.pts = frame.pts
    if frame.time_base is not None:
        blank.time_base = frame.time_base
    return blank


def _silent_frame(frame: av.AudioFrame) -> av.AudioFrame:
    channels = len(frame.layout.channels)
    blank = av.AudioFrame.from_ndarray(
        np.zeros((1, frame.samples * channels), dtype=np.int16),
        format="s16",
        layout=frame.layout.name,
    )
    blank.sample_rate = frame.sample_rate
    blank.pts = frame.pts
    if frame.time_base is not None:
        blank.time_base = frame.time_base
    return blank


class LocalMediaSource:
    """The local capture tracks owned by a room session.

    Holds at most one track per kind. Peer links reference these tracks as
    their outbound source but never own or stop them.
    """

    def __init__(self, tracks: Optional[List[MediaStreamTrack]] = None):
        self._tracks: Dict[str, ToggleableTrack] = {}
        self.stopped = False
        for track in tracks or []:
            if not isinstance(track, ToggleableTrack):
                track = ToggleableTrack(track)
            self._tracks[track.kind] = track

    def get_tracks(self) -> List[ToggleableTrack]:
        return list(self._tracks.values())

    def get_audio_tracks(self) -> List[ToggleableTrack]:
        return [t for t in self._tracks.values() if t.kind == "audio"]

    def get_video_tracks(self) -> List[ToggleableTrack]:
        return [t for t in self._tracks.values() if t.kind == "video"]

    def track(self, kind: str) -> Optional[ToggleableTrack]:
        return self._tracks.get(kind)

    def set_enabled(self, kind: str, enabled: bool) -> None:
        """Enable or disable every local track of one kind."""
        for track in self._tracks.values():
            if track.kind == kind:
                track.enabled = enabled

    def replace(self, kind: str, track: ToggleableTrack) -> Optional[ToggleableTrack]:
        """Swap in a new track for ``kind`` and stop the one it replaces.

        Returns:
            The replaced track, or None if there was none.
        """
        old = self._tracks.get(kind)
        self._tracks[kind] = track
        if old is not None and old is not track:
            old.stop()
        return old

    def stop(self) -> None:
        """Stop every track. Safe to call more than once."""
        if self.stopped:
            return
        self.stopped = True
        for track in self._tracks.values():
            track.stop()
        logger.debug(f"Stopped {len(self._tracks)} local track(s)")


class LocalPreview:
    """Handle on the local preview surface.

    Rendering is done elsewhere; this records which track the preview shows
    for each kind and lets a renderer be notified when it changes.
    """

    def __init__(self, on_attach=None):
        self._tracks: Dict[str, MediaStreamTrack] = {}
        self._on_attach = on_attach

    def attach(self, track: MediaStreamTrack) -> None:
        self._tracks[track.kind] = track
        if self._on_attach:
            self._on_attach(track)

    def show(self, source: LocalMediaSource) -> None:
        for track in source.get_tracks():
            self.attach(track)

    def current(self, kind: str) -> Optional[MediaStreamTrack]:
        return self._tracks.get(kind)

    def clear(self) -> None:
        self._tracks.clear()


@dataclass
class MediaConstraints:
    """What to capture and from which devices."""

    audio: bool = True
    video: bool = True
    audio_device: Optional[str] = None
    video_device: Optional[str] = None

    def __post_init__(self):
        if not self.audio and not self.video:
            raise ValueError("At least one of audio or video must be requested")

    @classmethod
    def from_config(cls, media: MediaConfig) -> "MediaConstraints":
        return cls(
            audio=media.use_audio,
            video=media.use_video,
            audio_device=media.audio_device,
            video_device=media.video_device,
        )


class MediaAcquirer:
    """Acquires the local media source for a session."""

    async def acquire(self, constraints: MediaConstraints) -> LocalMediaSource:
        raise NotImplementedError


class DeviceTrackProvider:
    """Produces a replacement track of one kind from a given device."""

    async def get_replacement(self, kind: str, device_id: str) -> MediaStreamTrack:
        raise NotImplementedError


def _failure_reason(error: Exception) -> str:
    if isinstance(error, PermissionError):
        return "permission-denied"
    if isinstance(error, FileNotFoundError):
        return "no-device"
    return "unavailable"


def _stop_tracks(tracks) -> None:
    for track in tracks:
        if track is not None:
            track.stop()


def _stop_player(player: MediaPlayer) -> None:
    _stop_tracks([player.audio, player.video])


def _release_opened_player(opening: asyncio.Future) -> None:
    if opening.cancelled() or opening.exception() is not None:
        return
    logger.info("Releasing a device that finished opening after cancellation")
    _stop_player(opening.result())


class PlayerMediaAcquirer(MediaAcquirer, DeviceTrackProvider):
    """Opens capture devices with aiortc's MediaPlayer.

    Attributes:
        media: Device, format and size defaults.
    """

    def __init__(self, media: Optional[MediaConfig] = None):
        self.media = media or MediaConfig()

    def _options(self, kind: str) -> Dict[str, str]:
        return {"video_size": self.media.video_size} if kind == "video" else {}

    async def _open_track(self, kind: str, device: str) -> MediaStreamTrack:
        fmt = self.media.video_format if kind == "video" else self.media.audio_format
        loop = asyncio.get_running_loop()
        # MediaPlayer opens the device synchronously
        opening = loop.run_in_executor(
            None, lambda: MediaPlayer(device, format=fmt, options=self._options(kind))
        )
        try:
            player = await asyncio.shield(opening)
        except asyncio.CancelledError:
            # The executor thread cannot be interrupted; release the device once it opens
            opening.add_done_callback(_release_opened_player)
            raise

        track = player.video if kind == "video" else player.audio
        if track is None:
            _stop_player(player)
            raise FileNotFoundError(f"{device} has no {kind} stream")
        logger.info(f"Opened {kind} device {device}")
        return track

    async def acquire(self, constraints: MediaConstraints) -> LocalMediaSource:
        requested = []
        if constraints.audio:
            requested.append(("audio", constraints.audio_device or self.media.audio_device))
        if constraints.video:
            requested.append(("video", constraints.video_device or self.media.video_device))

        tracks = []
        try:
            for kind, device in requested:
                tracks.append(await self._open_track(kind, device))
        except asyncio.CancelledError:
            _stop_tracks(tracks)
            raise
        except (av.error.FFmpegError, OSError) as e:
            _stop_tracks(tracks)
            raise MediaAcquisitionError(
                f"Could not open {kind} device {device}: {e}",
                reason=_failure_reason(e),
            ) from e

        return LocalMediaSource(tracks)

    async def get_replacement(self, kind: str, device_id: str) -> MediaStreamTrack:
        if kind not in KINDS:
            raise DeviceError(f"Unknown media kind: {kind}", kind, device_id)
        try:
            return await self._open_track(kind, device_id)
        except (av.error.FFmpegError, OSError) as e:
            raise DeviceError(
                f"Could not open {kind} device {device_id}: {e}", kind, device_id
            ) from e
