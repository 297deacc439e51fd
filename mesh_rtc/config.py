"""Settings for the mesh-rtc relay and room client.

Each setting is resolved from the first source that provides it:

1. Command line options (applied by the CLI itself)
2. ``MESH_RTC_*`` environment variables
3. A TOML file: ``./mesh-rtc.toml``, else ``~/.mesh-rtc/config.toml``
4. Built-in defaults

The ``[environments.<name>]`` table of the file is selected with
``MESH_RTC_ENV`` (development, staging or production; production when unset).
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlsplit, urlunsplit

from loguru import logger


@dataclass
class MediaConfig:
    """Local media defaults.

    Attributes:
        use_audio: Capture a microphone track.
        use_video: Capture a camera track.
        mute_audio_by_default: Start the session with audio muted.
        video_device: Camera device passed to the media player.
        video_format: Input format for the camera (e.g. "v4l2", "avfoundation").
        audio_device: Microphone device passed to the media player.
        audio_format: Input format for the microphone (e.g. "pulse", "alsa").
        video_size: Requested capture size as "WIDTHxHEIGHT".
    """

    use_audio: bool = True
    use_video: bool = True
    mute_audio_by_default: bool = False
    video_device: str = "/dev/video0"
    video_format: Optional[str] = "v4l2"
    audio_device: str = "default"
    audio_format: Optional[str] = "pulse"
    video_size: str = "640x480"

    def __post_init__(self):
        if not self.use_audio and not self.use_video:
            raise ValueError("At least one of use_audio or use_video must be enabled")
        width, _, height = self.video_size.partition("x")
        if not (width.isdigit() and height.isdigit()):
            raise ValueError(f"video_size must look like 640x480, got {self.video_size!r}")

    @classmethod
    def from_dict(cls, data: dict) -> "MediaConfig":
        """Build from the ``[media]`` table, skipping keys it does not know."""
        values = {}
        for key, value in data.items():
            if key not in cls.__dataclass_fields__:
                logger.warning(f"Ignoring unknown [media] setting: {key}")
                continue
            values[key] = value
        return cls(**values)


DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"
DEFAULT_RELAY_HOST = "localhost"
DEFAULT_RELAY_PORT = 8080
DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302"]

ENVIRONMENTS = {"development", "staging", "production"}


class Config:
    """Resolved mesh-rtc settings.

    Attributes:
        signaling_websocket: Relay URL used by ``mesh-rtc join``.
        relay_host: Interface ``mesh-rtc relay`` binds to.
        relay_port: Port ``mesh-rtc relay`` listens on.
        ice_servers: STUN/TURN URLs handed to every peer connection.
        media: Local media defaults.
        environment: Selected ``[environments.<name>]`` profile.
    """

    def __init__(self):
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.relay_host: str = DEFAULT_RELAY_HOST
        self.relay_port: int = DEFAULT_RELAY_PORT
        self.ice_servers: List[str] = list(DEFAULT_ICE_SERVERS)
        self.media: MediaConfig = MediaConfig()
        self.environment: str = "production"
        self._file_data: dict = {}

    def load(self) -> None:
        """Resolve settings from the config file and the environment."""
        self.environment = self._select_environment()

        path = self._locate_file()
        if path is not None:
            self._read_file(path)

        self._read_env()

    def _select_environment(self) -> str:
        name = os.getenv("MESH_RTC_ENV", "production").lower()
        if name in ENVIRONMENTS:
            return name
        logger.warning(
            f"Unknown MESH_RTC_ENV '{name}' (expected one of "
            f"{', '.join(sorted(ENVIRONMENTS))}), using 'production'"
        )
        return "production"

    def _locate_file(self) -> Optional[Path]:
        """Return the first config file that exists, if any.

        The working directory's ``mesh-rtc.toml`` wins over
        ``~/.mesh-rtc/config.toml``.
        """
        for candidate in (
            Path.cwd() / "mesh-rtc.toml",
            Path.home() / ".mesh-rtc" / "config.toml",
        ):
            if candidate.exists():
                logger.info(f"Using config file {candidate}")
                return candidate
        logger.debug("No mesh-rtc config file, using defaults")
        return None

    def _read_file(self, path: Path) -> None:
        """Apply the settings found in a TOML file.

        A file that cannot be read or parsed is skipped with a warning, and so
        is each invalid section.
        """
        try:
            with open(path, "rb") as f:
                self._file_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Could not read {path}: {e}. Keeping defaults.")
            return

        relay = self._file_data.get("relay", {})
        if "host" in relay:
            self.relay_host = str(relay["host"])
        if "port" in relay:
            self._set_relay_port(relay["port"], source=str(path))

        ice_servers = self._file_data.get("rtc", {}).get("ice_servers")
        if isinstance(ice_servers, list) and all(isinstance(s, str) for s in ice_servers):
            self.ice_servers = ice_servers
        elif ice_servers is not None:
            logger.warning("[rtc] ice_servers must be a list of URLs, ignoring")

        try:
            self.media = MediaConfig.from_dict(self._file_data.get("media", {}))
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid [media] section in {path}: {e}. Keeping defaults.")

        profile = self._file_data.get("environments", {}).get(self.environment, {})
        if "signaling_websocket" in profile:
            self.signaling_websocket = profile["signaling_websocket"]
            logger.debug(
                f"[environments.{self.environment}] signaling_websocket = "
                f"{self.signaling_websocket}"
            )

    def _set_relay_port(self, value, source: str) -> None:
        try:
            port = int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid relay port {value!r} from {source}, keeping {self.relay_port}")
            return
        if not 0 < port < 65536:
            logger.warning(f"Relay port {port} from {source} out of range, keeping {self.relay_port}")
            return
        self.relay_port = port

    def _read_env(self) -> None:
        """Apply ``MESH_RTC_*`` variables on top of the file settings."""
        signaling = os.getenv("MESH_RTC_SIGNALING_WS")
        if signaling:
            self.signaling_websocket = signaling
            logger.info(f"MESH_RTC_SIGNALING_WS set, relay URL: {signaling}")

        host = os.getenv("MESH_RTC_RELAY_HOST")
        if host:
            self.relay_host = host
            logger.info(f"MESH_RTC_RELAY_HOST set, relay host: {host}")

        port = os.getenv("MESH_RTC_RELAY_PORT")
        if port:
            self._set_relay_port(port, source="MESH_RTC_RELAY_PORT")

    def get_websocket_url(self, port: int = DEFAULT_RELAY_PORT) -> str:
        """Relay URL for clients, with ``port`` appended when the URL has none."""
        url = self.signaling_websocket
        parts = urlsplit(url)
        if not parts.hostname or parts.port is not None:
            return url
        return urlunsplit(parts._replace(netloc=f"{parts.netloc}:{port}"))


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process-wide Config, loading it on first use."""
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Discard the cached Config and load it again (used by tests)."""
    global _config
    _config = Config()
    _config.load()
    return _config
