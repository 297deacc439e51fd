"""Unified CLI for mesh-rtc using Click."""

import asyncio
import logging
import sys
from dataclasses import replace

import click
from loguru import logger

from mesh_rtc.config import get_config


LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def cli(log_level):
    """Peer-to-peer audio/video rooms over WebRTC."""
    level = log_level.upper()
    logging.basicConfig(level=getattr(logging, level))
    logger.remove()
    logger.add(sys.stderr, level=level)


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default: from config).")
@click.option("--port", type=int, default=None, help="Port to listen on (default: from config).")
def relay(host, port):
    """Run the signaling relay.

    Example:
        mesh-rtc relay --host 0.0.0.0 --port 8080
    """
    from mesh_rtc.relay.server import run_relay

    config = get_config()
    host = host or config.relay_host
    port = port or config.relay_port
    logger.info(f"Starting signaling relay on {host}:{port}")
    run_relay(host, port)


def _log_session(session):
    peers = ", ".join(session.peers) or "none"
    logger.info(
        f"Room {session.room_id}: {session.state.value} "
        f"(peers: {peers}, audio muted: {session.audio_muted}, "
        f"video muted: {session.video_muted})"
    )


@cli.command()
@click.option("--room", "-r", required=True, help="Room to join.")
@click.option("--server", "-s", default=None, help="Signaling relay URL (default: from config).")
@click.option("--video-device", default=None, help="Camera device or media file.")
@click.option("--audio-device", default=None, help="Microphone device or media file.")
@click.option("--no-audio", is_flag=True, help="Do not send audio.")
@click.option("--no-video", is_flag=True, help="Do not send video.")
@click.option("--mute-audio", is_flag=True, help="Join with the microphone muted.")
def join(room, server, video_device, audio_device, no_audio, no_video, mute_audio):
    """Join a room and stay connected until Ctrl-C.

    Example:
        mesh-rtc join --room standup --server ws://relay-host:8080
    """
    from mesh_rtc.client.media import MediaConstraints, PlayerMediaAcquirer
    from mesh_rtc.client.room_client import RoomClient
    from mesh_rtc.client.session import SessionState

    if no_audio and no_video:
        raise click.UsageError("--no-audio and --no-video cannot be used together")

    config = get_config()
    media = config.media
    if mute_audio:
        media = replace(media, mute_audio_by_default=True)
    try:
        constraints = MediaConstraints(
            audio=media.use_audio and not no_audio,
            video=media.use_video and not no_video,
            audio_device=audio_device,
            video_device=video_device,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    client = RoomClient(
        room,
        server_url=server,
        acquirer=PlayerMediaAcquirer(media),
        constraints=constraints,
        mute_audio_by_default=media.mute_audio_by_default,
    )
    session = client.new_session()
    session.on_change(_log_session)

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        logger.info("Left room")

    if session.state is SessionState.ERROR:
        logger.error(f"Could not join room: {session.error}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
