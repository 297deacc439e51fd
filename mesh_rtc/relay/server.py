"""WebSocket signaling relay for mesh rooms.

Clients connect, receive a ``welcome`` message with their member id, and then
send ``join``/``leave`` requests and ``handshake``/``candidate`` messages
addressed to other members. See ``mesh_rtc.protocol`` for the message
formats.

Usage:
    mesh-rtc relay [--host HOST] [--port PORT]
"""

import asyncio
import logging
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed

from mesh_rtc.errors import ProtocolError
from mesh_rtc.protocol import (
    ERROR_BAD_MESSAGE,
    MSG_ERROR,
    MSG_JOIN,
    MSG_LEAVE,
    MSG_WELCOME,
    RELAYED_MESSAGES,
    format_message,
    parse_message,
)
from mesh_rtc.relay.registry import Member, RoomRegistry

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Serves signaling connections on top of a RoomRegistry.

    Attributes:
        registry: Room and member registry shared by all connections.
    """

    def __init__(self, registry: Optional[RoomRegistry] = None):
        self.registry = registry or RoomRegistry()

    async def handler(self, connection) -> None:
        """Handle one websocket connection for its whole lifetime."""
        member = self.registry.register(connection)
        await member.send(format_message(MSG_WELCOME, peerId=member.member_id))

        try:
            async for message in connection:
                await self.handle_message(member, message)
        except ConnectionClosed:
            logger.info(f"[{member.member_id}] connection closed")
        finally:
            await self.registry.unregister(member)

    async def handle_message(self, member: Member, message) -> None:
        """Dispatch one inbound frame from a member."""
        try:
            msg_type, data = parse_message(message)
        except ProtocolError as e:
            logger.warning(f"[{member.member_id}] bad message: {e}")
            await member.send(
                format_message(MSG_ERROR, reason=ERROR_BAD_MESSAGE, message=str(e))
            )
            return

        if msg_type == MSG_JOIN:
            await self.registry.join(member, str(data["room"]))
        elif msg_type == MSG_LEAVE:
            await self.registry.leave(member, str(data["room"]))
        elif msg_type in RELAYED_MESSAGES:
            await self.registry.relay(member, data["peerId"], data)
        else:
            logger.warning(
                f"[{member.member_id}] sent relay-only message type: {msg_type}"
            )
            await member.send(
                format_message(
                    MSG_ERROR,
                    reason=ERROR_BAD_MESSAGE,
                    message=f"Clients may not send {msg_type}",
                )
            )

    async def serve(self, host: str, port: int) -> None:
        """Run the relay until cancelled."""
        async with websockets.serve(self.handler, host, port):
            logger.info(f"Signaling relay running on ws://{host}:{port}")
            await asyncio.Future()


def run_relay(host: str, port: int) -> None:
    """Start the signaling relay and block until interrupted."""
    relay = SignalingRelay()
    try:
        asyncio.run(relay.serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped")
