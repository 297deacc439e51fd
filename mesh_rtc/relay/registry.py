"""Room registry for the signaling relay.

The registry tracks which members are connected and which room each one has
joined, and performs the discovery and departure fan-outs. It never inspects
handshake payloads; it only rewrites the ``peerId`` field so the receiver
knows who sent them.

Every change to a room's membership happens while holding that room's lock,
so two joins to the same room cannot interleave their discovery fan-outs and
a member is only added after the discovery events for every pair have been
sent.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from websockets.exceptions import ConnectionClosed

from mesh_rtc.protocol import (
    ERROR_ALREADY_JOINED,
    ERROR_IN_OTHER_ROOM,
    ERROR_NOT_JOINED,
    MSG_ERROR,
    MSG_PEER_DISCOVERED,
    MSG_PEER_REMOVED,
    format_message,
)

logger = logging.getLogger(__name__)


class Member:
    """One signaling connection as seen by the relay.

    Attributes:
        member_id: Server-assigned identifier, valid for the connection's lifetime.
        connection: Outbound sink; anything with an async ``send(str)``.
        rooms: Names of the rooms this member has joined (at most one).
        closed: Set once the connection has gone away.
    """

    def __init__(self, member_id: str, connection: Any):
        self.member_id = member_id
        self.connection = connection
        self.rooms: Set[str] = set()
        self.closed = False

    async def send(self, message: str) -> bool:
        """Send a frame to this member.

        Returns:
            True if the frame was handed to the connection, False if the
            member is gone. Delivery failures are not raised: the connection's
            own close handler is responsible for cleanup.
        """
        if self.closed:
            return False
        try:
            await self.connection.send(message)
            return True
        except ConnectionClosed:
            logger.debug(f"[{self.member_id}] send skipped, connection closed")
            return False

    def __repr__(self) -> str:
        return f"Member({self.member_id!r}, rooms={sorted(self.rooms)})"


class _Room:
    def __init__(self, name: str):
        self.name = name
        self.members: Dict[str, Member] = {}
        self.lock = asyncio.Lock()
        self.users = 0


class RoomRegistry:
    """Registry of connected members and the rooms they have joined."""

    def __init__(self):
        self.members: Dict[str, Member] = {}
        self._rooms: Dict[str, _Room] = {}

    def register(self, connection: Any, member_id: Optional[str] = None) -> Member:
        """Register a new connection and assign it a member id."""
        member_id = member_id or uuid.uuid4().hex
        if member_id in self.members:
            raise ValueError(f"Member id already registered: {member_id}")
        member = Member(member_id, connection)
        self.members[member_id] = member
        logger.info(f"[{member_id}] connection accepted (total: {len(self.members)})")
        return member

    async def unregister(self, member: Member) -> None:
        """Remove a member whose connection closed, leaving every room it joined."""
        member.closed = True
        for room_name in list(member.rooms):
            await self.leave(member, room_name)
        self.members.pop(member.member_id, None)
        logger.info(
            f"[{member.member_id}] disconnected (remaining: {len(self.members)})"
        )

    @asynccontextmanager
    async def _locked_room(self, name: str) -> AsyncIterator[_Room]:
        room = self._rooms.get(name)
        if room is None:
            room = self._rooms[name] = _Room(name)
        room.users += 1
        try:
            async with room.lock:
                yield room
        finally:
            room.users -= 1
            if not room.members and not room.users and self._rooms.get(name) is room:
                del self._rooms[name]
                logger.debug(f"Room {name!r} is empty, removed")

    async def join(self, member: Member, room_name: str) -> bool:
        """Add a member to a room, announcing every existing pair first.

        Existing members are told about the newcomer with
        ``shouldInitiate=False`` and the newcomer is told about each of them
        with ``shouldInitiate=True``.

        Returns:
            True if the member joined, False if the join was rejected.
        """
        async with self._locked_room(room_name) as room:
            if room_name in member.rooms:
                logger.warning(f"[{member.member_id}] already joined {room_name!r}")
                await self._reject(
                    member, ERROR_ALREADY_JOINED, f"Already joined {room_name}"
                )
                return False
            if member.rooms:
                current = next(iter(member.rooms))
                logger.warning(
                    f"[{member.member_id}] join {room_name!r} rejected, "
                    f"still in {current!r}"
                )
                await self._reject(
                    member, ERROR_IN_OTHER_ROOM, f"Leave {current} before joining another room"
                )
                return False

            for other in list(room.members.values()):
                await other.send(
                    format_message(
                        MSG_PEER_DISCOVERED,
                        peerId=member.member_id,
                        shouldInitiate=False,
                    )
                )
                await member.send(
                    format_message(
                        MSG_PEER_DISCOVERED,
                        peerId=other.member_id,
                        shouldInitiate=True,
                    )
                )

            room.members[member.member_id] = member
            member.rooms.add(room_name)
            logger.info(
                f"[{member.member_id}] joined {room_name!r} "
                f"(members: {len(room.members)})"
            )
            return True

    async def leave(self, member: Member, room_name: str) -> bool:
        """Remove a member from a room and tell both sides of each pair.

        Returns:
            True if the member was in the room, False otherwise.
        """
        async with self._locked_room(room_name) as room:
            if room_name not in member.rooms:
                logger.warning(f"[{member.member_id}] not in {room_name!r}")
                await self._reject(member, ERROR_NOT_JOINED, f"Not in {room_name}")
                return False

            member.rooms.discard(room_name)
            room.members.pop(member.member_id, None)

            for other in list(room.members.values()):
                await other.send(
                    format_message(MSG_PEER_REMOVED, peerId=member.member_id)
                )
                await member.send(
                    format_message(MSG_PEER_REMOVED, peerId=other.member_id)
                )

            logger.info(
                f"[{member.member_id}] left {room_name!r} "
                f"(members: {len(room.members)})"
            )
            return True

    async def relay(self, sender: Member, target_id: Any, message: Dict[str, Any]) -> bool:
        """Forward a handshake or candidate message to another member.

        The target is looked up among all connected members. A target that is
        not connected (it may have just left) is not an error: the message is
        dropped.

        Returns:
            True if the message was forwarded, False if it was dropped.
        """
        target = self.members.get(target_id) if isinstance(target_id, str) else None
        if target is None:
            logger.debug(
                f"[{sender.member_id}] drop {message.get('type')} for unknown peer {target_id!r}"
            )
            return False

        forwarded = {**message, "peerId": sender.member_id}
        msg_type = forwarded.pop("type")
        delivered = await target.send(format_message(msg_type, **forwarded))
        if delivered:
            logger.debug(f"Relayed {msg_type} from {sender.member_id} to {target_id}")
        return delivered

    async def _reject(self, member: Member, reason: str, message: str) -> None:
        await member.send(format_message(MSG_ERROR, reason=reason, message=message))

    def room_members(self, room_name: str) -> List[str]:
        """Member ids in a room, in join order."""
        room = self._rooms.get(room_name)
        return list(room.members) if room else []

    def snapshot(self) -> Dict[str, List[str]]:
        """Current room membership, for logging and tests."""
        return {
            name: list(room.members)
            for name, room in self._rooms.items()
            if room.members
        }
