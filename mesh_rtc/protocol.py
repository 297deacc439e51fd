"""Signaling message protocol for mesh-rtc.

This module defines the messages exchanged between clients and the signaling
relay. Every message is a JSON object sent as one websocket text frame, with
a ``type`` field naming the message.

Message Types
-------------

**welcome** ``{"peerId"}``
    Sent by: Relay, once per connection
    Purpose: Tells the client its server-assigned member id

**join** ``{"room"}``
    Sent by: Client
    Purpose: Enter a room. A member may only be in one room at a time.

**peer-discovered** ``{"peerId", "shouldInitiate"}``
    Sent by: Relay
    Purpose: Announces a peer to mesh with. Exactly one side of each pair
    receives ``shouldInitiate: true`` (the newcomer) and creates the offer.

**handshake** ``{"peerId", "description": {"type", "sdp"}}``
    Sent by: Client, relayed to the named peer
    Purpose: Offer or answer. ``peerId`` is the target when sent and is
    rewritten by the relay to the sender when delivered.

**candidate** ``{"peerId", "candidate": {"candidate", "sdpMid", "sdpMLineIndex"}}``
    Sent by: Client, relayed to the named peer
    Purpose: A network candidate for the link to ``peerId``.

**peer-removed** ``{"peerId"}``
    Sent by: Relay
    Purpose: The named peer left the room (or the receiver did).

**leave** ``{"room"}``
    Sent by: Client
    Purpose: Leave a room. Closing the connection implies leave.

**error** ``{"reason", "message"}``
    Sent by: Relay
    Purpose: A request was rejected (duplicate join, malformed message).

Message Flow
------------

1. A → Relay: join {room: "r1"}           (room empty, nothing is sent)
2. B → Relay: join {room: "r1"}
3. Relay → A: peer-discovered {peerId: B, shouldInitiate: false}
4. Relay → B: peer-discovered {peerId: A, shouldInitiate: true}
5. B → Relay → A: handshake {description: offer}
6. A → Relay → B: handshake {description: answer}
7. A ⇄ B: candidate (any time after step 3)
8. A → Relay: leave {room: "r1"}
9. Relay → B: peer-removed {peerId: A}; Relay → A: peer-removed {peerId: B}
"""

import json
from typing import Any, Dict, Optional, Tuple

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from mesh_rtc.errors import ProtocolError

MSG_WELCOME = "welcome"
MSG_JOIN = "join"
MSG_LEAVE = "leave"
MSG_PEER_DISCOVERED = "peer-discovered"
MSG_PEER_REMOVED = "peer-removed"
MSG_HANDSHAKE = "handshake"
MSG_CANDIDATE = "candidate"
MSG_ERROR = "error"

# Messages the relay forwards between two members without inspecting them
RELAYED_MESSAGES = (MSG_HANDSHAKE, MSG_CANDIDATE)

# Error reasons sent by the relay
ERROR_ALREADY_JOINED = "already-joined"
ERROR_IN_OTHER_ROOM = "in-other-room"
ERROR_NOT_JOINED = "not-joined"
ERROR_BAD_MESSAGE = "bad-message"

REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    MSG_WELCOME: ("peerId",),
    MSG_JOIN: ("room",),
    MSG_LEAVE: ("room",),
    MSG_PEER_DISCOVERED: ("peerId", "shouldInitiate"),
    MSG_PEER_REMOVED: ("peerId",),
    MSG_HANDSHAKE: ("peerId", "description"),
    MSG_CANDIDATE: ("peerId", "candidate"),
    MSG_ERROR: ("reason",),
}

DESCRIPTION_TYPES = ("offer", "answer")


def format_message(msg_type: str, **fields: Any) -> str:
    """Format a signaling message as a JSON text frame.

    Args:
        msg_type: The message type constant (e.g., MSG_JOIN).
        **fields: Message fields.

    Returns:
        JSON string.

    Examples:
        >>> format_message(MSG_JOIN, room="r1")
        '{"type": "join", "room": "r1"}'
    """
    return json.dumps({"type": msg_type, **fields})


def parse_message(message: str | bytes) -> Tuple[str, Dict[str, Any]]:
    """Parse a signaling frame into its type and payload.

    Args:
        message: Raw websocket frame.

    Returns:
        Tuple of (message_type, full message dict).

    Raises:
        ProtocolError: If the frame is not a JSON object, has an unknown type,
            or is missing a required field.
    """
    try:
        data = json.loads(message)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    msg_type = data.get("type")
    if msg_type not in REQUIRED_FIELDS:
        raise ProtocolError(f"Unknown message type: {msg_type!r}")

    missing = [name for name in REQUIRED_FIELDS[msg_type] if name not in data]
    if missing:
        raise ProtocolError(f"{msg_type} missing field(s): {', '.join(missing)}")

    return msg_type, data


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(data: Any) -> RTCSessionDescription:
    """Build a session description from its wire form.

    Raises:
        ProtocolError: If the description is malformed.
    """
    if not isinstance(data, dict):
        raise ProtocolError("Session description must be an object")
    sdp = data.get("sdp")
    desc_type = data.get("type")
    if desc_type not in DESCRIPTION_TYPES:
        raise ProtocolError(f"Unexpected session description type: {desc_type!r}")
    if not isinstance(sdp, str) or not sdp:
        raise ProtocolError("Session description has no sdp")
    return RTCSessionDescription(sdp=sdp, type=desc_type)


def candidate_to_dict(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Any) -> Optional[RTCIceCandidate]:
    """Build an ICE candidate from its wire form.

    Returns:
        The candidate, or None for an end-of-candidates marker (empty string).

    Raises:
        ProtocolError: If the candidate cannot be parsed.
    """
    if not isinstance(data, dict):
        raise ProtocolError("Candidate must be an object")

    line = data.get("candidate") or ""
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    if not line:
        return None

    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        raise ProtocolError(f"Invalid candidate {line!r}: {e}") from e

    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate
