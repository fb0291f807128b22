# envelopes.py
# --------------------------------------------------------------------
# Signaling wire format: one JSON object per websocket text frame
# --------------------------------------------------------------------

import json

JOIN = "join"
JOINED = "joined"
PEER_JOINED = "peer-joined"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
LEAVE = "leave"
PEER_LEFT = "peer-left"
ERROR = "error"

TYPES = frozenset(
    {JOIN, JOINED, PEER_JOINED, OFFER, ANSWER, ICE_CANDIDATE, LEAVE, PEER_LEFT, ERROR}
)
# envelopes the server forwards verbatim to the other room member
RELAYED = frozenset({OFFER, ANSWER, ICE_CANDIDATE})

ROOM_FULL = "Room is full. Maximum 2 participants allowed."
INVALID_JOIN = "Invalid join request"


class SignalingError(Exception):
    """Base class for everything the signaling layer raises."""


class EnvelopeError(SignalingError):
    """Raised when an incoming frame is not a usable envelope."""


def decode(raw) -> dict:
    """
    Parses one frame into an envelope dict.

    Raises EnvelopeError for invalid JSON, non-object payloads and
    missing or unknown `type` values. Callers log and drop on error.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeError(f"frame is not utf-8: {e}") from e
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EnvelopeError(f"invalid JSON: {e}") from e
    if not isinstance(msg, dict):
        raise EnvelopeError("envelope must be a JSON object")
    t = msg.get("type")
    if t not in TYPES:
        raise EnvelopeError(f"unknown envelope type: {t!r}")
    return msg


def encode(msg: dict) -> str:
    return json.dumps(msg)


def join(room: str, client_id: str) -> dict:
    return {"type": JOIN, "room": room, "id": client_id}


def joined(room: str, client_id: str) -> dict:
    return {"type": JOINED, "room": room, "id": client_id}


def peer_joined(peer_id: str) -> dict:
    return {"type": PEER_JOINED, "peerId": peer_id}


def peer_left(peer_id: str) -> dict:
    return {"type": PEER_LEFT, "peerId": peer_id}


def leave(room: str) -> dict:
    return {"type": LEAVE, "room": room}


def error(message: str) -> dict:
    return {"type": ERROR, "message": message}


def offer(room: str, description: dict) -> dict:
    return {"type": OFFER, "room": room, "offer": description}


def answer(room: str, description: dict) -> dict:
    return {"type": ANSWER, "room": room, "answer": description}


def ice_candidate(room: str, candidate: dict) -> dict:
    return {"type": ICE_CANDIDATE, "room": room, "candidate": candidate}
