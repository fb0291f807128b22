# rooms.py
# --------------------------------------------------------------------
# Room registry: who is in which room, capacity and reconnection rules
# --------------------------------------------------------------------

import asyncio, logging, time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from websockets.exceptions import ConnectionClosed

import envelopes

logger = logging.getLogger(__name__)


@dataclass
class Participant:
    room: str
    id: str
    transport: object
    joined_at: float = field(default_factory=time.time)


@dataclass
class Room:
    id: str
    # insertion ordered, so the earlier joiner is always first
    participants: Dict[str, Participant] = field(default_factory=dict)

    def others(self, client_id: str) -> List[Participant]:
        return [p for pid, p in self.participants.items() if pid != client_id]


class RoomRegistry:
    """
    Owns the room -> participants mapping for the signaling server.

    Membership changes happen under the registry lock. The messages a change
    produces are collected while holding it and sent once it is released, so
    one slow socket never stalls joins or relays in other rooms.
    """

    MAX_PARTICIPANTS = 2

    def __init__(self):
        self.rooms: Dict[str, Room] = {}
        self.relayed = Counter()
        self._lock = asyncio.Lock()

    async def join(self, room_id: str, client_id: str, transport) -> bool:
        """
        Adds `client_id` to `room_id` (creating the room on first join).

        Returns True when the caller is a member afterwards. A join with an id
        already present is a reconnection: the transport is swapped and the
        other member is told about it again so negotiation restarts.
        """
        outbox = []
        async with self._lock:
            room = self.rooms.get(room_id)
            if room is None:
                room = self.rooms[room_id] = Room(room_id)

            existing = room.participants.get(client_id)
            if existing is not None:
                logger.info("Client %s is reconnecting to room %s", client_id, room_id)
                existing.transport = transport
                outbox.append((transport, envelopes.joined(room_id, client_id)))
                for other in room.others(client_id):
                    outbox.append((other.transport, envelopes.peer_joined(client_id)))
                accepted = True
            elif len(room.participants) >= self.MAX_PARTICIPANTS:
                logger.info("Rejected %s: room %s is full", client_id, room_id)
                outbox.append((transport, envelopes.error(envelopes.ROOM_FULL)))
                accepted = False
            else:
                room.participants[client_id] = Participant(room_id, client_id, transport)
                logger.info(
                    "Client %s joined room %s. Total participants: %d",
                    client_id, room_id, len(room.participants),
                )
                outbox.append((transport, envelopes.joined(room_id, client_id)))
                if len(room.participants) == self.MAX_PARTICIPANTS:
                    other = room.others(client_id)[0]
                    outbox.append((other.transport, envelopes.peer_joined(client_id)))
                    outbox.append((transport, envelopes.peer_joined(other.id)))
                accepted = True
        await self._flush(outbox)
        return accepted

    async def leave(self, room_id: str, client_id: str, transport=None) -> bool:
        """
        Removes `client_id` from `room_id`. Idempotent.

        If `transport` is given it must be the handle currently registered for
        the id; a leave from a transport that has since been replaced by a
        reconnection is ignored.
        """
        async with self._lock:
            room = self.rooms.get(room_id)
            if room is None or client_id not in room.participants:
                return False
            participant = room.participants[client_id]
            if transport is not None and participant.transport is not transport:
                logger.debug("Ignoring leave for %s from a replaced transport", client_id)
                return False

            outbox = [(other.transport, envelopes.peer_left(client_id))
                      for other in room.others(client_id)]
            del room.participants[client_id]
            logger.info("Client %s left room %s", client_id, room_id)

            if not room.participants:
                del self.rooms[room_id]
                logger.info("Room %s deleted (empty)", room_id)
        await self._flush(outbox)
        return True

    async def relay(self, room_id: str, sender_id: str, payload: dict, transport=None) -> int:
        """
        Forwards `payload` tagged with `from` to everyone else in the room.

        As with leave, a `transport` that is no longer the one registered for
        `sender_id` has nothing to say and its message is dropped.
        """
        async with self._lock:
            room = self.rooms.get(room_id)
            if room is None or sender_id not in room.participants:
                return 0
            if transport is not None and room.participants[sender_id].transport is not transport:
                logger.debug("Dropping %s from a replaced transport of %s", payload.get("type"), sender_id)
                return 0
            msg = dict(payload, **{"from": sender_id})
            outbox = [(other.transport, msg) for other in room.others(sender_id)]
        sent = await self._flush(outbox)
        self.relayed[payload.get("type")] += sent
        return sent

    def participants(self, room_id: str) -> List[str]:
        room = self.rooms.get(room_id)
        return list(room.participants) if room else []

    def transport_of(self, room_id: str, client_id: str) -> Optional[object]:
        room = self.rooms.get(room_id)
        p = room.participants.get(client_id) if room else None
        return p.transport if p else None

    def stats(self) -> dict:
        return {
            "active_rooms": len(self.rooms),
            "participants": sum(len(r.participants) for r in self.rooms.values()),
            "offers_relayed": self.relayed[envelopes.OFFER],
            "answers_relayed": self.relayed[envelopes.ANSWER],
            "ice_candidates_relayed": self.relayed[envelopes.ICE_CANDIDATE],
        }

    async def _deliver(self, transport, msg: dict) -> bool:
        try:
            await transport.send(envelopes.encode(msg))
            return True
        except ConnectionClosed:
            # the peer's own handler will run its leave when it notices
            logger.debug("Dropped %s for a closed transport", msg.get("type"))
            return False

    async def _flush(self, outbox) -> int:
        """Sends queued (transport, msg) pairs in order; returns how many went out."""
        sent = 0
        for transport, msg in outbox:
            if await self._deliver(transport, msg):
                sent += 1
        return sent
