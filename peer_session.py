"""
Lifecycle of the single direct-media connection a client holds.

`PeerSession` creates and tears down the `aiortc.RTCPeerConnection`, attaches
local tracks, and turns the connection's callbacks into events for the
negotiation state machine. Only one connection is ever live per session; a
stale connection's callbacks are ignored once it has been replaced.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

logger = logging.getLogger(__name__)

STUN_SERVERS = ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]
ICE_SERVERS = RTCConfiguration([RTCIceServer(url) for url in STUN_SERVERS])

# event kinds handed to the `emit` callback
LOCAL_CANDIDATE = "local-candidate"
REMOTE_STREAM = "remote-stream"
CONNECTION_STATE = "connection-state"
SIGNALING_STATE = "signaling-state"


@dataclass
class RemoteStream:
    """All remote tracks of one connection, surfaced to the renderer once."""
    tracks: List[object] = field(default_factory=list)

    def stop(self):
        for track in self.tracks:
            track.stop()
        self.tracks.clear()


def describe(desc) -> dict:
    return {"type": desc.type, "sdp": desc.sdp}


def sdp_candidates(sdp: str) -> List[dict]:
    """Pulls `a=candidate` lines out of an SDP blob, keyed by media section."""
    sections, out = [], []
    for line in sdp.splitlines():
        if line.startswith("m="):
            sections.append({"mid": None, "candidates": []})
        elif sections and line.startswith("a=mid:"):
            sections[-1]["mid"] = line[len("a=mid:"):]
        elif sections and line.startswith("a=candidate:"):
            sections[-1]["candidates"].append(line[2:])
    for index, section in enumerate(sections):
        mid = section["mid"] if section["mid"] is not None else str(index)
        for cand in section["candidates"]:
            out.append({"candidate": cand, "sdpMid": mid, "sdpMLineIndex": index})
    return out


def parse_candidate(candidate: dict):
    """Browser style candidate dict -> aiortc RTCIceCandidate, or None for end-of-candidates."""
    line = candidate.get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line.split(":", 1)[1]
    ice = candidate_from_sdp(line)
    ice.sdpMid = candidate.get("sdpMid")
    ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return ice


class PeerSession:
    def __init__(self, emit: Callable[[str, object, object], None],
                 pc_factory: Callable[[], object] = None):
        self.emit = emit
        self.pc_factory = pc_factory or (lambda: RTCPeerConnection(ICE_SERVERS))
        self.pc = None
        self.remote_stream: Optional[RemoteStream] = None

    @property
    def live(self) -> bool:
        return self.pc is not None

    @property
    def signaling_state(self) -> Optional[str]:
        return self.pc.signalingState if self.pc else None

    @property
    def has_remote_description(self) -> bool:
        return self.pc is not None and self.pc.remoteDescription is not None

    def create(self, local_tracks) -> Optional[object]:
        """
        Opens a fresh peer connection and attaches `local_tracks`.

        Returns None without doing anything if a connection is already live;
        callers must close() first.
        """
        if self.pc is not None:
            logger.warning("Peer connection already exists")
            return None

        logger.info("Creating peer connection")
        pc = self.pc = self.pc_factory()
        self.remote_stream = None
        for track in local_tracks:
            pc.addTrack(track)
            logger.debug("Added local track: %s", track.kind)
        self._wire(pc)
        return pc

    def _wire(self, pc):
        @pc.on("track")
        def _on_track(track):
            if pc is not self.pc:
                return
            logger.info("Received remote track: %s", track.kind)
            if self.remote_stream is None:
                self.remote_stream = RemoteStream([track])
                self.emit(REMOTE_STREAM, self.remote_stream, pc)
            else:
                self.remote_stream.tracks.append(track)

        @pc.on("connectionstatechange")
        def _on_connection_state():
            if pc is not self.pc:
                return
            logger.info("Connection state: %s", pc.connectionState)
            self.emit(CONNECTION_STATE, pc.connectionState, pc)

        @pc.on("signalingstatechange")
        def _on_signaling_state():
            if pc is not self.pc:
                return
            self.emit(SIGNALING_STATE, pc.signalingState, pc)

        @pc.on("iceconnectionstatechange")
        def _on_ice_state():
            logger.debug("ICE connection state: %s", pc.iceConnectionState)

    async def close(self):
        pc, self.pc = self.pc, None
        if self.remote_stream is not None:
            self.remote_stream.stop()
            self.remote_stream = None
        if pc is not None:
            logger.info("Closing peer connection")
            await pc.close()

    async def create_offer(self) -> dict:
        pc = self.pc
        await pc.setLocalDescription(await pc.createOffer())
        self._forward_local_candidates(pc)
        return describe(pc.localDescription)

    async def accept_offer(self, offer: dict) -> dict:
        pc = self.pc
        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
        logger.info("Remote description set (offer)")
        await pc.setLocalDescription(await pc.createAnswer())
        self._forward_local_candidates(pc)
        return describe(pc.localDescription)

    async def apply_answer(self, answer: dict):
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))
        logger.info("Remote description set (answer)")

    async def add_remote_candidate(self, candidate: dict):
        ice = parse_candidate(candidate)
        if ice is None:
            return
        await self.pc.addIceCandidate(ice)
        logger.debug("ICE candidate added")

    def _forward_local_candidates(self, pc):
        # aiortc finishes gathering inside setLocalDescription, so the local
        # SDP already lists every host/srflx candidate
        if pc is not self.pc or pc.localDescription is None:
            return
        for cand in sdp_candidates(pc.localDescription.sdp):
            self.emit(LOCAL_CANDIDATE, cand, pc)
