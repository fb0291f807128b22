"""Peer connection lifecycle tests using a fake RTCPeerConnection."""

import pytest
from aiortc import RTCIceCandidate

from conftest import OFFER_SDP, FakeTrack
from peer_session import (
    CONNECTION_STATE, ICE_SERVERS, LOCAL_CANDIDATE, REMOTE_STREAM, STUN_SERVERS,
    PeerSession, parse_candidate, sdp_candidates,
)


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def session(emitted, pcs):
    return PeerSession(lambda kind, data, pc: emitted.append((kind, data, pc)), pc_factory=pcs)


class TestCreate:
    def test_attaches_local_tracks(self, session, pcs):
        tracks = [FakeTrack("audio"), FakeTrack("video")]
        pc = session.create(tracks)
        assert pc is pcs.last
        assert pc.tracks == tracks
        assert session.live

    def test_second_create_is_rejected(self, session, pcs):
        first = session.create([])
        assert session.create([]) is None
        assert session.pc is first
        assert len(pcs.created) == 1

    async def test_create_after_close(self, session, pcs):
        first = session.create([])
        await session.close()
        assert first.closed and not session.live
        assert session.create([]) is not first

    def test_stun_configuration(self):
        assert STUN_SERVERS == ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]
        assert [s.urls for s in ICE_SERVERS.iceServers] == STUN_SERVERS


class TestEvents:
    def test_only_first_remote_stream_is_surfaced(self, session, emitted):
        pc = session.create([])
        audio, video = FakeTrack("audio"), FakeTrack("video")
        pc.fire("track", audio)
        pc.fire("track", video)

        streams = [d for k, d, _ in emitted if k == REMOTE_STREAM]
        assert len(streams) == 1
        assert streams[0].tracks == [audio, video]

    def test_connection_state_is_forwarded(self, session, emitted):
        pc = session.create([])
        pc.set_connection_state("connected")
        assert (CONNECTION_STATE, "connected", pc) in emitted

    async def test_replaced_connection_is_silenced(self, session, emitted):
        old = session.create([])
        await session.close()
        session.create([])
        old.set_connection_state("failed")
        old.fire("track", FakeTrack("video"))
        assert emitted == []

    async def test_close_stops_remote_tracks(self, session):
        pc = session.create([])
        track = FakeTrack("video")
        pc.fire("track", track)
        await session.close()
        assert track.stopped


class TestNegotiation:
    async def test_offer_forwards_local_candidates(self, session, emitted):
        session.create([])
        offer = await session.create_offer()
        assert offer["type"] == "offer"
        assert session.signaling_state == "have-local-offer"

        cands = [d for k, d, _ in emitted if k == LOCAL_CANDIDATE]
        assert [(c["sdpMid"], c["sdpMLineIndex"]) for c in cands] == [("0", 0), ("1", 1), ("1", 1)]
        assert cands[0]["candidate"].startswith("candidate:1 1 udp")
        assert all(pc is session.pc for _, _, pc in emitted)

    async def test_accept_offer_returns_answer(self, session):
        session.create([])
        answer = await session.accept_offer({"type": "offer", "sdp": OFFER_SDP})
        assert answer["type"] == "answer"
        assert session.has_remote_description
        assert session.signaling_state == "stable"

    async def test_remote_candidate_is_parsed(self, session, pcs):
        session.create([])
        await session.add_remote_candidate({
            "candidate": "candidate:1 1 udp 2130706431 10.0.0.5 40000 typ host",
            "sdpMid": "0",
            "sdpMLineIndex": 0,
        })
        (ice,) = pcs.last.candidates
        assert isinstance(ice, RTCIceCandidate)
        assert (ice.ip, ice.port, ice.type, ice.sdpMid) == ("10.0.0.5", 40000, "host", "0")

    async def test_end_of_candidates_is_skipped(self, session, pcs):
        session.create([])
        await session.add_remote_candidate({"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0})
        assert pcs.last.candidates == []


class TestSdpHelpers:
    def test_candidates_without_mid_fall_back_to_index(self):
        sdp = "v=0\r\nm=audio 9 RTP/AVP 0\r\na=candidate:1 1 udp 1 10.0.0.1 9 typ host\r\n"
        assert sdp_candidates(sdp) == [
            {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
        ]

    def test_parse_candidate_accepts_bare_line(self):
        ice = parse_candidate({"candidate": "1 1 udp 1 10.0.0.1 9 typ host", "sdpMLineIndex": 0})
        assert ice.ip == "10.0.0.1"
