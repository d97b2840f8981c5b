import asyncio

import pytest

from envelope import Candidate
from exceptions import ProtocolError
from fakes import FakeChannel
from peer import AiortcPeerConnection, DataChannelStream, candidates_from_sdp

SDP = """v=0
o=- 3912040211 3912040211 IN IP4 0.0.0.0
s=-
t=0 0
a=group:BUNDLE 0
m=application 54321 DTLS/SCTP 5000
c=IN IP4 192.0.2.1
a=mid:0
a=sctpmap:5000 webrtc-datachannel 65535
a=candidate:1 1 udp 2122260223 192.0.2.1 54321 typ host
a=candidate:2 1 udp 1686052607 198.51.100.7 40000 typ srflx raddr 192.0.2.1 rport 54321
a=end-of-candidates
m=audio 9 UDP/TLS/RTP/SAVPF 0
a=candidate:3 1 udp 2122260223 192.0.2.1 54322 typ host
a=mid:audio
"""


def test_candidates_from_sdp():
    found = candidates_from_sdp(SDP)

    assert found == [
        Candidate(candidate="candidate:1 1 udp 2122260223 192.0.2.1 54321 typ host", sdpMLineIndex=0, sdpMid="0"),
        Candidate(
            candidate="candidate:2 1 udp 1686052607 198.51.100.7 40000 typ srflx raddr 192.0.2.1 rport 54321",
            sdpMLineIndex=0,
            sdpMid="0",
        ),
        Candidate(candidate="candidate:3 1 udp 2122260223 192.0.2.1 54322 typ host", sdpMLineIndex=1, sdpMid="audio"),
    ]


def test_candidates_from_sdp_without_media():
    assert candidates_from_sdp("v=0\ns=-\n") == []


@pytest.mark.asyncio
async def test_stream_reads_in_order_then_eof():
    stream = DataChannelStream(FakeChannel())

    stream.feed(b"one")
    stream.feed("two")
    stream.feed_eof()

    assert await stream.read() == b"one"
    assert await stream.read() == b"two"
    assert await stream.read() == b""
    assert await stream.read() == b""


@pytest.mark.asyncio
async def test_stream_write_and_close():
    channel = FakeChannel()
    stream = DataChannelStream(channel)

    assert stream.write(b"hello") == 5
    stream.close()

    assert channel.sent == [b"hello"]
    assert channel.closed
    assert stream.closed
    with pytest.raises(ConnectionError):
        stream.write(b"again")
    assert await asyncio.wait_for(stream.read(), timeout=1) == b""


@pytest.mark.asyncio
async def test_aiortc_rejects_unparseable_candidate():
    peer = AiortcPeerConnection(ice_servers=[])
    try:
        with pytest.raises(ProtocolError):
            await peer.add_candidate(Candidate(candidate="candidate:garbage"))
    finally:
        await peer.close()


@pytest.mark.asyncio
async def test_aiortc_ignores_end_of_candidates():
    peer = AiortcPeerConnection(ice_servers=[])
    try:
        await peer.add_candidate(Candidate(candidate=""))
        assert peer.local_candidates() == []
    finally:
        await peer.close()
