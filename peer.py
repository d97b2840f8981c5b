import asyncio
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Union

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from constants import ICE_SERVERS
from envelope import Candidate
from exceptions import ProtocolError
from logging_config import get_logger

logger = get_logger(__name__)

_EOF = object()


class DataChannelStream:
    """Byte stream over an open data channel.

    ``feed``/``feed_eof`` are wired to the channel's message and close
    events; ``read`` returns ``b""`` once the channel has closed and every
    buffered message has been consumed.
    """

    def __init__(self, channel):
        self._channel = channel
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, data: Union[bytes, str]) -> None:
        if isinstance(data, str):
            data = data.encode()
        self._incoming.put_nowait(data)

    def feed_eof(self) -> None:
        if not self._closed:
            self._closed = True
            self._incoming.put_nowait(_EOF)

    async def read(self) -> bytes:
        item = await self._incoming.get()
        if item is _EOF:
            # keep later readers from blocking forever
            self._incoming.put_nowait(_EOF)
            return b""
        return item

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ConnectionError("data channel is closed")
        self._channel.send(data)
        return len(data)

    def close(self) -> None:
        if self._closed:
            return
        self._channel.close()
        self.feed_eof()


ChannelOpenCallback = Callable[[DataChannelStream], None]


class PeerConnection(ABC):
    """What the negotiator needs from a peer-connection engine.

    ``create_offer`` and ``create_answer`` return the local description only
    after candidate gathering has completed, so ``local_candidates`` is
    complete as soon as either call returns.
    """

    @abstractmethod
    async def create_offer(self) -> str:
        ...

    @abstractmethod
    async def create_answer(self, remote_description: str) -> str:
        ...

    @abstractmethod
    async def set_remote_description(self, description: str, sdp_type: str) -> None:
        ...

    @abstractmethod
    def local_candidates(self) -> List[Candidate]:
        ...

    @abstractmethod
    async def add_candidate(self, candidate: Candidate) -> None:
        ...

    @abstractmethod
    def on_channel_open(self, callback: ChannelOpenCallback) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


def candidates_from_sdp(sdp: str) -> List[Candidate]:
    """Pull every ``a=candidate`` line out of a session description."""
    candidates = []
    section: List[str] = []
    mid = ""
    index = -1

    def flush():
        for line in section:
            candidates.append(Candidate(candidate=line, sdpMLineIndex=index, sdpMid=mid))

    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("m="):
            if index >= 0:
                flush()
            section, mid, index = [], "", index + 1
        elif index < 0:
            continue
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:"):
            section.append(line[len("a="):])
    if index >= 0:
        flush()
    return candidates


class AiortcPeerConnection(PeerConnection):
    def __init__(self, ice_servers: Sequence[str] = ICE_SERVERS, label: str = "data"):
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self.pc = RTCPeerConnection(configuration=config)
        self.label = label
        self._callbacks: List[ChannelOpenCallback] = []
        self.stream: Optional[DataChannelStream] = None

        @self.pc.on("datachannel")
        def on_datachannel(channel):
            logger.info(f"Remote opened data channel {channel.label}")
            self._attach(channel)

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info(f"Peer connection state: {self.pc.connectionState}")

    def _attach(self, channel) -> None:
        stream = DataChannelStream(channel)
        channel.on("message", stream.feed)

        @channel.on("close")
        def on_close():
            logger.info("DataChannel Close")
            stream.feed_eof()

        def opened():
            logger.info("DataChannel Open")
            self.stream = stream
            for callback in self._callbacks:
                callback(stream)

        if channel.readyState == "open":
            opened()
        else:
            channel.on("open", opened)

    async def create_offer(self) -> str:
        self._attach(self.pc.createDataChannel(self.label))
        offer = await self.pc.createOffer()
        # aiortc finishes gathering inside setLocalDescription
        await self.pc.setLocalDescription(offer)
        return self.pc.localDescription.sdp

    async def create_answer(self, remote_description: str) -> str:
        await self.set_remote_description(remote_description, "offer")
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self.pc.localDescription.sdp

    async def set_remote_description(self, description: str, sdp_type: str) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description, type=sdp_type))

    def local_candidates(self) -> List[Candidate]:
        if self.pc.localDescription is None:
            return []
        return candidates_from_sdp(self.pc.localDescription.sdp)

    async def add_candidate(self, candidate: Candidate) -> None:
        line = candidate.candidate
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        if not line:
            logger.debug("End-of-candidates marker received")
            return
        try:
            ice = candidate_from_sdp(line)
        except (AssertionError, ValueError, IndexError) as e:
            raise ProtocolError(f"unparseable candidate {candidate.candidate!r}: {e}") from e
        ice.sdpMid = candidate.sdpMid or None
        ice.sdpMLineIndex = candidate.sdpMLineIndex
        await self.pc.addIceCandidate(ice)

    def on_channel_open(self, callback: ChannelOpenCallback) -> None:
        self._callbacks.append(callback)

    async def close(self) -> None:
        await self.pc.close()
