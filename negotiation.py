"""Offer/answer/candidate negotiation over the polling relay.

The protocol logic lives in :func:`transition`, a pure function from the
current :class:`NegotiationSession` and one event to the next session and a
list of actions. :class:`Negotiator` feeds it events from the relay and the
peer connection, and carries out the actions it returns.

Typical answering-side exchange::

    self  --request(to="")------> room
    peer  --offer(to=self)------> self     CreateAnswer
    self  --answer(to=peer)-----> peer
    self  --candidate(to=peer)--> peer     (one envelope per local candidate)
    data channel opens                      Connected
"""
import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

from constants import CANDIDATE_SKIP, CANDIDATE_PACING_SECONDS
from envelope import Answer, Candidate, Message, Offer, Payload, Request, accept_for_self, decode, encode
from exceptions import ProtocolError, SignalingError
from logging_config import get_logger
from peer import DataChannelStream, PeerConnection
from signaling_client import SignalingClient

logger = get_logger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    AWAITING_PEER = "awaiting_peer"
    OFFERING = "offering"
    ANSWERING = "answering"
    ICE_EXCHANGING = "ice_exchanging"
    CONNECTED = "connected"


class Role(str, Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


@dataclass(frozen=True)
class NegotiationSession:
    self_id: str
    phase: Phase = Phase.IDLE
    role: Optional[Role] = None
    peer_id: Optional[str] = None
    local_candidates: Tuple[Candidate, ...] = ()
    # Remote candidates that arrived before the remote description was applied
    pending_candidates: Tuple[Tuple[str, Candidate], ...] = ()
    remote_applied: bool = False
    initiate_offers: bool = False
    candidate_skip: int = 0


# Events


@dataclass(frozen=True)
class Joined:
    pass


@dataclass(frozen=True)
class EnvelopeReceived:
    message: Message


@dataclass(frozen=True)
class OfferCreated:
    peer_id: str
    description: str
    candidates: Tuple[Candidate, ...] = ()


@dataclass(frozen=True)
class AnswerCreated:
    peer_id: str
    description: str
    candidates: Tuple[Candidate, ...] = ()


@dataclass(frozen=True)
class NegotiationFailed:
    peer_id: str
    reason: str


@dataclass(frozen=True)
class ChannelOpened:
    pass


Event = Union[Joined, EnvelopeReceived, OfferCreated, AnswerCreated, NegotiationFailed, ChannelOpened]


# Actions


@dataclass(frozen=True)
class SendEnvelope:
    to: str
    payload: Payload


@dataclass(frozen=True)
class CreateOffer:
    peer_id: str


@dataclass(frozen=True)
class CreateAnswer:
    peer_id: str
    description: str


@dataclass(frozen=True)
class ApplyAnswer:
    peer_id: str
    description: str


@dataclass(frozen=True)
class AddCandidate:
    peer_id: str
    candidate: Candidate


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class ResetPeer:
    pass


Action = Union[SendEnvelope, CreateOffer, CreateAnswer, ApplyAnswer, AddCandidate, Connected, ResetPeer]


def _flush_pending(session: NegotiationSession, peer_id: str) -> List[Action]:
    return [AddCandidate(sender, c) for sender, c in session.pending_candidates if sender == peer_id]


def _candidate_sends(session: NegotiationSession, peer_id: str, candidates: Tuple[Candidate, ...]) -> List[Action]:
    return [SendEnvelope(peer_id, c) for c in candidates[session.candidate_skip:]]


def _on_message(session: NegotiationSession, message: Message) -> Tuple[NegotiationSession, List[Action]]:
    payload = message.payload
    sender = message.sender

    if isinstance(payload, Request):
        if session.initiate_offers and session.phase == Phase.AWAITING_PEER:
            return replace(session, phase=Phase.OFFERING, role=Role.OFFERER, peer_id=sender), [CreateOffer(sender)]
        return session, []

    if isinstance(payload, Offer):
        if session.phase != Phase.AWAITING_PEER:
            return session, []
        session = replace(session, phase=Phase.ANSWERING, role=Role.ANSWERER, peer_id=sender)
        return session, [CreateAnswer(sender, payload.description)]

    if isinstance(payload, Answer):
        if session.role != Role.OFFERER or session.phase != Phase.OFFERING or sender != session.peer_id:
            return session, []
        actions: List[Action] = [ApplyAnswer(sender, payload.description)]
        actions += _flush_pending(session, sender)
        return replace(session, phase=Phase.ICE_EXCHANGING, remote_applied=True, pending_candidates=()), actions

    if isinstance(payload, Candidate):
        if session.remote_applied:
            if sender == session.peer_id:
                return session, [AddCandidate(sender, payload)]
            return session, []
        if session.peer_id is None or sender == session.peer_id:
            pending = session.pending_candidates + ((sender, payload),)
            return replace(session, pending_candidates=pending), []
        return session, []

    return session, []


def transition(session: NegotiationSession, event: Event) -> Tuple[NegotiationSession, List[Action]]:
    if isinstance(event, Joined):
        if session.phase != Phase.IDLE:
            return session, []
        return replace(session, phase=Phase.AWAITING_PEER), [SendEnvelope("", Request())]

    if isinstance(event, EnvelopeReceived):
        return _on_message(session, event.message)

    if isinstance(event, OfferCreated):
        if session.phase != Phase.OFFERING or event.peer_id != session.peer_id:
            return session, []
        actions: List[Action] = [SendEnvelope(event.peer_id, Offer(description=event.description))]
        actions += _candidate_sends(session, event.peer_id, event.candidates)
        return replace(session, local_candidates=event.candidates), actions

    if isinstance(event, AnswerCreated):
        if session.phase != Phase.ANSWERING or event.peer_id != session.peer_id:
            return session, []
        actions = [SendEnvelope(event.peer_id, Answer(description=event.description))]
        actions += _candidate_sends(session, event.peer_id, event.candidates)
        actions += _flush_pending(session, event.peer_id)
        session = replace(
            session,
            phase=Phase.ICE_EXCHANGING,
            local_candidates=event.candidates,
            remote_applied=True,
            pending_candidates=(),
        )
        return session, actions

    if isinstance(event, NegotiationFailed):
        if event.peer_id != session.peer_id or session.phase == Phase.CONNECTED:
            return session, []
        # Back to waiting on a fresh connection; the old one may hold the failed remote description
        return replace(
            session,
            phase=Phase.AWAITING_PEER,
            role=None,
            peer_id=None,
            local_candidates=(),
            pending_candidates=(),
            remote_applied=False,
        ), [ResetPeer()]

    if isinstance(event, ChannelOpened):
        if session.phase == Phase.CONNECTED:
            return session, []
        return replace(session, phase=Phase.CONNECTED), [Connected()]

    raise TypeError(f"unknown negotiation event: {event!r}")


class Negotiator:
    """Drives one negotiation through a :class:`SignalingClient` and a :class:`PeerConnection`.

    There is no internal timeout: wrap :meth:`open` in ``asyncio.wait_for``
    if the caller cannot wait forever for a peer to show up.

    When a negotiation fails the current peer connection is closed and
    ``peer_factory`` builds the next one. Without a factory the failed
    connection is kept, which only recovers if the engine tolerates a
    second remote description.
    """

    def __init__(
        self,
        client: SignalingClient,
        peer: PeerConnection,
        *,
        candidate_skip: int = CANDIDATE_SKIP,
        candidate_pacing: float = CANDIDATE_PACING_SECONDS,
        initiate_offers: bool = False,
        peer_factory: Optional[Callable[[], PeerConnection]] = None,
    ):
        self.client = client
        self.peer = peer
        self.peer_factory = peer_factory
        self.candidate_pacing = candidate_pacing
        self.session = NegotiationSession(
            self_id=client.peer_id,
            initiate_offers=initiate_offers,
            candidate_skip=candidate_skip,
        )
        self.stream: Optional[DataChannelStream] = None
        self._connected: Optional[asyncio.Future] = None
        self._tasks: set = set()

        client.callback = self.dispatch
        peer.on_channel_open(self._on_channel_open)

    @property
    def self_id(self) -> str:
        return self.session.self_id

    async def open(self, create: bool = False) -> DataChannelStream:
        """Join the room and wait until a data channel to some peer is open."""
        self._connected = asyncio.get_running_loop().create_future()
        if self.stream is not None:
            self._connected.set_result(self.stream)
        if create:
            await self.client.create()
        await self.client.join()
        self.client.start()
        try:
            await self.handle(Joined())
            return await self._connected
        finally:
            self.client.stop()
            try:
                await self.client.bye()
            except SignalingError as e:
                logger.warning(f"Leaving room {self.client.room} failed: {e}")

    async def close(self) -> None:
        if self.stream is not None:
            self.stream.close()
        await self.client.aclose()
        await self.peer.close()

    async def dispatch(self, data: bytes) -> None:
        try:
            message = decode(data)
        except ProtocolError as e:
            logger.warning(f"Dropping envelope: {e}")
            return
        if not accept_for_self(message, self.self_id):
            return
        logger.debug(f"recv: {type(message.payload).__name__} from {message.sender}")
        await self.handle(EnvelopeReceived(message))

    async def handle(self, event: Event) -> None:
        events: List[Event] = [event]
        while events:
            current = events.pop(0)
            previous = self.session.phase
            self.session, actions = transition(self.session, current)
            if self.session.phase != previous:
                logger.info(f"{self.self_id}: {previous.value} -> {self.session.phase.value} ({type(current).__name__})")
            for action in actions:
                follow_up = await self._execute(action)
                if follow_up is not None:
                    events.append(follow_up)

    async def _execute(self, action: Action) -> Optional[Event]:
        if isinstance(action, SendEnvelope):
            logger.debug(f"send to: {action.to or '*'} {type(action.payload).__name__}")
            await self.client.send(encode(self.self_id, action.to, action.payload))
            if isinstance(action.payload, Candidate) and self.candidate_pacing:
                await asyncio.sleep(self.candidate_pacing)
            return None

        if isinstance(action, CreateOffer):
            try:
                description = await self.peer.create_offer()
            except Exception as e:
                logger.error(f"Creating offer for {action.peer_id} failed: {e}", exc_info=True)
                return NegotiationFailed(action.peer_id, str(e))
            candidates = tuple(self.peer.local_candidates())
            logger.info(f"Offer for {action.peer_id} ready with {len(candidates)} candidates")
            return OfferCreated(action.peer_id, description, candidates)

        if isinstance(action, CreateAnswer):
            try:
                description = await self.peer.create_answer(action.description)
            except Exception as e:
                logger.error(f"Answering offer from {action.peer_id} failed: {e}", exc_info=True)
                return NegotiationFailed(action.peer_id, str(e))
            candidates = tuple(self.peer.local_candidates())
            logger.info(f"Answer for {action.peer_id} ready with {len(candidates)} candidates")
            return AnswerCreated(action.peer_id, description, candidates)

        if isinstance(action, ApplyAnswer):
            try:
                await self.peer.set_remote_description(action.description, "answer")
            except Exception as e:
                logger.error(f"Applying answer from {action.peer_id} failed: {e}", exc_info=True)
                return NegotiationFailed(action.peer_id, str(e))
            return None

        if isinstance(action, AddCandidate):
            try:
                await self.peer.add_candidate(action.candidate)
            except Exception as e:
                logger.warning(f"Discarding candidate from {action.peer_id}: {e}")
            return None

        if isinstance(action, Connected):
            if self._connected is not None and not self._connected.done():
                self._connected.set_result(self.stream)
            return None

        if isinstance(action, ResetPeer):
            await self._reset_peer()
            return None

        raise TypeError(f"unknown negotiation action: {action!r}")

    async def _reset_peer(self) -> None:
        if self.peer_factory is None:
            logger.warning(f"{self.self_id}: no peer factory, reusing the connection from the failed negotiation")
            return
        try:
            await self.peer.close()
        except Exception as e:
            logger.warning(f"Closing failed peer connection raised: {e}")
        self.peer = self.peer_factory()
        self.peer.on_channel_open(self._on_channel_open)
        logger.info(f"{self.self_id}: fresh peer connection ready")

    def _on_channel_open(self, stream: DataChannelStream) -> None:
        self.stream = stream
        task = asyncio.get_running_loop().create_task(self.handle(ChannelOpened()))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
