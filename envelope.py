"""Addressed, typed envelopes carried through the relay.

Wire shape::

    {"type": "offer", "sender": "alice", "to": "bob", "value": {"description": "v=0..."}}

``to`` is empty for a broadcast. ``value`` depends on ``type``:
``{}`` for request, ``{description}`` for offer/answer and
``{candidate, sdpMLineIndex, sdpMid}`` for candidate.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from exceptions import ProtocolError, UnknownTypeError


class Request(BaseModel):
    """Presence announcement, broadcast once after joining a room."""
    model_config = ConfigDict(extra="ignore")


class Offer(BaseModel):
    # Older clients serialize the field capitalized
    description: str = Field(validation_alias=AliasChoices("description", "Description"))


class Answer(BaseModel):
    description: str = Field(validation_alias=AliasChoices("description", "Description"))


class Candidate(BaseModel):
    candidate: str
    sdpMLineIndex: int = 0
    sdpMid: str = ""


Payload = Union[Request, Offer, Answer, Candidate]

PAYLOAD_TYPES = {
    "request": Request,
    "offer": Offer,
    "answer": Answer,
    "candidate": Candidate,
}
TYPE_TAGS = {cls: tag for tag, cls in PAYLOAD_TYPES.items()}


class Envelope(BaseModel):
    type: str
    sender: str
    to: str = ""
    value: Dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class Message:
    sender: str
    to: str
    payload: Payload


def encode(sender: str, to: str, payload: Payload) -> bytes:
    tag = TYPE_TAGS.get(type(payload))
    if tag is None:
        raise TypeError(f"cannot encode {type(payload).__name__} as an envelope")
    envelope = Envelope(type=tag, sender=sender, to=to, value=payload.model_dump())
    return envelope.model_dump_json().encode()


def decode(data: Union[bytes, str, Dict[str, Any]]) -> Message:
    try:
        raw = data if isinstance(data, dict) else json.loads(data)
        envelope = Envelope.model_validate(raw)
    except (ValueError, ValidationError) as e:
        raise ProtocolError(f"malformed envelope: {e}") from e

    payload_type = PAYLOAD_TYPES.get(envelope.type)
    if payload_type is None:
        raise UnknownTypeError(envelope.type)
    try:
        payload = payload_type.model_validate(envelope.value)
    except ValidationError as e:
        raise ProtocolError(f"malformed {envelope.type} value: {e}") from e
    return Message(sender=envelope.sender, to=envelope.to, payload=payload)


def accept_for_self(message: Message, self_id: str) -> bool:
    if message.sender == self_id:
        return False
    return message.to == "" or message.to == self_id
