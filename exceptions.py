class SignalingError(Exception):
    """Base class for relay and negotiation errors."""


class ClientError(SignalingError):
    """The caller sent something the relay cannot act on. Maps to HTTP 400."""


class RoomNotFoundError(ClientError):
    def __init__(self, room: str):
        self.room = room
        super().__init__(f"unknown room:{room}")


class StoreError(SignalingError):
    """The underlying keyed store failed a read or write. Maps to HTTP 500."""


class TransportError(SignalingError):
    """A client round trip to the relay failed."""


class ProtocolError(SignalingError):
    """A relayed envelope could not be understood."""


class UnknownTypeError(ProtocolError):
    def __init__(self, type_tag: str):
        self.type_tag = type_tag
        super().__init__(f"unknown type: {type_tag}")
