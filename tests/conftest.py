import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend import MemoryStore
from room_store import RoomStore


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def rooms(store):
    return RoomStore(store, room_ttl=300, message_ttl=60)


@pytest.fixture
def relay_app(store):
    return create_app(store=store)


@pytest.fixture
def client(relay_app):
    return TestClient(relay_app)
