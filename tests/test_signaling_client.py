import asyncio
import json

import httpx
import pytest

from exceptions import ClientError, TransportError
from fakes import wait_until
from signaling_client import SignalingClient

BASE_URL = "http://relay"


def make_client(relay_app, peer_id, callback=None, **kwargs):
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=relay_app))
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("initial_delay", 0.01)
    return SignalingClient("r1", peer_id, callback, base_url=BASE_URL, http_client=http, **kwargs), http


async def shutdown(client, http):
    await client.aclose()
    await http.aclose()


@pytest.mark.asyncio
async def test_create_join_bye(relay_app):
    alice, alice_http = make_client(relay_app, "alice")
    bob, bob_http = make_client(relay_app, "bob")
    try:
        room = await alice.create()
        assert room.owner == "alice"

        room = await bob.join()
        assert room.members == ["bob"]
        assert bob.members.owner == "alice"

        await bob.bye()
        assert relay_app.state.room_store.get_room("r1").members == []
    finally:
        await shutdown(alice, alice_http)
        await shutdown(bob, bob_http)


@pytest.mark.asyncio
async def test_join_unknown_room(relay_app):
    bob, http = make_client(relay_app, "bob")
    try:
        with pytest.raises(ClientError, match="unknown room:r1"):
            await bob.join()
    finally:
        await shutdown(bob, http)


@pytest.mark.asyncio
async def test_store_failure_on_create_is_not_a_client_error():
    def handler(request):
        return httpx.Response(500, json={"error": "store failure"})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    alice = SignalingClient("r1", "alice", base_url=BASE_URL, http_client=http)
    try:
        with pytest.raises(TransportError, match="store failure") as excinfo:
            await alice.create()
        assert not isinstance(excinfo.value, ClientError)
    finally:
        await http.aclose()


@pytest.mark.asyncio
async def test_enqueue_wakes_the_loop_before_the_timer(relay_app):
    rooms = relay_app.state.room_store
    rooms.create_or_reset("r1", "alice")
    alice, http = make_client(relay_app, "alice", poll_interval=5)
    loop = asyncio.get_running_loop()
    try:
        alice.start()
        await wait_until(lambda: alice.cursor is not None)

        sent_at = loop.time()
        await alice.send(b'{"n": 1}')
        await wait_until(lambda: rooms.get_room("r1").writePos == 1, timeout=1)

        assert loop.time() - sent_at < 1
    finally:
        await shutdown(alice, http)


@pytest.mark.asyncio
async def test_first_round_trip_skips_backlog(relay_app):
    rooms = relay_app.state.room_store
    rooms.create_or_reset("r1", "alice")
    rooms.append_message("r1", {"old": 1})
    rooms.append_message("r1", {"old": 2})

    received = []
    bob, http = make_client(relay_app, "bob", received.append)
    try:
        bob.start()
        await wait_until(lambda: bob.cursor is not None)
        assert bob.cursor == 2

        rooms.append_message("r1", {"new": 1})
        await wait_until(lambda: received)

        assert [json.loads(m) for m in received] == [{"new": 1}]
        assert bob.cursor == 3
    finally:
        await shutdown(bob, http)


@pytest.mark.asyncio
async def test_messages_flow_between_clients_in_order(relay_app):
    relay_app.state.room_store.create_or_reset("r1", "alice")
    received = []

    async def on_message(data):
        received.append(json.loads(data))

    alice, alice_http = make_client(relay_app, "alice")
    bob, bob_http = make_client(relay_app, "bob", on_message)
    try:
        alice.start()
        bob.start()
        await wait_until(lambda: alice.cursor is not None and bob.cursor is not None)

        for n in range(3):
            await alice.send(json.dumps({"n": n}).encode())
        await wait_until(lambda: len(received) == 3)

        assert received == [{"n": 0}, {"n": 1}, {"n": 2}]
    finally:
        await shutdown(alice, alice_http)
        await shutdown(bob, bob_http)


@pytest.mark.asyncio
async def test_send_blocks_when_queue_full(relay_app):
    client, http = make_client(relay_app, "alice", queue_size=1)
    try:
        await client.send(b"{}")
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(client.send(b"{}"), timeout=0.05)
    finally:
        await shutdown(client, http)


@pytest.mark.asyncio
async def test_sends_after_stop_are_never_flushed(relay_app):
    rooms = relay_app.state.room_store
    rooms.create_or_reset("r1", "alice")
    client, http = make_client(relay_app, "alice")
    try:
        client.start()
        await wait_until(lambda: client.cursor is not None)
        client.stop()
        await client.wait_closed()
        assert not client.running

        await client.send(b'{"late": true}')
        await asyncio.sleep(0.05)

        assert rooms.get_room("r1").writePos == 0
    finally:
        await shutdown(client, http)


@pytest.mark.asyncio
async def test_transport_errors_do_not_stop_the_loop():
    calls = []

    def handler(request):
        calls.append(json.loads(request.content))
        if len(calls) == 2:
            raise httpx.ConnectError("relay unreachable", request=request)
        if len(calls) == 3:
            return httpx.Response(500, json={"error": "store failure"})
        return httpx.Response(200, json={"room": "r1", "messages": [], "last": 0})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = SignalingClient("r1", "alice", base_url=BASE_URL, http_client=http, poll_interval=0.01, initial_delay=0.01)
    try:
        client.start()
        await wait_until(lambda: len(calls) >= 5)
        assert client.running
    finally:
        await shutdown(client, http)


@pytest.mark.asyncio
async def test_one_payload_per_round_trip():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"room": "r1", "messages": [], "last": len(bodies)})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = SignalingClient("r1", "alice", base_url=BASE_URL, http_client=http, poll_interval=0.01, initial_delay=0.01)
    try:
        await client.send(b'{"n": 1}')
        await client.send(b'{"n": 2}')
        client.start()
        await wait_until(lambda: len(bodies) >= 3)

        assert bodies[0]["message"] == {"n": 1}
        assert bodies[0]["last"] == 0
        assert bodies[1]["message"] == {"n": 2}
        assert bodies[1]["last"] == 1
        assert "message" not in bodies[2]
    finally:
        await shutdown(client, http)


@pytest.mark.asyncio
async def test_cursor_never_moves_backwards():
    lasts = iter([5, 7, 3])
    delivered = []

    def handler(request):
        last = next(lasts, 3)
        return httpx.Response(200, json={"room": "r1", "messages": [{"at": last}], "last": last})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = SignalingClient(
        "r1", "alice", delivered.append, base_url=BASE_URL, http_client=http, poll_interval=0.01, initial_delay=0.01
    )
    try:
        client.start()
        await wait_until(lambda: len(delivered) >= 2)

        assert client.cursor == 7
    finally:
        await shutdown(client, http)


@pytest.mark.asyncio
async def test_callback_failure_keeps_polling():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(200, json={"room": "r1", "messages": [{"n": len(calls)}], "last": len(calls)})

    def explode(data):
        raise RuntimeError("handler bug")

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = SignalingClient("r1", "alice", explode, base_url=BASE_URL, http_client=http, poll_interval=0.01, initial_delay=0.01)
    try:
        client.start()
        await wait_until(lambda: len(calls) >= 4)
        assert client.running
    finally:
        await shutdown(client, http)
