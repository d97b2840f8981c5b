import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from constants import (
    SIGNALING_URL,
    SEND_QUEUE_SIZE,
    POLL_INTERVAL_SECONDS,
    POLL_INITIAL_DELAY_SECONDS,
)
from exceptions import ClientError, TransportError
from logging_config import get_logger
from schemas.signaling import Room, PollResponse

logger = get_logger(__name__)

MessageCallback = Callable[[bytes], Union[None, Awaitable[None]]]


class SignalingClient:
    """Polling transport for one peer in one relay room.

    A single worker task keeps at most one request in flight. Each round
    trip carries at most one queued outbound payload and returns whatever
    the room log holds past the current cursor. Delivery is lossy: a failed
    round trip is logged and the payload it carried is gone.
    """

    def __init__(
        self,
        room: str,
        peer_id: str,
        callback: Optional[MessageCallback] = None,
        *,
        base_url: str = SIGNALING_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        queue_size: int = SEND_QUEUE_SIZE,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        initial_delay: float = POLL_INITIAL_DELAY_SECONDS,
    ):
        self.room = room
        self.peer_id = peer_id
        self.callback = callback
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.initial_delay = initial_delay
        self.members: Optional[Room] = None
        self.cursor: Optional[int] = None

        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self._queue: "asyncio.Queue[bytes]" = asyncio.Queue(maxsize=queue_size)
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _control(self, action: str) -> Optional[Room]:
        url = f"{self.base_url}/{action}"
        try:
            resp = await self._http.post(url, json={"room": self.room, "id": self.peer_id})
        except httpx.HTTPError as e:
            raise TransportError(f"{action} failed: {e}") from e
        if action == "bye":
            return None
        if resp.status_code != 200:
            try:
                detail = resp.json().get("error", resp.text)
            except ValueError:
                detail = resp.text
            if resp.status_code >= 500:
                raise TransportError(f"{action} failed on the relay ({resp.status_code}): {detail}")
            raise ClientError(f"{action} rejected ({resp.status_code}): {detail}")
        self.members = Room.model_validate(resp.json())
        logger.info(f"{action} {self.room} as {self.peer_id}: owner={self.members.owner}, members={self.members.members}")
        return self.members

    async def create(self) -> Room:
        return await self._control("create")

    async def join(self) -> Room:
        return await self._control("join")

    async def bye(self) -> None:
        await self._control("bye")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=f"signaling-poller-{self.peer_id}")

    async def send(self, payload: bytes) -> None:
        """Queue ``payload`` for the next round trip, waiting while the queue is full."""
        await self._queue.put(payload)

    def stop(self) -> None:
        self._stop.set()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task

    async def aclose(self) -> None:
        self.stop()
        await self.wait_closed()
        if self._owns_http:
            await self._http.aclose()

    async def _next_payload(self, delay: float) -> Optional[bytes]:
        get_task = asyncio.ensure_future(self._queue.get())
        stop_task = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({get_task, stop_task}, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            if not get_task.done():
                get_task.cancel()
        if get_task.done() and not get_task.cancelled():
            return get_task.result()
        return None

    async def _run(self) -> None:
        logger.info(f"Poller start for {self.peer_id} in room {self.room}")
        delay = self.initial_delay
        try:
            while not self._stop.is_set():
                payload = await self._next_payload(delay)
                if self._stop.is_set():
                    break
                delay = self.poll_interval
                try:
                    await self._round_trip(payload)
                except TransportError as e:
                    logger.warning(f"Round trip failed for {self.peer_id}, outbound message lost: {e}")
        finally:
            logger.info(f"Poller stop for {self.peer_id} in room {self.room}")

    async def _round_trip(self, payload: Optional[bytes]) -> None:
        body: dict[str, Any] = {"room": self.room, "last": self.cursor or 0}
        if payload is not None:
            try:
                body["message"] = json.loads(payload)
            except ValueError as e:
                logger.error(f"Dropping outbound payload that is not JSON: {e}")
        try:
            resp = await self._http.post(f"{self.base_url}/", json=body)
        except httpx.HTTPError as e:
            raise TransportError(str(e)) from e
        if resp.status_code != 200:
            raise TransportError(f"relay answered {resp.status_code}: {resp.text}")
        try:
            result = PollResponse.model_validate(resp.json())
        except ValueError as e:
            raise TransportError(f"unreadable poll response: {e}") from e

        if self.cursor is None:
            # First contact: skip the backlog, only learn where the log ends
            self.cursor = result.last
            logger.debug(f"Bootstrap cursor for {self.peer_id}: {self.cursor}, {len(result.messages)} old messages skipped")
            return

        for message in result.messages:
            await self._dispatch(json.dumps(message).encode())

        if result.last < self.cursor:
            logger.warning(f"Relay reported cursor {result.last} behind local cursor {self.cursor}, keeping local")
        else:
            self.cursor = result.last

    async def _dispatch(self, message: bytes) -> None:
        if self.callback is None:
            return
        try:
            result = self.callback(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Message callback failed for {self.peer_id}: {e}", exc_info=True)
