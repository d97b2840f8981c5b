import json
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError

from backend import KeyValueStore
from constants import ROOM_TTL_SECONDS, MESSAGE_TTL_SECONDS
from exceptions import RoomNotFoundError, StoreError
from logging_config import get_logger
from redis_keys import ROOM_KEY, MESSAGE_KEY
from schemas.signaling import Room

logger = get_logger(__name__)


class RoomStore:
    """Room membership plus an ordered, TTL-bounded message log per room.

    Every operation is a read-modify-write of the room record with no
    locking across requests. Two concurrent appends to the same room race
    and the last writer wins; the sequence number handed out by the losing
    write can end up with a stored payload that ``writePos`` never covers.
    """

    def __init__(self, store: KeyValueStore, room_ttl: int = ROOM_TTL_SECONDS,
                 message_ttl: int = MESSAGE_TTL_SECONDS):
        self.store = store
        self.room_ttl = room_ttl
        self.message_ttl = message_ttl

    def get_room(self, room: str) -> Optional[Room]:
        raw = self.store.get(ROOM_KEY.format(room=room))
        if raw is None:
            logger.debug(f"Room {room} not found in store")
            return None
        try:
            return Room.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Corrupt room record for {room}: {e}")
            raise StoreError(f"corrupt room record: {room}") from e

    def _require(self, room: str) -> Room:
        current = self.get_room(room)
        if current is None:
            raise RoomNotFoundError(room)
        return current

    def _save(self, current: Room) -> None:
        self.store.set(ROOM_KEY.format(room=current.room), current.model_dump_json(), ttl=self.room_ttl)

    def create_or_reset(self, room: str, owner_id: str) -> Room:
        current = self.get_room(room)
        if current is None or current.owner != owner_id:
            if current is not None:
                logger.info(f"Resetting room {room}: owner {current.owner} replaced by {owner_id}")
            current = Room(room=room, owner=owner_id)
        self._save(current)
        logger.info(f"Room {room} ready, owner={owner_id}, writePos={current.writePos}")
        return current

    def join(self, room: str, member_id: str) -> Room:
        current = self._require(room)
        if member_id not in current.members:
            current.members.append(member_id)
            logger.info(f"{member_id} joined room {room} ({len(current.members)} members)")
        else:
            logger.debug(f"{member_id} already a member of room {room}")
        self._save(current)
        return current

    def leave(self, room: str, member_id: str) -> Room:
        current = self._require(room)
        if member_id == current.owner:
            self.store.delete(ROOM_KEY.format(room=room))
            logger.info(f"Owner {member_id} left, room {room} deleted")
            return current.model_copy(update={"room": ""})
        if member_id in current.members:
            current.members.remove(member_id)
            self._save(current)
            logger.info(f"{member_id} left room {room}")
        return current

    def _append(self, current: Room, payload: Any) -> int:
        current.writePos += 1
        seq = current.writePos
        # Not atomic: a failure after the first write leaves writePos pointing at nothing.
        self._save(current)
        self.store.set(MESSAGE_KEY.format(room=current.room, seq=seq), json.dumps(payload), ttl=self.message_ttl)
        logger.debug(f"Appended message {seq} to room {current.room}")
        return seq

    def _fetch(self, current: Room, cursor: int) -> Tuple[List[Any], int]:
        begin = max(current.readPos, cursor)
        payloads = []
        moved = False
        for seq in range(begin + 1, current.writePos + 1):
            raw = self.store.get(MESSAGE_KEY.format(room=current.room, seq=seq))
            if raw is None:
                logger.debug(f"Message {seq} in room {current.room} expired, skipping permanently")
                current.readPos = seq
                moved = True
                continue
            payloads.append(json.loads(raw))
        if moved:
            self._save(current)
        else:
            self.store.expire(ROOM_KEY.format(room=current.room), self.room_ttl)
        return payloads, current.writePos

    def append_message(self, room: str, payload: Any) -> int:
        return self._append(self._require(room), payload)

    def fetch_since(self, room: str, cursor: int) -> Tuple[List[Any], int]:
        return self._fetch(self._require(room), cursor)

    def poll(self, room: str, payload: Any, cursor: int) -> Tuple[List[Any], int]:
        """Append ``payload`` (unless None) and fetch everything after ``cursor`` in one pass."""
        current = self._require(room)
        if payload is not None:
            self._append(current, payload)
        return self._fetch(current, cursor)
