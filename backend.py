import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB, STORE_BACKEND
from exceptions import StoreError
from logging_config import get_logger

logger = get_logger(__name__)


class KeyValueStore(ABC):
    """Keyed string store where every key may carry an expiry in seconds."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def expire(self, key: str, ttl: int) -> bool:
        ...

    @abstractmethod
    def ping(self) -> bool:
        ...


class RedisStore(KeyValueStore):
    def __init__(self, client: Optional[redis.Redis] = None):
        if client is None:
            logger.info(f"Initializing RedisStore with connection to {REDIS_HOST}:{REDIS_PORT}")
            client = redis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                password=REDIS_PASSWORD,
                db=REDIS_DB,
                decode_responses=True,
            )
        self.redis_client = client

    def get(self, key: str) -> Optional[str]:
        try:
            return self.redis_client.get(key)
        except redis.RedisError as e:
            logger.error(f"Redis GET failed for {key}: {e}")
            raise StoreError(f"get {key}: {e}") from e

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            self.redis_client.set(key, value, ex=ttl if ttl else None)
        except redis.RedisError as e:
            logger.error(f"Redis SET failed for {key}: {e}")
            raise StoreError(f"set {key}: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self.redis_client.delete(key))
        except redis.RedisError as e:
            logger.error(f"Redis DEL failed for {key}: {e}")
            raise StoreError(f"delete {key}: {e}") from e

    def expire(self, key: str, ttl: int) -> bool:
        try:
            return bool(self.redis_client.expire(key, ttl))
        except redis.RedisError as e:
            logger.error(f"Redis EXPIRE failed for {key}: {e}")
            raise StoreError(f"expire {key}: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            raise StoreError(f"ping: {e}") from e


class MemoryStore(KeyValueStore):
    """In-process store with lazy expiry. The clock is injectable for tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._items: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        item = self._items.get(key)
        if item is None:
            return None
        _, deadline = item
        if deadline is not None and deadline <= self._clock():
            del self._items[key]
            return None
        return item

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._live(key)
            return item[0] if item else None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            deadline = self._clock() + ttl if ttl else None
            self._items[key] = (value, deadline)

    def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._live(key) is not None
            self._items.pop(key, None)
            return existed

    def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            item = self._live(key)
            if item is None:
                return False
            self._items[key] = (item[0], self._clock() + ttl)
            return True

    def ping(self) -> bool:
        return True


def create_store(backend: str = STORE_BACKEND) -> KeyValueStore:
    if backend == "memory":
        logger.info("Using in-memory store")
        return MemoryStore()
    if backend == "redis":
        return RedisStore()
    raise ValueError(f"unknown store backend: {backend}")
