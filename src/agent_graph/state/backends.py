"""Session state backends."""
import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Any

import redis

from agent_graph.config import get_settings
from agent_graph.observability import get_logger

logger = get_logger(__name__)


class StateBackend(ABC):
    """
    Store for session-scoped state.

    Implementations must make get/set atomic per key; the engine does
    not serialize access beyond that.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under key, or default."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store value under key, expiring after ttl seconds if given."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key if present."""
        pass


class InMemoryStateBackend(StateBackend):
    """Process-local backend, used by default and in tests."""

    def __init__(self, clock=time.monotonic):
        self._data: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        """List live keys."""
        now = self._clock()
        with self._lock:
            return sorted(
                k for k, (_, expires_at) in self._data.items()
                if expires_at is None or now < expires_at
            )


class RedisStateBackend(StateBackend):
    """Redis-backed session state, values stored as JSON."""

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        key_prefix: str | None = None,
    ):
        """
        Initialize the backend.

        Args:
            redis_client: Optional Redis client (will create one if not provided)
            key_prefix: Prefix for every key (defaults to settings)
        """
        settings = get_settings()
        if redis_client is None:
            self.redis_client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
            )
        else:
            self.redis_client = redis_client
        self._prefix = settings.session_key_prefix if key_prefix is None else key_prefix

    def _key(self, key: str) -> str:
        """Get Redis key for a state key."""
        return f"{self._prefix}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        raw = self.redis_client.get(self._key(key))
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        payload = json.dumps(value, default=str)
        if ttl is not None:
            self.redis_client.set(self._key(key), payload, px=max(1, int(ttl * 1000)))
        else:
            self.redis_client.set(self._key(key), payload)
        logger.debug("Session state written", extra={"state_key": key, "ttl": ttl})

    def delete(self, key: str) -> None:
        self.redis_client.delete(self._key(key))


# Global session backend
_state_backend: StateBackend | None = None


def get_state_backend() -> StateBackend:
    """Get or create the process-wide session backend."""
    global _state_backend
    if _state_backend is None:
        _state_backend = InMemoryStateBackend()
    return _state_backend


def reset_state_backend() -> None:
    """Reset the global session backend (useful for testing)."""
    global _state_backend
    _state_backend = None
