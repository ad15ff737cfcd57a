"""Per-key, bounded-parallelism token throttling with expiry."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Token:
    """A held slot for one key; release it when done."""

    id: int
    key: str
    throttle: Throttle = field(repr=False, compare=False)

    def release(self) -> bool:
        """Free the slot; False if it had already expired or been released."""
        return self.throttle._release(self.id, self.key)


@dataclass
class _State:
    id: int
    expire: float


class Throttle:
    """Hands out at most one live token per key, and at most ``max_parallel`` in total.

    A ``max_parallel`` of zero means no limit on the total.
    """

    def __init__(self, max_parallel: int) -> None:
        self._max_parallel = max_parallel
        self._lock = threading.Lock()
        self._counter = 0
        self._tokens: dict[str, _State] = {}

    def acquire(self, key: str, ttl: float) -> Token | None:
        """Acquire a token for ``key`` valid for ``ttl`` seconds, or None."""
        with self._lock:
            if self._at_max_pending(key):
                log.debug("Throttle fail acquire on max pending: %s", key)
                return None

            now = time.monotonic()
            state = self._tokens.get(key)
            if state is not None and not state.expire < now:
                log.debug("Throttle fail acquire on existing token: %s", key)
                return None

            self._counter += 1
            token = Token(self._counter, key, self)
            self._tokens[key] = _State(token.id, now + ttl)
            log.debug("Throttle acquired: %s token %d", key, token.id)
            return token

    def _at_max_pending(self, key: str) -> bool:
        if self._max_parallel == 0 or len(self._tokens) < self._max_parallel:
            return False

        now = time.monotonic()
        state = self._tokens.get(key)
        if state is not None and state.expire < now:
            del self._tokens[key]
            log.debug("Ejected target token on expiration: %s", key)
            return False

        for other, state in self._tokens.items():
            if state.expire < now:
                del self._tokens[other]
                log.debug("Ejected token on expiration: %s", other)
                return False
        return True

    def _release(self, token_id: int, key: str) -> bool:
        with self._lock:
            state = self._tokens.get(key)
            if state is None:
                log.debug("Token not found to release: %s", key)
                return False
            if state.id == token_id:
                del self._tokens[key]
                log.debug("Token released: %s", key)
                return True
            return False