import threading
import time
from typing import Callable, Dict

NONCE_TTL = 600  # seconds


class NonceCache:
    """In-process replay guard: remembers every nonce for *ttl* seconds.

    ``add_if_absent`` is an atomic check-and-insert, so when two requests
    present the same nonce at once the first one wins.
    """

    def __init__(self, ttl: float = NONCE_TTL, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._seen: Dict[str, float] = {}  # nonce -> first_seen_at
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [n for n, seen in self._seen.items() if now - seen >= self.ttl]
        for nonce in expired:
            del self._seen[nonce]

    def add_if_absent(self, nonce: str) -> bool:
        """Record *nonce*; return False if it was already seen and not yet expired."""
        with self._lock:
            now = self._clock()
            self._purge(now)
            if nonce in self._seen:
                return False
            self._seen[nonce] = now
            return True

    def __contains__(self, nonce: object) -> bool:
        with self._lock:
            self._purge(self._clock())
            return nonce in self._seen

    def __len__(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._seen)
