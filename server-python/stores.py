"""
In-memory stores shared across requests.

Process-local and best-effort: concurrent requests for the same client may
lose an update, which only makes the counts slightly inaccurate. Use Redis
if the gate runs as more than one process.
"""

import time
from typing import Callable, Dict, Optional

Clock = Callable[[], float]


def now_ms(clock: Clock) -> int:
    return int(clock() * 1000)


# =============================================================================
# Rate Limiter (fixed window)
# =============================================================================

class RateLimiter:
    SWEEP_EVERY = 1000

    def __init__(self, window_ms: int = 60_000, max_requests: int = 60, clock: Clock = time.time):
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.clock = clock
        # client id -> [count, window_start_ms]
        self.records: Dict[str, list] = {}

    def admit(self, client_id: str) -> bool:
        now = now_ms(self.clock)
        record = self.records.get(client_id)

        if record is None or now - record[1] > self.window_ms:
            self.records[client_id] = [1, now]
            if len(self.records) % self.SWEEP_EVERY == 0:
                self._cleanup(now)
            return True

        # Over-limit requests stay counted for the rest of the window
        record[0] += 1
        return record[0] <= self.max_requests

    def _cleanup(self, now: int):
        stale = [k for k, (_, start) in self.records.items() if now - start > self.window_ms]
        for key in stale:
            del self.records[key]


# =============================================================================
# Fingerprint consistency
# =============================================================================

class FingerprintStore:
    """Remembers the last fingerprint digest reported for each client id."""

    MAX_ENTRIES = 50_000
    SWEEP_EVERY = 1000

    def __init__(self, ttl_seconds: int = 24 * 60 * 60, clock: Clock = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        # Insertion order is recency order: observe() re-inserts on every sighting
        self.fingerprints: Dict[str, tuple] = {}
        self._inserts = 0

    def observe(self, client_id: str, fingerprint: str) -> bool:
        """Record the fingerprint; False when it differs from the previous one."""
        now = self.clock()
        previous = self.fingerprints.pop(client_id, None)
        self.fingerprints[client_id] = (fingerprint, now)

        self._inserts += 1
        if self._inserts % self.SWEEP_EVERY == 0:
            self._cleanup(now)
        while len(self.fingerprints) > self.MAX_ENTRIES:
            del self.fingerprints[next(iter(self.fingerprints))]

        if previous is None or now - previous[1] > self.ttl_seconds:
            return True
        return previous[0] == fingerprint

    def _cleanup(self, now: float):
        expired = [k for k, (_, seen) in self.fingerprints.items() if now - seen > self.ttl_seconds]
        for key in expired:
            del self.fingerprints[key]


# =============================================================================
# Replay cache (single-use nonces)
# =============================================================================

class ReplayCache:
    """Nonces that were already redeemed, kept until their token would expire anyway."""

    SWEEP_EVERY = 100

    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self.used: Dict[str, int] = {}
        self._inserts = 0

    def seen(self, nonce: str) -> bool:
        expires_at = self.used.get(nonce)
        if expires_at is None:
            return False
        if now_ms(self.clock) >= expires_at:
            del self.used[nonce]
            return False
        return True

    def consume(self, nonce: str, expires_at: int) -> bool:
        """Mark a nonce used. Returns False if it was already used."""
        if self.seen(nonce):
            return False
        self.used[nonce] = expires_at
        self._inserts += 1
        if self._inserts % self.SWEEP_EVERY == 0:
            self._cleanup()
        return True

    def _cleanup(self, now: Optional[int] = None):
        now = now_ms(self.clock) if now is None else now
        expired = [n for n, exp in self.used.items() if now >= exp]
        for nonce in expired:
            del self.used[nonce]
