from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from authcore.storage.models import OtpRecord

# Seconds between full expiry sweeps, triggered by writes
DEFAULT_SWEEP_INTERVAL = 60.0


class MemoryCache:
    """Single-process stand-in for RedisCache.

    Exposes the same awaitable surface so the OTP engine and login throttle
    do not care which backend they get. Every read-modify-write happens under
    one ``threading.Lock``; handlers on different event loops (TestClient,
    threadpool) share the same instance safely. Counters are not shared
    across processes.

    Entries carry their own expiry. Reads ignore expired entries, and writes
    periodically sweep every table so keys that are never touched again do
    not accumulate.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval
        # email -> (code, expires_at_ts, attempts)
        self._otp: Dict[str, Tuple[str, float, int]] = {}
        # email -> cooldown expiry ts
        self._cooldowns: Dict[str, float] = {}
        # key -> (count, window_end_ts)
        self._windows: Dict[str, Tuple[int, float]] = {}
        # address -> (failures, idle_until_ts)
        self._failures: Dict[str, Tuple[int, float]] = {}
        # address -> locked_until_ts
        self._lockouts: Dict[str, float] = {}

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._otp.clear()
            self._cooldowns.clear()
            self._windows.clear()
            self._failures.clear()
            self._lockouts.clear()

    def _maybe_sweep(self, now: float) -> None:
        """Drop expired entries from every table; caller holds the lock."""
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        self._otp = {k: v for k, v in self._otp.items() if v[1] >= now}
        self._cooldowns = {k: v for k, v in self._cooldowns.items() if v > now}
        self._windows = {k: v for k, v in self._windows.items() if v[1] > now}
        self._failures = {k: v for k, v in self._failures.items() if v[1] >= now}
        self._lockouts = {k: v for k, v in self._lockouts.items() if v > now}

    # =========================================================================
    # OTP records
    # =========================================================================

    async def otp_put(self, email: str, code: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            self._otp[email] = (code, now + ttl_seconds, 0)

    async def otp_attempt(self, email: str, max_attempts: int) -> Optional[str]:
        """Count one attempt and return the live code.

        Missing, expired or exhausted records yield None; the latter two are
        deleted as a side effect.
        """
        with self._lock:
            entry = self._otp.get(email)
            if entry is None:
                return None
            code, expires_at, attempts = entry
            if self._clock() > expires_at or attempts >= max_attempts:
                del self._otp[email]
                return None
            self._otp[email] = (code, expires_at, attempts + 1)
            return code

    async def otp_consume(self, email: str, code: str) -> bool:
        """Delete the record only if it still holds ``code``."""
        with self._lock:
            entry = self._otp.get(email)
            if entry is None or entry[0] != code:
                return False
            del self._otp[email]
            return True

    async def otp_peek(self, email: str) -> Optional[OtpRecord]:
        with self._lock:
            entry = self._otp.get(email)
            if entry is None:
                return None
            code, expires_at, attempts = entry
            if self._clock() > expires_at:
                return None
            return OtpRecord(
                code=code,
                expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
                attempts=attempts,
            )

    # =========================================================================
    # Resend cooldown
    # =========================================================================

    async def in_cooldown(self, email: str) -> bool:
        with self._lock:
            until = self._cooldowns.get(email)
            if until is None:
                return False
            if until <= self._clock():
                del self._cooldowns[email]
                return False
            return True

    async def claim_cooldown(self, email: str, seconds: int) -> bool:
        """Set the cooldown if none is active; False when another caller holds it."""
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            until = self._cooldowns.get(email)
            if until is not None and until > now:
                return False
            self._cooldowns[email] = now + seconds
            return True

    async def release_cooldown(self, email: str) -> None:
        with self._lock:
            self._cooldowns.pop(email, None)

    # =========================================================================
    # Fixed-window quota
    # =========================================================================

    async def hit_window(self, key: str, limit: int, window_seconds: int) -> bool:
        """Consume one slot of a fixed window; False once ``limit`` is reached."""
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            count, window_end = self._windows.get(key, (0, now + window_seconds))
            if now >= window_end:
                count, window_end = 0, now + window_seconds
            if count >= limit:
                return False
            self._windows[key] = (count + 1, window_end)
            return True

    # =========================================================================
    # Login failure lockout
    # =========================================================================

    async def is_locked(self, address: str) -> bool:
        with self._lock:
            until = self._lockouts.get(address)
            if until is None:
                return False
            if until <= self._clock():
                # Lazy clear of an elapsed lockout
                del self._lockouts[address]
                return False
            return True

    async def record_failure(
        self, address: str, max_failures: int, lockout_seconds: int
    ) -> bool:
        """Count a failure; on reaching ``max_failures`` reset to zero and lock."""
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            until = self._lockouts.get(address)
            if until is not None and until > now:
                return True
            count, idle_until = self._failures.get(address, (0, now))
            if now > idle_until:
                count = 0
            count += 1
            if count >= max_failures:
                self._failures.pop(address, None)
                self._lockouts[address] = now + lockout_seconds
                return True
            self._failures[address] = (count, now + lockout_seconds)
            return False

    async def clear_failures(self, address: str) -> None:
        with self._lock:
            self._failures.pop(address, None)
            self._lockouts.pop(address, None)

    async def failure_count(self, address: str) -> int:
        with self._lock:
            entry = self._failures.get(address)
            if entry is None or entry[1] < self._clock():
                return 0
            return entry[0]
