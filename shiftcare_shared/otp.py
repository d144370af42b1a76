from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from dataclasses import asdict, dataclass, replace
from typing import Callable, Iterable, Optional, Protocol

from redis.exceptions import WatchError

from .phone_utils import mask_phone

logger = logging.getLogger("shiftcare.otp")

Clock = Callable[[], float]


class OTPError(Exception):
    """Base exception for challenge outcomes that are reported to the caller."""

    code = "otp_error"
    message = "OTP verification failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class ChallengeNotFound(OTPError):
    code = "otp_not_found"
    message = "OTP not found. Please request a new one."


class ChallengeExpired(OTPError):
    code = "otp_expired"
    message = "OTP expired. Please request a new one."


class ChallengeAlreadyUsed(OTPError):
    code = "otp_already_used"
    message = "OTP has already been used. Please request a new one."


class CodeMismatch(OTPError):
    code = "otp_invalid"
    message = "Invalid OTP. Please try again."

    def __init__(self, message: str | None = None, remaining_attempts: int | None = None):
        super().__init__(message)
        self.remaining_attempts = remaining_attempts


class ChallengeLocked(OTPError):
    code = "otp_locked"
    message = "Too many invalid attempts. Please request a new OTP."


class OTPRateLimited(OTPError):
    code = "otp_rate_limited"
    message = "Too many OTP requests. Please try again later."

    def __init__(self, message: str | None = None, retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after


@dataclass
class OTPConfig:
    code_length: int = 6
    ttl_secs: int = 600
    max_attempts: int = 5
    storage_secret: str = ""
    sweep_interval_secs: int = 60
    send_max_per_phone: int = 3
    send_max_per_client: int = 10
    send_window_secs: int = 900


@dataclass
class OTPSendResult:
    code: str
    expires_at: float
    ttl_secs: int

    def __str__(self) -> str:  # pragma: no cover - never print the code by accident
        return f"OTPSendResult(expires_at={self.expires_at})"


def generate_otp_code(length: int = 6) -> str:
    if length < 1:
        raise ValueError("OTP length must be at least 1")
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def hash_code(secret: str, phone: str, code: str) -> str:
    msg = "|".join([phone, code.strip()]).encode()
    return hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class Challenge:
    phone: str
    code_hash: str
    nonce: str
    issued_at: float
    expires_at: float
    consumed: bool = False
    attempts: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: bytes | str) -> "Challenge":
        if isinstance(raw, bytes):
            raw = raw.decode()
        return cls(**json.loads(raw))


def _new_challenge(phone: str, code_hash: str, ttl_secs: float, now: float) -> Challenge:
    return Challenge(
        phone=phone,
        code_hash=code_hash,
        nonce=secrets.token_hex(8),
        issued_at=now,
        expires_at=now + float(ttl_secs),
    )


class ChallengeStore(Protocol):
    clock: Clock

    def now(self) -> float:  # pragma: no cover - interface
        ...

    def issue(self, phone: str, code_hash: str, ttl_secs: float) -> Challenge:  # pragma: no cover
        ...

    def lookup(self, phone: str) -> Optional[Challenge]:  # pragma: no cover
        ...

    def consume(self, phone: str, nonce: str | None = None) -> bool:  # pragma: no cover
        ...

    def record_failure(self, phone: str, nonce: str | None = None) -> int:  # pragma: no cover
        ...

    def remove(self, phone: str, nonce: str | None = None) -> None:  # pragma: no cover
        ...

    def sweep(self, now: float | None = None) -> int:  # pragma: no cover
        ...

    def clear(self) -> None:  # pragma: no cover
        ...


class MemoryChallengeStore:
    """Process-local challenge store.

    Every read and write goes through one lock, so ``issue`` is visible to any
    ``lookup`` that starts after it returns and ``consume`` is a real
    compare-and-set. Suitable for a single-instance deployment only; use
    :class:`RedisChallengeStore` when running more than one worker process.
    """

    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self._data: dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self.clock()

    def issue(self, phone: str, code_hash: str, ttl_secs: float) -> Challenge:
        challenge = _new_challenge(phone, code_hash, ttl_secs, self.clock())
        with self._lock:
            self._data[phone] = challenge
        return challenge

    def lookup(self, phone: str) -> Optional[Challenge]:
        with self._lock:
            return self._data.get(phone)

    def consume(self, phone: str, nonce: str | None = None) -> bool:
        with self._lock:
            cur = self._data.get(phone)
            if cur is None or cur.consumed:
                return False
            if nonce is not None and cur.nonce != nonce:
                return False
            # Re-checked under the lock so a concurrent sweep can't race us
            if cur.is_expired(self.clock()):
                return False
            self._data[phone] = replace(cur, consumed=True)
            return True

    def record_failure(self, phone: str, nonce: str | None = None) -> int:
        with self._lock:
            cur = self._data.get(phone)
            if cur is None or (nonce is not None and cur.nonce != nonce):
                return 0
            updated = replace(cur, attempts=cur.attempts + 1)
            self._data[phone] = updated
            return updated.attempts

    def remove(self, phone: str, nonce: str | None = None) -> None:
        with self._lock:
            cur = self._data.get(phone)
            if cur is None:
                return
            if nonce is not None and cur.nonce != nonce:
                return
            del self._data[phone]

    def sweep(self, now: float | None = None) -> int:
        cutoff = self.clock() if now is None else now
        with self._lock:
            expired = [phone for phone, ch in self._data.items() if ch.expires_at < cutoff]
            for phone in expired:
                del self._data[phone]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisChallengeStore:
    """Challenge store shared between processes through Redis.

    One JSON record per ``{prefix}:{phone}`` key. Keys outlive ``expires_at`` by
    ``grace_secs`` so an expired challenge is still reported as expired (and
    removed) rather than silently missing; Redis drops the key afterwards, which
    replaces the periodic sweep.
    """

    def __init__(self, client, prefix: str = "otp", clock: Clock = time.time, grace_secs: int = 60):
        self.client = client
        self.prefix = prefix
        self.clock = clock
        self.grace_secs = grace_secs

    def now(self) -> float:
        return self.clock()

    def _key(self, phone: str) -> str:
        return f"{self.prefix}:{phone}"

    def issue(self, phone: str, code_hash: str, ttl_secs: float) -> Challenge:
        challenge = _new_challenge(phone, code_hash, ttl_secs, self.clock())
        ttl_ms = max(1, int((float(ttl_secs) + self.grace_secs) * 1000))
        self.client.set(self._key(phone), challenge.to_json(), px=ttl_ms)
        return challenge

    def lookup(self, phone: str) -> Optional[Challenge]:
        raw = self.client.get(self._key(phone))
        if raw is None:
            return None
        return Challenge.from_json(raw)

    def _compare_and_update(
        self,
        phone: str,
        decide: Callable[[Challenge], Optional[Challenge]],
        *,
        delete: bool = False,
    ) -> Optional[Challenge]:
        """Apply ``decide`` to the current record inside a WATCH/MULTI transaction.

        ``decide`` returns the replacement record, or None to leave the key alone.
        With ``delete=True`` a non-None decision deletes the key instead.
        """
        key = self._key(phone)
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    cur = Challenge.from_json(raw) if raw is not None else None
                    updated = decide(cur) if cur is not None else None
                    if updated is None:
                        pipe.unwatch()
                        return None
                    remaining_ms = pipe.pttl(key)
                    pipe.multi()
                    if delete:
                        pipe.delete(key)
                    elif remaining_ms and remaining_ms > 0:
                        pipe.set(key, updated.to_json(), px=remaining_ms)
                    else:
                        pipe.set(key, updated.to_json())
                    pipe.execute()
                    return updated
                except WatchError:
                    continue

    def consume(self, phone: str, nonce: str | None = None) -> bool:
        def _decide(cur: Challenge) -> Optional[Challenge]:
            if cur.consumed or (nonce is not None and cur.nonce != nonce):
                return None
            if cur.is_expired(self.clock()):
                return None
            return replace(cur, consumed=True)

        return self._compare_and_update(phone, _decide) is not None

    def record_failure(self, phone: str, nonce: str | None = None) -> int:
        def _decide(cur: Challenge) -> Optional[Challenge]:
            if nonce is not None and cur.nonce != nonce:
                return None
            return replace(cur, attempts=cur.attempts + 1)

        updated = self._compare_and_update(phone, _decide)
        return updated.attempts if updated is not None else 0

    def remove(self, phone: str, nonce: str | None = None) -> None:
        if nonce is None:
            self.client.delete(self._key(phone))
            return

        def _decide(cur: Challenge) -> Optional[Challenge]:
            return cur if cur.nonce == nonce else None

        self._compare_and_update(phone, _decide, delete=True)

    def sweep(self, now: float | None = None) -> int:
        # Redis expires keys on its own
        return 0

    def clear(self) -> None:
        keys = list(self.client.scan_iter(match=f"{self.prefix}:*"))
        if keys:
            self.client.delete(*keys)


class IssueThrottle(Protocol):
    def acquire(self, limits: Iterable[tuple[str, int]]) -> None:  # pragma: no cover - interface
        ...


class MemoryIssueThrottle:
    """Fixed-window counters for code requests, one per key.

    ``acquire`` checks every ``(key, limit)`` pair first and only then counts
    the request against all of them, so a refused request costs nothing.
    """

    def __init__(self, window_secs: float = 900, clock: Clock = time.time):
        self.window_secs = window_secs
        self.clock = clock
        self._hits: dict[str, tuple[float, int]] = {}
        self._last_prune = 0.0
        self._lock = threading.Lock()

    def _current(self, key: str, now: float) -> tuple[float, int]:
        started, count = self._hits.get(key, (now, 0))
        if now - started >= self.window_secs:
            return now, 0
        return started, count

    def _prune(self, now: float) -> None:
        stale = [key for key, (started, _) in self._hits.items() if now - started >= self.window_secs]
        for key in stale:
            del self._hits[key]
        self._last_prune = now

    def acquire(self, limits: Iterable[tuple[str, int]]) -> None:
        limits = list(limits)
        now = self.clock()
        with self._lock:
            if now - self._last_prune >= self.window_secs:
                self._prune(now)
            for key, limit in limits:
                started, count = self._current(key, now)
                if count >= limit:
                    raise OTPRateLimited(retry_after=max(1, int(started + self.window_secs - now)))
            for key, _ in limits:
                started, count = self._current(key, now)
                self._hits[key] = (started, count + 1)

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)


class RedisIssueThrottle:
    """Shared request counters: INCR per key, expiring with the window."""

    def __init__(self, client, prefix: str = "otp_req", window_secs: int = 900):
        self.client = client
        self.prefix = prefix
        self.window_secs = int(window_secs)

    def acquire(self, limits: Iterable[tuple[str, int]]) -> None:
        limits = [(f"{self.prefix}:{key}", limit) for key, limit in limits]
        if not limits:
            return
        counts = self.client.mget([key for key, _ in limits])
        for (key, limit), raw in zip(limits, counts):
            if int(raw or 0) >= limit:
                ttl = self.client.ttl(key)
                raise OTPRateLimited(retry_after=ttl if ttl and ttl > 0 else self.window_secs)
        pipe = self.client.pipeline()
        for key, _ in limits:
            pipe.incr(key)
            pipe.ttl(key)
        results = pipe.execute()
        for (key, _), ttl in zip(limits, results[1::2]):
            # New keys (or ones that lost their TTL) start a fresh window
            if ttl is None or ttl < 0:
                self.client.expire(key, self.window_secs)


class OTPVerifier:
    """Checks a submitted (phone, code) pair against a challenge store.

    Outcomes are reported by raising an :class:`OTPError` subclass. Only
    :class:`CodeMismatch` leaves the challenge usable; every other failure means
    the client has to request a new code.
    """

    def __init__(self, store: ChallengeStore, *, secret: str = "", max_attempts: int = 0):
        self.store = store
        self.secret = secret
        self.max_attempts = max_attempts

    def verify(self, phone: str, code: str) -> Challenge:
        challenge = self.store.lookup(phone)
        if challenge is None:
            raise ChallengeNotFound()
        if challenge.is_expired(self.store.now()):
            self.store.remove(phone, nonce=challenge.nonce)
            raise ChallengeExpired()
        if challenge.consumed:
            raise ChallengeAlreadyUsed()
        if self.max_attempts and challenge.attempts >= self.max_attempts:
            raise ChallengeLocked()

        submitted = hash_code(self.secret, phone, code or "")
        if not hmac.compare_digest(challenge.code_hash, submitted):
            attempts = self.store.record_failure(phone, nonce=challenge.nonce)
            logger.info("OTP mismatch for %s (attempt %d)", mask_phone(phone), attempts)
            remaining = None
            if self.max_attempts:
                remaining = max(self.max_attempts - attempts, 0)
            raise CodeMismatch(remaining_attempts=remaining)

        if not self.store.consume(phone, nonce=challenge.nonce):
            # Lost a race: another verify, a re-issue or the sweeper got there first
            current = self.store.lookup(phone)
            if current is None or current.nonce != challenge.nonce:
                raise ChallengeNotFound()
            if current.is_expired(self.store.now()):
                raise ChallengeExpired()
            raise ChallengeAlreadyUsed()
        return replace(challenge, consumed=True)


class ChallengeSweeper:
    """Background thread removing expired challenges on a fixed interval."""

    def __init__(
        self,
        stores: Iterable[ChallengeStore],
        interval_secs: float = 60,
        on_sweep: Callable[[int], None] | None = None,
    ):
        self.stores = list(stores)
        self.interval_secs = interval_secs
        self.on_sweep = on_sweep
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> int:
        removed = 0
        for store in self.stores:
            removed += store.sweep()
        if removed:
            logger.debug("Swept %d expired OTP challenges", removed)
        if self.on_sweep is not None:
            self.on_sweep(removed)
        return removed

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_secs):
            try:
                self.run_once()
            except Exception:
                logger.exception("OTP sweep failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="otp-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
