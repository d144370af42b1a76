import logging
import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable, Optional

import redis
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

logger = logging.getLogger("shiftcare.ratelimit")

# Code requests and verifications are capped harder than the rest of the API
OTP_PATH_PREFIXES = ("/otp/", "/healthcare/otp/")
OTP_LIMIT_PER_MINUTE = 20


def _is_otp_path(request: Request) -> bool:
    return request.url.path.startswith(OTP_PATH_PREFIXES)


def _client_key(request: Request, prefix: str = "") -> str:
    client = request.client.host if request.client else "unknown"
    # OTP endpoints are unauthenticated; a caller-chosen header must not pick the bucket
    if _is_otp_path(request):
        return f"{prefix}otp-ip:{client}"
    auth = request.headers.get("authorization")
    if auth:
        return f"{prefix}token:{auth[-24:]}"
    return f"{prefix}ip:{client}"


def _effective_limit(request: Request, base: int, auth_boost: int, otp_limit: int) -> int:
    if _is_otp_path(request):
        return min(base, otp_limit)
    if request.headers.get("authorization"):
        base *= auth_boost
    return base


def _limited_response(retry_after: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": {"code": "rate_limited", "message": "Too many requests", "details": {"retry_after": retry_after}},
        },
        headers={"Retry-After": str(retry_after)},
    )


class SlidingWindowLimiter(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        limit_per_minute: int = 60,
        auth_boost: int = 2,
        otp_limit_per_minute: int = OTP_LIMIT_PER_MINUTE,
        exclude_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.window_seconds = 60
        self.limit_per_minute = limit_per_minute
        self.auth_boost = auth_boost
        self.otp_limit_per_minute = otp_limit_per_minute
        self.exclude_paths = set(exclude_paths or ("/health",))
        self.store: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_prune = 0.0
        self._lock = threading.Lock()

    def _prune(self, now: float) -> int:
        """Drop buckets with no hits inside the window. Caller holds the lock."""
        idle = [key for key, dq in self.store.items() if not dq or now - dq[-1] > self.window_seconds]
        for key in idle:
            del self.store[key]
        self._last_prune = now
        return len(idle)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exclude_paths:
            return await call_next(request)
        now = time.time()
        key = _client_key(request)
        limit = _effective_limit(request, self.limit_per_minute, self.auth_boost, self.otp_limit_per_minute)
        with self._lock:
            if now - self._last_prune > self.window_seconds:
                self._prune(now)
            dq = self.store[key]
            while dq and now - dq[0] > self.window_seconds:
                dq.popleft()
            if len(dq) >= limit:
                retry_after = max(1, int(self.window_seconds - (now - dq[0])))
                return _limited_response(retry_after)
            dq.append(now)
        return await call_next(request)


class RedisRateLimiter(BaseHTTPMiddleware):
    """Fixed one-minute windows counted in Redis; fails open if Redis is down."""

    def __init__(
        self,
        app,
        redis_url: str,
        limit_per_minute: int = 60,
        auth_boost: int = 2,
        prefix: str = "rl",
        otp_limit_per_minute: int = OTP_LIMIT_PER_MINUTE,
        exclude_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.redis = redis.from_url(redis_url, decode_responses=True)
        self.limit_per_minute = limit_per_minute
        self.auth_boost = auth_boost
        self.prefix = prefix
        self.otp_limit_per_minute = otp_limit_per_minute
        self.exclude_paths = set(exclude_paths or ("/health",))

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exclude_paths:
            return await call_next(request)
        limit = _effective_limit(request, self.limit_per_minute, self.auth_boost, self.otp_limit_per_minute)
        now = int(time.time())
        window = now // 60
        key = f"{_client_key(request, prefix=self.prefix + ':')}:{window}"
        try:
            count = self.redis.incr(key)
            if count == 1:
                self.redis.expire(key, 70)
        except redis.RedisError as exc:
            logger.warning("Rate limiter unavailable, allowing request (%s)", exc)
            return await call_next(request)
        if count > limit:
            return _limited_response(60 - (now % 60))
        return await call_next(request)
