"""
Per-process token-bucket rate limiting for the ``/rbac`` routers.

Buckets are keyed by caller and route group, e.g. ``/rbac/auth/login``.
The caller is the client address, or a digest of the bearer token once the
token verifies. Login and refresh are always keyed by address. Limits come from
``RATE_LIMIT_RPS`` / ``RATE_LIMIT_BURST`` and are read per request, so tests
and operators can change them without rebuilding the app. Limiting is on in
prod and off in dev unless ``RATE_LIMIT_ENABLED`` says otherwise.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from .security import TokenExpiredError, TokenInvalidError, extract_bearer_token, hash_token

DEFAULT_RPS = 5.0
DEFAULT_BURST = 20
# Buckets idle this long are full again and can be forgotten.
BUCKET_IDLE_SEC = 15 * 60


def _env_flag(name: str) -> Optional[bool]:
    raw = (os.getenv(name) or "").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return None


def rate_limit_enabled() -> bool:
    explicit = _env_flag("RATE_LIMIT_ENABLED")
    if explicit is not None:
        return explicit
    return (os.getenv("CHSTUDIO_ENV") or "dev").strip().lower() == "prod"


@dataclass(frozen=True)
class RateLimitPolicy:
    rps: float
    burst: int

    @classmethod
    def from_env(cls) -> "RateLimitPolicy":
        try:
            rps = float(os.getenv("RATE_LIMIT_RPS", DEFAULT_RPS))
        except ValueError:
            rps = DEFAULT_RPS
        try:
            burst = int(os.getenv("RATE_LIMIT_BURST", DEFAULT_BURST))
        except ValueError:
            burst = DEFAULT_BURST
        return cls(rps=max(rps, 0.1), burst=max(burst, 1))


def route_group(path: str) -> str:
    """``/rbac/users/42/assign-roles`` -> ``/rbac/users/42``; login and refresh keep their own group."""
    parts = [p for p in path.split("/") if p]
    if parts[:1] == ["rbac"]:
        return "/" + "/".join(parts[:3])
    return "/" + (parts[0] if parts else "")


ADDRESS_KEYED_GROUPS = frozenset({"/rbac/auth/login", "/rbac/auth/refresh"})


def _verified_token(request: Request) -> Optional[str]:
    token = extract_bearer_token(request.headers.get("authorization"))
    signer = getattr(request.app.state, "signer", None)
    if not token or signer is None:
        return None
    try:
        signer.decode(token, expected_type="access")
    except (TokenInvalidError, TokenExpiredError):
        return None
    return token


def request_key(request: Request) -> str:
    group = route_group(request.url.path)
    token = None if group in ADDRESS_KEYED_GROUPS else _verified_token(request)
    if token:
        caller = "tok:" + hash_token(token)[:16]
    else:
        caller = "ip:" + (request.client.host if request.client else "unknown")
    return f"{caller}:{group}"


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class TokenBucketLimiter:
    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, _Bucket] = {}
        self._last_prune = clock()

    def allow(self, key: str, policy: RateLimitPolicy) -> tuple[bool, float]:
        """Take one token for ``key``; on refusal return the seconds until one is available."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(policy.burst), updated_at=now))
            bucket.tokens = min(float(policy.burst), bucket.tokens + (now - bucket.updated_at) * policy.rps)
            bucket.updated_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True, 0.0
            return False, (1.0 - bucket.tokens) / policy.rps

    def _prune(self, now: float) -> None:
        # Caller holds self._lock.
        if now - self._last_prune < BUCKET_IDLE_SEC:
            return
        self._last_prune = now
        for key in [k for k, b in self._buckets.items() if now - b.updated_at > BUCKET_IDLE_SEC]:
            del self._buckets[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def rate_limit_dependency(request: Request) -> None:
    if not rate_limit_enabled():
        return
    allowed, retry_after = _limiter.allow(request_key(request), RateLimitPolicy.from_env())
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests",
            headers={"Retry-After": str(max(1, int(retry_after + 0.999)))},
        )
