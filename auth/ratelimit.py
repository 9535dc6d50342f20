"""
auth/ratelimit.py -- Fixed-window attempt counter keyed by (scope, identity).

Built on the `limits` storage backends (the engine underneath slowapi):
  memory://          -- per-process dict guarded by per-key locks (default)
  redis://host:6379  -- shared counters for multi-instance deployments

The storage provides the atomic primitive (incr returns the post-increment
value and sets the expiry only when the key is created). This module adds
the window policy on top:

  - A window starts on the first attempt and lasts window_seconds.
  - allow() increments and reports whether the attempt fits (count <= max).
  - check() only reads: saturated once count >= max. Use it for status
    reporting, never as the gate; the gate is allow().
  - clear() drops the bucket (successful login).

This is a fixed window, not a rolling log: a burst of 2x max across a window
boundary is possible. That trade-off is accepted for abuse throttling.

Distinct scopes ("login", "api:/audit/search", ...) have independent keys,
so exhausting one never locks out another.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass

from limits.storage import Storage, storage_from_string

logger = logging.getLogger("orgwarden.ratelimit")

_NAMESPACE = "orgwarden"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after: int = 0  # seconds until the window resets; 0 when allowed


class RateLimiter:
    """Fixed-window limiter over an injected `limits` storage.

    Usage:
        limiter = RateLimiter.from_uri("memory://")
        decision = limiter.allow("login", "203.0.113.7", max_attempts=5, window_seconds=300)
        if not decision.allowed:
            ...  # 429, Retry-After: decision.retry_after
        limiter.clear("login", "203.0.113.7")
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    @classmethod
    def from_uri(cls, uri: str) -> "RateLimiter":
        return cls(storage_from_string(uri))

    @staticmethod
    def _key(scope: str, identity: str) -> str:
        return f"{_NAMESPACE}/{scope}/{identity}"

    def _retry_after(self, key: str) -> int:
        remaining = self.storage.get_expiry(key) - time.time()
        return max(1, math.ceil(remaining))

    def check(self, scope: str, identity: str, max_attempts: int, window_seconds: int) -> RateLimitDecision:
        """Report whether another attempt would be allowed, without counting one."""
        key = self._key(scope, identity)
        count = self.storage.get(key)
        if count >= max_attempts:
            return RateLimitDecision(allowed=False, count=count, retry_after=self._retry_after(key))
        return RateLimitDecision(allowed=True, count=count)

    def allow(self, scope: str, identity: str, max_attempts: int, window_seconds: int) -> RateLimitDecision:
        """Count one attempt and report whether it is within the limit.

        The increment and the comparison use the single value returned by
        storage.incr(), so two concurrent callers can never both observe
        max_attempts - 1.
        """
        key = self._key(scope, identity)
        count = self.storage.incr(key, window_seconds)
        if count > max_attempts:
            logger.info("Rate limit exceeded: scope=%s identity=%s count=%d", scope, identity, count)
            return RateLimitDecision(allowed=False, count=count, retry_after=self._retry_after(key))
        return RateLimitDecision(allowed=True, count=count)

    def clear(self, scope: str, identity: str) -> None:
        self.storage.clear(self._key(scope, identity))

    def reset(self) -> None:
        """Drop every bucket. Test and operator use only."""
        self.storage.reset()
