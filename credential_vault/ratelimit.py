"""
Rate Limiter — cooldown-window admission control per (action, identity).

Identity prefers the authenticated user id and falls back to the client IP.
Counters live in Redis: ``INCR`` and ``EXPIRE NX`` on a per-window key
run in one MULTI/EXEC pipeline, so a counter never outlives its window. The
limiter fails open: no identity, no backing store, or a backing store
error all allow the request and log a warning.
"""
import time
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .conf import RateLimitRule, VaultSettings
from .exceptions import RateLimitError

logger = logging.getLogger("credential_vault.ratelimit")


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_seconds: int = 0


ALLOW = RateDecision(allowed=True)


def client_ip(headers: Any, peername: Optional[str] = None) -> Optional[str]:
    """Best client IP from proxy headers, then the socket peer."""
    forwarded = headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("X-Real-IP", "CF-Connecting-IP"):
        value = headers.get(header)
        if value and value.strip():
            return value.strip()
    return peername or None


class RateLimiter:
    """Fixed cooldown window limiter backed by an async Redis client."""

    def __init__(
        self,
        redis: Any = None,
        settings: Optional[VaultSettings] = None,
        prefix: str = "vault:ratelimit",
    ):
        self._redis = redis
        self._settings = settings or VaultSettings()
        self._prefix = prefix

    def _key(self, action: str, identity: str, window: int, now: float) -> str:
        bucket = int(now // window)
        return f"{self._prefix}:{action}:{identity}:{bucket}"

    async def check(
        self,
        action: str,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
        rule: Optional[RateLimitRule] = None,
    ) -> RateDecision:
        """Count one request against ``action`` for this identity."""
        if user_id:
            identity = f"user:{user_id}"
        elif ip:
            identity = f"ip:{ip}"
        else:
            logger.warning(
                "Rate limit check for %s without user or IP identifier", action,
            )
            return ALLOW
        if self._redis is None:
            logger.warning(
                "Rate limiter has no backing store; allowing %s", action,
            )
            return ALLOW
        rule = rule or self._settings.rule_for(action)
        now = time.time()
        key = self._key(action, identity, rule.window_seconds, now)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, rule.window_seconds, nx=True)
                count, _ = await pipe.execute()
            if count <= rule.max_requests:
                return ALLOW
            ttl = await self._redis.ttl(key)
        except Exception as err:
            logger.warning(
                "Rate limit store error for %s, allowing request: %s",
                action, err,
            )
            return ALLOW
        retry_after = ttl if ttl and ttl > 0 else rule.window_seconds
        logger.warning(
            "Rate limit exceeded action=%s identity=%s", action, identity,
        )
        return RateDecision(allowed=False, retry_after_seconds=int(retry_after))

    async def enforce(
        self,
        action: str,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> None:
        """Like ``check`` but raises when the request is not admitted.

        Raises:
            RateLimitError: With the retry hint in seconds.
        """
        decision = await self.check(action, user_id=user_id, ip=ip)
        if not decision.allowed:
            raise RateLimitError(decision.retry_after_seconds, action)
