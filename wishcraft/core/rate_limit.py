"""Rate limiting: slowapi request limits and a Redis-backed brute-force guard."""

import ipaddress
import logging
import math
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis
from slowapi import Limiter
from starlette.requests import Request

from wishcraft.core.config import settings
from wishcraft.core.exceptions import RateLimited

logger = logging.getLogger(__name__)


def _is_trusted_proxy(host: str) -> bool:
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(
        address in ipaddress.ip_network(network, strict=False)
        for network in settings.trusted_proxies
    )


def get_client_ip(request: Request) -> str:
    """Extract the real client IP.

    Forwarding headers (Cloudflare Tunnel, reverse proxy) are only honoured when
    the connecting peer is one of ``settings.trusted_proxies``; otherwise they are
    client-controlled and ignored.
    """
    peer = request.client.host if request.client else "127.0.0.1"
    if not _is_trusted_proxy(peer):
        return peer

    cf_ip = request.headers.get("CF-Connecting-IP", "").strip()
    if cf_ip:
        return cf_ip

    # Rightmost hop not added by one of our own proxies
    hops = [h.strip() for h in request.headers.get("X-Forwarded-For", "").split(",") if h.strip()]
    for hop in reversed(hops):
        if not _is_trusted_proxy(hop):
            return hop
    return hops[0] if hops else peer


limiter = Limiter(key_func=get_client_ip)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Sliding-window and backoff parameters for one guarded action."""

    max_attempts: int = 5
    window_seconds: int = 15 * 60
    base_delay: float = 1.0
    max_delay: float = 15 * 60

    @classmethod
    def from_settings(cls) -> "RateLimitPolicy":
        return cls(
            max_attempts=settings.auth_rate_limit_attempts,
            window_seconds=settings.auth_rate_limit_window_seconds,
            base_delay=settings.auth_backoff_base_seconds,
            max_delay=settings.auth_backoff_max_seconds,
        )

    def backoff_delay(self, failures: int) -> float:
        """Capped exponential delay after ``failures`` consecutive failures."""
        # Cap the exponent so huge failure counts cannot overflow.
        return min(2 ** min(failures, 62) * self.base_delay, self.max_delay)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


class BruteForceGuard:
    """Tracks attempts and failures per identifier in Redis.

    Identifiers are free-form (``"ip:203.0.113.9"``, ``"email:<index>"``); each
    gets its own keys, so counters are never shared. Every key carries a TTL and
    simply disappears once its window passes with no further activity.

    The client must be created with ``decode_responses=True``.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        policy: RateLimitPolicy | None = None,
        *,
        namespace: str = "auth",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self.policy = policy or RateLimitPolicy.from_settings()
        self.namespace = namespace
        self._clock = clock

    def _attempts_key(self, identifier: str) -> str:
        return f"bruteforce:{self.namespace}:attempts:{identifier}"

    def _backoff_key(self, identifier: str) -> str:
        return f"bruteforce:{self.namespace}:backoff:{identifier}"

    async def check_and_record(self, identifier: str) -> RateLimitDecision:
        """Record an attempt and decide whether it may proceed.

        Denied attempts are not counted against the window.
        """
        now = self._clock()
        policy = self.policy

        next_allowed = await self._redis.hget(self._backoff_key(identifier), "next_allowed")
        if next_allowed is not None and float(next_allowed) > now:
            return RateLimitDecision(
                allowed=False, retry_after=math.ceil(float(next_allowed) - now)
            )

        key = self._attempts_key(identifier)
        member = f"{now}:{uuid.uuid4().hex}"
        # Add-then-count in one MULTI so concurrent attempts always see each other.
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, "-inf", now - policy.window_seconds)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.expire(key, policy.window_seconds)
            _, _, count, _ = await pipe.execute()

        if count > policy.max_attempts:
            await self._redis.zrem(key, member)
            oldest = await self._redis.zrange(key, 0, 0, withscores=True)
            if oldest:
                retry_after = math.ceil(float(oldest[0][1]) + policy.window_seconds - now)
            else:
                retry_after = policy.window_seconds
            return RateLimitDecision(allowed=False, retry_after=max(retry_after, 1))

        return RateLimitDecision(allowed=True, remaining=policy.max_attempts - count)

    async def record_failure(self, identifier: str) -> float:
        """Register a failed attempt and push back the next allowed attempt.

        Returns:
            The timestamp before which further attempts are denied. It never
            moves earlier than the value set by a previous failure.
        """
        key = self._backoff_key(identifier)
        policy = self.policy

        async def _update(pipe: Any) -> float:
            current = await pipe.hgetall(key)
            now = self._clock()
            failures = int(current.get("failures", 0)) + 1
            previous = float(current.get("next_allowed", 0))
            next_allowed = max(previous, now + policy.backoff_delay(failures))
            ttl = max(policy.window_seconds, math.ceil(next_allowed - now))

            pipe.multi()
            pipe.hset(key, mapping={"failures": failures, "next_allowed": next_allowed})
            pipe.expire(key, ttl)
            return next_allowed

        next_allowed: float = await self._redis.transaction(
            _update, key, value_from_callable=True
        )
        return next_allowed

    async def record_success(self, identifier: str) -> None:
        """Clear attempts and backoff after a successful attempt."""
        await self._redis.delete(self._attempts_key(identifier), self._backoff_key(identifier))

    async def failures(self, identifier: str) -> int:
        value = await self._redis.hget(self._backoff_key(identifier), "failures")
        return int(value) if value is not None else 0

    async def enforce(self, identifier: str) -> RateLimitDecision:
        """Like :meth:`check_and_record` but raises when the attempt is denied.

        Raises:
            RateLimited: With a retry-after hint in seconds.
        """
        decision = await self.check_and_record(identifier)
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded: namespace=%s retry_after=%s",
                self.namespace,
                decision.retry_after,
            )
            raise RateLimited(retry_after=decision.retry_after)
        return decision
