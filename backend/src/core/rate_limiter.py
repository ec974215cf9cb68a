"""
Redis-based rate limiting enforcement.

This module contains the enforcement logic - the "how" of rate limiting.
For configuration (global tiers, per-endpoint limits), see rate_limit_config.py.
"""
import logging
import time
from collections.abc import Callable, Mapping

from core.rate_limit_config import (
    RateLimitConfig,
    RateLimitDecision,
    RateLimitResult,
    RateLimitRule,
)
from core.redis import RedisClient

logger = logging.getLogger(__name__)

ENDPOINT_HEADER_PREFIX = "X-RateLimit-"
GLOBAL_HEADER_PREFIX = "X-Global-RateLimit-"

ANONYMOUS_IDENTITY = "anonymous"


class RateLimiter:
    """
    Fixed-window rate limiter backed by Redis.

    Counters live under "{scope}:{identity}:{window_start}" and expire at the end
    of their window, so a new window starts from zero without any reset.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        config: RateLimitConfig,
        *,
        fail_open: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self._config = config
        self._fail_open = fail_open
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        """The rate limit policy this limiter enforces."""
        return self._config

    def now(self) -> int:
        """Current Unix time in whole seconds."""
        return int(self._clock())

    async def check(self, scope: str, identity: str, rule: RateLimitRule) -> RateLimitResult:
        """
        Check and count one request against rule.

        A rejected request does not increment the counter. Falls back to the
        configured fail-open/closed policy if Redis is unavailable.
        """
        now = self.now()
        window_start = (now // rule.window_seconds) * rule.window_seconds
        reset_time = window_start + rule.window_seconds
        key = f"{scope}:{identity}:{window_start}"
        ttl = max(1, reset_time - now)

        result = await self._redis.eval_fixed_window(key, rule.max_requests, ttl)
        if result is None:
            logger.warning(
                "redis_unavailable",
                extra={"operation": "rate_limit", "scope": scope, "fail_open": self._fail_open},
            )
            return RateLimitResult(
                allowed=self._fail_open,
                remaining=rule.max_requests if self._fail_open else 0,
                reset_time=reset_time,
                total=rule.max_requests,
            )

        allowed, count = int(result[0]), int(result[1])
        if not allowed:
            return RateLimitResult(
                allowed=False, remaining=0, reset_time=reset_time, total=rule.max_requests,
            )
        return RateLimitResult(
            allowed=True,
            remaining=max(0, rule.max_requests - count),
            reset_time=reset_time,
            total=rule.max_requests,
        )

    async def check_request(
        self,
        identity: str,
        authenticated: bool,
        route_name: str | None,
    ) -> RateLimitDecision:
        """
        Run the global check, then the per-endpoint check if the route has a rule.

        The endpoint check is skipped when the global check denies the request.
        """
        global_rule = self._config.global_rule(authenticated)
        global_result = await self.check(global_rule.scope, identity, global_rule)
        if not global_result.allowed:
            logger.warning(
                "rate_limit_exceeded",
                extra={"scope": global_rule.scope, "identity": identity, "route": route_name},
            )
            return RateLimitDecision(global_rule=global_rule, global_result=global_result)

        endpoint_rule = self._config.endpoint_rule(route_name)
        if endpoint_rule is None:
            return RateLimitDecision(global_rule=global_rule, global_result=global_result)

        endpoint_result = await self.check(endpoint_rule.scope, identity, endpoint_rule)
        if not endpoint_result.allowed:
            logger.warning(
                "rate_limit_exceeded",
                extra={"scope": endpoint_rule.scope, "identity": identity, "route": route_name},
            )
        return RateLimitDecision(
            global_rule=global_rule,
            global_result=global_result,
            endpoint_rule=endpoint_rule,
            endpoint_result=endpoint_result,
        )


def resolve_client_identity(headers: Mapping[str, str], peer_host: str | None) -> str:
    """
    Identify the caller for rate limiting.

    Prefers the CDN's connecting-IP header, then the first X-Forwarded-For hop,
    then the socket peer address.
    """
    connecting_ip = headers.get("cf-connecting-ip")
    if connecting_ip and connecting_ip.strip():
        return connecting_ip.strip()

    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    return peer_host or ANONYMOUS_IDENTITY


def rate_limit_headers(result: RateLimitResult, prefix: str = ENDPOINT_HEADER_PREFIX) -> dict[str, str]:
    """Build Limit/Remaining/Reset headers for one tier."""
    return {
        f"{prefix}Limit": str(result.total),
        f"{prefix}Remaining": str(max(0, result.remaining)),
        f"{prefix}Reset": str(result.reset_time),
    }


def decision_headers(decision: RateLimitDecision) -> dict[str, str]:
    """Headers for every tier that was evaluated for the request."""
    headers = rate_limit_headers(decision.global_result, GLOBAL_HEADER_PREFIX)
    if decision.endpoint_result is not None:
        headers.update(rate_limit_headers(decision.endpoint_result, ENDPOINT_HEADER_PREFIX))
    return headers


def rejection_headers(decision: RateLimitDecision, now: int) -> dict[str, str]:
    """
    Headers for a 429 response.

    Both header sets are always present; when the global tier rejected the
    request the endpoint set reports the global numbers.
    """
    endpoint_result = decision.endpoint_result or decision.global_result
    headers = rate_limit_headers(endpoint_result, ENDPOINT_HEADER_PREFIX)
    headers.update(rate_limit_headers(decision.global_result, GLOBAL_HEADER_PREFIX))
    rejected = decision.global_result if decision.denied_by_global else endpoint_result
    headers["Retry-After"] = str(max(1, rejected.reset_time - now))
    return headers


def rate_limit_exceeded_body(decision: RateLimitDecision, now: int) -> dict[str, str | int]:
    """JSON body for a 429 response, describing the tier that rejected the request."""
    if decision.denied_by_global:
        result, message_prefix = decision.global_result, "Global rate limit exceeded"
    else:
        # endpoint_result is set whenever the global tier allowed a denied request
        result, message_prefix = decision.endpoint_result, "Rate limit exceeded"
    retry_after = max(1, result.reset_time - now)
    return {
        "error": "Rate limit exceeded",
        "message": (
            f"{message_prefix}: Too many requests. "
            f"Limit: {result.total} requests per {retry_after} seconds."
        ),
        "retryAfter": retry_after,
    }
