"""
Rate limiting configuration and types.

This module contains the policy configuration for rate limiting - the "what" limits
to apply, separate from the "how" (enforcement logic in rate_limiter.py).

To adjust per-endpoint limits, modify ENDPOINT_LIMITS below.
Global limits come from Settings (MANTLE2_GLOBAL_* environment variables).
"""
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from core.config import Settings

GLOBAL_AUTH_SCOPE = "global:auth"
GLOBAL_ANON_SCOPE = "global:anon"
ROUTE_SCOPE_PREFIX = "route:"


@dataclass(frozen=True)
class RateLimitRule:
    """A request budget for one scope: max_requests per fixed window of window_seconds."""

    scope: str
    max_requests: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.max_requests <= 0:
            raise ValueError(f"max_requests must be > 0 for {self.scope}")
        if self.window_seconds <= 0:
            raise ValueError(f"window_seconds must be > 0 for {self.scope}")


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check with all info needed for headers."""

    allowed: bool
    remaining: int  # Requests remaining in current window
    reset_time: int  # Unix timestamp when window resets
    total: int  # Max requests in current window


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Outcome of the global and per-endpoint checks for one request.

    endpoint_result is None when the route has no endpoint rule, or when the
    global check already denied the request (the endpoint check is skipped).
    """

    global_rule: RateLimitRule
    global_result: RateLimitResult
    endpoint_rule: RateLimitRule | None = None
    endpoint_result: RateLimitResult | None = None

    @property
    def allowed(self) -> bool:
        """True when no tier rejected the request."""
        if not self.global_result.allowed:
            return False
        return self.endpoint_result is None or self.endpoint_result.allowed

    @property
    def denied_by_global(self) -> bool:
        """True when the global tier rejected the request."""
        return not self.global_result.allowed


@dataclass(frozen=True)
class RateLimitConfig:
    """
    Immutable rate limit policy, built once at startup and injected.

    endpoints maps route names to their rule; a missing route has no endpoint limit.
    """

    global_auth: RateLimitRule
    global_anon: RateLimitRule
    endpoints: Mapping[str, RateLimitRule] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Freeze the mapping so the config cannot drift after startup
        object.__setattr__(self, "endpoints", MappingProxyType(dict(self.endpoints)))

    def global_rule(self, authenticated: bool) -> RateLimitRule:
        """Global rule for the caller's tier."""
        return self.global_auth if authenticated else self.global_anon

    def endpoint_rule(self, route_name: str | None) -> RateLimitRule | None:
        """Per-endpoint rule for the route, if any."""
        if not route_name:
            return None
        return self.endpoints.get(route_name)


def _endpoint(route_name: str, max_requests: int, window_seconds: int) -> RateLimitRule:
    return RateLimitRule(ROUTE_SCOPE_PREFIX + route_name, max_requests, window_seconds)


# ---------------------------------------------------------------------------
# Per-endpoint Rate Limit Policy
# ---------------------------------------------------------------------------
# Keyed by route name (the `name=` given to each router endpoint).

ENDPOINT_LIMITS: dict[str, RateLimitRule] = {
    rule.scope.removeprefix(ROUTE_SCOPE_PREFIX): rule
    for rule in (
        # Users
        _endpoint("users.create", 5, 5 * 60),
        _endpoint("users.current.token", 3, 60),
        # Any user updates
        _endpoint("users.id.patch", 10, 60),
        _endpoint("users.current.patch", 10, 60),
        _endpoint("users.id.patch_field_privacy", 10, 60),
        _endpoint("users.current.patch_field_privacy", 10, 60),
        _endpoint("users.id.friends.add", 10, 60),
        _endpoint("users.id.circle.add", 10, 60),
        # Events
        _endpoint("events.create", 3, 2 * 60),
        _endpoint("events.update", 5, 2 * 60),
        # Prompts
        _endpoint("prompts.random", 10, 3 * 60),
        _endpoint("prompts.create", 7, 2 * 60),
        _endpoint("prompts.update", 15, 2 * 60),
    )
}


def build_rate_limit_config(
    settings: Settings,
    endpoints: Mapping[str, RateLimitRule] | None = None,
) -> RateLimitConfig:
    """Build the immutable rate limit config from settings and the endpoint table."""
    return RateLimitConfig(
        global_auth=RateLimitRule(
            GLOBAL_AUTH_SCOPE,
            settings.global_auth_limit_requests,
            settings.global_auth_limit_window_seconds,
        ),
        global_anon=RateLimitRule(
            GLOBAL_ANON_SCOPE,
            settings.global_anon_limit_requests,
            settings.global_anon_limit_window_seconds,
        ),
        endpoints=ENDPOINT_LIMITS if endpoints is None else endpoints,
    )
