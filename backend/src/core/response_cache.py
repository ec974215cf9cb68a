"""
Route-pattern driven response cache.

Retrieval rules map GET routes to key templates; update and delete rules map
write routes to invalidation patterns. Keys are partitioned by path params,
pagination/filter query values, and the requester's user id (req_uid), so a
response containing fields visible only to its owner never lands in another
viewer's bucket.
"""
import hashlib
import json
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from core.cache_config import (
    PATH_PLACEHOLDERS,
    PLACEHOLDER_PATTERN,
    CacheConfig,
    DeleteRule,
    RetrievalRule,
    UpdateRule,
)
from core.redis import RedisClient

logger = logging.getLogger(__name__)

CACHE_STATUS_HEADER = "X-Cache"
CACHE_HIT = "HIT"
CACHE_MISS = "MISS"

# Named capture groups that hold a user and may carry a username instead of an id
_USER_PLACEHOLDERS = frozenset({"uid", "friend_uid"})

# (query parameter, default) pairs bound verbatim into cache keys
_QUERY_PLACEHOLDERS: tuple[tuple[str, str], ...] = (
    ("page", "1"),
    ("limit", "25"),
    ("sort", "desc"),
    ("size", "1024"),
    ("read", "all"),
    ("type", "all"),
)

# Query parameters whose free text is hashed before it reaches a cache key
_HASHED_QUERY_PLACEHOLDERS = ("search", "activities")

UserIdLookup = Callable[[str], Awaitable[int | None]]
Params = dict[str, Any]


def digest(value: str) -> str:
    """
    Fixed-length fingerprint of free-text query values.

    Uses MD5 for speed - this is key partitioning, not cryptographic security.
    """
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def _is_numeric(value: str) -> bool:
    return value.isascii() and value.isdigit()


def build_key(template: str, params: Mapping[str, Any]) -> str:
    """
    Resolve a key template.

    Known placeholders are replaced by their value; placeholders without a
    value are removed, so 'user:{uid}:*' with no uid becomes 'user::*'.
    """

    def _substitute(match: re.Match[str]) -> str:
        value = params.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_substitute, template)


def apply_placeholders(
    params: Mapping[str, Any],
    query: Mapping[str, str],
    requester_id: int | None,
) -> Params:
    """Add pagination/filter values from the query string and the requester id to params."""
    resolved = dict(params)
    for name, default in _QUERY_PLACEHOLDERS:
        resolved[name] = query.get(name, default)
    for name in _HASHED_QUERY_PLACEHOLDERS:
        resolved[name] = digest(query.get(name, ""))
    resolved["req_uid"] = requester_id or 0
    return resolved


class CachePolicyEngine:
    """Matches requests against cache rules and reads/writes/invalidates cached responses."""

    def __init__(self, config: CacheConfig, redis_client: RedisClient) -> None:
        self._config = config
        self._redis = redis_client

    @property
    def config(self) -> CacheConfig:
        """The rule set this engine applies."""
        return self._config

    def is_excluded(self, path: str) -> bool:
        """
        True when path contains an exclusion as whole segments.

        "/token" excludes "/v2/users/current/token" but not "/v2/users/token_fan".
        """
        return any(
            path.endswith(exclusion) or f"{exclusion}/" in path
            for exclusion in self._config.exclusions
        )

    def match_retrieval(self, method: str, path: str) -> RetrievalRule | None:
        """First retrieval rule matching the request, in declaration order."""
        return next((r for r in self._config.retrievals if r.matches(method, path)), None)

    def match_update(self, method: str, path: str) -> UpdateRule | None:
        """First update rule matching the request, in declaration order."""
        return next((r for r in self._config.updates if r.matches(method, path)), None)

    def match_delete(self, method: str, path: str) -> DeleteRule | None:
        """First delete rule matching the request, in declaration order."""
        return next((r for r in self._config.deletes if r.matches(method, path)), None)

    async def extract_path_params(
        self,
        rule: RetrievalRule | UpdateRule | DeleteRule,
        path: str,
        find_user_id: UserIdLookup,
    ) -> Params:
        """
        Bind the route regex's captures to placeholders.

        Named groups bind to their own name. Each unnamed numeric capture fills
        every one of uid, pid, aid, eid that is still empty, so the first
        numeric capture wins. An unnamed non-numeric capture is a username and
        resolves to uid through find_user_id.
        """
        match = rule.pattern.search(path)
        if match is None:
            return {}

        params: Params = {}
        named_spans = {match.span(name) for name in match.groupdict()}
        for name, value in match.groupdict().items():
            if value is None:
                continue
            if _is_numeric(value):
                params[name] = int(value)
            elif name in _USER_PLACEHOLDERS:
                user_id = await find_user_id(value)
                if user_id is not None:
                    params[name] = user_id
            else:
                params[name] = value

        for index, value in enumerate(match.groups(), start=1):
            if value is None or match.span(index) in named_spans:
                continue
            if _is_numeric(value):
                for slot in PATH_PLACEHOLDERS:
                    params.setdefault(slot, int(value))
            else:
                user_id = await find_user_id(value)
                if user_id is not None:
                    params.setdefault("uid", user_id)
        return params

    async def lookup(self, key: str) -> bytes | None:
        """Cached body for key; None on miss or when Redis is unavailable."""
        cached = await self._redis.get(key)
        if cached is not None:
            logger.debug("response_cache_hit key=%s", key)
        else:
            logger.debug("response_cache_miss key=%s", key)
        return cached

    async def store(self, rule: RetrievalRule, key: str, body: bytes) -> bool:
        """
        Cache a JSON response body under key with the rule's TTL.

        Bodies that are not valid JSON are not cached.
        """
        try:
            json.loads(body)
        except ValueError:
            logger.warning("response_cache_skip_non_json", extra={"key": key})
            return False
        stored = await self._redis.setex(key, rule.ttl, body)
        if stored:
            logger.debug("response_cache_set key=%s ttl=%s", key, rule.ttl)
        return stored

    async def invalidate(self, patterns: tuple[str, ...], params: Mapping[str, Any]) -> list[str]:
        """
        Delete cached entries for each invalidation pattern.

        A resolved pattern containing '*' deletes every key with the prefix
        before the first '*'; any other pattern deletes that exact key.
        Returns the resolved patterns that were applied.
        """
        applied: list[str] = []
        for pattern in patterns:
            resolved = build_key(pattern, params)
            if "*" in resolved:
                prefix = resolved.split("*", 1)[0]
                if not prefix:
                    # An empty prefix would flush every key in the database
                    logger.warning(
                        "response_cache_invalidate_skipped",
                        extra={"pattern": pattern, "reason": "empty prefix"},
                    )
                    continue
                count = await self._redis.delete_by_prefix(prefix)
                logger.info(
                    "response_cache_invalidate",
                    extra={"pattern": pattern, "prefix": prefix, "keys": count},
                )
            else:
                await self._redis.delete(resolved)
                logger.info("response_cache_invalidate", extra={"pattern": pattern, "key": resolved})
            applied.append(resolved)
        return applied
