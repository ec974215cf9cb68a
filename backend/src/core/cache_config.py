"""
Declarative response cache rules.

Rules are loaded once at startup from a YAML file shaped like:

    cache:
      exclusions: ["/users/current/token"]
      retrievals:
        - route: '^/v2/users/([0-9]+)$'
          methods: [GET]
          key_template: 'user:{uid}:{req_uid}'
          ttl: 300
      updates:
        - route: '^/v2/users/([0-9]+)$'
          methods: [PATCH]
          invalidate_patterns: ['user:{uid}:*']
      deletes: [...]

A malformed file raises ConfigParseError; the application refuses to start
rather than serve with a partial rule set.
"""
import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml

ALLOWED_METHODS = frozenset({"GET", "POST", "PATCH", "PUT", "DELETE"})

# Placeholders that key templates and invalidation patterns may reference
PATH_PLACEHOLDERS = ("uid", "pid", "aid", "eid")
KNOWN_PLACEHOLDERS = frozenset({
    *PATH_PLACEHOLDERS,
    "friend_uid",
    "page",
    "limit",
    "search",
    "sort",
    "size",
    "read",
    "activities",
    "type",
    "req_uid",
})

PLACEHOLDER_PATTERN = re.compile(r"\{([^}]+)\}")


class ConfigParseError(Exception):
    """Raised when the cache rule file is missing, unreadable or malformed."""


class RuleKind(StrEnum):
    """Which section of the cache config a rule came from."""

    RETRIEVAL = "retrieval"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class _RouteRule:
    methods: frozenset[str]
    route: str
    pattern: re.Pattern[str]

    def matches(self, method: str, path: str) -> bool:
        """True when method is handled by this rule and the route regex is found in path."""
        return method in self.methods and self.pattern.search(path) is not None


@dataclass(frozen=True)
class RetrievalRule(_RouteRule):
    """Cache GET responses under key_template for ttl seconds."""

    key_template: str
    ttl: int


@dataclass(frozen=True)
class UpdateRule(_RouteRule):
    """Invalidate keys matching invalidate_patterns after a successful write."""

    invalidate_patterns: tuple[str, ...]


@dataclass(frozen=True)
class DeleteRule(_RouteRule):
    """Invalidate keys matching invalidate_patterns after a successful delete."""

    invalidate_patterns: tuple[str, ...]


CacheRule = RetrievalRule | UpdateRule | DeleteRule


@dataclass(frozen=True)
class CacheConfig:
    """Immutable set of cache rules; declaration order decides which rule matches first."""

    retrievals: tuple[RetrievalRule, ...] = ()
    updates: tuple[UpdateRule, ...] = ()
    deletes: tuple[DeleteRule, ...] = ()
    exclusions: tuple[str, ...] = ()

    def all_rules(self) -> tuple[CacheRule, ...]:
        """Every rule, retrievals first."""
        return (*self.retrievals, *self.updates, *self.deletes)


def template_placeholders(template: str) -> set[str]:
    """Names of the {placeholders} used in a key template or pattern."""
    return set(PLACEHOLDER_PATTERN.findall(template))


def _fail(kind: RuleKind, index: int, message: str) -> ConfigParseError:
    return ConfigParseError(f"{kind} rule #{index}: {message}")


def _parse_common(kind: RuleKind, index: int, raw: Any) -> tuple[frozenset[str], str, re.Pattern[str]]:
    if not isinstance(raw, dict):
        raise _fail(kind, index, "must be a mapping")

    route = raw.get("route")
    if not isinstance(route, str) or not route:
        raise _fail(kind, index, "missing 'route'")
    try:
        pattern = re.compile(route)
    except re.error as e:
        raise _fail(kind, index, f"invalid route regex {route!r}: {e}") from e

    methods = raw.get("methods")
    if not isinstance(methods, list) or not methods:
        raise _fail(kind, index, "'methods' must be a non-empty list")
    normalized = {str(method).upper() for method in methods}
    invalid = normalized - ALLOWED_METHODS
    if invalid:
        raise _fail(kind, index, f"invalid methods {sorted(invalid)}")

    return frozenset(normalized), route, pattern


def _check_placeholders(kind: RuleKind, index: int, template: str) -> None:
    unknown = template_placeholders(template) - KNOWN_PLACEHOLDERS
    if unknown:
        raise _fail(kind, index, f"unknown placeholders {sorted(unknown)} in {template!r}")


def _parse_retrieval(index: int, raw: Any) -> RetrievalRule:
    methods, route, pattern = _parse_common(RuleKind.RETRIEVAL, index, raw)

    key_template = raw.get("key_template")
    if not isinstance(key_template, str) or not key_template:
        raise _fail(RuleKind.RETRIEVAL, index, "missing 'key_template'")
    _check_placeholders(RuleKind.RETRIEVAL, index, key_template)

    ttl = raw.get("ttl")
    # bool is an int subclass; reject it explicitly
    if not isinstance(ttl, int) or isinstance(ttl, bool) or ttl <= 0:
        raise _fail(RuleKind.RETRIEVAL, index, "'ttl' must be an integer > 0")

    return RetrievalRule(
        methods=methods, route=route, pattern=pattern, key_template=key_template, ttl=ttl,
    )


def _parse_patterns(kind: RuleKind, index: int, raw: dict) -> tuple[str, ...]:
    patterns = raw.get("invalidate_patterns")
    if not isinstance(patterns, list) or not patterns:
        raise _fail(kind, index, "'invalidate_patterns' must be a non-empty list")
    for pattern in patterns:
        if not isinstance(pattern, str) or not pattern:
            raise _fail(kind, index, "invalidation patterns must be non-empty strings")
        _check_placeholders(kind, index, pattern)
    return tuple(patterns)


def _parse_update(index: int, raw: Any) -> UpdateRule:
    methods, route, pattern = _parse_common(RuleKind.UPDATE, index, raw)
    return UpdateRule(
        methods=methods,
        route=route,
        pattern=pattern,
        invalidate_patterns=_parse_patterns(RuleKind.UPDATE, index, raw),
    )


def _parse_delete(index: int, raw: Any) -> DeleteRule:
    methods, route, pattern = _parse_common(RuleKind.DELETE, index, raw)
    return DeleteRule(
        methods=methods,
        route=route,
        pattern=pattern,
        invalidate_patterns=_parse_patterns(RuleKind.DELETE, index, raw),
    )


def _section(cache: dict, name: str) -> Iterable[Any]:
    section = cache.get(name) or []
    if not isinstance(section, list):
        raise ConfigParseError(f"'cache.{name}' must be a list")
    return section


def parse_cache_config(data: Any) -> CacheConfig:
    """Validate parsed YAML data and build the typed rule set."""
    if not isinstance(data, dict) or not isinstance(data.get("cache"), dict):
        raise ConfigParseError("cache config must contain a 'cache' mapping")
    cache = data["cache"]

    exclusions = list(_section(cache, "exclusions"))
    for index, exclusion in enumerate(exclusions):
        if not isinstance(exclusion, str) or not exclusion:
            raise ConfigParseError(f"exclusions[{index}] must be a non-empty string")
        if not exclusion.startswith("/") or exclusion.endswith("/"):
            raise ConfigParseError(
                f"exclusions[{index}] must start with '/' and not end with one",
            )

    return CacheConfig(
        retrievals=tuple(
            _parse_retrieval(i, raw) for i, raw in enumerate(_section(cache, "retrievals"))
        ),
        updates=tuple(_parse_update(i, raw) for i, raw in enumerate(_section(cache, "updates"))),
        deletes=tuple(_parse_delete(i, raw) for i, raw in enumerate(_section(cache, "deletes"))),
        exclusions=tuple(exclusions),
    )


def load_cache_config(path: Path | str) -> CacheConfig:
    """Load and validate the cache rule file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigParseError(f"cannot read cache config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigParseError(f"invalid YAML in cache config {path}: {e}") from e
    return parse_cache_config(data)
