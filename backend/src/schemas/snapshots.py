"""Immutable entity snapshots consumed by visibility checks and cache key building."""
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from core.visibility import Visibility


class AccountType(StrEnum):
    """Account tier; determines admin status and circle size limits."""

    FREE = "FREE"
    PRO = "PRO"
    WRITER = "WRITER"
    ORGANIZER = "ORGANIZER"
    ADMINISTRATOR = "ADMINISTRATOR"


@dataclass(frozen=True)
class UserSnapshot:
    """
    Lightweight user representation with the relationship facts visibility needs.

    Built from the User ORM row by the user directory. friend_ids and circle_ids
    are the user's own lists (who *they* added), not who added them.
    """

    id: int
    username: str
    account_type: AccountType = AccountType.FREE
    is_admin: bool = False
    visibility: Visibility = Visibility.PUBLIC
    friend_ids: frozenset[int] = frozenset()
    circle_ids: frozenset[int] = frozenset()
    # Raw stored privacy map; may contain levels this code does not recognise
    field_privacy: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EventSnapshot:
    """Event facts needed for entity-level visibility."""

    id: int
    host_id: int
    visibility: Visibility = Visibility.PUBLIC
    attendee_ids: frozenset[int] = frozenset()


@dataclass(frozen=True)
class PromptSnapshot:
    """Prompt facts needed for entity-level visibility."""

    id: int
    owner_id: int
    visibility: Visibility = Visibility.PUBLIC
