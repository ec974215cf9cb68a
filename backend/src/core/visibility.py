"""
Field-level privacy and entity-level visibility rules.

Two models live here:

- Privacy (PUBLIC, MUTUAL, CIRCLE, PRIVATE) governs single fields of a user
  profile, e.g. whether a requester may see the subject's email.
- Visibility (PUBLIC, UNLISTED, PRIVATE) governs whole entities: user
  profiles, events and prompts.

Everything is a pure function of the snapshots passed in. A denied field
resolves to None; callers serialize it as null so absence of a value is the
only signal of a privacy denial.
"""
from collections.abc import Mapping
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from schemas.snapshots import EventSnapshot, PromptSnapshot, UserSnapshot


class Privacy(StrEnum):
    """Per-field privacy level."""

    PUBLIC = "PUBLIC"
    MUTUAL = "MUTUAL"
    CIRCLE = "CIRCLE"
    PRIVATE = "PRIVATE"


class Visibility(StrEnum):
    """Entity visibility level."""

    PUBLIC = "PUBLIC"
    UNLISTED = "UNLISTED"
    PRIVATE = "PRIVATE"


# Applied for any field missing from a user's stored privacy map
DEFAULT_FIELD_PRIVACY: Mapping[str, Privacy] = MappingProxyType({
    "name": Privacy.PUBLIC,
    "bio": Privacy.PUBLIC,
    "phone_number": Privacy.CIRCLE,
    "country": Privacy.PRIVATE,
    "email": Privacy.MUTUAL,
    "address": Privacy.PRIVATE,
    "activities": Privacy.PUBLIC,
    "events": Privacy.MUTUAL,
    "friends": Privacy.MUTUAL,
    "last_login": Privacy.PUBLIC,
    "account_type": Privacy.PUBLIC,
})


def parse_privacy(level: "Privacy | str | None") -> Privacy | None:
    """Coerce a stored level to Privacy; None when it is not a known level."""
    if isinstance(level, Privacy):
        return level
    if not isinstance(level, str):
        return None
    try:
        return Privacy(level.strip().upper())
    except ValueError:
        return None


def parse_visibility(value: Any, default: Visibility = Visibility.UNLISTED) -> Visibility:
    """Coerce a stored visibility value, falling back to default when unknown."""
    if isinstance(value, Visibility):
        return value
    if isinstance(value, str):
        try:
            return Visibility(value.strip().upper())
        except ValueError:
            return default
    return default


def field_privacy(subject: "UserSnapshot") -> dict[str, str]:
    """The subject's stored privacy map merged over the defaults."""
    merged: dict[str, str] = {name: level.value for name, level in DEFAULT_FIELD_PRIVACY.items()}
    merged.update(subject.field_privacy)
    return merged


def is_mutual_friend(user: "UserSnapshot", other: "UserSnapshot") -> bool:
    """True when the two users' friend lists share at least one user."""
    return bool(user.friend_ids & other.friend_ids)


def is_in_circle(subject: "UserSnapshot", member: "UserSnapshot") -> bool:
    """True when subject has added member to their circle. Nobody is in their own circle."""
    if subject.id == member.id:
        return False
    return member.id in subject.circle_ids


def is_added_friend(user: "UserSnapshot", friend: "UserSnapshot") -> bool:
    """True when user has friend in their friend list."""
    return friend.id in user.friend_ids


def is_field_visible(
    subject: "UserSnapshot",
    requester: "UserSnapshot | None",
    level: "Privacy | str",
) -> bool:
    """
    Decide whether requester may see a field of subject guarded by level.

    Rules, first match wins:
    1. PUBLIC is visible to everyone.
    2. Anonymous requesters see nothing else.
    3. Users always see their own data.
    4. Admins see everything.
    5. PRIVATE is hidden from everyone else.
    6. CIRCLE is visible to members of the subject's circle.
    7. MUTUAL is visible when the two users share a friend.
    8. Any unrecognised level is visible.
    """
    privacy = parse_privacy(level)
    if privacy is Privacy.PUBLIC:
        return True
    if requester is None:
        return False
    if requester.id == subject.id or requester.is_admin:
        return True
    if privacy is Privacy.PRIVATE:
        return False
    if privacy is Privacy.CIRCLE:
        return is_in_circle(subject, requester)
    if privacy is Privacy.MUTUAL:
        return is_mutual_friend(subject, requester)
    # Unknown level from a stored map written before validation existed
    return True


def resolve_field(
    subject: "UserSnapshot",
    requester: "UserSnapshot | None",
    field_name: str,
    raw_value: Any,
) -> Any:
    """Return raw_value if requester may see subject's field_name, else None."""
    level = field_privacy(subject).get(field_name, Privacy.PUBLIC.value)
    if is_field_visible(subject, requester, level):
        return raw_value
    return None


def is_profile_visible(subject: "UserSnapshot", requester: "UserSnapshot | None") -> bool:
    """
    Entity-level visibility of a user profile.

    UNLISTED requires a logged-in requester. PRIVATE additionally requires the
    requester to be the subject, an admin, or to have added the subject as a friend.
    """
    if subject.visibility is Visibility.PUBLIC:
        return True
    if requester is None:
        return False
    if subject.visibility is Visibility.PRIVATE:
        return (
            requester.id == subject.id
            or requester.is_admin
            or is_added_friend(requester, subject)
        )
    return True


def is_event_visible(
    event: "EventSnapshot",
    requester: "UserSnapshot | None",
    host: "UserSnapshot | None",
) -> bool:
    """
    Entity-level visibility of an event.

    UNLISTED requires only a logged-in requester. PRIVATE requires an admin,
    the host, an attendee, or a mutual friend of the host.
    """
    if event.visibility is Visibility.PUBLIC:
        return True
    if requester is None:
        return False
    if (
        requester.is_admin
        or requester.id == event.host_id
        or requester.id in event.attendee_ids
        or (host is not None and is_mutual_friend(host, requester))
    ):
        return True
    return event.visibility is not Visibility.PRIVATE


def is_prompt_visible(
    prompt: "PromptSnapshot",
    requester: "UserSnapshot | None",
    owner: "UserSnapshot | None",
) -> bool:
    """
    Entity-level visibility of a prompt.

    UNLISTED requires only a logged-in requester. PRIVATE requires an admin,
    the owner, or a mutual friend of the owner.
    """
    if prompt.visibility is Visibility.PUBLIC:
        return True
    if requester is None:
        return False
    if prompt.visibility is not Visibility.PRIVATE:
        return True
    return (
        requester.is_admin
        or requester.id == prompt.owner_id
        or (owner is not None and is_mutual_friend(owner, requester))
    )
