"""
User profiles, privacy settings and relationship lists.

Reads return User rows that the requester may see and serialize them with
per-field redaction. Writes require the requester to be the user or an admin.
"""
import logging
from collections.abc import Mapping
from enum import StrEnum

from core.visibility import (
    field_privacy,
    is_field_visible,
    is_mutual_friend,
    is_profile_visible,
    resolve_field,
)
from models.user import User
from schemas.snapshots import AccountType, UserSnapshot
from schemas.user import (
    AccountInfo,
    FieldPrivacyUpdate,
    UserCreate,
    UserResponse,
    UserUpdate,
)
from services import token_service
from services.exceptions import (
    FriendshipError,
    InvalidUsernameError,
    PermissionDeniedError,
    UserNotFoundError,
)
from services.storage import SCAN_WINDOW, Page, Storage, unwrap
from services.user_directory import UserDirectory, to_snapshot

logger = logging.getLogger(__name__)

# Maximum circle size per account type
CIRCLE_LIMITS: Mapping[AccountType, int] = {
    AccountType.FREE: 50,
    AccountType.PRO: 500,
    AccountType.WRITER: 500,
    AccountType.ORGANIZER: 1000,
    AccountType.ADMINISTRATOR: 1000,
}


class RelationList(StrEnum):
    """Which of a user's id lists an operation targets."""

    FRIENDS = "friends"
    CIRCLE = "circle"


def _full_name(user: User) -> str | None:
    name = " ".join(part for part in (user.first_name, user.last_name) if part)
    return name or None


def serialize_user(user: User, requester: UserSnapshot | None) -> UserResponse:
    """Render a user for requester, nulling every field requester may not see."""
    subject = to_snapshot(user)
    is_self_or_admin = requester is not None and (requester.id == user.id or requester.is_admin)
    return UserResponse(
        id=user.id,
        username=user.username,
        full_name=resolve_field(subject, requester, "name", _full_name(user)),
        bio=resolve_field(subject, requester, "bio", user.bio),
        email=resolve_field(subject, requester, "email", user.email),
        phone_number=resolve_field(subject, requester, "phone_number", user.phone_number),
        country=resolve_field(subject, requester, "country", user.country),
        address=resolve_field(subject, requester, "address", user.address),
        visibility=subject.visibility,
        is_mutual=(
            requester is not None
            and requester.id != user.id
            and is_mutual_friend(subject, requester)
        ),
        account=AccountInfo(
            type=resolve_field(subject, requester, "account_type", subject.account_type.value),
            last_login=resolve_field(subject, requester, "last_login", user.last_login),
        ),
        friend_ids=resolve_field(subject, requester, "friends", sorted(subject.friend_ids)),
        field_privacy=field_privacy(subject) if is_self_or_admin else None,
        created_at=user.created_at,
    )


def ensure_can_modify(user: User, requester: UserSnapshot) -> None:
    """Only the user themself or an admin may change a user."""
    if requester.id != user.id and not requester.is_admin:
        raise PermissionDeniedError()


async def get_visible_user(
    directory: UserDirectory,
    identifier: str,
    requester: UserSnapshot | None,
) -> User:
    """
    Resolve an id or username to a user the requester may see.

    Hidden users raise UserNotFoundError, same as missing ones.
    """
    user = await directory.find(identifier)
    if user is None or not is_profile_visible(to_snapshot(user), requester):
        raise UserNotFoundError(identifier)
    return user


async def list_users(
    storage: Storage,
    requester: UserSnapshot | None,
    page: Page,
    search: str | None = None,
    sort: str = "desc",
) -> tuple[list[User], int]:
    """Users visible to requester, optionally filtered by username substring."""
    filters = [User.username.ilike(f"%{search}%")] if search else []
    users = unwrap(
        await storage.query(
            User, filters, page=SCAN_WINDOW, order_by=User.id, descending=sort != "asc",
        ),
    )
    visible = [u for u in users if is_profile_visible(to_snapshot(u), requester)]
    return page.slice(visible), len(visible)


async def create_user(storage: Storage, data: UserCreate) -> tuple[User, str]:
    """
    Register a user and issue their first API token.

    Returns (User, plaintext_token).
    """
    existing = unwrap(await storage.load_by(User, User.username == data.username))
    if existing is not None:
        raise InvalidUsernameError(data.username, "already taken")

    user = unwrap(await storage.save(User(**data.model_dump())))
    _, plaintext = await token_service.issue_token(storage, user.id)
    logger.info("user_created", extra={"user_id": user.id})
    return user, plaintext


async def update_user(storage: Storage, user: User, data: UserUpdate) -> User:
    """Apply the fields that were set on data. Profile fields can be cleared with null."""
    changes = data.model_dump(exclude_unset=True)
    if changes.get("visibility") is None:
        changes.pop("visibility", None)
    for name, value in changes.items():
        setattr(user, name, value)
    return unwrap(await storage.save(user))


async def update_field_privacy(storage: Storage, user: User, data: FieldPrivacyUpdate) -> User:
    """Merge new per-field levels into the user's stored privacy map."""
    merged = dict(user.field_privacy or {})
    merged.update({name: level.value for name, level in data.field_privacy.items()})
    # JSON columns only persist on reassignment
    user.field_privacy = merged
    return unwrap(await storage.save(user))


async def delete_user(storage: Storage, user: User) -> None:
    """Delete a user and their tokens."""
    unwrap(await storage.delete(user))
    logger.info("user_deleted", extra={"user_id": user.id})


def _ids(user: User, relation: RelationList) -> list[int]:
    values = user.friend_ids if relation is RelationList.FRIENDS else user.circle_ids
    return [int(i) for i in values or ()]


def _set_ids(user: User, relation: RelationList, ids: list[int]) -> None:
    if relation is RelationList.FRIENDS:
        user.friend_ids = ids
    else:
        user.circle_ids = ids


async def add_to_list(
    storage: Storage,
    directory: UserDirectory,
    user: User,
    friend_id: int,
    relation: RelationList,
) -> list[int]:
    """
    Add friend_id to the user's friends or circle.

    Adding an id that is already present is a no-op. The circle is capped by
    the user's account type.
    """
    if friend_id == user.id:
        raise FriendshipError(f"Cannot add yourself to your {relation}")
    if await directory.find_by_id(friend_id) is None:
        raise UserNotFoundError(friend_id)

    ids = _ids(user, relation)
    if friend_id in ids:
        return ids
    if relation is RelationList.CIRCLE:
        limit = CIRCLE_LIMITS[to_snapshot(user).account_type]
        if len(ids) >= limit:
            raise FriendshipError(f"Circle limit reached ({limit} users)")

    ids.append(friend_id)
    _set_ids(user, relation, ids)
    unwrap(await storage.save(user))
    return ids


async def remove_from_list(
    storage: Storage,
    user: User,
    friend_id: int,
    relation: RelationList,
) -> list[int]:
    """Remove friend_id from the user's friends or circle."""
    ids = _ids(user, relation)
    if friend_id not in ids:
        raise UserNotFoundError(friend_id)
    ids = [i for i in ids if i != friend_id]
    _set_ids(user, relation, ids)
    unwrap(await storage.save(user))
    return ids


async def list_relations(
    storage: Storage,
    directory: UserDirectory,
    user: User,
    requester: UserSnapshot | None,
    relation: RelationList,
    page: Page,
) -> tuple[list[User], int]:
    """
    Users in the user's friends or circle, as visible to requester.

    The friend list follows the user's "friends" privacy level; the circle is
    only visible to the user themself and admins.
    """
    subject = to_snapshot(user)
    if relation is RelationList.FRIENDS:
        level = field_privacy(subject).get("friends", "")
        if not is_field_visible(subject, requester, level):
            raise PermissionDeniedError("This user's friends are not visible to you")
    elif requester is None or (requester.id != user.id and not requester.is_admin):
        raise PermissionDeniedError("Only the user can see their circle")

    members = await directory.find_many(_ids(user, relation))
    ordered = [members[i] for i in _ids(user, relation) if i in members]
    return page.slice(ordered), len(ordered)
