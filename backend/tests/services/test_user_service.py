"""Tests for user profile, privacy and relationship operations."""
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings
from core.visibility import Privacy, Visibility
from models.user import User
from schemas.snapshots import AccountType
from schemas.user import FieldPrivacyUpdate, UserCreate, UserUpdate
from services import token_service
from services.exceptions import (
    FriendshipError,
    InvalidUsernameError,
    PermissionDeniedError,
    UserNotFoundError,
)
from services.storage import Page, Storage
from services.user_directory import UserDirectory, to_snapshot
from services.user_service import (
    CIRCLE_LIMITS,
    RelationList,
    add_to_list,
    create_user,
    ensure_can_modify,
    get_visible_user,
    list_relations,
    list_users,
    remove_from_list,
    serialize_user,
    update_field_privacy,
    update_user,
)


async def _user(db_session: AsyncSession, username: str, **fields: Any) -> User:
    user = User(username=username, **fields)
    db_session.add(user)
    await db_session.flush()
    await db_session.refresh(user)
    return user


@pytest.fixture
def storage(db_session: AsyncSession) -> Storage:
    return Storage(db_session)


@pytest.fixture
def directory(storage: Storage, settings: Settings) -> UserDirectory:
    return UserDirectory(storage, settings)


# =============================================================================
# serialize_user
# =============================================================================


async def test__serialize_user__anonymous_sees_public_fields_only(db_session: AsyncSession) -> None:
    """Anonymous requesters get PUBLIC fields; everything else is null."""
    alice = await _user(
        db_session, "alice", first_name="Alice", last_name="Liddell", bio="hi",
        email="a@example.com", phone_number="555", country="GB", address="1 Road",
        friend_ids=[9],
    )

    response = serialize_user(alice, None)

    assert response.full_name == "Alice Liddell"
    assert response.bio == "hi"
    assert response.account.type == "FREE"
    assert response.email is None
    assert response.phone_number is None
    assert response.country is None
    assert response.address is None
    assert response.friend_ids is None
    assert response.field_privacy is None
    assert response.is_mutual is False


async def test__serialize_user__self_sees_everything(db_session: AsyncSession) -> None:
    """The user sees every field plus the merged privacy map."""
    alice = await _user(db_session, "alice", email="a@example.com", country="GB", friend_ids=[9, 4])

    response = serialize_user(alice, to_snapshot(alice))

    assert response.email == "a@example.com"
    assert response.country == "GB"
    assert response.friend_ids == [4, 9]
    assert response.field_privacy is not None
    assert response.field_privacy["email"] == Privacy.MUTUAL.value
    assert response.is_mutual is False


async def test__serialize_user__admin_sees_privacy_map(db_session: AsyncSession) -> None:
    """Admins see every field and the privacy map."""
    alice = await _user(db_session, "alice", address="1 Road")
    admin = await _user(db_session, "cloud", account_type="ADMINISTRATOR")

    response = serialize_user(alice, to_snapshot(admin))

    assert response.address == "1 Road"
    assert response.field_privacy is not None


async def test__serialize_user__mutual_friend_sees_mutual_fields(db_session: AsyncSession) -> None:
    """A requester sharing a friend sees MUTUAL fields but not CIRCLE or PRIVATE ones."""
    alice = await _user(db_session, "alice", email="a@example.com", phone_number="555", friend_ids=[50])
    bob = await _user(db_session, "bob", friend_ids=[50])

    response = serialize_user(alice, to_snapshot(bob))

    assert response.is_mutual is True
    assert response.email == "a@example.com"
    assert response.friend_ids == [50]
    assert response.phone_number is None
    assert response.field_privacy is None


async def test__serialize_user__circle_member_sees_circle_fields(db_session: AsyncSession) -> None:
    """Members of the subject's circle see CIRCLE fields."""
    bob = await _user(db_session, "bob")
    alice = await _user(db_session, "alice", phone_number="555", circle_ids=[bob.id])

    assert serialize_user(alice, to_snapshot(bob)).phone_number == "555"


# =============================================================================
# Permissions and visibility
# =============================================================================


async def test__ensure_can_modify(db_session: AsyncSession) -> None:
    """Only self and admins may modify a user."""
    alice = await _user(db_session, "alice")
    bob = await _user(db_session, "bob")
    admin = await _user(db_session, "cloud", account_type="ADMINISTRATOR")

    ensure_can_modify(alice, to_snapshot(alice))
    ensure_can_modify(alice, to_snapshot(admin))
    with pytest.raises(PermissionDeniedError):
        ensure_can_modify(alice, to_snapshot(bob))


async def test__get_visible_user__hidden_user_is_not_found(
    db_session: AsyncSession, directory: UserDirectory,
) -> None:
    """A PRIVATE profile is indistinguishable from a missing one."""
    await _user(db_session, "hidden", visibility=Visibility.PRIVATE)
    bob = await _user(db_session, "bob")

    with pytest.raises(UserNotFoundError):
        await get_visible_user(directory, "hidden", to_snapshot(bob))
    with pytest.raises(UserNotFoundError):
        await get_visible_user(directory, "missing", None)


async def test__list_users__filters_visibility_and_search(
    db_session: AsyncSession, storage: Storage,
) -> None:
    """Anonymous listings skip UNLISTED and PRIVATE profiles; search matches usernames."""
    await _user(db_session, "alice")
    await _user(db_session, "alfred", visibility=Visibility.UNLISTED)
    await _user(db_session, "bob")

    users, total = await list_users(storage, None, Page(1, 10), sort="asc")
    assert [u.username for u in users] == ["alice", "bob"]
    assert total == 2

    users, total = await list_users(storage, None, Page(1, 10), search="al")
    assert [u.username for u in users] == ["alice"]


async def test__list_users__total_counts_all_pages(
    db_session: AsyncSession, storage: Storage,
) -> None:
    """total covers every visible user, not just the current page."""
    for name in ("u_one", "u_two", "u_three"):
        await _user(db_session, name)

    users, total = await list_users(storage, None, Page(2, 2), sort="asc")

    assert [u.username for u in users] == ["u_three"]
    assert total == 3


async def test__list_users__reads_a_bounded_ordered_window(
    db_session: AsyncSession, storage: Storage, monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Listings read at most SCAN_WINDOW rows, in the requested order."""
    for name in ("w_one", "w_two", "w_three"):
        await _user(db_session, name)
    monkeypatch.setattr("services.user_service.SCAN_WINDOW", Page(limit=2))

    newest, total = await list_users(storage, None, Page(1, 10))
    assert [u.username for u in newest] == ["w_three", "w_two"]
    assert total == 2

    oldest, _ = await list_users(storage, None, Page(1, 10), sort="asc")
    assert [u.username for u in oldest] == ["w_one", "w_two"]


# =============================================================================
# Writes
# =============================================================================


async def test__create_user__issues_working_token(storage: Storage) -> None:
    """Registration returns the user and a token that resolves to them."""
    user, plaintext = await create_user(storage, UserCreate(username="newbie", email="n@example.com"))

    api_token = await token_service.find_token(storage, plaintext)
    assert api_token is not None
    assert api_token.user_id == user.id


async def test__create_user__duplicate_username(db_session: AsyncSession, storage: Storage) -> None:
    """Taken usernames are rejected."""
    await _user(db_session, "alice")

    with pytest.raises(InvalidUsernameError, match="already taken"):
        await create_user(storage, UserCreate(username="alice"))


async def test__update_user__applies_only_set_fields(db_session: AsyncSession, storage: Storage) -> None:
    """Unset fields are untouched; explicit nulls clear; a null visibility is ignored."""
    alice = await _user(db_session, "alice", bio="old", email="a@example.com")

    updated = await update_user(
        storage, alice, UserUpdate.model_validate({"bio": None, "country": "NZ", "visibility": None}),
    )

    assert updated.bio is None
    assert updated.country == "NZ"
    assert updated.email == "a@example.com"
    assert updated.visibility == Visibility.PUBLIC


async def test__update_field_privacy__merges(db_session: AsyncSession, storage: Storage) -> None:
    """New levels merge over existing overrides."""
    alice = await _user(db_session, "alice", field_privacy={"email": "PUBLIC"})

    updated = await update_field_privacy(
        storage, alice, FieldPrivacyUpdate(field_privacy={"bio": Privacy.PRIVATE}),
    )

    assert updated.field_privacy == {"email": "PUBLIC", "bio": "PRIVATE"}


# =============================================================================
# Friends and circle
# =============================================================================


async def test__add_to_list__adds_and_is_idempotent(
    db_session: AsyncSession, storage: Storage, directory: UserDirectory,
) -> None:
    """Adding a friend twice keeps a single entry."""
    alice = await _user(db_session, "alice")
    bob = await _user(db_session, "bob")

    assert await add_to_list(storage, directory, alice, bob.id, RelationList.FRIENDS) == [bob.id]
    assert await add_to_list(storage, directory, alice, bob.id, RelationList.FRIENDS) == [bob.id]
    assert alice.friend_ids == [bob.id]


async def test__add_to_list__rejects_self(
    db_session: AsyncSession, storage: Storage, directory: UserDirectory,
) -> None:
    """Nobody can add themself."""
    alice = await _user(db_session, "alice")

    with pytest.raises(FriendshipError, match="yourself"):
        await add_to_list(storage, directory, alice, alice.id, RelationList.CIRCLE)


async def test__add_to_list__unknown_user(
    db_session: AsyncSession, storage: Storage, directory: UserDirectory,
) -> None:
    """Only existing users can be added."""
    alice = await _user(db_session, "alice")

    with pytest.raises(UserNotFoundError):
        await add_to_list(storage, directory, alice, 9999, RelationList.FRIENDS)


async def test__add_to_list__circle_limit_by_account_type(
    db_session: AsyncSession, storage: Storage, directory: UserDirectory,
) -> None:
    """FREE circles are capped; PRO accounts have room for more."""
    limit = CIRCLE_LIMITS[AccountType.FREE]
    full_circle = list(range(10_000, 10_000 + limit))
    free = await _user(db_session, "free_user", circle_ids=full_circle)
    pro = await _user(db_session, "pro_user", account_type="PRO", circle_ids=full_circle)
    bob = await _user(db_session, "bob")

    with pytest.raises(FriendshipError, match="Circle limit"):
        await add_to_list(storage, directory, free, bob.id, RelationList.CIRCLE)

    ids = await add_to_list(storage, directory, pro, bob.id, RelationList.CIRCLE)
    assert len(ids) == limit + 1


async def test__remove_from_list(db_session: AsyncSession, storage: Storage) -> None:
    """Removing drops the id; removing an absent id is an error."""
    alice = await _user(db_session, "alice", friend_ids=[7, 8])

    assert await remove_from_list(storage, alice, 7, RelationList.FRIENDS) == [8]
    with pytest.raises(UserNotFoundError):
        await remove_from_list(storage, alice, 7, RelationList.FRIENDS)


async def test__list_relations__friends_follow_privacy(
    db_session: AsyncSession, storage: Storage, directory: UserDirectory,
) -> None:
    """The friend list is MUTUAL by default and can be made PUBLIC."""
    bob = await _user(db_session, "bob")
    carol = await _user(db_session, "carol")
    alice = await _user(db_session, "alice", friend_ids=[carol.id, bob.id])

    with pytest.raises(PermissionDeniedError):
        await list_relations(storage, directory, alice, None, RelationList.FRIENDS, Page())

    users, total = await list_relations(
        storage, directory, alice, to_snapshot(alice), RelationList.FRIENDS, Page(),
    )
    assert [u.username for u in users] == ["carol", "bob"]
    assert total == 2

    alice.field_privacy = {"friends": "PUBLIC"}
    users, _ = await list_relations(storage, directory, alice, None, RelationList.FRIENDS, Page())
    assert len(users) == 2


async def test__list_relations__circle_is_owner_only(
    db_session: AsyncSession, storage: Storage, directory: UserDirectory,
) -> None:
    """Only the user and admins can list a circle."""
    bob = await _user(db_session, "bob")
    admin = await _user(db_session, "cloud", account_type="ADMINISTRATOR")
    alice = await _user(db_session, "alice", circle_ids=[bob.id])

    with pytest.raises(PermissionDeniedError):
        await list_relations(storage, directory, alice, to_snapshot(bob), RelationList.CIRCLE, Page())

    users, _ = await list_relations(
        storage, directory, alice, to_snapshot(admin), RelationList.CIRCLE, Page(),
    )
    assert [u.id for u in users] == [bob.id]
