"""Tests for event visibility, host-only writes and attendance."""
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings
from core.visibility import Visibility
from models.user import User
from schemas.event import EventCreate, EventUpdate
from services.event_service import (
    attend_event,
    create_event,
    delete_event,
    get_visible_event,
    leave_event,
    list_events,
    update_event,
)
from services.exceptions import EntityNotFoundError, PermissionDeniedError
from services.storage import Page, Storage
from services.user_directory import UserDirectory, to_snapshot


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


@pytest.fixture
async def host(db_session: AsyncSession) -> User:
    return await _user(db_session, "host", friend_ids=[500])


async def test__create_event__defaults_to_unlisted(storage: Storage, host: User) -> None:
    """New events are UNLISTED with no attendees."""
    event = await create_event(storage, to_snapshot(host), EventCreate(name="Picnic"))

    assert event.host_id == host.id
    assert event.visibility == Visibility.UNLISTED
    assert event.attendee_ids == []


async def test__get_visible_event__private_event_visibility(
    db_session: AsyncSession, storage: Storage, directory: UserDirectory, host: User,
) -> None:
    """PRIVATE events are found by the host's mutual friends and hidden from strangers."""
    event = await create_event(
        storage, to_snapshot(host), EventCreate(name="Secret", visibility=Visibility.PRIVATE),
    )
    friend = await _user(db_session, "friend", friend_ids=[500])
    stranger = await _user(db_session, "stranger")

    found = await get_visible_event(storage, directory, event.id, to_snapshot(friend))
    assert found.id == event.id

    with pytest.raises(EntityNotFoundError):
        await get_visible_event(storage, directory, event.id, to_snapshot(stranger))
    with pytest.raises(EntityNotFoundError):
        await get_visible_event(storage, directory, 9999, to_snapshot(host))


async def test__list_events__anonymous_sees_public_only(
    storage: Storage, directory: UserDirectory, host: User,
) -> None:
    """Anonymous listings include only PUBLIC events."""
    snapshot = to_snapshot(host)
    await create_event(storage, snapshot, EventCreate(name="Open", visibility=Visibility.PUBLIC))
    await create_event(storage, snapshot, EventCreate(name="Link only"))

    events, total = await list_events(storage, directory, None, Page())

    assert [e.name for e in events] == ["Open"]
    assert total == 1

    events, total = await list_events(storage, directory, snapshot, Page(), search="link")
    assert [e.name for e in events] == ["Link only"]


async def test__update_event__host_or_admin_only(
    db_session: AsyncSession, storage: Storage, host: User,
) -> None:
    """Only the host and admins may change an event; null fields are ignored."""
    event = await create_event(storage, to_snapshot(host), EventCreate(name="Picnic", description="x"))
    other = await _user(db_session, "other")
    admin = await _user(db_session, "cloud", account_type="ADMINISTRATOR")

    with pytest.raises(PermissionDeniedError):
        await update_event(storage, event, to_snapshot(other), EventUpdate(name="Hijacked"))

    updated = await update_event(
        storage, event, to_snapshot(admin), EventUpdate(name="Picnic 2", description=None),
    )
    assert updated.name == "Picnic 2"
    assert updated.description == "x"


async def test__delete_event__host_only(
    db_session: AsyncSession, storage: Storage, directory: UserDirectory, host: User,
) -> None:
    """Strangers cannot delete; the host can."""
    event = await create_event(storage, to_snapshot(host), EventCreate(name="Picnic"))
    other = await _user(db_session, "other")

    with pytest.raises(PermissionDeniedError):
        await delete_event(storage, event, to_snapshot(other))

    await delete_event(storage, event, to_snapshot(host))
    with pytest.raises(EntityNotFoundError):
        await get_visible_event(storage, directory, event.id, to_snapshot(host))


async def test__attend_and_leave(
    db_session: AsyncSession, storage: Storage, host: User,
) -> None:
    """Attending is idempotent; leaving requires attending."""
    event = await create_event(storage, to_snapshot(host), EventCreate(name="Picnic"))
    guest = to_snapshot(await _user(db_session, "guest"))

    await attend_event(storage, event, guest)
    event = await attend_event(storage, event, guest)
    assert event.attendee_ids == [guest.id]

    event = await leave_event(storage, event, guest)
    assert event.attendee_ids == []
    with pytest.raises(PermissionDeniedError, match="not attending"):
        await leave_event(storage, event, guest)
