"""Service layer for events: visibility-filtered reads, host-only writes, attendance."""
import logging

from core.visibility import Visibility, is_event_visible, parse_visibility
from models.event import Event
from schemas.event import EventCreate, EventUpdate
from schemas.snapshots import EventSnapshot, UserSnapshot
from services.exceptions import EntityNotFoundError, PermissionDeniedError
from services.storage import SCAN_WINDOW, Page, Storage, unwrap
from services.user_directory import UserDirectory, to_snapshot

logger = logging.getLogger(__name__)


def to_event_snapshot(event: Event) -> EventSnapshot:
    """Immutable view of the event for visibility checks."""
    return EventSnapshot(
        id=event.id,
        host_id=event.host_id,
        visibility=parse_visibility(event.visibility, default=Visibility.UNLISTED),
        attendee_ids=frozenset(int(i) for i in event.attendee_ids or ()),
    )


async def _visible(
    directory: UserDirectory,
    events: list[Event],
    requester: UserSnapshot | None,
) -> list[Event]:
    hosts = await directory.find_many(e.host_id for e in events)
    visible = []
    for event in events:
        host = hosts.get(event.host_id)
        host_snapshot = to_snapshot(host) if host is not None else None
        if is_event_visible(to_event_snapshot(event), requester, host_snapshot):
            visible.append(event)
    return visible


async def get_visible_event(
    storage: Storage,
    directory: UserDirectory,
    event_id: int,
    requester: UserSnapshot | None,
) -> Event:
    """Event by id; hidden events raise EntityNotFoundError, same as missing ones."""
    event = unwrap(await storage.load(Event, event_id))
    if event is None or not await _visible(directory, [event], requester):
        raise EntityNotFoundError("Event", event_id)
    return event


async def list_events(
    storage: Storage,
    directory: UserDirectory,
    requester: UserSnapshot | None,
    page: Page,
    search: str | None = None,
    sort: str = "desc",
) -> tuple[list[Event], int]:
    """Events visible to requester, optionally filtered by name substring."""
    filters = [Event.name.ilike(f"%{search}%")] if search else []
    events = unwrap(
        await storage.query(
            Event, filters, page=SCAN_WINDOW, order_by=Event.id, descending=sort != "asc",
        ),
    )
    visible = await _visible(directory, events, requester)
    return page.slice(visible), len(visible)


def _ensure_host(event: Event, requester: UserSnapshot) -> None:
    if requester.id != event.host_id and not requester.is_admin:
        raise PermissionDeniedError("Only the host can change this event")


async def create_event(storage: Storage, host: UserSnapshot, data: EventCreate) -> Event:
    """Create an event hosted by host."""
    event = unwrap(await storage.save(Event(host_id=host.id, **data.model_dump())))
    logger.info("event_created", extra={"event_id": event.id, "host_id": host.id})
    return event


async def update_event(
    storage: Storage,
    event: Event,
    requester: UserSnapshot,
    data: EventUpdate,
) -> Event:
    """Apply the fields that were set on data. Host or admin only."""
    _ensure_host(event, requester)
    for name, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(event, name, value)
    return unwrap(await storage.save(event))


async def delete_event(storage: Storage, event: Event, requester: UserSnapshot) -> None:
    """Delete an event. Host or admin only."""
    _ensure_host(event, requester)
    unwrap(await storage.delete(event))


async def attend_event(storage: Storage, event: Event, requester: UserSnapshot) -> Event:
    """Add requester to the attendees. Attending twice is a no-op."""
    attendees = [int(i) for i in event.attendee_ids or ()]
    if requester.id in attendees:
        return event
    # JSON columns only persist on reassignment
    event.attendee_ids = [*attendees, requester.id]
    return unwrap(await storage.save(event))


async def leave_event(storage: Storage, event: Event, requester: UserSnapshot) -> Event:
    """Remove requester from the attendees."""
    attendees = [int(i) for i in event.attendee_ids or ()]
    if requester.id not in attendees:
        raise PermissionDeniedError("You are not attending this event")
    event.attendee_ids = [i for i in attendees if i != requester.id]
    return unwrap(await storage.save(event))
