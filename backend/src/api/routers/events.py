"""Event endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Query, Response

from api.dependencies import (
    get_current_user,
    get_directory,
    get_page,
    get_requester,
    get_storage,
)
from models.event import Event
from schemas.event import EventCreate, EventListResponse, EventResponse, EventUpdate
from schemas.snapshots import UserSnapshot
from services import event_service
from services.exceptions import EntityNotFoundError, PermissionDeniedError
from services.storage import Page, Storage
from services.user_directory import UserDirectory

router = APIRouter(prefix="/v2/events", tags=["events"])


async def _get_visible(
    event_id: int,
    requester: UserSnapshot | None,
    directory: UserDirectory,
    storage: Storage,
) -> Event:
    try:
        return await event_service.get_visible_event(storage, directory, event_id, requester)
    except EntityNotFoundError:
        raise HTTPException(status_code=404, detail="Event not found")


@router.get("", response_model=EventListResponse, name="events.list")
async def list_events(
    search: str | None = Query(default=None, max_length=100),
    sort: str = Query(default="desc", pattern="^(asc|desc)$"),
    page: Page = Depends(get_page),
    requester: UserSnapshot | None = Depends(get_requester),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> EventListResponse:
    """List events visible to the requester."""
    events, total = await event_service.list_events(
        storage, directory, requester, page, search, sort,
    )
    return EventListResponse(
        items=[EventResponse.model_validate(e) for e in events],
        total=total,
        page=page.page,
        limit=page.limit,
    )


@router.post("", response_model=EventResponse, status_code=201, name="events.create")
async def create_event(
    data: EventCreate,
    requester: UserSnapshot = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> EventResponse:
    """Create an event hosted by the requester."""
    event = await event_service.create_event(storage, requester, data)
    return EventResponse.model_validate(event)


@router.get("/{event_id}", response_model=EventResponse, name="events.id")
async def get_event(
    event_id: int,
    requester: UserSnapshot | None = Depends(get_requester),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> EventResponse:
    """Get an event by id."""
    event = await _get_visible(event_id, requester, directory, storage)
    return EventResponse.model_validate(event)


@router.patch("/{event_id}", response_model=EventResponse, name="events.update")
async def update_event(
    event_id: int,
    data: EventUpdate,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> EventResponse:
    """Update an event. Host or admin only."""
    event = await _get_visible(event_id, requester, directory, storage)
    try:
        event = await event_service.update_event(storage, event, requester, data)
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    return EventResponse.model_validate(event)


@router.delete("/{event_id}", status_code=204, name="events.delete")
async def delete_event(
    event_id: int,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> Response:
    """Delete an event. Host or admin only."""
    event = await _get_visible(event_id, requester, directory, storage)
    try:
        await event_service.delete_event(storage, event, requester)
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    return Response(status_code=204)


@router.put("/{event_id}/attendees", response_model=EventResponse, name="events.attend")
async def attend_event(
    event_id: int,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> EventResponse:
    """Join an event as an attendee."""
    event = await _get_visible(event_id, requester, directory, storage)
    event = await event_service.attend_event(storage, event, requester)
    return EventResponse.model_validate(event)


@router.delete("/{event_id}/attendees", response_model=EventResponse, name="events.leave")
async def leave_event(
    event_id: int,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> EventResponse:
    """Stop attending an event."""
    event = await _get_visible(event_id, requester, directory, storage)
    try:
        event = await event_service.leave_event(storage, event, requester)
    except PermissionDeniedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return EventResponse.model_validate(event)
