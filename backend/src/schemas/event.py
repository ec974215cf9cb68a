"""Pydantic schemas for event endpoints."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from core.visibility import Visibility


class EventCreate(BaseModel):
    """Schema for creating an event."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    date: datetime | None = None
    visibility: Visibility = Visibility.UNLISTED


class EventUpdate(BaseModel):
    """Schema for updating an event. Omitted fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    date: datetime | None = None
    visibility: Visibility | None = None


class EventResponse(BaseModel):
    """An event visible to the requester."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    host_id: int
    name: str
    description: str | None
    date: datetime | None
    visibility: Visibility
    attendee_ids: list[int]
    created_at: datetime | None = None


class EventListResponse(BaseModel):
    """Paginated list of events visible to the requester."""

    items: list[EventResponse]
    total: int
    page: int
    limit: int
