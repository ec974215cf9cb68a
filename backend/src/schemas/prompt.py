"""Pydantic schemas for prompt endpoints."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from core.visibility import Visibility


class PromptCreate(BaseModel):
    """Schema for creating a prompt."""

    prompt: str = Field(..., min_length=1, max_length=255)
    visibility: Visibility = Visibility.PUBLIC


class PromptUpdate(BaseModel):
    """Schema for updating a prompt. Omitted fields are left unchanged."""

    prompt: str | None = Field(default=None, min_length=1, max_length=255)
    visibility: Visibility | None = None


class PromptResponse(BaseModel):
    """A prompt visible to the requester."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    prompt: str
    visibility: Visibility
    created_at: datetime | None = None


class PromptListResponse(BaseModel):
    """Paginated list of prompts visible to the requester."""

    items: list[PromptResponse]
    total: int
    page: int
    limit: int
