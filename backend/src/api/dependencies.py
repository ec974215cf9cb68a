"""FastAPI dependencies for injection."""
from fastapi import Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import get_current_user, get_requester
from core.config import Settings
from db.session import get_async_session
from services.storage import Page, Storage
from services.user_directory import UserDirectory


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was built with."""
    return request.app.state.settings


def get_storage(db: AsyncSession = Depends(get_async_session)) -> Storage:
    """Storage bound to the request's session."""
    return Storage(db)


def get_directory(
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_app_settings),
) -> UserDirectory:
    """User directory bound to the request's session."""
    return UserDirectory(storage, settings)


def get_page(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=100),
) -> Page:
    """Pagination from the page/limit query parameters."""
    return Page(page=page, limit=limit)


__all__ = [
    "get_app_settings",
    "get_async_session",
    "get_current_user",
    "get_directory",
    "get_page",
    "get_requester",
    "get_storage",
]
