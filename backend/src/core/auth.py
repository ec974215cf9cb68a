"""
Requester resolution for bearer tokens and the admin key.

The request lifecycle resolves the requester once, before rate limiting, and
keeps it on request.state. Route dependencies reuse that result instead of
authenticating again.
"""
import logging

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings
from schemas.snapshots import UserSnapshot
from services.exceptions import StorageUnavailableError
from services.storage import Storage
from services.user_directory import UserDirectory, to_snapshot

logger = logging.getLogger(__name__)

_UNRESOLVED = object()


async def resolve_requester(request: Request) -> UserSnapshot | None:
    """
    Authenticate the request, once.

    Falls back to anonymous when the user store is unavailable so the
    request can still be served from public data.
    """
    cached = getattr(request.state, "requester", _UNRESOLVED)
    if cached is not _UNRESOLVED:
        return cached

    settings: Settings = request.app.state.settings
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    requester: UserSnapshot | None = None
    try:
        async with session_factory() as session:
            user = await UserDirectory(Storage(session), settings).resolve_requester(request)
            if user is not None:
                requester = to_snapshot(user)
    except StorageUnavailableError as e:
        logger.warning("requester_resolution_failed", extra={"error": str(e)})

    request.state.requester = requester
    return requester


async def get_requester(request: Request) -> UserSnapshot | None:
    """Dependency: the authenticated requester, or None for anonymous requests."""
    return await resolve_requester(request)


async def get_current_user(request: Request) -> UserSnapshot:
    """Dependency: the authenticated requester; 401 when anonymous."""
    requester = await resolve_requester(request)
    if requester is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return requester
