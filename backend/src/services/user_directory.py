"""
User lookups and requester resolution.

The directory is the only place that turns stored User rows into the
UserSnapshot values visibility checks and cache keys are computed from.
"""
import hmac
import logging
from collections.abc import Iterable

from fastapi import Request

from core.config import Settings
from core.visibility import Visibility, parse_visibility
from models.user import User
from schemas.snapshots import AccountType, UserSnapshot
from services import token_service
from services.exceptions import StorageUnavailableError
from services.storage import Storage, unwrap

logger = logging.getLogger(__name__)

ADMIN_KEY_HEADER = "x-admin-key"


def parse_account_type(value: str | None) -> AccountType:
    """Coerce a stored account type, treating unknown values as FREE."""
    try:
        return AccountType((value or "").upper())
    except ValueError:
        return AccountType.FREE


def is_admin(user: User) -> bool:
    """True for administrator accounts."""
    return parse_account_type(user.account_type) is AccountType.ADMINISTRATOR


def friends_of(user: User) -> frozenset[int]:
    """Ids the user has added as friends."""
    return frozenset(int(i) for i in user.friend_ids or ())


def circle_of(user: User) -> frozenset[int]:
    """Ids the user has added to their circle."""
    return frozenset(int(i) for i in user.circle_ids or ())


def to_snapshot(user: User) -> UserSnapshot:
    """Immutable view of the user for visibility checks."""
    return UserSnapshot(
        id=user.id,
        username=user.username,
        account_type=parse_account_type(user.account_type),
        is_admin=is_admin(user),
        visibility=parse_visibility(user.visibility, default=Visibility.PUBLIC),
        friend_ids=friends_of(user),
        circle_ids=circle_of(user),
        field_privacy=dict(user.field_privacy or {}),
    )


def _bearer_token(request: Request) -> str | None:
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


class UserDirectory:
    """Finds users by id, username or request credentials."""

    def __init__(self, storage: Storage, settings: Settings) -> None:
        self._storage = storage
        self._settings = settings

    async def find_by_id(self, user_id: int) -> User | None:
        """User with the given id, or None."""
        return unwrap(await self._storage.load(User, user_id))

    async def find_by_username(self, username: str) -> User | None:
        """User with the given username, or None."""
        return unwrap(await self._storage.load_by(User, User.username == username))

    async def find_many(self, user_ids: Iterable[int]) -> dict[int, User]:
        """Users for the given ids, keyed by id. Unknown ids are absent."""
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        users = unwrap(await self._storage.query(User, [User.id.in_(ids)]))
        return {user.id: user for user in users}

    async def find(self, identifier: str) -> User | None:
        """
        Resolve a path identifier.

        All-digit identifiers are ids; anything else is a username. Usernames
        cannot be all digits, so the two never collide.
        """
        if identifier.isascii() and identifier.isdigit():
            return await self.find_by_id(int(identifier))
        return await self.find_by_username(identifier)

    async def find_user_id(self, username: str) -> int | None:
        """Id for a username; None when unknown or when storage is unavailable."""
        try:
            user = await self.find_by_username(username)
        except StorageUnavailableError:
            return None
        return user.id if user is not None else None

    async def resolve_requester(self, request: Request) -> User | None:
        """
        Authenticate the request.

        A matching X-Admin-Key header resolves to the administrator account;
        otherwise a bearer token resolves to its owner. Anything else is anonymous.
        """
        admin_key = request.headers.get(ADMIN_KEY_HEADER)
        if admin_key and self._settings.admin_key:
            if hmac.compare_digest(admin_key.encode(), self._settings.admin_key.encode()):
                admin = await self.find_by_username(self._settings.admin_username)
                if admin is None:
                    logger.warning(
                        "admin_account_missing",
                        extra={"username": self._settings.admin_username},
                    )
                return admin
            logger.warning("admin_key_rejected")
            return None

        token = _bearer_token(request)
        if token is None:
            return None
        api_token = await token_service.find_token(self._storage, token)
        if api_token is None:
            return None
        return await self.find_by_id(api_token.user_id)
