"""Helpers shared by test modules."""
from collections.abc import Awaitable, Callable

from models.user import User

ADMIN_KEY = "test-admin-key"

# make_user fixture: await make_user("alice", **fields) -> (User, plaintext token)
UserFactory = Callable[..., Awaitable[tuple[User, str]]]


def auth(token: str) -> dict[str, str]:
    """Bearer authorization header for token."""
    return {"Authorization": f"Bearer {token}"}


def admin() -> dict[str, str]:
    """Header that resolves the request to the admin account."""
    return {"X-Admin-Key": ADMIN_KEY}
