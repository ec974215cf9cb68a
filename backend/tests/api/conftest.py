"""Shared fixtures for API tests."""
import pytest

from models.user import User
from tests.helpers import UserFactory


@pytest.fixture
async def alice(make_user: UserFactory) -> tuple[User, str]:
    """A PUBLIC FREE user with contact details and a token."""
    return await make_user(
        "alice",
        first_name="Alice",
        email="alice@example.com",
        phone_number="555-0100",
        country="GB",
    )


@pytest.fixture
async def bob(make_user: UserFactory) -> tuple[User, str]:
    """A second user with a token."""
    return await make_user("bob")


@pytest.fixture
async def admin_user(make_user: UserFactory) -> tuple[User, str]:
    """The administrator account the admin key resolves to."""
    return await make_user("cloud", account_type="ADMINISTRATOR")
