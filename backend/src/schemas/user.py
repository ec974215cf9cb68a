"""Pydantic schemas for user endpoints."""
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from core.visibility import DEFAULT_FIELD_PRIVACY, Privacy, Visibility

USERNAME_PATTERN = r"^[a-zA-Z0-9_]{3,32}$"

# Path segments under /users that are routes, not usernames
RESERVED_USERNAMES = frozenset({"current"})


class UserCreate(BaseModel):
    """Schema for registering a new user."""

    username: str = Field(
        ...,
        pattern=USERNAME_PATTERN,
        description="3-32 letters, digits or underscores; must contain a non-digit",
    )
    email: str | None = Field(default=None, max_length=255)
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    bio: str | None = Field(default=None, max_length=2000)
    phone_number: str | None = Field(default=None, max_length=32)
    address: str | None = Field(default=None, max_length=500)
    country: str | None = Field(default=None, min_length=2, max_length=2)
    visibility: Visibility = Visibility.PUBLIC

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        """All-digit usernames would be read as ids in /users/{user} paths."""
        if value.isdigit():
            raise ValueError("username cannot be all digits")
        if value.lower() in RESERVED_USERNAMES:
            raise ValueError(f"username {value!r} is reserved")
        return value


class UserUpdate(BaseModel):
    """Schema for updating profile fields. Omitted fields are left unchanged."""

    email: str | None = Field(default=None, max_length=255)
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    bio: str | None = Field(default=None, max_length=2000)
    phone_number: str | None = Field(default=None, max_length=32)
    address: str | None = Field(default=None, max_length=500)
    country: str | None = Field(default=None, min_length=2, max_length=2)
    visibility: Visibility | None = None


class FieldPrivacyUpdate(BaseModel):
    """Per-field privacy overrides merged into the user's stored map."""

    field_privacy: dict[str, Privacy] = Field(..., min_length=1)

    @field_validator("field_privacy")
    @classmethod
    def validate_fields(cls, value: dict[str, Privacy]) -> dict[str, Privacy]:
        """Only fields that have a default level can be overridden."""
        unknown = sorted(set(value) - set(DEFAULT_FIELD_PRIVACY))
        if unknown:
            raise ValueError(f"unknown privacy fields: {', '.join(unknown)}")
        return value


class FriendAdd(BaseModel):
    """Schema for adding a user to a friend list or circle."""

    friend_id: int = Field(..., gt=0)


class AccountInfo(BaseModel):
    """Account details, each redacted by its own privacy level."""

    type: str | None = None
    last_login: datetime | None = None


class UserResponse(BaseModel):
    """
    A user as seen by the requester.

    Fields the requester may not see are null. field_privacy is only
    included for the user themself and admins.
    """

    id: int
    username: str
    full_name: str | None = None
    bio: str | None = None
    email: str | None = None
    phone_number: str | None = None
    country: str | None = None
    address: str | None = None
    visibility: Visibility
    is_mutual: bool = False
    account: AccountInfo
    friend_ids: list[int] | None = None
    field_privacy: dict[str, str] | None = None
    created_at: datetime | None = None


class UserListResponse(BaseModel):
    """Paginated list of users."""

    items: list[UserResponse]
    total: int
    page: int
    limit: int


class UserCreateResponse(BaseModel):
    """
    Response when registering a user.

    The `token` field is the plaintext API token and is only shown once.
    """

    user: UserResponse
    token: str = Field(
        ...,
        description="The plaintext token. Store this securely - it won't be shown again.",
    )


class TokenCreateResponse(BaseModel):
    """A freshly issued API token for the current user."""

    token: str
    token_prefix: str


class FriendChangeResponse(BaseModel):
    """Result of adding or removing a friend or circle member."""

    user_id: int
    friend_id: int
    ids: list[int]
