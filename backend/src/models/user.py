"""User model: profile fields, relationship lists and privacy settings."""
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from models.api_token import ApiToken


class User(Base, TimestampMixin):
    """
    User model.

    friend_ids and circle_ids are the ids this user has added. Friendship is
    one-directional; "mutual friends" are users both parties have added.
    field_privacy holds per-field overrides of the default privacy levels.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    account_type: Mapped[str] = mapped_column(String(20), default="FREE", nullable=False)
    visibility: Mapped[str] = mapped_column(String(20), default="PUBLIC", nullable=False)
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    field_privacy: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    friend_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    circle_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)

    api_tokens: Mapped[list["ApiToken"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
