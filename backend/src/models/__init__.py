"""SQLAlchemy models."""
from models.api_token import ApiToken
from models.base import Base, TimestampMixin
from models.event import Event
from models.prompt import Prompt
from models.user import User

__all__ = [
    "ApiToken",
    "Base",
    "Event",
    "Prompt",
    "TimestampMixin",
    "User",
]
