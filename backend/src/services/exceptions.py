"""Shared exceptions for service layer operations."""


class UserNotFoundError(Exception):
    """Raised when a user id or username does not resolve to a visible user."""

    def __init__(self, identifier: str | int) -> None:
        self.identifier = identifier
        super().__init__(f"User not found: {identifier}")


class EntityNotFoundError(Exception):
    """Raised when an event or prompt does not exist or is hidden from the requester."""

    def __init__(self, entity_type: str, entity_id: int) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class PermissionDeniedError(Exception):
    """Raised when the requester may not modify the target resource."""

    def __init__(self, message: str = "You do not have permission to modify this resource") -> None:
        super().__init__(message)


class FriendshipError(Exception):
    """
    Raised when a friend or circle change is invalid.

    Covers adding yourself and adding past the account's circle limit.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)


class InvalidUsernameError(Exception):
    """Raised when a username is taken, reserved or would be mistaken for an id."""

    def __init__(self, username: str, reason: str) -> None:
        self.username = username
        super().__init__(f"Invalid username {username!r}: {reason}")


class StorageUnavailableError(Exception):
    """Raised when a storage call failed and the operation cannot continue."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
