"""User profile, privacy and relationship endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Query, Response

from api.dependencies import (
    get_current_user,
    get_directory,
    get_page,
    get_requester,
    get_storage,
)
from models.user import User
from schemas.snapshots import UserSnapshot
from schemas.user import (
    FieldPrivacyUpdate,
    FriendAdd,
    FriendChangeResponse,
    TokenCreateResponse,
    UserCreate,
    UserCreateResponse,
    UserListResponse,
    UserResponse,
    UserUpdate,
)
from services import token_service, user_service
from services.exceptions import (
    FriendshipError,
    InvalidUsernameError,
    PermissionDeniedError,
    UserNotFoundError,
)
from services.storage import Page, Storage
from services.user_directory import UserDirectory
from services.user_service import RelationList

router = APIRouter(prefix="/v2/users", tags=["users"])


async def _load_self(directory: UserDirectory, requester: UserSnapshot) -> User:
    user = await directory.find_by_id(requester.id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


async def _load_modifiable(
    directory: UserDirectory,
    identifier: str,
    requester: UserSnapshot,
) -> User:
    try:
        user = await user_service.get_visible_user(directory, identifier, requester)
        user_service.ensure_can_modify(user, requester)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    return user


@router.get("", response_model=UserListResponse, name="users.list")
async def list_users(
    search: str | None = Query(default=None, max_length=100),
    sort: str = Query(default="desc", pattern="^(asc|desc)$"),
    page: Page = Depends(get_page),
    requester: UserSnapshot | None = Depends(get_requester),
    storage: Storage = Depends(get_storage),
) -> UserListResponse:
    """List users visible to the requester."""
    users, total = await user_service.list_users(storage, requester, page, search, sort)
    return UserListResponse(
        items=[user_service.serialize_user(u, requester) for u in users],
        total=total,
        page=page.page,
        limit=page.limit,
    )


@router.post("", response_model=UserCreateResponse, status_code=201, name="users.create")
async def create_user(
    data: UserCreate,
    storage: Storage = Depends(get_storage),
) -> UserCreateResponse:
    """
    Register a user.

    IMPORTANT: The plaintext token is only returned once. Store it securely.
    """
    try:
        user, token = await user_service.create_user(storage, data)
    except InvalidUsernameError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return UserCreateResponse(user=user_service.serialize_user(user, None), token=token)


@router.get("/current", response_model=UserResponse, name="users.current")
async def get_current(
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
) -> UserResponse:
    """Get the authenticated user's own profile."""
    user = await _load_self(directory, requester)
    return user_service.serialize_user(user, requester)


@router.patch("/current", response_model=UserResponse, name="users.current.patch")
async def update_current(
    data: UserUpdate,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> UserResponse:
    """Update the authenticated user's profile."""
    user = await _load_self(directory, requester)
    user = await user_service.update_user(storage, user, data)
    return user_service.serialize_user(user, requester)


@router.patch(
    "/current/field_privacy",
    response_model=UserResponse,
    name="users.current.patch_field_privacy",
)
async def update_current_field_privacy(
    data: FieldPrivacyUpdate,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> UserResponse:
    """Change privacy levels of the authenticated user's fields."""
    user = await _load_self(directory, requester)
    user = await user_service.update_field_privacy(storage, user, data)
    return user_service.serialize_user(user, requester)


@router.post(
    "/current/token",
    response_model=TokenCreateResponse,
    status_code=201,
    name="users.current.token",
)
async def create_token(
    requester: UserSnapshot = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> TokenCreateResponse:
    """
    Issue an additional API token for the authenticated user.

    IMPORTANT: The plaintext token is only returned once. Store it securely.
    """
    api_token, plaintext = await token_service.issue_token(storage, requester.id)
    return TokenCreateResponse(token=plaintext, token_prefix=api_token.token_prefix)


@router.get("/{user}", response_model=UserResponse, name="users.id")
async def get_user(
    user: str,
    requester: UserSnapshot | None = Depends(get_requester),
    directory: UserDirectory = Depends(get_directory),
) -> UserResponse:
    """Get a user by id or username."""
    try:
        found = await user_service.get_visible_user(directory, user, requester)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    return user_service.serialize_user(found, requester)


@router.patch("/{user}", response_model=UserResponse, name="users.id.patch")
async def update_user(
    user: str,
    data: UserUpdate,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> UserResponse:
    """Update a user's profile. The user themself or an admin only."""
    target = await _load_modifiable(directory, user, requester)
    target = await user_service.update_user(storage, target, data)
    return user_service.serialize_user(target, requester)


@router.delete("/{user}", status_code=204, name="users.id.delete")
async def delete_user(
    user: str,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> Response:
    """Delete a user. The user themself or an admin only."""
    target = await _load_modifiable(directory, user, requester)
    await user_service.delete_user(storage, target)
    return Response(status_code=204)


@router.patch(
    "/{user}/field_privacy",
    response_model=UserResponse,
    name="users.id.patch_field_privacy",
)
async def update_field_privacy(
    user: str,
    data: FieldPrivacyUpdate,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> UserResponse:
    """Change privacy levels of a user's fields. The user themself or an admin only."""
    target = await _load_modifiable(directory, user, requester)
    target = await user_service.update_field_privacy(storage, target, data)
    return user_service.serialize_user(target, requester)


async def _list_relations(
    user: str,
    relation: RelationList,
    page: Page,
    requester: UserSnapshot | None,
    directory: UserDirectory,
    storage: Storage,
) -> UserListResponse:
    try:
        target = await user_service.get_visible_user(directory, user, requester)
        members, total = await user_service.list_relations(
            storage, directory, target, requester, relation, page,
        )
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    return UserListResponse(
        items=[user_service.serialize_user(m, requester) for m in members],
        total=total,
        page=page.page,
        limit=page.limit,
    )


async def _add_relation(
    user: str,
    relation: RelationList,
    data: FriendAdd,
    requester: UserSnapshot,
    directory: UserDirectory,
    storage: Storage,
) -> FriendChangeResponse:
    target = await _load_modifiable(directory, user, requester)
    try:
        ids = await user_service.add_to_list(storage, directory, target, data.friend_id, relation)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="Friend not found")
    except FriendshipError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return FriendChangeResponse(user_id=target.id, friend_id=data.friend_id, ids=ids)


async def _remove_relation(
    user: str,
    friend: str,
    relation: RelationList,
    requester: UserSnapshot,
    directory: UserDirectory,
    storage: Storage,
) -> FriendChangeResponse:
    target = await _load_modifiable(directory, user, requester)
    member = await directory.find(friend)
    if member is None:
        raise HTTPException(status_code=404, detail="Friend not found")
    try:
        ids = await user_service.remove_from_list(storage, target, member.id, relation)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail=f"User is not in the {relation}")
    return FriendChangeResponse(user_id=target.id, friend_id=member.id, ids=ids)


@router.get("/{user}/friends", response_model=UserListResponse, name="users.id.friends")
async def list_friends(
    user: str,
    page: Page = Depends(get_page),
    requester: UserSnapshot | None = Depends(get_requester),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> UserListResponse:
    """List a user's friends, subject to their "friends" privacy level."""
    return await _list_relations(
        user, RelationList.FRIENDS, page, requester, directory, storage,
    )


@router.put(
    "/{user}/friends",
    response_model=FriendChangeResponse,
    name="users.id.friends.add",
)
async def add_friend(
    user: str,
    data: FriendAdd,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> FriendChangeResponse:
    """Add a user to the friend list."""
    return await _add_relation(user, RelationList.FRIENDS, data, requester, directory, storage)


@router.delete(
    "/{user}/friends/{friend}",
    response_model=FriendChangeResponse,
    name="users.id.friends.remove",
)
async def remove_friend(
    user: str,
    friend: str,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> FriendChangeResponse:
    """Remove a user from the friend list."""
    return await _remove_relation(
        user, friend, RelationList.FRIENDS, requester, directory, storage,
    )


@router.get("/{user}/circle", response_model=UserListResponse, name="users.id.circle")
async def list_circle(
    user: str,
    page: Page = Depends(get_page),
    requester: UserSnapshot | None = Depends(get_requester),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> UserListResponse:
    """List a user's circle. The user themself or an admin only."""
    return await _list_relations(
        user, RelationList.CIRCLE, page, requester, directory, storage,
    )


@router.put(
    "/{user}/circle",
    response_model=FriendChangeResponse,
    name="users.id.circle.add",
)
async def add_to_circle(
    user: str,
    data: FriendAdd,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> FriendChangeResponse:
    """Add a user to the circle, up to the account type's circle limit."""
    return await _add_relation(user, RelationList.CIRCLE, data, requester, directory, storage)


@router.delete(
    "/{user}/circle/{friend}",
    response_model=FriendChangeResponse,
    name="users.id.circle.remove",
)
async def remove_from_circle(
    user: str,
    friend: str,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> FriendChangeResponse:
    """Remove a user from the circle."""
    return await _remove_relation(
        user, friend, RelationList.CIRCLE, requester, directory, storage,
    )
