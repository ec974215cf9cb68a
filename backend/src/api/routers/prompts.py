"""Prompt endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Query, Response

from api.dependencies import (
    get_current_user,
    get_directory,
    get_page,
    get_requester,
    get_storage,
)
from models.prompt import Prompt
from schemas.prompt import PromptCreate, PromptListResponse, PromptResponse, PromptUpdate
from schemas.snapshots import UserSnapshot
from services import prompt_service
from services.exceptions import EntityNotFoundError, PermissionDeniedError
from services.storage import Page, Storage
from services.user_directory import UserDirectory

router = APIRouter(prefix="/v2/prompts", tags=["prompts"])


async def _get_visible(
    prompt_id: int,
    requester: UserSnapshot | None,
    directory: UserDirectory,
    storage: Storage,
) -> Prompt:
    try:
        return await prompt_service.get_visible_prompt(storage, directory, prompt_id, requester)
    except EntityNotFoundError:
        raise HTTPException(status_code=404, detail="Prompt not found")


@router.get("", response_model=PromptListResponse, name="prompts.list")
async def list_prompts(
    search: str | None = Query(default=None, max_length=100),
    sort: str = Query(default="desc", pattern="^(asc|desc)$"),
    page: Page = Depends(get_page),
    requester: UserSnapshot | None = Depends(get_requester),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> PromptListResponse:
    """List prompts visible to the requester."""
    prompts, total = await prompt_service.list_prompts(
        storage, directory, requester, page, search, sort,
    )
    return PromptListResponse(
        items=[PromptResponse.model_validate(p) for p in prompts],
        total=total,
        page=page.page,
        limit=page.limit,
    )


@router.post("", response_model=PromptResponse, status_code=201, name="prompts.create")
async def create_prompt(
    data: PromptCreate,
    requester: UserSnapshot = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
) -> PromptResponse:
    """Create a prompt owned by the requester."""
    prompt = await prompt_service.create_prompt(storage, requester, data)
    return PromptResponse.model_validate(prompt)


@router.get("/random", response_model=PromptResponse, name="prompts.random")
async def get_random_prompt(
    requester: UserSnapshot | None = Depends(get_requester),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> PromptResponse:
    """Get a random prompt visible to the requester. Never cached."""
    try:
        prompt = await prompt_service.random_prompt(storage, directory, requester)
    except EntityNotFoundError:
        raise HTTPException(status_code=404, detail="No prompts available")
    return PromptResponse.model_validate(prompt)


@router.get("/{prompt_id}", response_model=PromptResponse, name="prompts.id")
async def get_prompt(
    prompt_id: int,
    requester: UserSnapshot | None = Depends(get_requester),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> PromptResponse:
    """Get a prompt by id."""
    prompt = await _get_visible(prompt_id, requester, directory, storage)
    return PromptResponse.model_validate(prompt)


@router.patch("/{prompt_id}", response_model=PromptResponse, name="prompts.update")
async def update_prompt(
    prompt_id: int,
    data: PromptUpdate,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> PromptResponse:
    """Update a prompt. Owner or admin only."""
    prompt = await _get_visible(prompt_id, requester, directory, storage)
    try:
        prompt = await prompt_service.update_prompt(storage, prompt, requester, data)
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    return PromptResponse.model_validate(prompt)


@router.delete("/{prompt_id}", status_code=204, name="prompts.delete")
async def delete_prompt(
    prompt_id: int,
    requester: UserSnapshot = Depends(get_current_user),
    directory: UserDirectory = Depends(get_directory),
    storage: Storage = Depends(get_storage),
) -> Response:
    """Delete a prompt. Owner or admin only."""
    prompt = await _get_visible(prompt_id, requester, directory, storage)
    try:
        await prompt_service.delete_prompt(storage, prompt, requester)
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    return Response(status_code=204)
