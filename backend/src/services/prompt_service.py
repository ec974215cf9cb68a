"""Service layer for prompts."""
import logging
import random

from core.visibility import Visibility, is_prompt_visible, parse_visibility
from models.prompt import Prompt
from schemas.prompt import PromptCreate, PromptUpdate
from schemas.snapshots import PromptSnapshot, UserSnapshot
from services.exceptions import EntityNotFoundError, PermissionDeniedError
from services.storage import SCAN_WINDOW, Page, Storage, unwrap
from services.user_directory import UserDirectory, to_snapshot

logger = logging.getLogger(__name__)


def to_prompt_snapshot(prompt: Prompt) -> PromptSnapshot:
    """Immutable view of the prompt for visibility checks."""
    return PromptSnapshot(
        id=prompt.id,
        owner_id=prompt.owner_id,
        visibility=parse_visibility(prompt.visibility, default=Visibility.PUBLIC),
    )


async def _visible(
    directory: UserDirectory,
    prompts: list[Prompt],
    requester: UserSnapshot | None,
) -> list[Prompt]:
    owners = await directory.find_many(p.owner_id for p in prompts)
    visible = []
    for prompt in prompts:
        owner = owners.get(prompt.owner_id)
        owner_snapshot = to_snapshot(owner) if owner is not None else None
        if is_prompt_visible(to_prompt_snapshot(prompt), requester, owner_snapshot):
            visible.append(prompt)
    return visible


async def get_visible_prompt(
    storage: Storage,
    directory: UserDirectory,
    prompt_id: int,
    requester: UserSnapshot | None,
) -> Prompt:
    """Prompt by id; hidden prompts raise EntityNotFoundError, same as missing ones."""
    prompt = unwrap(await storage.load(Prompt, prompt_id))
    if prompt is None or not await _visible(directory, [prompt], requester):
        raise EntityNotFoundError("Prompt", prompt_id)
    return prompt


async def list_prompts(
    storage: Storage,
    directory: UserDirectory,
    requester: UserSnapshot | None,
    page: Page,
    search: str | None = None,
    sort: str = "desc",
) -> tuple[list[Prompt], int]:
    """Prompts visible to requester, optionally filtered by text substring."""
    filters = [Prompt.prompt.ilike(f"%{search}%")] if search else []
    prompts = unwrap(
        await storage.query(
            Prompt, filters, page=SCAN_WINDOW, order_by=Prompt.id, descending=sort != "asc",
        ),
    )
    visible = await _visible(directory, prompts, requester)
    return page.slice(visible), len(visible)


async def random_prompt(
    storage: Storage,
    directory: UserDirectory,
    requester: UserSnapshot | None,
) -> Prompt:
    """A random prompt visible to requester, drawn from the newest SCAN_WINDOW prompts."""
    prompts = unwrap(await storage.query(Prompt, page=SCAN_WINDOW, order_by=Prompt.id))
    visible = await _visible(directory, prompts, requester)
    if not visible:
        raise EntityNotFoundError("Prompt", 0)
    return random.choice(visible)


def _ensure_owner(prompt: Prompt, requester: UserSnapshot) -> None:
    if requester.id != prompt.owner_id and not requester.is_admin:
        raise PermissionDeniedError("Only the owner can change this prompt")


async def create_prompt(storage: Storage, owner: UserSnapshot, data: PromptCreate) -> Prompt:
    """Create a prompt owned by owner."""
    prompt = unwrap(await storage.save(Prompt(owner_id=owner.id, **data.model_dump())))
    logger.info("prompt_created", extra={"prompt_id": prompt.id, "owner_id": owner.id})
    return prompt


async def update_prompt(
    storage: Storage,
    prompt: Prompt,
    requester: UserSnapshot,
    data: PromptUpdate,
) -> Prompt:
    """Apply the fields that were set on data. Owner or admin only."""
    _ensure_owner(prompt, requester)
    for name, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(prompt, name, value)
    return unwrap(await storage.save(prompt))


async def delete_prompt(storage: Storage, prompt: Prompt, requester: UserSnapshot) -> None:
    """Delete a prompt. Owner or admin only."""
    _ensure_owner(prompt, requester)
    unwrap(await storage.delete(prompt))
