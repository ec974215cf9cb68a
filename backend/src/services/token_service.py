"""Service layer for API token operations."""
import hashlib
import secrets

from models.api_token import ApiToken
from services.storage import Storage, unwrap

TOKEN_PREFIX = "mt_"


def generate_token() -> tuple[str, str, str]:
    """
    Generate a secure API token.

    Returns:
        Tuple of (plaintext_token, token_hash, token_prefix).
        The plaintext should only be shown once at creation.
    """
    raw = secrets.token_urlsafe(32)
    plaintext = f"{TOKEN_PREFIX}{raw}"
    token_hash = hash_token(plaintext)
    token_prefix = plaintext[:12]  # "mt_" + first 9 chars of raw
    return plaintext, token_hash, token_prefix


def hash_token(token: str) -> str:
    """Hash a token for comparison against stored hashes."""
    return hashlib.sha256(token.encode()).hexdigest()


async def issue_token(storage: Storage, user_id: int) -> tuple[ApiToken, str]:
    """
    Create a new API token for a user.

    Returns (ApiToken, plaintext_token); the plaintext is only available here.
    """
    plaintext, token_hash, token_prefix = generate_token()
    api_token = unwrap(
        await storage.save(
            ApiToken(user_id=user_id, token_hash=token_hash, token_prefix=token_prefix),
        ),
    )
    return api_token, plaintext


async def find_token(storage: Storage, plaintext_token: str) -> ApiToken | None:
    """
    Look up the stored token for a plaintext bearer token.

    Hashes the input before lookup so the query compares fixed-length hashes,
    never the plaintext.
    """
    if not plaintext_token.startswith(TOKEN_PREFIX):
        return None
    return unwrap(
        await storage.load_by(ApiToken, ApiToken.token_hash == hash_token(plaintext_token)),
    )
