from __future__ import annotations

import hashlib
import secrets
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from notifypipe.domain.models import ApiKey


# Readers see their own jobs; admins may also read system-wide metrics.
ROLE_ORDER: dict[str, int] = {
    "reader": 1,
    "admin": 2,
}

API_KEY_PREFIX = "npk_"


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    # Only the digest is stored; the raw key is shown once at creation.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Returns (key_id, raw_key, key_prefix, key_hash); the id is embedded so leaked keys can be traced.
    resolved_id = key_id or uuid4().hex
    raw_key = f"{API_KEY_PREFIX}{resolved_id}_{secrets.token_urlsafe(32)}"
    return resolved_id, raw_key, raw_key[:12], hash_api_key(raw_key)


async def issue_api_key(
    session: AsyncSession,
    *,
    owner_id: str,
    role: str,
    name: str,
) -> tuple[ApiKey, str]:
    # Persist a new key row and hand back the raw key for one-time display.
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    api_key = ApiKey(
        id=key_id,
        owner_id=owner_id,
        role=normalize_role(role),
        key_prefix=key_prefix,
        key_hash=key_hash,
        name=name,
    )
    session.add(api_key)
    await session.commit()
    return api_key, raw_key


async def find_api_key(session: AsyncSession, raw_key: str) -> ApiKey | None:
    return (
        await session.execute(select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw_key)))
    ).scalar_one_or_none()
