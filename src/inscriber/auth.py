"""
API key authentication for the operator API.
"""

import hashlib
import secrets
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.db.models import ensure_utc, utcnow
from inscriber.models import ApiKey


class UserRole(str, Enum):
    """User roles for access control."""

    ADMIN = "admin"
    VIEWER = "viewer"


def generate_api_key() -> str:
    """Generate a secure random API key."""
    return secrets.token_urlsafe(32)


def hash_api_key(api_key: str) -> str:
    """Hash an API key for secure storage."""
    return hashlib.sha256(api_key.encode()).hexdigest()


async def get_api_key_from_db(
    api_key: str,
    session_factory: Optional[async_sessionmaker[AsyncSession]],
) -> Optional[ApiKey]:
    """
    Look up an active, unexpired API key and stamp its last use.
    """
    if not session_factory:
        return None

    key_hash = hash_api_key(api_key)

    async with session_factory() as session:
        result = await session.execute(
            select(ApiKey).where(ApiKey.key_hash == key_hash, ApiKey.is_active)
        )
        api_key_obj = result.scalar_one_or_none()

        if api_key_obj:
            if api_key_obj.expires_at and ensure_utc(api_key_obj.expires_at) < utcnow():
                return None

            api_key_obj.last_used_at = utcnow()
            await session.commit()

        return api_key_obj
