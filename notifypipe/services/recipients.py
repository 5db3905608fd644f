from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifypipe.domain.models import Recipient


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecipientContact:
    # Delivery-relevant projection of a recipient row.
    id: str
    owner_id: str
    email: str | None
    phone: str | None
    preferred_channels: tuple[str, ...]
    is_active: bool


class RecipientDirectory(Protocol):
    async def get_contact(self, recipient_id: str) -> RecipientContact | None: ...

    async def disable_email_channel(self, email: str, *, reason: str) -> bool: ...


def _contact_from_row(row: Recipient) -> RecipientContact:
    channels = row.preferred_channels if isinstance(row.preferred_channels, list) else []
    return RecipientContact(
        id=row.id,
        owner_id=row.owner_id,
        email=row.email,
        phone=row.phone,
        preferred_channels=tuple(str(channel) for channel in channels),
        is_active=bool(row.is_active),
    )


class SqlRecipientDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_contact(self, recipient_id: str) -> RecipientContact | None:
        async with self._session_factory() as session:
            row = await session.get(Recipient, recipient_id)
        if row is None:
            return None
        return _contact_from_row(row)

    async def disable_email_channel(self, email: str, *, reason: str) -> bool:
        # Stop future email to addresses the provider reports as bouncing, blocked or complaining.
        async with self._session_factory() as session:
            row = (
                await session.execute(select(Recipient).where(Recipient.email == email).limit(1))
            ).scalar_one_or_none()
            if row is None:
                logger.warning("recipient not found for email channel disable reason=%s", reason)
                return False
            channels = row.preferred_channels if isinstance(row.preferred_channels, list) else []
            await session.execute(
                update(Recipient)
                .where(Recipient.id == row.id)
                .values(
                    preferred_channels=[channel for channel in channels if channel != "email"],
                    is_active=False,
                )
            )
            await session.commit()
        logger.info("recipient email channel disabled recipient_id=%s reason=%s", row.id, reason)
        return True
