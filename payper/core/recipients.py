"""Recipient directory: matches a transfer's recipient label to a known user."""
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payper.core.exceptions import PersistenceError
from payper.database.models import Profile

logger = structlog.get_logger(__name__)


class RecipientDirectory:
    """Looks up profiles by email. Unknown labels are external recipients."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def resolve(self, label: str) -> Optional[str]:
        """
        Return the user id registered under ``label``, if any.

        Raises:
            PersistenceError: If the lookup fails
        """
        email = label.strip().lower()
        if not email:
            return None

        stmt = select(Profile.id).where(func.lower(Profile.email) == email)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                recipient_id = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Recipient lookup failed: {e}") from e

        logger.debug("recipient_resolved", known=recipient_id is not None)
        return recipient_id
