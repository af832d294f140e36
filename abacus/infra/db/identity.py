"""Identity mappings -- provider identity (key name, VCS user id) to email."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .dialect import insert_for
from .models import CommitRow, IdentityMappingRow, RepositoryRow

logger = logging.getLogger(__name__)


class IdentityResolver(Protocol):
    """Resolve a provider identity to an email, or None when unknown."""

    async def resolve(self, source: str, external_id: str) -> Optional[str]:
        ...


class IdentityMappingRepository:

    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def resolve(self, source: str, external_id: str) -> Optional[str]:
        stmt = select(IdentityMappingRow.email).where(
            IdentityMappingRow.source == source,
            IdentityMappingRow.external_id == external_id,
        )
        return (await self._s.execute(stmt)).scalar_one_or_none()

    async def all_for_source(self, source: str) -> dict[str, str]:
        stmt = select(IdentityMappingRow.external_id, IdentityMappingRow.email).where(
            IdentityMappingRow.source == source,
        )
        return {ext: email for ext, email in (await self._s.execute(stmt)).all()}

    async def remember(self, source: str, external_id: str, email: str) -> None:
        """Insert a mapping unless one exists; an existing mapping wins."""
        stmt = (
            insert_for(self._s, IdentityMappingRow)
            .values(source=source, external_id=external_id, email=email)
            .on_conflict_do_nothing(index_elements=["source", "external_id"])
        )
        await self._s.execute(stmt)

    async def set_mapping(self, source: str, external_id: str, email: str) -> int:
        """Upsert a mapping and re-attribute that author's stored commits.

        Returns the number of commit rows updated.
        """
        stmt = insert_for(self._s, IdentityMappingRow).values(
            source=source, external_id=external_id, email=email,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["source", "external_id"],
            set_={"email": stmt.excluded.email},
        )
        await self._s.execute(stmt)

        repo_ids = select(RepositoryRow.id).where(RepositoryRow.source == source)
        result = await self._s.execute(
            update(CommitRow)
            .where(CommitRow.author_id == external_id, CommitRow.repo_id.in_(repo_ids))
            .values(author_email=email)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
