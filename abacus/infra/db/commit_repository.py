"""Commit persistence -- repositories, commits and their AI attributions."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from abacus.core.domain.exceptions import InsertError
from abacus.core.domain.schemas import (
    ATTRIBUTION_CONFIDENCE_DETECTED,
    AiAttribution,
    CommitRecord,
)

from .dialect import insert_for
from .models import CommitAttributionRow, CommitRow, RepositoryRow

logger = logging.getLogger(__name__)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CommitRepository:

    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def get_or_create_repository(self, source: str, full_name: str) -> int:
        lookup = select(RepositoryRow.id).where(
            RepositoryRow.source == source, RepositoryRow.full_name == full_name,
        )
        repo_id = (await self._s.execute(lookup)).scalar_one_or_none()
        if repo_id is None:
            await self._s.execute(
                insert_for(self._s, RepositoryRow)
                .values(source=source, full_name=full_name)
                .on_conflict_do_nothing(index_elements=["source", "full_name"])
            )
            repo_id = (await self._s.execute(lookup)).scalar_one()
        return repo_id

    async def has_line_stats(self, source: str, full_name: str, commit_id: str) -> bool:
        """True when the commit is stored and a detail pass already filled its stats."""
        stmt = (
            select(CommitRow.id)
            .join(RepositoryRow, CommitRow.repo_id == RepositoryRow.id)
            .where(
                RepositoryRow.source == source,
                RepositoryRow.full_name == full_name,
                CommitRow.commit_id == commit_id,
                CommitRow.additions.is_not(None),
            )
        )
        return (await self._s.execute(stmt)).scalar_one_or_none() is not None

    async def upsert_commit(
        self,
        repo_id: int,
        commit: CommitRecord,
        *,
        author_email: Optional[str],
        attributions: Sequence[AiAttribution],
    ) -> int:
        """Upsert the commit and its attributions in one savepoint; returns the row id."""
        primary = attributions[0] if attributions else None
        stmt = insert_for(self._s, CommitRow).values(
            repo_id=repo_id,
            commit_id=commit.commit_id,
            author_email=author_email,
            author_id=commit.author_id,
            committed_at=_naive_utc(commit.committed_at),
            message=commit.message,
            ai_tool=primary.tool if primary else None,
            ai_model=primary.model if primary else None,
            additions=commit.additions,
            deletions=commit.deletions,
        )
        ex = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=["repo_id", "commit_id"],
            set_={
                "author_email": ex.author_email,
                "author_id": func.coalesce(ex.author_id, CommitRow.author_id),
                "message": func.coalesce(ex.message, CommitRow.message),
                "ai_tool": ex.ai_tool,
                "ai_model": ex.ai_model,
                "additions": func.coalesce(ex.additions, CommitRow.additions),
                "deletions": func.coalesce(ex.deletions, CommitRow.deletions),
            },
        )

        try:
            async with self._s.begin_nested():
                await self._s.execute(stmt)
                row_id = (await self._s.execute(
                    select(CommitRow.id).where(
                        CommitRow.repo_id == repo_id, CommitRow.commit_id == commit.commit_id,
                    )
                )).scalar_one()
                for attr in attributions:
                    await self._upsert_attribution(row_id, attr)
        except SQLAlchemyError as exc:
            raise InsertError(CommitRow.__tablename__, str(getattr(exc, "orig", None) or exc)) from exc
        return row_id

    async def _upsert_attribution(self, commit_row_id: int, attr: AiAttribution) -> None:
        stmt = insert_for(self._s, CommitAttributionRow).values(
            commit_id=commit_row_id,
            ai_tool=attr.tool,
            ai_model=attr.model,
            confidence=ATTRIBUTION_CONFIDENCE_DETECTED,
            source=attr.source.value,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["commit_id", "ai_tool"],
            set_={
                "ai_model": func.coalesce(stmt.excluded.ai_model, CommitAttributionRow.ai_model),
                "source": func.coalesce(stmt.excluded.source, CommitAttributionRow.source),
            },
        )
        await self._s.execute(stmt)

    async def oldest_commit_at(self, source: str) -> Optional[datetime]:
        stmt = (
            select(func.min(CommitRow.committed_at))
            .join(RepositoryRow, CommitRow.repo_id == RepositoryRow.id)
            .where(RepositoryRow.source == source)
        )
        oldest = (await self._s.execute(stmt)).scalar_one_or_none()
        if oldest is None:
            return None
        return oldest.replace(tzinfo=timezone.utc)

    async def attributions_for(self, repo_full_name: str, commit_id: str, source: str) -> list[CommitAttributionRow]:
        stmt = (
            select(CommitAttributionRow)
            .join(CommitRow, CommitAttributionRow.commit_id == CommitRow.id)
            .join(RepositoryRow, CommitRow.repo_id == RepositoryRow.id)
            .where(
                RepositoryRow.source == source,
                RepositoryRow.full_name == repo_full_name,
                CommitRow.commit_id == commit_id,
            )
            .order_by(CommitAttributionRow.id)
        )
        return list((await self._s.execute(stmt)).scalars().all())
