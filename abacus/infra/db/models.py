"""SQLAlchemy 2.x async ORM models."""

from __future__ import annotations

import datetime as dt
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from abacus.core.domain.schemas import ATTRIBUTION_CONFIDENCE_DETECTED


def _utcnow() -> datetime:
    """Naive UTC timestamp compatible with TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


# --- usage ---

class UsageRecordRow(Base):
    """One usage row.

    The dedup columns (raw_model, provider_record_id, event_key) are stored
    as '' instead of NULL so the unique constraint treats "absent" as a value.
    ``event_key`` is the event timestamp in ms as text, '' for aggregated rows.
    """

    __tablename__ = "usage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    tool: Mapped[str] = mapped_column(String(32), nullable=False)
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    raw_model: Mapped[str] = mapped_column(String(128), nullable=False, default="", server_default="")
    input_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cache_write_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cache_read_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    provider_record_id: Mapped[str] = mapped_column(String(128), nullable=False, default="", server_default="")
    event_key: Mapped[str] = mapped_column(String(32), nullable=False, default="", server_default="")
    event_timestamp_ms: Mapped[Optional[int]] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "date", "email", "tool", "raw_model", "provider_record_id", "event_key",
            name="uq_usage_records_dedup",
        ),
        Index("ix_usage_records_tool_date", "tool", "date"),
        Index("ix_usage_records_email", "email"),
    )


# --- sync bookkeeping ---

class SyncStateRow(Base):
    __tablename__ = "sync_state"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_sync_cursor: Mapped[Optional[datetime]] = mapped_column(
        DateTime, comment="Exclusive upper bound of the last fully synced forward window (UTC)",
    )
    backfill_complete: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false",
    )


# --- commits ---

class RepositoryRow(Base):
    __tablename__ = "repositories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    full_name: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("source", "full_name", name="uq_repositories_source_full_name"),
    )


class CommitRow(Base):
    __tablename__ = "commits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(Integer, ForeignKey("repositories.id"), nullable=False)
    commit_id: Mapped[str] = mapped_column(String(64), nullable=False)
    author_email: Mapped[Optional[str]] = mapped_column(String(320))
    author_id: Mapped[Optional[str]] = mapped_column(String(64))
    committed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text)
    ai_tool: Mapped[Optional[str]] = mapped_column(String(32))
    ai_model: Mapped[Optional[str]] = mapped_column(String(64))
    # NULL until a detail fetch fills them in
    additions: Mapped[Optional[int]] = mapped_column(Integer)
    deletions: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    attributions: Mapped[list["CommitAttributionRow"]] = relationship(
        back_populates="commit", cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("repo_id", "commit_id", name="uq_commits_repo_commit"),
        Index("ix_commits_committed_at", "committed_at"),
        Index("ix_commits_author_email", "author_email"),
    )


class CommitAttributionRow(Base):
    __tablename__ = "commit_attributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    commit_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("commits.id", ondelete="CASCADE"), nullable=False,
    )
    ai_tool: Mapped[str] = mapped_column(String(32), nullable=False)
    ai_model: Mapped[Optional[str]] = mapped_column(String(64))
    confidence: Mapped[str] = mapped_column(
        String(16), nullable=False,
        default=ATTRIBUTION_CONFIDENCE_DETECTED, server_default=ATTRIBUTION_CONFIDENCE_DETECTED,
    )
    source: Mapped[Optional[str]] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    commit: Mapped["CommitRow"] = relationship(back_populates="attributions")

    __table_args__ = (
        UniqueConstraint("commit_id", "ai_tool", name="uq_commit_attributions_commit_tool"),
    )


# --- identities ---

class IdentityMappingRow(Base):
    __tablename__ = "identity_mappings"

    source: Mapped[str] = mapped_column(String(32), primary_key=True)
    external_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
