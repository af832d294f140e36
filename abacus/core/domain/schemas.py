"""Domain models -- no IO deps."""

from __future__ import annotations

from dataclasses import dataclass, field
import datetime as dt
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- enums ---

class ProviderId(str, Enum):
    ANTHROPIC = "anthropic"
    CURSOR = "cursor"
    GITHUB = "github"


class Tool(str, Enum):
    CLAUDE_CODE = "claude_code"
    CURSOR = "cursor"
    CODEX = "codex"
    GITHUB_COPILOT = "github_copilot"
    WINDSURF = "windsurf"


class DedupRegime(str, Enum):
    """How a conflicting usage write behaves."""

    AGGREGATED = "aggregated"  # last write wins
    PER_EVENT = "per_event"    # duplicate is a no-op


class AttributionSource(str, Enum):
    CO_AUTHOR = "co_author"
    MESSAGE_PATTERN = "message_pattern"
    AUTHOR_FIELD = "author_field"


class BackfillState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"


COMMIT_SOURCE_GITHUB = "github"
ATTRIBUTION_CONFIDENCE_DETECTED = "detected"


# --- usage ---

@dataclass
class UsageRecord:
    """One normalized usage row, ready for upsert.

    ``provider_record_id`` and ``event_timestamp_ms`` stay None for
    aggregated providers; per-event providers always set the timestamp.
    """

    date: date
    email: str
    tool: str
    model: str
    raw_model: Optional[str] = None
    input_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    provider_record_id: Optional[str] = None
    event_timestamp_ms: Optional[int] = None


# --- commits ---

@dataclass(frozen=True)
class AiAttribution:
    tool: str
    model: Optional[str]
    source: AttributionSource


@dataclass
class CommitRecord:
    repo_full_name: str
    commit_id: str
    committed_at: datetime
    message: Optional[str] = None
    author_email: Optional[str] = None
    author_name: Optional[str] = None
    author_id: Optional[str] = None
    additions: Optional[int] = None
    deletions: Optional[int] = None
    source: str = COMMIT_SOURCE_GITHUB


# --- sync plumbing ---

@dataclass
class Page:
    """One upstream page.

    ``raw_count`` counts records as the upstream returned them, before any
    filtering, and drives the empty-chunk counter during backfill.
    ``skipped`` counts upstream records dropped because they could not be read.
    """

    items: list[Any]
    next_token: Any = None
    raw_count: Optional[int] = None
    errors: list[str] = field(default_factory=list)
    skipped: int = 0

    @property
    def upstream_count(self) -> int:
        return len(self.items) if self.raw_count is None else self.raw_count


@dataclass
class StoreOutcome:
    imported: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    # commits only: rows with at least one AI attribution
    attributed: int = 0


class SyncResult(BaseModel):
    provider: str
    imported: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    attributed: int = 0
    rate_limited: bool = False
    deadline_exceeded: bool = False
    skipped_run: bool = Field(
        default=False,
        description="Another run for the same provider was in flight; nothing was done",
    )
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    cursor_advanced: bool = False
    finished_at: datetime = Field(default_factory=_utcnow)

    @property
    def success(self) -> bool:
        return not self.errors and not self.rate_limited and not self.deadline_exceeded


class BackfillResult(SyncResult):
    last_processed_date: Optional[date] = None
    complete: bool = False


# --- charting ---

class DailyUsage(BaseModel):
    """One day of per-tool token totals; ``projected`` holds raw values of estimated tools."""

    date: dt.date
    totals: dict[str, int] = Field(default_factory=dict)
    cost: float = 0.0
    is_incomplete: bool = False
    projected: Optional[dict[str, int]] = None


class ToolCompleteness(BaseModel):
    last_data_date: Optional[date] = None
