"""Push-webhook ingestion: commits from a GitHub push payload, no API calls.

Line stats are not part of the payload; they stay NULL until a forward or
backfill pass fetches the commit detail.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from abacus.config import Settings, settings
from abacus.core.domain.exceptions import InsertError
from abacus.core.domain.schemas import CommitRecord, ProviderId, SyncResult
from abacus.infra.providers.factory import build_commit_ingestor
from abacus.infra.providers.github import parse_timestamp, user_id_from_noreply

logger = logging.getLogger(__name__)


def verify_push_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check ``X-Hub-Signature-256`` (``sha256=<hex hmac>``) against the raw body."""
    if not signature or not secret:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected)


def _author_id(commit: dict, sender: Optional[dict]) -> Optional[str]:
    author = commit.get("author") or {}
    author_id = user_id_from_noreply(author.get("email"))
    if author_id:
        return author_id
    username = author.get("username")
    if sender and username and sender.get("login") == username and sender.get("id") is not None:
        return str(sender["id"])
    return None


def push_commits(payload: dict[str, Any]) -> list[CommitRecord]:
    """Commit records of a push to the default branch; [] for any other ref."""
    repo = payload.get("repository") or {}
    pushed = (payload.get("ref") or "").removeprefix("refs/heads/")
    if not pushed or pushed != repo.get("default_branch"):
        return []

    sender = payload.get("sender")
    records = []
    for commit in payload.get("commits") or []:
        author = commit.get("author") or {}
        records.append(CommitRecord(
            repo_full_name=repo["full_name"],
            commit_id=commit["id"],
            committed_at=parse_timestamp(commit["timestamp"]),
            message=commit.get("message"),
            author_email=author.get("email") or None,
            author_name=author.get("name"),
            author_id=_author_id(commit, sender),
        ))
    return records


async def process_push_event(
    session: AsyncSession,
    payload: dict[str, Any],
    cfg: Optional[Settings] = None,
) -> SyncResult:
    cfg = cfg or settings
    result = SyncResult(provider=ProviderId.GITHUB.value)
    records = push_commits(payload)
    if not records:
        logger.debug("Ignoring push to %s", payload.get("ref"))
        return result

    ingestor = build_commit_ingestor(session, cfg)
    for record in records:
        try:
            attributions = await ingestor.ingest(record)
        except InsertError as exc:
            logger.warning("Push commit %s not stored: %s", record.commit_id, exc.detail)
            result.errors.append(f"Commit {record.commit_id}: {exc}")
            continue
        result.imported += 1
        if attributions:
            result.attributed += 1
    await session.commit()

    logger.info(
        "Push to %s: %d commits, %d AI-attributed",
        records[0].repo_full_name, result.imported, result.attributed,
    )
    return result
