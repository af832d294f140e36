"""GitHub commit adapter -- REST commit listing plus App installation auth.

A forward or backfill chunk walks every tracked repository's default
branch. The page token is ``(repo_index, page_number)``, so one chunk
paginates repository by repository.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx
import jwt

from abacus.config import Settings
from abacus.core.domain.attribution import detect_all
from abacus.core.domain.exceptions import (
    ConfigMissingError,
    InsertError,
    RateLimitedError,
    UpstreamError,
)
from abacus.core.domain.schemas import (
    COMMIT_SOURCE_GITHUB,
    AiAttribution,
    CommitRecord,
    Page,
    ProviderId,
    StoreOutcome,
)
from abacus.infra.db.commit_repository import CommitRepository
from abacus.infra.db.identity import IdentityMappingRepository
from abacus.infra.time_windows import hour_floor

from .http import raise_for_upstream, request_json

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"
PER_PAGE = 100
TOKEN_REFRESH_MARGIN = timedelta(minutes=10)

_NOREPLY_ID = re.compile(r"^(\d+)\+[^@]+@users\.noreply\.github\.com$", re.IGNORECASE)

MEMBERS_QUERY = """
query($org: String!, $cursor: String) {
  organization(login: $org) {
    membersWithRole(first: 100, after: $cursor) {
      nodes {
        login
        databaseId
        organizationVerifiedDomainEmails(login: $org)
      }
      pageInfo {
        hasNextPage
        endCursor
      }
    }
  }
}
"""

Sleep = Callable[[float], Awaitable[None]]


def user_id_from_noreply(email: Optional[str]) -> Optional[str]:
    """Numeric user id from ``{id}+{login}@users.noreply.github.com``."""
    if not email:
        return None
    m = _NOREPLY_ID.match(email)
    return m.group(1) if m else None


def is_real_work_email(email: Optional[str], domain: Optional[str]) -> bool:
    if not email or "noreply" in email:
        return False
    if domain:
        return email.lower().endswith(f"@{domain.lower()}")
    return True


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# --- auth ---

@dataclass(frozen=True)
class InstallationToken:
    token: str
    expires_at: datetime


class GitHubTokenProvider:
    """Hands out a bearer token: an App installation token when configured, else GITHUB_TOKEN.

    Installation tokens are cached and refreshed once they are within ten
    minutes of expiry.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cfg: Settings,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._client = client
        self.cfg = cfg
        self._clock = clock
        self._cached: Optional[InstallationToken] = None
        self._lock = asyncio.Lock()

    @property
    def uses_app(self) -> bool:
        cfg = self.cfg
        return bool(cfg.github_app_id and cfg.github_app_private_key and cfg.github_app_installation_id)

    @property
    def is_configured(self) -> bool:
        return self.uses_app or bool(self.cfg.github_token)

    def check_config(self) -> None:
        if not self.is_configured:
            raise ConfigMissingError(
                ProviderId.GITHUB.value,
                "GITHUB_APP_ID + GITHUB_APP_PRIVATE_KEY + GITHUB_APP_INSTALLATION_ID or GITHUB_TOKEN",
            )

    def app_jwt(self) -> str:
        now = int(self._clock().timestamp())
        payload = {"iat": now - 60, "exp": now + 600, "iss": str(self.cfg.github_app_id)}
        private_key = (self.cfg.github_app_private_key or "").replace("\\n", "\n")
        return jwt.encode(payload, private_key, algorithm="RS256")

    async def get_token(self) -> str:
        self.check_config()
        if not self.uses_app:
            return self.cfg.github_token or ""

        async with self._lock:
            cached = self._cached
            if cached and cached.expires_at > self._clock() + TOKEN_REFRESH_MARGIN:
                return cached.token
            self._cached = await self._request_installation_token()
            return self._cached.token

    async def _request_installation_token(self) -> InstallationToken:
        url = (
            f"{self.cfg.github_base_url.rstrip('/')}"
            f"/app/installations/{self.cfg.github_app_installation_id}/access_tokens"
        )
        data = await request_json(
            self._client, ProviderId.GITHUB.value, "POST", url,
            headers={
                "Authorization": f"Bearer {self.app_jwt()}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
        )
        logger.info("Refreshed GitHub installation token (expires %s)", data.get("expires_at"))
        return InstallationToken(token=data["token"], expires_at=parse_timestamp(data["expires_at"]))


# --- REST client ---

class GitHubClient:

    def __init__(self, client: httpx.AsyncClient, tokens: GitHubTokenProvider, cfg: Settings) -> None:
        self._client = client
        self._tokens = tokens
        self._base = cfg.github_base_url.rstrip("/")
        self.provider_id = ProviderId.GITHUB.value

    async def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {await self._tokens.get_token()}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    async def get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await request_json(
            self._client, self.provider_id, "GET", f"{self._base}{path}",
            params=params, headers=await self._headers(),
        )

    async def org_repos(self, org: str, *, sleep: Sleep = asyncio.sleep, delay_s: float = 0.0) -> list[str]:
        repos: list[str] = []
        page = 1
        while True:
            data = await self.get_json(f"/orgs/{org}/repos", {"per_page": PER_PAGE, "page": page})
            if not data:
                return repos
            repos.extend(r["full_name"] for r in data if not r.get("archived"))
            if len(data) < PER_PAGE:
                return repos
            page += 1
            if delay_s:
                await sleep(delay_s)

    async def default_branch(self, full_name: str) -> str:
        try:
            response = await self._client.get(
                f"{self._base}/repos/{full_name}", headers=await self._headers(),
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(self.provider_id, f"{full_name}: Fetch error: {exc}") from exc
        if response.status_code == 404:
            raise UpstreamError(
                self.provider_id,
                f"{full_name}: Repository not found (may have been deleted or moved)",
                status_code=404,
            )
        raise_for_upstream(self.provider_id, response)
        branch = response.json().get("default_branch")
        if not branch:
            raise UpstreamError(self.provider_id, f"{full_name}: Repository has no default branch")
        return branch

    async def list_commits(
        self, full_name: str, branch: str, since: datetime, until: datetime, page: int,
    ) -> list[dict]:
        return await self.get_json(
            f"/repos/{full_name}/commits",
            {"sha": branch, "since": _iso(since), "until": _iso(until), "per_page": PER_PAGE, "page": page},
        )

    async def commit_stats(self, full_name: str, sha: str) -> Optional[tuple[int, int]]:
        """(additions, deletions); None when the detail fetch fails for non-quota reasons."""
        try:
            data = await self.get_json(f"/repos/{full_name}/commits/{sha}")
        except UpstreamError as exc:
            logger.warning("No line stats for %s@%s: %s", full_name, sha[:12], exc.detail)
            return None
        stats = data.get("stats") or {}
        return int(stats.get("additions") or 0), int(stats.get("deletions") or 0)

    async def org_member_emails(
        self, org: str, *, sleep: Sleep = asyncio.sleep, delay_s: float = 0.0,
    ) -> dict[str, str]:
        """databaseId -> first verified domain email, for members that have one."""
        emails: dict[str, str] = {}
        cursor: Optional[str] = None
        while True:
            result = await request_json(
                self._client, self.provider_id, "POST", f"{self._base}/graphql",
                headers=await self._headers(),
                json={"query": MEMBERS_QUERY, "variables": {"org": org, "cursor": cursor}},
            )
            if result.get("errors"):
                messages = ", ".join(e.get("message", "?") for e in result["errors"])
                raise UpstreamError(self.provider_id, f"GraphQL errors: {messages}")
            members = ((result.get("data") or {}).get("organization") or {}).get("membersWithRole")
            if not members:
                raise UpstreamError(self.provider_id, "No organization data returned")

            for node in members.get("nodes") or []:
                verified = node.get("organizationVerifiedDomainEmails") or []
                if verified and node.get("databaseId") is not None:
                    emails[str(node["databaseId"])] = verified[0]

            info = members.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                return emails
            cursor = info.get("endCursor")
            if delay_s:
                await sleep(delay_s)


# --- ingestion ---

def _listed_record(full_name: str, item: dict) -> CommitRecord:
    commit = item.get("commit") or {}
    author = commit.get("author") or {}
    gh_author = item.get("author") or {}
    return CommitRecord(
        repo_full_name=full_name,
        commit_id=item["sha"],
        committed_at=parse_timestamp(author["date"]),
        message=commit.get("message"),
        author_email=author.get("email") or None,
        author_name=author.get("name"),
        author_id=str(gh_author["id"]) if gh_author.get("id") is not None else None,
    )


class CommitIngestor:
    """Resolve the author, detect attributions and upsert one commit."""

    def __init__(
        self,
        commits: CommitRepository,
        identities: IdentityMappingRepository,
        work_email_domain: Optional[str],
    ) -> None:
        self.commits = commits
        self._identities = identities
        self._domain = work_email_domain

    async def _author_email(self, record: CommitRecord) -> Optional[str]:
        if not record.author_id:
            return record.author_email
        if is_real_work_email(record.author_email, self._domain):
            await self._identities.remember(record.source, record.author_id, record.author_email)
            return record.author_email
        mapped = await self._identities.resolve(record.source, record.author_id)
        return mapped or record.author_email

    async def ingest(self, record: CommitRecord) -> list[AiAttribution]:
        """Raises InsertError when the commit row cannot be written."""
        repo_id = await self.commits.get_or_create_repository(record.source, record.repo_full_name)
        attributions = detect_all(record.message, record.author_name, record.author_email)
        email = await self._author_email(record)
        await self.commits.upsert_commit(repo_id, record, author_email=email, attributions=attributions)
        return attributions

    async def ingest_many(self, records: Sequence[CommitRecord]) -> StoreOutcome:
        outcome = StoreOutcome()
        for record in records:
            try:
                attributions = await self.ingest(record)
            except InsertError as exc:
                logger.warning("Commit %s in %s not stored: %s", record.commit_id, record.repo_full_name, exc.detail)
                outcome.skipped += 1
                outcome.errors.append(f"Commit {record.commit_id}: {exc}")
                continue
            outcome.imported += 1
            if attributions:
                outcome.attributed += 1
        return outcome


class GitHubAdapter:
    provider_id = ProviderId.GITHUB.value
    # missed webhooks are caught by re-reading a day
    overlap = timedelta(hours=24)

    def __init__(
        self,
        api: GitHubClient,
        tokens: GitHubTokenProvider,
        ingestor: CommitIngestor,
        cfg: Settings,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._api = api
        self._tokens = tokens
        self._ingestor = ingestor
        self._cfg = cfg
        self._sleep = sleep
        self.chunk = timedelta(days=cfg.github_backfill_chunk_days)
        self.page_delay_s = cfg.github_page_delay_s
        self.repos: list[str] = []
        self._branches: dict[str, str] = {}

    def check_config(self) -> None:
        self._tokens.check_config()

    async def prepare(self) -> None:
        self.repos = self._cfg.github_repo_list or await self._api.org_repos(
            self._cfg.github_org, sleep=self._sleep, delay_s=self.page_delay_s,
        )
        logger.info("Tracking %d GitHub repositories", len(self.repos))

    def forward_target(self, now: datetime) -> datetime:
        return hour_floor(now)

    async def oldest_data_date(self) -> Optional[date]:
        oldest = await self._ingestor.commits.oldest_commit_at(COMMIT_SOURCE_GITHUB)
        return oldest.date() if oldest else None

    async def _branch(self, full_name: str) -> str:
        if full_name not in self._branches:
            self._branches[full_name] = await self._api.default_branch(full_name)
        return self._branches[full_name]

    def _next_repo(self, index: int) -> Optional[tuple[int, int]]:
        return (index + 1, 1) if index + 1 < len(self.repos) else None

    async def fetch_page(self, start: datetime, end: datetime, token: Any) -> Page:
        index, page = token or (0, 1)
        if index >= len(self.repos):
            return Page(items=[], next_token=None)
        full_name = self.repos[index]

        try:
            branch = await self._branch(full_name)
        except RateLimitedError:
            raise
        except UpstreamError as exc:
            if exc.status_code == 404:
                # deleted or moved; nothing to sync
                logger.warning("%s", exc.detail)
                return Page(items=[], next_token=self._next_repo(index), raw_count=0)
            return Page(items=[], next_token=self._next_repo(index), raw_count=0, errors=[exc.detail])

        listed = await self._api.list_commits(full_name, branch, start, end, page)
        records, unreadable = await self._enrich(full_name, listed)
        logger.info("%s: page %d, %d commits", full_name, page, len(listed))

        next_token = (index, page + 1) if len(listed) >= PER_PAGE else self._next_repo(index)
        return Page(items=records, next_token=next_token, raw_count=len(listed), skipped=unreadable)

    async def _enrich(self, full_name: str, listed: Sequence[dict]) -> tuple[list[CommitRecord], int]:
        """Build records for new commits; returns (records, unreadable count)."""
        records: list[CommitRecord] = []
        unreadable = 0
        for item in listed:
            # merges carry no authored change
            if len(item.get("parents") or []) > 1:
                continue
            try:
                record = _listed_record(full_name, item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Unreadable commit listing in %s: %r", full_name, exc)
                unreadable += 1
                continue
            if await self._ingestor.commits.has_line_stats(COMMIT_SOURCE_GITHUB, full_name, record.commit_id):
                continue

            stats = await self._api.commit_stats(full_name, record.commit_id)
            await self._sleep(self._cfg.github_commit_delay_s)
            if stats:
                record.additions, record.deletions = stats
            records.append(record)
        return records, unreadable

    async def store(self, items: Sequence[CommitRecord], start: datetime, end: datetime) -> StoreOutcome:
        return await self._ingestor.ingest_many(items)
