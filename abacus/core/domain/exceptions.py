"""Domain exceptions -- catch specific, re-raise with context."""

from __future__ import annotations


class AbacusError(Exception):
    """Root for all domain errors."""


class ConfigMissingError(AbacusError):
    """Provider credentials are absent; nothing was requested upstream."""

    def __init__(self, provider: str, setting: str) -> None:
        super().__init__(f"{setting} not configured")
        self.provider = provider
        self.setting = setting


class ProviderError(AbacusError):
    """Wraps provider-specific upstream failures."""

    def __init__(self, provider: str, detail: str) -> None:
        super().__init__(f"[{provider}] {detail}")
        self.provider = provider
        self.detail = detail


class RateLimitedError(ProviderError):
    """Upstream refused the request for quota reasons -- abort, resume next run."""

    def __init__(self, provider: str, detail: str, *, retry_after: float | None = None) -> None:
        super().__init__(provider, detail)
        self.retry_after = retry_after


class UpstreamError(ProviderError):
    """Non-2xx (other than rate limiting) or a transport failure."""

    def __init__(self, provider: str, detail: str, *, status_code: int | None = None) -> None:
        super().__init__(provider, detail)
        self.status_code = status_code


class InsertError(AbacusError):
    def __init__(self, table: str, detail: str) -> None:
        super().__init__(f"Insert error ({table}): {detail}")
        self.table = table
        self.detail = detail


class IdentityUnresolvedError(AbacusError):
    """No email could be attached to a record; the record is skipped and counted."""

    def __init__(self, source: str, external_id: str | None) -> None:
        super().__init__(f"No email for {source} identity {external_id!r}")
        self.source = source
        self.external_id = external_id
