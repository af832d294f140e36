import logging

import httpx
import pytest

from abacus.core.domain.exceptions import RateLimitedError, UpstreamError
from abacus.infra.logging_config import SecretMaskingFilter, ShortNameFormatter, mask_secrets
from abacus.infra.providers.http import is_rate_limited, request_json

from conftest import MockUpstream


class TestMaskSecrets:
    def test_anthropic_key(self):
        assert mask_secrets("key=sk-ant-REDACTED") == "key=***"

    def test_github_tokens(self):
        assert "ghs_" not in mask_secrets("token ghs_abcdefghijklmnop expired")
        assert "github_pat_" not in mask_secrets("github_pat_11ABCDEFG0123456789")

    def test_auth_header_keeps_scheme(self):
        assert mask_secrets("Authorization: Basic a2V5X2N1cnNvcjo=") == "Authorization: Basic ***"

    def test_plain_text_untouched(self):
        assert mask_secrets("synced 12 commits") == "synced 12 commits"


class TestFormatter:
    def _record(self, name: str, msg: str, *args) -> logging.LogRecord:
        return logging.LogRecord(name, logging.INFO, __file__, 1, msg, args, None)

    def test_package_names_kept_and_others_shortened(self):
        fmt = ShortNameFormatter("[%(name)s] %(message)s")
        assert fmt.format(self._record("abacus.usecases.sync_engine", "x")) == "[abacus.usecases.sync_engine] x"
        assert fmt.format(self._record("sqlalchemy.engine.Engine", "x")) == "[engine.Engine] x"

    def test_mismatched_args_do_not_raise(self):
        fmt = ShortNameFormatter("%(message)s")
        out = fmt.format(self._record("lib", "value %d", "not-a-number"))
        assert "value" in out

    def test_filter_masks_args(self):
        record = self._record("abacus.x", "using %s", "sk-ant-REDACTED")
        SecretMaskingFilter().filter(record)
        assert record.getMessage() == "using ***"


class TestRequestJson:
    def test_rate_limit_detection(self):
        assert is_rate_limited(httpx.Response(429))
        assert is_rate_limited(httpx.Response(403, headers={"x-ratelimit-remaining": "0"}))
        assert not is_rate_limited(httpx.Response(403))

    @pytest.mark.asyncio
    async def test_429_raises_rate_limited(self):
        upstream = MockUpstream(lambda r: httpx.Response(429, headers={"retry-after": "30"}, text="slow"))
        with pytest.raises(RateLimitedError) as exc_info:
            await request_json(upstream.client(), "cursor", "GET", "https://cursor.test/x")
        assert exc_info.value.retry_after == 30.0

    @pytest.mark.asyncio
    async def test_server_error_raises_upstream(self):
        upstream = MockUpstream(lambda r: httpx.Response(503, text="down"))
        with pytest.raises(UpstreamError) as exc_info:
            await request_json(upstream.client(), "cursor", "GET", "https://cursor.test/x")
        assert exc_info.value.status_code == 503
        assert "API error: 503 - down" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_error_raises_upstream(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(UpstreamError, match="Fetch error"):
            await request_json(MockUpstream(handler).client(), "cursor", "GET", "https://cursor.test/x")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        upstream = MockUpstream(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(UpstreamError, match="Invalid JSON"):
            await request_json(upstream.client(), "cursor", "GET", "https://cursor.test/x")
