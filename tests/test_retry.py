"""Backoff behaviour for idempotent provider reads."""

import logging

import pytest

from paygate.engine import retry
from paygate.engine.retry import PermanentError, ProviderError, RateLimitError, with_retry


class FlakyCall:
    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return args, kwargs


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(retry, "BASE_DELAY", 0)
    monkeypatch.setattr(retry, "MAX_DELAY", 0)


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, caplog):
        call = FlakyCall(ProviderError("stripe temporarily unavailable", status_code=503), RateLimitError())

        with caplog.at_level(logging.WARNING, logger="paygate.retry"):
            result = await with_retry(call, "txn-1", operation="status check for txn-1", max_retries=2, expand=True)

        assert result == (("txn-1",), {"expand": True})
        assert call.calls == 3
        assert "status check for txn-1 failed (attempt 1/3, HTTP 503)" in caplog.text
        assert "attempt 2/3, HTTP 429" in caplog.text

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        call = FlakyCall(PermanentError("No such object: pi_123", status_code=404))

        with pytest.raises(PermanentError):
            await with_retry(call, operation="status check for txn-2")
        assert call.calls == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, caplog):
        call = FlakyCall(*[ProviderError("mpesa temporarily unavailable", status_code=503)] * 4)

        with caplog.at_level(logging.ERROR, logger="paygate.retry"):
            with pytest.raises(ProviderError, match="temporarily unavailable"):
                await with_retry(call, operation="status check for txn-3", max_retries=2)

        assert call.calls == 3
        assert "status check for txn-3 failed after 3 attempts" in caplog.text
