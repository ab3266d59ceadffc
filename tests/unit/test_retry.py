"""
Unit Tests - RetryPolicy and rate-limit classification
"""

from __future__ import annotations

import httpx
import openai
import pytest

from meddocs.llm.retry import RetryPolicy, exponential_backoff, is_rate_limit_error
from tests.conftest import RecordingSleep

pytestmark = pytest.mark.unit


def _openai_rate_limit() -> openai.RateLimitError:
    request  = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(429, request=request)
    return openai.RateLimitError("Rate limit reached", response=response, body=None)


class _Status429(Exception):
    status_code = 429


class TestRateLimitClassification:

    @pytest.mark.parametrize(
        "exc",
        [
            _openai_rate_limit(),
            _Status429("too many"),
            RuntimeError("Error code: 429 - Too Many Requests"),
            RuntimeError("You exceeded your current quota"),
            RuntimeError("Rate limit exceeded for model"),
        ],
    )
    def test_rate_limited(self, exc):
        assert is_rate_limit_error(exc)

    @pytest.mark.parametrize(
        "exc",
        [
            ValueError("Invalid JSON from model"),
            TimeoutError(),
            ConnectionError("connection reset"),
        ],
    )
    def test_not_rate_limited(self, exc):
        assert not is_rate_limit_error(exc)


def test_exponential_backoff_sequence():
    delay = exponential_backoff(5.0)
    assert [delay(1), delay(2), delay(3)] == [5.0, 10.0, 20.0]


class TestRetryPolicy:

    async def test_rate_limits_back_off_then_raise(self):
        sleep  = RecordingSleep()
        policy = RetryPolicy(max_attempts=3, backoff=exponential_backoff(5.0), sleep=sleep)
        attempts: list[int] = []

        async def op(attempt: int):
            attempts.append(attempt)
            raise RuntimeError("429 quota exceeded")

        with pytest.raises(RuntimeError, match="429"):
            await policy.run(op)

        assert attempts == [1, 2, 3]
        assert sleep.delays == [5.0, 10.0]

    async def test_other_errors_retry_without_waiting(self):
        sleep  = RecordingSleep()
        policy = RetryPolicy(max_attempts=3, sleep=sleep)
        attempts: list[int] = []

        async def op(attempt: int):
            attempts.append(attempt)
            if attempt < 3:
                raise ValueError("bad json")
            return "ok"

        assert await policy.run(op) == "ok"
        assert attempts == [1, 2, 3]
        assert sleep.delays == []

    async def test_success_on_first_attempt(self):
        sleep  = RecordingSleep()
        policy = RetryPolicy(sleep=sleep)

        async def op(attempt: int):
            return attempt

        assert await policy.run(op) == 1
        assert sleep.delays == []

    async def test_non_retryable_error_propagates_immediately(self):
        policy = RetryPolicy(
            max_attempts=3,
            is_retryable=lambda exc: not isinstance(exc, KeyError),
            sleep=RecordingSleep(),
        )
        attempts: list[int] = []

        async def op(attempt: int):
            attempts.append(attempt)
            raise KeyError("fatal")

        with pytest.raises(KeyError):
            await policy.run(op)
        assert attempts == [1]

    def test_delay_for(self):
        policy = RetryPolicy(max_attempts=3, backoff=exponential_backoff(5.0))
        rate_limited = RuntimeError("429")

        assert policy.delay_for(rate_limited, 1) == 5.0
        assert policy.delay_for(rate_limited, 2) == 10.0
        assert policy.delay_for(rate_limited, 3) is None
        assert policy.delay_for(ValueError("x"), 1) == 0.0
