"""Tests for the retry policy and single-attempt runner."""

import asyncio

import pytest

from taskgraph.services.execution import (
    Cancelled,
    HandlerError,
    RetryPolicy,
    StepResult,
    StepTimeout,
    UnknownStepKind,
    run_attempt,
)


class TestRetryPolicy:
    def test_exponential_delays(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert [policy.calculate_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert policy.calculate_delay(10) == 5.0

    def test_should_retry_respects_budget(self):
        policy = RetryPolicy()
        error = HandlerError("boom")
        assert policy.should_retry(error, retry_count=0, max_retries=2)
        assert policy.should_retry(error, retry_count=1, max_retries=2)
        assert not policy.should_retry(error, retry_count=2, max_retries=2)
        assert not policy.should_retry(error, retry_count=0, max_retries=0)

    @pytest.mark.parametrize("error", [
        HandlerError("bad input", retryable=False),
        UnknownStepKind("TELEPORT"),
        Cancelled(),
    ])
    def test_non_retryable_errors(self, error):
        assert not RetryPolicy().should_retry(error, retry_count=0, max_retries=5)

    def test_timeout_is_retryable(self):
        assert RetryPolicy().should_retry(StepTimeout(1.0), retry_count=0, max_retries=1)

    def test_round_trip_dict(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=4.0, multiplier=3.0)
        assert RetryPolicy.from_dict(policy.to_dict()) == policy


class TestRunAttempt:
    @pytest.mark.asyncio
    async def test_returns_handler_result(self):
        async def handler(config, context):
            return StepResult(output={"n": config["n"] + context["n"]})

        result = await run_attempt(handler, {"n": 1}, {"n": 2}, timeout_seconds=1)
        assert result.output == {"n": 3}

    @pytest.mark.asyncio
    async def test_none_result_is_empty(self):
        async def handler(config, context):
            return None

        result = await run_attempt(handler, {}, {}, timeout_seconds=1)
        assert result == StepResult()

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def handler(config, context):
            await asyncio.sleep(1)

        with pytest.raises(StepTimeout) as exc_info:
            await run_attempt(handler, {}, {}, timeout_seconds=0.01)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped_as_retryable(self):
        async def handler(config, context):
            raise KeyError("missing")

        with pytest.raises(HandlerError) as exc_info:
            await run_attempt(handler, {}, {}, timeout_seconds=1)
        assert exc_info.value.retryable
        assert "KeyError" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_step_error_passes_through(self):
        async def handler(config, context):
            raise HandlerError("nope", retryable=False)

        with pytest.raises(HandlerError) as exc_info:
            await run_attempt(handler, {}, {}, timeout_seconds=1)
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_wrong_result_type_is_not_retryable(self):
        async def handler(config, context):
            return {"raw": "dict"}

        with pytest.raises(HandlerError) as exc_info:
            await run_attempt(handler, {}, {}, timeout_seconds=1)
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    @pytest.mark.parametrize("result", [
        StepResult(output=["not", "a", "dict"]),
        StepResult(context_patch=["oops"]),
    ])
    async def test_non_dict_result_fields_are_not_retryable(self, result):
        async def handler(config, context):
            return result

        with pytest.raises(HandlerError) as exc_info:
            await run_attempt(handler, {}, {}, timeout_seconds=1)
        assert not exc_info.value.retryable
        assert "expected dict" in exc_info.value.message
