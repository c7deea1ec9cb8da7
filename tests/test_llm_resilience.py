# =============================================================================
# Unit Tests — LLM Retries, Circuit Breaker, Provider Factory, Pricing
# =============================================================================
#
# The inner provider is an AsyncMock; the breaker gets a fake clock so no
# test waits for a real cooldown. Retry backoff is patched to zero.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from payrollpro.services import llm
from payrollpro.services.llm import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    LLMResponse,
    ResilientProvider,
    _parse_provider_id,
    is_transient_error,
)
from payrollpro.services.pricing import estimate_cost, sum_costs


def _run(coro):
    return asyncio.run(coro)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


OK = LLMResponse(content="ok", model="m", input_tokens=1, output_tokens=1)


async def _hang(**kwargs):
    await asyncio.sleep(10)


def _provider(side_effect, breaker=None, attempts=3):
    inner = AsyncMock()
    inner.model = "claude-test"
    inner.complete.side_effect = side_effect
    breaker = breaker or CircuitBreaker("anthropic/claude-test", 2, 30, clock=FakeClock())
    return ResilientProvider(inner, "anthropic/claude-test", breaker, attempts), inner


@pytest.fixture(autouse=True)
def _no_backoff():
    with patch.object(llm.settings, "llm_retry_initial_backoff", 0), \
            patch.object(llm.settings, "llm_retry_max_backoff", 0):
        yield


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("p", failure_threshold=3, reset_seconds=30, clock=FakeClock())
        for _ in range(2):
            breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call()
        assert exc_info.value.retry_after == 30

    def test_success_resets_failures(self):
        breaker = CircuitBreaker("p", failure_threshold=2, reset_seconds=30, clock=FakeClock())
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failures == 1

    def test_half_open_allows_one_trial(self):
        clock = FakeClock()
        breaker = CircuitBreaker("p", failure_threshold=1, reset_seconds=30, clock=clock)
        breaker.record_failure()
        clock.now += 30
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.before_call()
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_failed_trial_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("p", failure_threshold=5, reset_seconds=10, clock=clock)
        for _ in range(5):
            breaker.record_failure()
        clock.now += 10
        breaker.before_call()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.retry_after() == 10

    def test_snapshot(self):
        breaker = CircuitBreaker("anthropic/x", failure_threshold=1, reset_seconds=60,
                                 clock=FakeClock())
        breaker.record_failure()
        assert breaker.snapshot() == {
            "provider_id": "anthropic/x",
            "state": "open",
            "failures": 1,
            "retry_after_seconds": 60.0,
        }


# ---------------------------------------------------------------------------
# Resilient provider
# ---------------------------------------------------------------------------


class TestResilientProvider:
    def test_transient_errors_are_retried(self):
        provider, inner = _provider([httpx.ConnectError("reset"), OK])
        assert _run(provider.complete([{"role": "user", "content": "hi"}])) is OK
        assert inner.complete.await_count == 2
        assert provider.breaker.failures == 0

    def test_gives_up_after_max_attempts(self):
        provider, inner = _provider(httpx.ConnectError("reset"), attempts=3)
        with pytest.raises(httpx.ConnectError):
            _run(provider.complete([{"role": "user", "content": "hi"}]))
        assert inner.complete.await_count == 3
        # One failed call counts once against the circuit
        assert provider.breaker.failures == 1

    def test_non_transient_error_not_retried_or_counted(self):
        provider, inner = _provider(ValueError("bad request"))
        with pytest.raises(ValueError):
            _run(provider.complete([{"role": "user", "content": "hi"}]))
        assert inner.complete.await_count == 1
        assert provider.breaker.failures == 0

    def test_open_circuit_short_circuits(self):
        provider, inner = _provider(httpx.ReadTimeout("slow"), attempts=1)
        for _ in range(2):
            with pytest.raises(httpx.ReadTimeout):
                _run(provider.complete([{"role": "user", "content": "hi"}]))

        with pytest.raises(CircuitOpenError):
            _run(provider.complete([{"role": "user", "content": "hi"}]))
        assert inner.complete.await_count == 2

    def test_hung_calls_open_the_circuit(self):
        provider, inner = _provider(_hang, attempts=1)
        provider._call_timeout = 0.01
        for _ in range(2):
            with pytest.raises(TimeoutError):
                _run(provider.complete([{"role": "user", "content": "hi"}]))

        assert provider.breaker.state == CircuitState.OPEN
        assert provider.breaker.failures == 2

    def test_cancelled_trial_frees_half_open_slot(self):
        clock = FakeClock()
        breaker = CircuitBreaker("anthropic/claude-test", 1, 30, clock=clock)
        breaker.record_failure()
        clock.now += 30
        provider, inner = _provider(_hang, breaker=breaker)

        # The caller's own deadline cancels the trial call
        with pytest.raises(asyncio.TimeoutError):
            _run(asyncio.wait_for(
                provider.complete([{"role": "user", "content": "hi"}]), 0.05,
            ))
        assert breaker.state == CircuitState.HALF_OPEN

        inner.complete.side_effect = [OK]
        assert _run(provider.complete([{"role": "user", "content": "hi"}])) is OK
        assert breaker.state == CircuitState.CLOSED

    def test_passes_arguments_through(self):
        provider, inner = _provider([OK])
        _run(provider.complete(
            [{"role": "user", "content": "hi"}], system="sys", temperature=0.0, max_tokens=5,
        ))
        inner.complete.assert_awaited_once_with(
            messages=[{"role": "user", "content": "hi"}],
            system="sys", temperature=0.0, max_tokens=5,
        )

    def test_provider_type_and_model(self):
        provider, _ = _provider([OK])
        assert provider.provider_type == "anthropic"
        assert provider.model == "claude-test"

    def test_transient_classification(self):
        assert is_transient_error(httpx.ConnectError("x"))
        assert not is_transient_error(ValueError("x"))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestProviderFactory:
    def test_factory_raises_without_api_key(self):
        original = llm._provider
        llm._provider = None
        try:
            with patch.object(llm.settings, "llm_provider", "anthropic"), \
                    patch.object(llm.settings, "llm_api_key", None), \
                    patch.object(llm.settings, "anthropic_api_key", ""):
                with pytest.raises(ValueError, match="API key"):
                    llm.get_llm_provider()
        finally:
            llm._provider = original

    def test_parse_provider_id(self):
        assert _parse_provider_id("anthropic/claude-sonnet-4-6") == (
            "anthropic", "claude-sonnet-4-6", None,
        )
        assert _parse_provider_id(
            "openai_compatible/deepseek-chat@https://api.deepseek.com/v1"
        ) == ("openai_compatible", "deepseek-chat", "https://api.deepseek.com/v1")

    def test_parse_rejects_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown provider type"):
            _parse_provider_id("cohere/command")

    def test_parse_rejects_missing_slash(self):
        with pytest.raises(ValueError, match="Invalid provider_id"):
            _parse_provider_id("gpt-4o")


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


class TestPricing:
    def test_known_model(self):
        cost = estimate_cost("anthropic", "claude-sonnet-4-6", 1_000_000, 1_000_000)
        assert cost == pytest.approx(18.0)

    def test_unknown_model_is_none(self):
        assert estimate_cost("anthropic", "mystery", 10, 10) is None

    def test_sum_costs(self):
        usages = [
            ("openai_compatible", "gpt-4o-mini", 1_000_000, 0),
            ("openai_compatible", "gpt-4o-mini", 0, 1_000_000),
        ]
        assert sum_costs(usages) == pytest.approx(0.75)

    def test_sum_with_unpriced_call_is_none(self):
        assert sum_costs([
            ("anthropic", "claude-sonnet-4-6", 10, 10),
            ("anthropic", "mystery", 10, 10),
        ]) is None
