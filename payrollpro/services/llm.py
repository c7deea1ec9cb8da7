# =============================================================================
# Multi-Provider LLM Abstraction — Retries & Circuit Breaking
# =============================================================================
#
# Provides a common interface for LLM completions, with concrete
# implementations for Anthropic (Claude) and OpenAI-compatible APIs
# (OpenAI, DeepSeek, Qwen, ...), plus a resilience wrapper used by every
# agent call.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   ├── OpenAICompatibleProvider — Any OpenAI-compatible API
#   └── ResilientProvider        — wraps either of the above:
#       ├── CircuitBreaker       — one per provider id, shared process-wide
#       └── tenacity retries     — exponential backoff on transient errors
#
#   get_llm_provider()           — default provider (router + synthesis)
#   get_provider_for(id)         — cached resilient provider per provider id
#   create_provider_from_id(id)  — raw, uncached provider from "type/model@url"
#
# CIRCUIT STATES:
#   CLOSED ──(N consecutive failed calls)──▶ OPEN
#   OPEN ──(reset timeout elapsed)──▶ HALF_OPEN (one trial call)
#   HALF_OPEN ──success──▶ CLOSED      HALF_OPEN ──failure──▶ OPEN
#
# A "failed call" is one that still fails after its retries, or that runs
# past llm_call_timeout_seconds. A call cancelled by its caller only frees
# the half-open trial slot. While OPEN, complete() raises CircuitOpenError
# without touching the network.
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import anthropic
import httpx
import openai
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from payrollpro.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text
    model: str             # Model identifier (e.g., "claude-sonnet-4-6")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


class CircuitOpenError(RuntimeError):
    """Raised when a provider's circuit is open and the call is refused."""

    def __init__(self, provider_id: str, retry_after: float) -> None:
        self.provider_id = provider_id
        self.retry_after = retry_after
        super().__init__(
            f"Circuit open for provider '{provider_id}'; "
            f"retry in {retry_after:.0f}s"
        )


def _shared_key_for(provider_type: str) -> str | None:
    """LLM_API_KEY belongs to the default provider type only."""
    if settings.llm_provider == provider_type:
        return settings.llm_api_key
    return None


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Both Anthropic and OpenAI-compatible implementations must provide
    the `complete()` method. Checked statically by mypy.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system", use the system param).
            system: System prompt for the LLM. Handled differently per provider:
                - Anthropic: top-level `system=` kwarg
                - OpenAI: prepended as {"role": "system", ...} message
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).

        Returns:
            LLMResponse with generated text and usage metrics.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".

    The SDK's own retries are disabled (max_retries=0); ResilientProvider
    owns the retry policy so attempts are counted in one place.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        resolved_key = (
            api_key
            or _shared_key_for("anthropic")
            or settings.anthropic_api_key
        )
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = anthropic.AsyncAnthropic(
            api_key=resolved_key, max_retries=0,
        )
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized AnthropicProvider (model=%s)", self._model
        )

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": (
                self._temperature if temperature is None else temperature
            ),
        }
        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)

        # Extract text from the first text block
        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (OpenAI, DeepSeek, Qwen, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        resolved_key = (
            api_key
            or _shared_key_for("openai_compatible")
            or settings.openai_api_key
        )
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY or OPENAI_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key, "max_retries": 0}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=all_messages,
            max_tokens=max_tokens or self._max_tokens,
            temperature=(
                self._temperature if temperature is None else temperature
            ),
        )

        content = response.choices[0].message.content or ""

        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


# ---------------------------------------------------------------------------
# Circuit Breaker
# ---------------------------------------------------------------------------


class CircuitState(str, enum.Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Calls fail immediately
    HALF_OPEN = "half_open"  # One trial call allowed


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker for one provider.

    Not thread-safe; all callers run on the FastAPI event loop.

    Args:
        name: Provider id, used in logs and errors.
        failure_threshold: Consecutive failed calls that open the circuit.
        reset_seconds: How long the circuit stays open before a trial call.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int | None = None,
        reset_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = (
            failure_threshold or settings.circuit_failure_threshold
        )
        self.reset_seconds = (
            settings.circuit_reset_seconds if reset_seconds is None
            else reset_seconds
        )
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN → HALF_OPEN once the timeout elapses."""
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_seconds
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.warning(
                "Circuit for %s is now HALF-OPEN, allowing a trial call",
                self.name,
            )
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.reset_seconds - (self._clock() - self._opened_at))

    def before_call(self) -> None:
        """Raise CircuitOpenError if the call must not go out."""
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitOpenError(self.name, self.retry_after())
        if state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, self.reset_seconds)
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit for %s is now CLOSED (recovered)", self.name)
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        self._trial_in_flight = False
        if (
            self._state == CircuitState.HALF_OPEN
            or self._failures >= self.failure_threshold
        ):
            if self._state != CircuitState.OPEN:
                logger.warning(
                    "Circuit for %s is now OPEN after %d failures",
                    self.name, self._failures,
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()

    def release(self) -> None:
        """End a call whose outcome says nothing about provider health."""
        self._trial_in_flight = False

    def snapshot(self) -> dict:
        return {
            "provider_id": self.name,
            "state": self.state.value,
            "failures": self._failures,
            "retry_after_seconds": round(self.retry_after(), 1),
        }


_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(provider_id: str) -> CircuitBreaker:
    """Return the process-wide breaker for a provider id."""
    breaker = _breakers.get(provider_id)
    if breaker is None:
        breaker = CircuitBreaker(provider_id)
        _breakers[provider_id] = breaker
    return breaker


def circuit_snapshots() -> list[dict]:
    return [b.snapshot() for b in _breakers.values()]


# ---------------------------------------------------------------------------
# Resilient Wrapper
# ---------------------------------------------------------------------------

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    anthropic.APIConnectionError,   # includes APITimeoutError
    anthropic.RateLimitError,
    anthropic.InternalServerError,
    openai.APIConnectionError,      # includes APITimeoutError
    openai.RateLimitError,
    openai.InternalServerError,
    httpx.TransportError,
)


def is_transient_error(exc: BaseException) -> bool:
    """True for errors worth retrying: network, rate limit, 5xx."""
    return isinstance(exc, _TRANSIENT_ERRORS)


class ResilientProvider:
    """
    LLMProvider wrapper adding retries and a circuit breaker.

    Retries (tenacity) cover transient errors only; a 4xx such as a bad
    request fails immediately. The breaker sees one outcome per call,
    after retries, so a single flaky request does not count N times.
    A call that overruns `call_timeout` counts as a failure.
    """

    def __init__(
        self,
        inner: LLMProvider,
        provider_id: str,
        breaker: CircuitBreaker | None = None,
        max_attempts: int | None = None,
        call_timeout: float | None = None,
    ) -> None:
        self._inner = inner
        self.provider_id = provider_id
        self.provider_type = provider_id.split("/", 1)[0]
        self.breaker = breaker or get_circuit_breaker(provider_id)
        self._max_attempts = max_attempts or settings.llm_max_retries
        self._call_timeout = call_timeout or settings.llm_call_timeout_seconds

    @property
    def model(self) -> str:
        return getattr(self._inner, "model", self.provider_id)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        self.breaker.before_call()

        try:
            async with asyncio.timeout(self._call_timeout):
                response = await self._complete_with_retries(
                    messages, system, temperature, max_tokens,
                )
        except TimeoutError:
            logger.warning(
                "%s timed out after %gs", self.provider_id, self._call_timeout,
            )
            self.breaker.record_failure()
            raise
        except Exception as exc:
            # Only provider-side failures count against the circuit
            if is_transient_error(exc):
                self.breaker.record_failure()
            else:
                self.breaker.release()
            raise
        except BaseException:
            # Cancelled by the caller (e.g. asyncio.wait_for)
            self.breaker.release()
            raise

        self.breaker.record_success()
        return response

    async def _complete_with_retries(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> LLMResponse:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=settings.llm_retry_initial_backoff,
                max=settings.llm_retry_max_backoff,
            ),
            retry=retry_if_exception(is_transient_error),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "Retrying %s (attempt %d/%d)",
                        self.provider_id,
                        attempt.retry_state.attempt_number,
                        self._max_attempts,
                    )
                response = await self._inner.complete(
                    messages=messages,
                    system=system,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
        return response


# ---------------------------------------------------------------------------
# Factory Functions
# ---------------------------------------------------------------------------

_KNOWN_PROVIDER_TYPES = {"anthropic", "openai_compatible"}

# Lazy singletons — SDK clients manage their own connection pools
_provider: ResilientProvider | None = None
_providers_by_id: dict[str, ResilientProvider] = {}


def default_provider_id() -> str:
    """Provider id for the configured default LLM."""
    provider_id = f"{settings.llm_provider}/{settings.llm_model}"
    if settings.llm_base_url and settings.llm_provider == "openai_compatible":
        provider_id += f"@{settings.llm_base_url}"
    return provider_id


def get_llm_provider() -> ResilientProvider:
    """
    Return the default provider, used by the router and synthesis steps.

    Raises:
        ValueError: If the provider's API key is missing.
    """
    global _provider
    if _provider is None:
        if settings.llm_provider == "openai_compatible":
            inner: LLMProvider = OpenAICompatibleProvider()
        else:
            inner = AnthropicProvider()
        _provider = ResilientProvider(inner, default_provider_id())
    return _provider


def get_provider_for(provider_id: str | None) -> ResilientProvider:
    """
    Return a cached resilient provider for a provider id.

    An empty id resolves to the default provider.
    """
    if not provider_id:
        return get_llm_provider()
    cached = _providers_by_id.get(provider_id)
    if cached is None:
        cached = ResilientProvider(
            create_provider_from_id(provider_id), provider_id,
        )
        _providers_by_id[provider_id] = cached
    return cached


def _parse_provider_id(
    provider_id: str,
) -> tuple[str, str, str | None]:
    """
    Parse a provider_id string into (provider_type, model, base_url).

    Formats supported:
        "anthropic/claude-sonnet-4-6"
            → ("anthropic", "claude-sonnet-4-6", None)
        "openai_compatible/gpt-4o"
            → ("openai_compatible", "gpt-4o", None)
        "openai_compatible/deepseek-chat@https://api.deepseek.com/v1"
            → ("openai_compatible", "deepseek-chat", "https://api.deepseek.com/v1")

    Raises:
        ValueError: If the format is unrecognisable or provider type unknown.
    """
    if "/" not in provider_id:
        raise ValueError(
            f"Invalid provider_id '{provider_id}'. "
            "Expected format: 'provider_type/model' or "
            "'provider_type/model@base_url'"
        )

    provider_type, rest = provider_id.split("/", 1)

    base_url: str | None = None
    if "@" in rest:
        model, base_url = rest.split("@", 1)
    else:
        model = rest

    if provider_type not in _KNOWN_PROVIDER_TYPES:
        raise ValueError(
            f"Unknown provider type '{provider_type}'. "
            f"Supported types: {sorted(_KNOWN_PROVIDER_TYPES)}"
        )

    return provider_type, model, base_url


def create_provider_from_id(
    provider_id: str,
    api_key: str | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Create a fresh, unwrapped LLM provider from a provider id string.

    Raises:
        ValueError: If provider_id is invalid or API key is missing.
    """
    provider_type, model, base_url = _parse_provider_id(provider_id)

    if provider_type == "anthropic":
        return AnthropicProvider(api_key=api_key, model=model)

    # OpenAI-compatible providers read OPENAI_API_KEY unless LLM_API_KEY is set
    return OpenAICompatibleProvider(
        api_key=api_key, model=model, base_url=base_url,
    )
