# =============================================================================
# Pricing Registry — Cost Estimation for Agent Queries
# =============================================================================
#
# Maps (provider_type, model) → USD per token. The brain sums token usage
# across the router, specialist and synthesis calls and records the
# estimate on each AgentQueryMetric row.
#
# Unknown models price as None, not 0.0.
#
# Source: provider pricing pages, checked 2026-02.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelPricing:
    input_cost_per_token: float    # USD
    output_cost_per_token: float   # USD
    provider_label: str


# provider_type matches the prefix of provider ids: "anthropic" or
# "openai_compatible".
PRICING_REGISTRY: dict[tuple[str, str], ModelPricing] = {
    # --- Anthropic ---
    ("anthropic", "claude-sonnet-4-6"): ModelPricing(
        3.00 / 1_000_000, 15.00 / 1_000_000, "Anthropic",
    ),
    ("anthropic", "claude-opus-4-6"): ModelPricing(
        15.00 / 1_000_000, 75.00 / 1_000_000, "Anthropic",
    ),
    ("anthropic", "claude-haiku-4-5"): ModelPricing(
        0.80 / 1_000_000, 4.00 / 1_000_000, "Anthropic",
    ),

    # --- OpenAI ---
    ("openai_compatible", "gpt-4o"): ModelPricing(
        2.50 / 1_000_000, 10.00 / 1_000_000, "OpenAI",
    ),
    ("openai_compatible", "gpt-4o-mini"): ModelPricing(
        0.15 / 1_000_000, 0.60 / 1_000_000, "OpenAI",
    ),

    # --- Embeddings (input only) ---
    ("openai_compatible", "text-embedding-3-small"): ModelPricing(
        0.02 / 1_000_000, 0.0, "OpenAI",
    ),
}


def get_pricing(provider_type: str, model: str) -> ModelPricing | None:
    return PRICING_REGISTRY.get((provider_type, model))


def estimate_cost(
    provider_type: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> float | None:
    """
    Estimated USD cost of one completion, or None if the model is unknown.

    Args:
        provider_type: "anthropic" or "openai_compatible".
        model: Model name as reported by the provider.
        input_tokens: Prompt tokens.
        output_tokens: Completion tokens.
    """
    pricing = get_pricing(provider_type, model)
    if pricing is None:
        return None
    return (
        pricing.input_cost_per_token * input_tokens
        + pricing.output_cost_per_token * output_tokens
    )


def sum_costs(usages: list[tuple[str, str, int, int]]) -> float | None:
    """
    Total cost of several calls given (provider_type, model, in, out) tuples.

    None if any call's model is unpriced: a partial sum would understate
    the total.
    """
    total = 0.0
    for provider_type, model, input_tokens, output_tokens in usages:
        cost = estimate_cost(provider_type, model, input_tokens, output_tokens)
        if cost is None:
            return None
        total += cost
    return total
