# =============================================================================
# Embedding Service — Batch Vector Generation
# =============================================================================
#
# Generates embeddings for knowledge-base entries and search queries using
# any OpenAI-compatible embedding API (text-embedding-3-small by default).
#
# Sync only: the Celery ingestion task calls it directly, and async callers
# (the AgentBrain, the knowledge search endpoint) go through
# asyncio.to_thread(). Retries for ingestion live at the Celery task level.
#
# TOKEN LIMITS:
# - Each text: max 8,191 tokens (knowledge chunks are capped at 4,000 chars)
# - Texts are sent in batches of settings.embedding_batch_size (100)
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from openai import OpenAI

from payrollpro.config import settings

logger = logging.getLogger(__name__)

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Generate embeddings for a batch of texts.

    Returns embeddings in the SAME ORDER as the input texts.

    Raises:
        ValueError: If no embedding API key is configured.
        openai.APIError: If the embedding API call fails.
    """
    if not texts:
        return []

    client = _get_client()
    _batch_size = batch_size or settings.embedding_batch_size

    all_embeddings: list[list[float]] = [[] for _ in texts]

    for i in range(0, len(texts), _batch_size):
        batch = list(texts[i : i + _batch_size])
        logger.info(
            "Embedding batch %d–%d of %d texts (model=%s)",
            i + 1,
            min(i + _batch_size, len(texts)),
            len(texts),
            settings.embedding_model,
        )

        create_kwargs: dict = {
            "model": settings.embedding_model,
            "input": batch,
        }
        if settings.embedding_dimensions:
            create_kwargs["dimensions"] = settings.embedding_dimensions

        response = client.embeddings.create(**create_kwargs)

        # Place each vector by its reported index
        for item in sorted(response.data, key=lambda x: x.index):
            all_embeddings[i + item.index] = item.embedding

    return all_embeddings


def embed_query(text: str) -> list[float]:
    """Embed a single search query."""
    return embed_batch([text], batch_size=1)[0]
