# =============================================================================
# Knowledge Base — Pluggable Vector Store + Add/Search/Delete
# =============================================================================
#
# Stores reference material (tax guides, state rules, company policies) as
# embedded chunks and serves similarity search to the AgentBrain and the
# /knowledge endpoints.
#
# ARCHITECTURE:
#   KnowledgeStore (Protocol)
#   ├── PgVectorKnowledgeStore  — knowledge_entries table + pgvector
#   │   ├── add_entries()       — sync via get_sync_session (Celery, to_thread)
#   │   ├── search()            — async, cosine distance, category filter
#   │   └── delete()            — async
#   └── ChromaKnowledgeStore    — one "payroll_knowledge" collection
#       └── every call wrapped in asyncio.to_thread() (sync client)
#
#   add_to_knowledge_base()     — chunk → embed → store (sync)
#   search_knowledge_base()     — embed query → search → threshold filter
#   delete_entries()
#
# Entry ids are strings at this layer: pgvector ids are stringified integers,
# Chroma ids are "kb-<uuid>".
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol

import chromadb
from sqlalchemy import delete, select

from payrollpro.config import settings
from payrollpro.db.engine import async_session_factory, get_sync_session
from payrollpro.db.models import KnowledgeEntry
from payrollpro.services.chunker import chunk_text
from payrollpro.services.embedder import embed_batch, embed_query

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class KnowledgeSearchResult:
    """A single knowledge-base hit with its cosine similarity (0.0–1.0)."""

    entry_id: str
    content: str
    category: str
    source: str | None
    similarity_score: float
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class KnowledgeStore(Protocol):
    """Interface shared by the pgvector and ChromaDB backends."""

    def add_entries(
        self,
        contents: list[str],
        embeddings: list[list[float]],
        category: str,
        source: str | None,
        metadatas: list[dict],
    ) -> list[str]:
        """Store embedded chunks. Sync. Returns the new entry ids."""
        ...

    async def search(
        self,
        query_embedding: list[float],
        top_k: int = 5,
        category: str | None = None,
    ) -> list[KnowledgeSearchResult]:
        """Return the most similar entries, highest similarity first."""
        ...

    async def delete(self, entry_ids: list[str]) -> int:
        """Delete entries by id. Returns how many were removed."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorKnowledgeStore:
    """knowledge_entries table searched with pgvector's cosine distance."""

    def add_entries(
        self,
        contents: list[str],
        embeddings: list[list[float]],
        category: str,
        source: str | None,
        metadatas: list[dict],
    ) -> list[str]:
        with get_sync_session() as session:
            entries = []
            for i, (content, embedding, meta) in enumerate(
                zip(contents, embeddings, metadatas, strict=True)
            ):
                entry = KnowledgeEntry(
                    content=content,
                    category=category,
                    source=source,
                    chunk_index=meta.get("chunk_index", i),
                    token_count=meta.get("token_count", 0),
                    embedding=embedding,
                    metadata_=meta,
                )
                session.add(entry)
                entries.append(entry)

            session.flush()
            entry_ids = [str(e.id) for e in entries]
            session.commit()

        logger.info(
            "Stored %d knowledge entries (category=%s) in pgvector",
            len(entry_ids), category,
        )
        return entry_ids

    async def search(
        self,
        query_embedding: list[float],
        top_k: int = 5,
        category: str | None = None,
    ) -> list[KnowledgeSearchResult]:
        """
        Cosine similarity search.

        pgvector's cosine_distance() is in [0, 2]; similarity = 1 - distance.
        """
        distance = KnowledgeEntry.embedding.cosine_distance(query_embedding)
        async with async_session_factory() as session:
            stmt = (
                select(KnowledgeEntry, distance.label("distance"))
                .where(KnowledgeEntry.embedding.is_not(None))
                .order_by(distance)
                .limit(top_k)
            )
            if category is not None:
                stmt = stmt.where(KnowledgeEntry.category == category)

            result = await session.execute(stmt)
            rows = result.all()

        return [
            KnowledgeSearchResult(
                entry_id=str(entry.id),
                content=entry.content,
                category=entry.category,
                source=entry.source,
                similarity_score=round(1.0 - dist, 4),
                metadata=entry.metadata_ or {},
            )
            for entry, dist in rows
        ]

    async def delete(self, entry_ids: list[str]) -> int:
        numeric_ids = [int(i) for i in entry_ids if str(i).isdigit()]
        if not numeric_ids:
            return 0
        async with async_session_factory() as session:
            result = await session.execute(
                delete(KnowledgeEntry).where(KnowledgeEntry.id.in_(numeric_ids))
            )
            await session.commit()
        return result.rowcount or 0


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaKnowledgeStore:
    """
    ChromaDB-backed knowledge store.

    In-process by default; set CHROMA_URL for client/server mode.
    Cosine space matches the pgvector backend's similarity scale.
    """

    def __init__(self, collection_name: str = "payroll_knowledge") -> None:
        if settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        else:
            self._client = chromadb.Client()

        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def add_entries(
        self,
        contents: list[str],
        embeddings: list[list[float]],
        category: str,
        source: str | None,
        metadatas: list[dict],
    ) -> list[str]:
        ids = [f"kb-{uuid.uuid4().hex}" for _ in contents]
        enriched = [
            _sanitise_chroma_metadata(
                {**meta, "category": category, "source": source}
            )
            for meta in metadatas
        ]
        self._collection.add(
            ids=ids,
            documents=contents,
            embeddings=embeddings,
            metadatas=enriched,
        )
        logger.info(
            "Stored %d knowledge entries (category=%s) in ChromaDB",
            len(ids), category,
        )
        return ids

    async def search(
        self,
        query_embedding: list[float],
        top_k: int = 5,
        category: str | None = None,
    ) -> list[KnowledgeSearchResult]:

        def _sync_search() -> list[KnowledgeSearchResult]:
            results = self._collection.query(
                query_embeddings=[query_embedding],
                n_results=top_k,
                where={"category": category} if category else None,
                include=["documents", "metadatas", "distances"],
            )

            hits: list[KnowledgeSearchResult] = []
            if not (results and results["ids"] and results["ids"][0]):
                return hits

            for i, chroma_id in enumerate(results["ids"][0]):
                distance = (
                    results["distances"][0][i] if results["distances"] else 0.0
                )
                metadata = (
                    results["metadatas"][0][i] if results["metadatas"] else {}
                ) or {}
                content = (
                    results["documents"][0][i] if results["documents"] else ""
                )
                hits.append(KnowledgeSearchResult(
                    entry_id=chroma_id,
                    content=content,
                    category=metadata.get("category", ""),
                    source=metadata.get("source") or None,
                    similarity_score=round(1.0 - distance, 4),
                    metadata=metadata,
                ))
            return hits

        return await asyncio.to_thread(_sync_search)

    async def delete(self, entry_ids: list[str]) -> int:

        def _sync_delete() -> int:
            existing = self._collection.get(ids=list(entry_ids))
            found = existing["ids"] if existing else []
            if found:
                self._collection.delete(ids=found)
            return len(found)

        return await asyncio.to_thread(_sync_delete)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_chroma_store: ChromaKnowledgeStore | None = None


def get_knowledge_store(
    override_type: str | None = None,
) -> PgVectorKnowledgeStore | ChromaKnowledgeStore:
    """
    Return the configured knowledge store backend.

    The Chroma store is cached so the in-process collection survives
    between requests.
    """
    global _chroma_store
    store_type = override_type or settings.vectorstore_type

    if store_type == "chroma":
        if _chroma_store is None:
            _chroma_store = ChromaKnowledgeStore()
        return _chroma_store

    return PgVectorKnowledgeStore()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def add_to_knowledge_base(
    content: str,
    category: str,
    metadata: dict | None = None,
    source: str | None = "manual",
    store: KnowledgeStore | None = None,
) -> list[str]:
    """
    Chunk, embed and store a piece of reference text.

    Sync: call it directly from Celery, via asyncio.to_thread() from FastAPI.

    Args:
        content: The text to add.
        category: Knowledge category used to scope searches.
        metadata: Extra metadata copied onto every chunk.
        source: Where the text came from (file name, URL, "manual").
        store: Optional store override.

    Returns:
        The ids of the stored entries, one per chunk.

    Raises:
        ValueError: If the content is empty or no embedding key is configured.
    """
    chunks = chunk_text(content, max_chars=settings.knowledge_chunk_max_chars)
    if not chunks:
        raise ValueError("Content is empty; nothing to add to the knowledge base")

    embeddings = embed_batch([c.content for c in chunks])
    metadatas = [
        {
            **(metadata or {}),
            "chunk_index": c.chunk_index,
            "token_count": c.token_count,
        }
        for c in chunks
    ]

    target = store or get_knowledge_store()
    return target.add_entries(
        contents=[c.content for c in chunks],
        embeddings=embeddings,
        category=category,
        source=source,
        metadatas=metadatas,
    )


async def search_knowledge_base(
    query: str,
    category: str | None = None,
    limit: int | None = None,
    threshold: float | None = None,
    store: KnowledgeStore | None = None,
) -> list[KnowledgeSearchResult]:
    """
    Return entries similar to `query`, filtered by a similarity threshold.

    Args:
        query: Natural-language query.
        category: Optional category filter.
        limit: Maximum results (default settings.knowledge_top_k, 5).
        threshold: Minimum similarity (default 0.7).
        store: Optional store override.
    """
    top_k = limit or settings.knowledge_top_k
    min_score = (
        settings.knowledge_similarity_threshold if threshold is None
        else threshold
    )

    embedding = await asyncio.to_thread(embed_query, query)
    target = store or get_knowledge_store()
    results = await target.search(
        query_embedding=embedding, top_k=top_k, category=category,
    )

    filtered = [r for r in results if r.similarity_score >= min_score]
    filtered.sort(key=lambda r: r.similarity_score, reverse=True)

    logger.info(
        "Knowledge search: %d/%d hits above %.2f (category=%s)",
        len(filtered), len(results), min_score, category,
    )
    return filtered


async def delete_entries(
    entry_ids: list[str],
    store: KnowledgeStore | None = None,
) -> int:
    """Delete entries by id; returns the number removed."""
    if not entry_ids:
        return 0
    target = store or get_knowledge_store()
    deleted = await target.delete(entry_ids)
    logger.info("Deleted %d of %d knowledge entries", deleted, len(entry_ids))
    return deleted


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    ChromaDB metadata values must be str, int, float or bool.

    - list → comma-separated string
    - None → empty string
    - anything else → str()
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
