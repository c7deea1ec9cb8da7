# =============================================================================
# Unit Tests — Knowledge Base (ChromaDB backend + public helpers)
# =============================================================================
#
# ChromaDB runs in-process; embeddings are hand-written 3-d vectors so no
# embedding API is needed. pgvector is only exercised where it needs no
# database.
# =============================================================================

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from payrollpro.services import knowledge
from payrollpro.services.knowledge import (
    ChromaKnowledgeStore,
    KnowledgeSearchResult,
    PgVectorKnowledgeStore,
    _sanitise_chroma_metadata,
    add_to_knowledge_base,
    delete_entries,
    search_knowledge_base,
)


def _run(coro):
    return asyncio.run(coro)


class TestChromaKnowledgeStore:
    """Tests for ChromaKnowledgeStore (in-process mode)."""

    _test_counter = 0

    def _make_store(self) -> ChromaKnowledgeStore:
        # Unique collection per test; the in-process client is shared
        TestChromaKnowledgeStore._test_counter += 1
        return ChromaKnowledgeStore(
            collection_name=f"test_knowledge_{TestChromaKnowledgeStore._test_counter}"
        )

    def _seed(self, store: ChromaKnowledgeStore) -> list[str]:
        ids = store.add_entries(
            contents=["FICA is 7.65% of wages", "Mileage is deductible"],
            embeddings=[[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]],
            category="tax",
            source="irs-guide.pdf",
            metadatas=[{"chunk_index": 0}, {"chunk_index": 1}],
        )
        store.add_entries(
            contents=["Form 941 is due quarterly"],
            embeddings=[[0.9, 0.1, 0.0]],
            category="compliance",
            source=None,
            metadatas=[{"chunk_index": 0}],
        )
        return ids

    def test_add_returns_prefixed_ids(self):
        ids = self._seed(self._make_store())
        assert len(ids) == 2
        assert all(i.startswith("kb-") for i in ids)

    def test_search_orders_by_similarity(self):
        store = self._make_store()
        self._seed(store)

        results = _run(store.search(query_embedding=[1.0, 0.0, 0.0], top_k=3))

        assert all(isinstance(r, KnowledgeSearchResult) for r in results)
        assert results[0].content == "FICA is 7.65% of wages"
        assert results[0].similarity_score == pytest.approx(1.0, abs=1e-3)
        assert results[0].category == "tax"
        assert results[0].source == "irs-guide.pdf"
        scores = [r.similarity_score for r in results]
        assert scores == sorted(scores, reverse=True)

    def test_search_filters_by_category(self):
        store = self._make_store()
        self._seed(store)

        results = _run(store.search([1.0, 0.0, 0.0], top_k=5, category="compliance"))

        assert [r.content for r in results] == ["Form 941 is due quarterly"]
        assert results[0].source is None

    def test_delete_counts_only_existing(self):
        store = self._make_store()
        ids = self._seed(store)

        assert _run(store.delete([ids[0], "kb-missing"])) == 1
        remaining = _run(store.search([1.0, 0.0, 0.0], top_k=5, category="tax"))
        assert [r.entry_id for r in remaining] == [ids[1]]


class TestMetadataSanitisation:
    def test_values_coerced(self):
        assert _sanitise_chroma_metadata({
            "tags": ["w2", "fica"],
            "source": None,
            "page": 3,
            "score": 0.5,
            "ok": True,
            "when": object,
        }) == {
            "tags": "w2,fica",
            "source": "",
            "page": 3,
            "score": 0.5,
            "ok": True,
            "when": str(object),
        }


class TestAddToKnowledgeBase:
    def test_chunks_embedded_and_stored(self):
        store = MagicMock()
        store.add_entries.return_value = ["kb-1"]
        with patch.object(knowledge, "embed_batch", return_value=[[0.1, 0.2]]) as embed:
            ids = add_to_knowledge_base(
                "Overtime is paid at 1.5x.", "payroll",
                metadata={"title": "Overtime"}, source="handbook", store=store,
            )

        assert ids == ["kb-1"]
        embed.assert_called_once_with(["Overtime is paid at 1.5x."])
        kwargs = store.add_entries.call_args.kwargs
        assert kwargs["category"] == "payroll"
        assert kwargs["source"] == "handbook"
        meta = kwargs["metadatas"][0]
        assert meta["title"] == "Overtime"
        assert meta["chunk_index"] == 0
        assert meta["token_count"] > 0

    def test_empty_content_rejected(self):
        with pytest.raises(ValueError, match="empty"):
            add_to_knowledge_base("   ", "payroll", store=MagicMock())


class TestSearchKnowledgeBase:
    def _hit(self, entry_id, score):
        return KnowledgeSearchResult(
            entry_id=entry_id, content=entry_id, category="tax", source=None,
            similarity_score=score,
        )

    def test_threshold_and_ordering(self):
        store = MagicMock()
        store.search = AsyncMock(return_value=[
            self._hit("a", 0.75), self._hit("b", 0.5), self._hit("c", 0.9),
        ])
        with patch.object(knowledge, "embed_query", return_value=[0.1]):
            results = _run(search_knowledge_base("fica", category="tax", store=store))

        assert [r.entry_id for r in results] == ["c", "a"]
        store.search.assert_awaited_once_with(
            query_embedding=[0.1], top_k=5, category="tax",
        )

    def test_explicit_limit_and_threshold(self):
        store = MagicMock()
        store.search = AsyncMock(return_value=[self._hit("b", 0.5)])
        with patch.object(knowledge, "embed_query", return_value=[0.1]):
            results = _run(search_knowledge_base("fica", limit=2, threshold=0.4, store=store))

        assert [r.entry_id for r in results] == ["b"]
        assert store.search.call_args.kwargs["top_k"] == 2


class TestDelete:
    def test_no_ids_skips_store(self):
        store = MagicMock()
        assert _run(delete_entries([], store=store)) == 0
        store.delete.assert_not_called()

    def test_pgvector_ignores_non_numeric_ids(self):
        assert _run(PgVectorKnowledgeStore().delete(["kb-abc"])) == 0
