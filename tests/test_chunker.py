# =============================================================================
# Unit Tests — Knowledge Chunker
# =============================================================================
#
# Tests the paragraph/sentence packing without external services.
# tiktoken is used for token counts only.
# =============================================================================

import pytest

from payrollpro.services.chunker import chunk_text, count_tokens


class TestChunkText:
    """Tests for chunk_text()."""

    def test_empty_text_returns_no_chunks(self):
        assert chunk_text("") == []
        assert chunk_text("  \n\n   \n") == []

    def test_short_text_is_one_chunk(self):
        chunks = chunk_text("Form 941 is filed quarterly.")
        assert len(chunks) == 1
        assert chunks[0].content == "Form 941 is filed quarterly."
        assert chunks[0].chunk_index == 0
        assert chunks[0].token_count == count_tokens("Form 941 is filed quarterly.")

    def test_paragraphs_packed_together(self):
        text = "First paragraph.\n\nSecond paragraph.\n\n\nThird paragraph."
        chunks = chunk_text(text, max_chars=40)
        assert [c.content for c in chunks] == [
            "First paragraph.\n\nSecond paragraph.",
            "Third paragraph.",
        ]

    def test_long_paragraph_split_on_sentences(self):
        paragraph = "Wages are taxable. Tips are taxable too. Gifts may not be."
        chunks = chunk_text(paragraph, max_chars=40)
        assert [c.content for c in chunks] == [
            "Wages are taxable. Tips are taxable too.",
            "Gifts may not be.",
        ]

    def test_run_on_sentence_hard_cut(self):
        chunks = chunk_text("x" * 25, max_chars=10)
        assert [c.content for c in chunks] == ["x" * 10, "x" * 10, "x" * 5]

    def test_pending_text_flushed_before_long_paragraph(self):
        text = "Intro.\n\n" + "A sentence here. " * 4
        chunks = chunk_text(text, max_chars=40)
        assert chunks[0].content == "Intro."
        assert all(len(c.content) <= 40 for c in chunks)

    def test_chunk_indices_are_sequential(self):
        chunks = chunk_text("Payroll taxes are withheld. " * 200, max_chars=200)
        assert len(chunks) > 1
        for i, chunk in enumerate(chunks):
            assert chunk.chunk_index == i
            assert len(chunk.content) <= 200

    def test_non_positive_max_chars_rejected(self):
        with pytest.raises(ValueError, match="positive"):
            chunk_text("text", max_chars=0)
