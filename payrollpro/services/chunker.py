# =============================================================================
# Knowledge Chunker — Paragraph/Sentence Splitting with tiktoken Counts
# =============================================================================
#
# Splits reference material (tax guides, policy documents, uploaded files)
# into chunks for embedding.
#
# ALGORITHM:
# 1. Split on blank lines into paragraphs.
# 2. Greedily pack paragraphs into a chunk while it stays <= max_chars.
# 3. A paragraph longer than max_chars is split into sentences, which are
#    packed the same way.
# 4. A single sentence longer than max_chars is hard-cut at max_chars.
#
# Each chunk carries its exact token count (cl100k_base, the encoding of
# text-embedding-3-small) so ingestion can log and store it.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import tiktoken

logger = logging.getLogger(__name__)

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
# Split after ., ! or ? followed by whitespace
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


@dataclass
class TextChunk:
    """A chunk ready for embedding and storage."""

    content: str
    chunk_index: int    # 0-indexed position within the source text
    token_count: int    # Exact count from tiktoken


_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def count_tokens(text: str) -> int:
    return len(_get_encoder().encode(text))


def chunk_text(text: str, max_chars: int = 4000) -> list[TextChunk]:
    """
    Split text into chunks of at most `max_chars` characters.

    Paragraph boundaries are preferred, then sentence boundaries. Empty or
    whitespace-only input yields no chunks.

    Args:
        text: The full text to split.
        max_chars: Maximum characters per chunk (default 4000).

    Returns:
        List of TextChunk in document order.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")

    pieces: list[str] = []
    current = ""

    for paragraph in _PARAGRAPH_SPLIT.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue

        if len(paragraph) > max_chars:
            # Flush what we have, then pack this paragraph by sentences
            if current:
                pieces.append(current)
                current = ""
            pieces.extend(_split_long_paragraph(paragraph, max_chars))
            continue

        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= max_chars:
            current = candidate
        else:
            pieces.append(current)
            current = paragraph

    if current:
        pieces.append(current)

    chunks = [
        TextChunk(content=piece, chunk_index=i, token_count=count_tokens(piece))
        for i, piece in enumerate(pieces)
    ]

    logger.info(
        "Chunked %d chars into %d chunks (max_chars=%d)",
        len(text), len(chunks), max_chars,
    )
    return chunks


def _split_long_paragraph(paragraph: str, max_chars: int) -> list[str]:
    """Pack the sentences of an oversized paragraph into <= max_chars pieces."""
    pieces: list[str] = []
    current = ""

    for sentence in _SENTENCE_SPLIT.split(paragraph):
        sentence = sentence.strip()
        if not sentence:
            continue

        # A run-on sentence with no usable boundary: hard cut
        while len(sentence) > max_chars:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(sentence[:max_chars])
            sentence = sentence[max_chars:].lstrip()
        if not sentence:
            continue

        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_chars:
            current = candidate
        else:
            pieces.append(current)
            current = sentence

    if current:
        pieces.append(current)
    return pieces
