# =============================================================================
# Services Package — Business Logic
# =============================================================================
#   - llm.py: Multi-provider LLM abstraction with retries + circuit breaker
#   - embedder.py: OpenAI embedding generation (batch processing)
#   - chunker.py: Paragraph/sentence chunking with tiktoken token counts
#   - parser.py: Text extraction for knowledge uploads (Docling, pandas)
#   - knowledge.py: Pluggable knowledge store (pgvector, Chroma)
#   - web_search.py: SerpAPI search + page extraction with a DB cache
#   - payroll.py: Pay calculations, tax tables, statistics
#   - documents.py: Invoice/estimate totals and numbering
#   - csv_import.py: Employee CSV parsing, preview and validation
#   - compliance.py / expenses.py: Reference registries for the agents
#   - auth.py / rate_limiter.py / pricing.py: API keys, limits, cost
# =============================================================================
