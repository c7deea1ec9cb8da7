# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API, kept separate from the ORM models
# in payrollpro/db/models.py so embeddings and file paths never leak out.
# =============================================================================
