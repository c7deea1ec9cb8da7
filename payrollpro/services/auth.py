# =============================================================================
# Auth Service — API Key Generation, Hashing, Scopes
# =============================================================================
#
# Pure functions used by the auth dependency, the /admin endpoints and tests.
# No FastAPI imports.
#
# Keys are "pp-" + 64 hex chars (256 bits of entropy). Only the SHA-256 hex
# digest is stored; the raw key is shown once, at creation.
#
# SCOPES:
#   Each router requires one scope. A key with no scopes (NULL) may call
#   every non-admin router; "admin" must always be granted explicitly.
# =============================================================================

from __future__ import annotations

import hashlib
import secrets

KEY_PREFIX = "pp-"

SCOPES = ("agents", "knowledge", "employees", "documents", "payroll", "admin")


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        (raw_key, key_prefix, key_hash):
        - raw_key: Full key to return to the caller (only visible once)
        - key_prefix: First 10 chars, for identification in logs and admin
        - key_hash: SHA-256 hex digest stored in the database
    """
    raw_key = f"{KEY_PREFIX}{secrets.token_hex(32)}"
    return raw_key, raw_key[:10], hash_api_key(raw_key)


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hex digest (64 chars) of a raw key."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


def validate_scopes(scopes: list[str] | None) -> list[str] | None:
    """
    Normalise a requested scope list.

    Raises:
        ValueError: If any scope is unknown.
    """
    if scopes is None:
        return None
    unknown = sorted(set(scopes) - set(SCOPES))
    if unknown:
        raise ValueError(
            f"Unknown scopes: {', '.join(unknown)}. "
            f"Valid scopes: {', '.join(SCOPES)}"
        )
    return sorted(set(scopes))


def has_scope(granted: list[str] | None, required: str) -> bool:
    if granted is None:
        return required != "admin"
    return required in granted
