"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations


def normalize_email(email: str) -> str:
    """Canonical form used for lookups and storage: trimmed and lower-cased."""
    return (email or "").strip().lower()
