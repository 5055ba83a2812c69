from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated.

    ``detail`` names what collided, e.g. ``{"field": "email"}`` or
    ``{"constraint": "admin_bootstrap"}``.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")

    @property
    def constraint(self) -> Optional[str]:
        return self.detail.get("constraint")


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached or its schema is missing."""


__all__ = ["ConstraintViolation", "StoreUnavailable"]
