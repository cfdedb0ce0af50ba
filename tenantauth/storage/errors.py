from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for persistence failures surfaced to the service layer."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """A uniqueness constraint (duplicate email, duplicate provider link) was hit."""


class RecordNotFound(StoreError):
    """An update or link targeted a row that does not exist."""


__all__ = ["StoreError", "ConstraintViolation", "RecordNotFound"]
