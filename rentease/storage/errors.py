from __future__ import annotations

from typing import Any, Dict, Optional

# duplicate_prepared_statement
DUPLICATE_PREPARED_STATEMENT = "42P05"

_TRANSIENT_MARKERS = ("prepared statement", "already exists")


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


def is_transient_error(exc: BaseException) -> bool:
    """Return True for pooled-connection conflicts that clear after a reset.

    Poolers running in transaction mode can hand a backend that still holds a
    prepared statement from another client; the next statement then fails
    with SQLSTATE 42P05 or an "already exists" message.
    """
    if isinstance(exc, ConstraintViolation):
        return False
    sqlstate = getattr(exc, "sqlstate", None) or getattr(exc, "code", None)
    if sqlstate == DUPLICATE_PREPARED_STATEMENT:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


__all__ = ["ConstraintViolation", "DUPLICATE_PREPARED_STATEMENT", "is_transient_error"]
