from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key constraint is violated.

    ``detail["field"]`` names the colliding column when the backend can tell.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The datastore timed out or refused the connection.

    Recoverable: callers may retry the whole operation.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"datastore unavailable during {operation}")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailable"]
