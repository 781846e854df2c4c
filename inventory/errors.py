"""
inventory/errors.py -- Error taxonomy for the resolution engine.

Each class carries the HTTP status and machine-readable code the api/ layer
renders, so route handlers never translate engine errors one by one.

"Not found" is deliberately absent: lookups return None or an empty list and
callers branch on that.
"""

from typing import Optional


class InventoryError(Exception):
    """Base class for all engine errors."""

    status_code: int = 500
    error_code: str = "inventory_error"
    message: str = "Inventory operation failed."

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class MalformedInputError(InventoryError):
    """Structurally invalid indicator or search document. Raised before any store access."""

    status_code = 400
    error_code = "malformed_input"
    message = "Document malformed."


class EntityValidationError(InventoryError):
    """A resolved or constructed entity breaks a domain invariant."""

    error_code = "validation_failed"
    message = "Entity failed validation."


class StoreError(InventoryError):
    """Any persistence failure. The originating SQLAlchemy error is chained as __cause__."""

    error_code = "store_error"
    message = "Record store operation failed."


class BatchAbortedError(InventoryError):
    """A search batch entry failed; the whole batch was rolled back."""

    error_code = "search_failed"
    message = "Search batch aborted."

    def __init__(self, identifier: str, reason: str) -> None:
        self.identifier = identifier
        super().__init__(f"Search {identifier!r} failed; batch rolled back.", detail=reason)
