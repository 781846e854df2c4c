"""
inventory/validation.py -- Structural and domain checks for engine inputs.

validate_raw_indicator runs before any store access; a failure is malformed
input (the publisher sent a bad document). validate_asset runs on an asset
the engine just resolved; a failure there means stored data is inconsistent.
"""

from inventory.errors import EntityValidationError, MalformedInputError
from inventory.models import Asset, RawIndicator, Search
from inventory.store import to_iso

# Upper bounds match the column sizes in inventory/store.py.
_MAX_TYPE = 100
_MAX_NAME = 255
_MAX_ZONE = 100
_MAX_SOURCE = 255


def _require_text(value, field: str, limit: int, error=MalformedInputError) -> None:
    if not isinstance(value, str) or not value.strip():
        raise error(f"{field} must be a non-empty string.")
    if len(value) > limit:
        raise error(f"{field} exceeds {limit} characters.")


def validate_raw_indicator(indicator: RawIndicator) -> None:
    """Reject an indicator that is missing identity, source or a usable timestamp.

    Raises MalformedInputError. The timestamp must parse as ISO 8601; the
    likelihood must be a non-negative integer (booleans are rejected even
    though bool subclasses int).
    """
    _require_text(indicator.type, "type", _MAX_TYPE)
    _require_text(indicator.name, "name", _MAX_NAME)
    _require_text(indicator.zone, "zone", _MAX_ZONE)
    _require_text(indicator.event_source, "event_source", _MAX_SOURCE)
    if not isinstance(indicator.timestamp, str) or not indicator.timestamp.strip():
        raise MalformedInputError("timestamp must be an ISO 8601 string.")
    try:
        to_iso(indicator.timestamp)
    except ValueError:
        raise MalformedInputError(f"timestamp {indicator.timestamp[:40]!r} is not ISO 8601.") from None
    if isinstance(indicator.likelihood, bool) or not isinstance(indicator.likelihood, int):
        raise MalformedInputError("likelihood must be an integer.")
    if indicator.likelihood < 0:
        raise MalformedInputError("likelihood must not be negative.")


def validate_asset(asset: Asset) -> None:
    """Check that a resolved asset carries its identity and a database ID.

    Raises EntityValidationError.
    """
    if asset.id is None:
        raise EntityValidationError("asset has no identifier")
    _require_text(asset.type, "asset type", _MAX_TYPE, EntityValidationError)
    _require_text(asset.name, "asset name", _MAX_NAME, EntityValidationError)
    _require_text(asset.zone, "asset zone", _MAX_ZONE, EntityValidationError)
    if not asset.last_indicator:
        raise EntityValidationError(f"asset {asset.id} has no last indicator timestamp")


def validate_search(search: Search) -> None:
    """A search must name a client identifier; criteria are checked at dispatch."""
    if not isinstance(search.identifier, str) or not search.identifier:
        raise MalformedInputError("search identifier must be a non-empty string.")
    if isinstance(search.confidence, bool) or not isinstance(search.confidence, int):
        raise MalformedInputError("search confidence must be an integer.")
