"""
api/routes/v1/indicators.py -- Indicator ingestion route.

  POST /indicator -- record one indicator against its asset, creating the
                     asset on first sight of its (type, name, zone) key

The whole ingestion runs in one transactional operation: asset creation, the
indicator row and the last-indicator update commit together or not at all.
"""

from fastapi import APIRouter, Request

from api.limiter import ingest_limit, limiter
from api.models import IndicatorCreate, IndicatorResponse
from inventory.assets import ingest_indicator
from inventory.models import RawIndicator
from inventory.store import InventoryStore

router = APIRouter()


@limiter.limit(ingest_limit)
@router.post("/indicator", response_model=IndicatorResponse)
def create_indicator(request: Request, body: IndicatorCreate) -> IndicatorResponse:
    """Ingest one indicator document and return the ID of the asset it landed on."""
    store: InventoryStore = request.app.state.store
    raw = RawIndicator(
        timestamp=body.timestamp,
        event_source=body.event_source,
        likelihood=body.likelihood,
        type=body.type,
        name=body.name,
        zone=body.zone,
        details=body.details,
    )
    remote = request.client.host if request.client else ""
    with store.operation(use_transaction=True, remote_host=remote) as op:
        asset = ingest_indicator(op, raw)
    return IndicatorResponse(asset_id=asset.id)
