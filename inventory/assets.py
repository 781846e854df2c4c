"""
inventory/assets.py -- Asset resolution and indicator ingestion.

Pipeline for one inbound indicator:
  RawIndicator -> validate_raw_indicator() -> resolve_or_create_asset()
  -> validate_asset() -> INSERT indicator -> advance asset.lastindicator

Indicators are append-only. Nothing here updates or deletes an indicator row;
the "current" view is computed on read by aggregate_indicators().
"""

import json
from typing import Optional

from sqlalchemy import func, select

from inventory.errors import MalformedInputError, StoreError
from inventory.models import Asset, Indicator, Owner, RawIndicator
from inventory.store import (
    OpContext,
    asset_table,
    assetowner_table,
    indicator_table,
    row_to_indicator,
    row_to_owner,
    to_iso,
)
from inventory.validation import validate_asset, validate_raw_indicator


def get_asset(op: OpContext, asset_id: int) -> Optional[Asset]:
    """Load an asset with owner, triage override and current indicators.

    Returns None if asset_id does not exist.
    """
    row = op.first(select(asset_table).where(asset_table.c.assetid == asset_id))
    if row is None:
        return None
    asset = Asset(
        id=row.assetid,
        type=row.assettype,
        name=row.name,
        zone=row.zone,
        asset_group_id=row.assetgroupid,
        last_indicator=row.lastindicator,
    )
    if row.ownerid is not None:
        owner_row = op.first(select(assetowner_table).where(assetowner_table.c.ownerid == row.ownerid))
        if owner_row is not None:
            asset.owner = row_to_owner(owner_row)
    if row.triageoverride is not None:
        if asset.owner is None:
            asset.owner = Owner()
        asset.owner.triage_key = row.triageoverride
    asset.indicators = aggregate_indicators(op, asset.id)
    return asset


def aggregate_indicators(op: OpContext, asset_id: int) -> list[Indicator]:
    """Return the newest indicator per event source for an asset.

    The max-timestamp row per source is selected in SQL, so the result size
    depends on the number of sources, not on history. Two rows for the same
    source with the same timestamp resolve to the one inserted last.
    Ordered by event source.
    """
    latest = (
        select(
            indicator_table.c.event_source,
            func.max(indicator_table.c.timestamp).label("latest"),
        )
        .where(indicator_table.c.assetid == asset_id)
        .group_by(indicator_table.c.event_source)
        .subquery()
    )
    stmt = (
        select(indicator_table)
        .join(
            latest,
            (indicator_table.c.event_source == latest.c.event_source)
            & (indicator_table.c.timestamp == latest.c.latest),
        )
        .where(indicator_table.c.assetid == asset_id)
        .order_by(indicator_table.c.event_source, indicator_table.c.indicatorid.desc())
    )
    current: list[Indicator] = []
    seen: set[str] = set()
    for row in op.rows(stmt):
        if row.event_source in seen:
            continue
        seen.add(row.event_source)
        current.append(row_to_indicator(row))
    return current


def _find_asset_id(op: OpContext, indicator: RawIndicator) -> Optional[int]:
    return op.scalar(
        select(asset_table.c.assetid).where(
            (asset_table.c.assettype == indicator.type)
            & (asset_table.c.name == indicator.name)
            & (asset_table.c.zone == indicator.zone)
        )
    )


def resolve_or_create_asset(op: OpContext, indicator: RawIndicator) -> Asset:
    """Return the asset keyed by the indicator's (type, name, zone), creating it if needed.

    A new asset is seeded with the indicator timestamp as its last indicator.
    Creation is insert-if-absent on the unique key, so two concurrent ingests
    for the same new key still produce one asset: the loser gets None back
    from the insert and reloads the winner's row.
    """
    asset_id = _find_asset_id(op, indicator)
    if asset_id is not None:
        op.log("making use of existing asset id %s", asset_id)
    else:
        asset_id = op.insert_if_absent(
            asset_table,
            {
                "assettype": indicator.type,
                "name": indicator.name,
                "zone": indicator.zone,
                "lastindicator": to_iso(indicator.timestamp),
            },
        )
        if asset_id is None:
            asset_id = _find_asset_id(op, indicator)
            op.log("asset key %s/%s/%s already claimed, reloaded id %s", indicator.name, indicator.type, indicator.zone, asset_id)
        else:
            op.log("created new asset for %s/%s/%s (%s)", indicator.name, indicator.type, indicator.zone, asset_id)
    if asset_id is None:
        raise StoreError(detail=f"asset {indicator.type}/{indicator.name}/{indicator.zone} vanished after insert")
    asset = get_asset(op, asset_id)
    if asset is None:
        raise StoreError(detail=f"asset {asset_id} vanished after lookup")
    return asset


def ingest_indicator(op: OpContext, raw: RawIndicator) -> Asset:
    """Record one indicator against its asset and return the refreshed asset.

    Raises MalformedInputError before touching the store if the document is
    invalid, EntityValidationError if the resolved asset is inconsistent, and
    StoreError on persistence failures. Run it inside a transactional
    OpContext so asset creation, the indicator row and the timestamp update
    commit together.
    """
    validate_raw_indicator(raw)
    try:
        details = json.dumps(raw.details)
    except (TypeError, ValueError) as exc:
        raise MalformedInputError("details is not JSON-serializable.", detail=str(exc)) from exc
    timestamp = to_iso(raw.timestamp)

    asset = resolve_or_create_asset(op, raw)
    validate_asset(asset)

    op.log("adding new indicator for asset %s (%s)", asset.id, raw.event_source)
    op.insert(
        indicator_table.insert().values(
            timestamp=timestamp,
            event_source=raw.event_source,
            likelihood_indicator=raw.likelihood,
            assetid=asset.id,
            details=details,
        )
    )
    op.execute(
        asset_table.update()
        .where((asset_table.c.assetid == asset.id) & (asset_table.c.lastindicator < timestamp))
        .values(lastindicator=timestamp)
    )
    return get_asset(op, asset.id)
