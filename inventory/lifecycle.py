"""
inventory/lifecycle.py -- Expiry of dynamic hosts that fell out of use.

Admission lives in inventory/hosts.py (register_dynamic_candidate). This
module removes the other end: dynamic hosts whose lastused is older than
DYNAMIC_HOST_RETENTION, together with their compliance score rows.

Each host is deleted in its own transaction, compscore rows first. A failure
stops the sweep; hosts already removed stay removed and the next sweep picks
up the remainder.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select, true

from inventory.store import InventoryStore, OpContext, compscore_table, host_table, to_iso

logger = logging.getLogger("servicemap.lifecycle")

DYNAMIC_HOST_RETENTION = timedelta(days=7)

_SWEEP_CLIENT = "dynhostmanager"


def _expired_clause(cutoff: str):
    return (host_table.c.dynamic == true()) & (host_table.c.lastused < cutoff)


def expired_dynamic_hosts(op: OpContext, cutoff: str) -> list[int]:
    """Return IDs of dynamic hosts last used before cutoff, oldest ID first."""
    rows = op.rows(select(host_table.c.hostid).where(_expired_clause(cutoff)).order_by(host_table.c.hostid))
    return [r.hostid for r in rows]


def delete_dynamic_host(op: OpContext, host_id: int, cutoff: str) -> bool:
    """Delete one expired dynamic host and its compliance scores.

    Re-checks expiry first, so a host that was used again since it was
    selected survives. Returns False if nothing was deleted.
    """
    still_expired = op.scalar(
        select(func.count()).select_from(host_table).where((host_table.c.hostid == host_id) & _expired_clause(cutoff))
    )
    if not still_expired:
        return False
    op.execute(compscore_table.delete().where(compscore_table.c.hostid == host_id))
    op.execute(host_table.delete().where(host_table.c.hostid == host_id))
    return True


def expire_dynamic_hosts(store: InventoryStore, now: Optional[datetime] = None) -> int:
    """Remove dynamic hosts unused for DYNAMIC_HOST_RETENTION. Returns the number removed.

    Store failures propagate (as StoreError) after the current host's
    transaction is rolled back.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = to_iso(now - DYNAMIC_HOST_RETENTION)
    with store.operation(remote_host=_SWEEP_CLIENT) as op:
        host_ids = expired_dynamic_hosts(op, cutoff)

    removed = 0
    for host_id in host_ids:
        with store.operation(use_transaction=True, remote_host=_SWEEP_CLIENT) as op:
            if delete_dynamic_host(op, host_id, cutoff):
                op.log("expired dynamic host %s", host_id)
                removed += 1
    return removed


def run_sweep(store: InventoryStore) -> Optional[int]:
    """Task-boundary wrapper for the periodic sweep.

    Logs and absorbs any failure so the scheduling loop keeps running; the
    next tick retries. Returns the number of hosts removed, or None on failure.
    """
    try:
        removed = expire_dynamic_hosts(store)
    except Exception:
        logger.exception("error in dynamic host manager")
        return None
    if removed:
        logger.info("dynamic host sweep removed %d host(s)", removed)
    return removed
