"""
inventory/hosts.py -- Tiered host name resolution and dynamic host admission.

resolve_host() tries, in order, stopping at the first tier that finds a
system group:

  1. exact   -- host rows whose lower(hostname) equals the query
  2. admit   -- not a lookup: a confident miss registers a dynamic host
  3. pattern -- hostmatch regular expressions, case-insensitive search

A host row that exists but carries no system group (the usual state of a
dynamic host) does not resolve in tier 1, so such hosts fall through to the
pattern tier.

When several groups match in one tier the lowest sysgroupid wins, so the
same inventory always yields the same answer.
"""

import logging
import re
from typing import Optional

from sqlalchemy import func, select

from inventory.models import RRAService, Service, SystemGroup
from inventory.store import (
    OpContext,
    host_table,
    hostmatch_table,
    now_iso,
    row_to_rra,
    row_to_sysgroup,
    rra_sysgroup_table,
    rra_table,
    sysgroup_table,
    techowner_table,
)

# Confidence is on a 0-100 scale; admission needs strictly more than this.
ADMISSION_CONFIDENCE_THRESHOLD = 50


def service_lookup(op: OpContext, sysgroup_id: int) -> list[RRAService]:
    """Return the RRA services linked to a system group, ordered by ID."""
    linked = select(rra_sysgroup_table.c.rraid).where(rra_sysgroup_table.c.sysgroupid == sysgroup_id)
    rows = op.rows(select(rra_table).where(rra_table.c.rraid.in_(linked)).order_by(rra_table.c.rraid))
    return [row_to_rra(r) for r in rows]


def _merge_system_groups(op: OpContext, service: Service, groups: list[SystemGroup]) -> None:
    if not groups:
        return
    service.found = True
    service.system_group = groups[0]
    service.services = service_lookup(op, groups[0].id)


def _groups_by_id(op: OpContext, sysgroup_ids) -> list[SystemGroup]:
    rows = op.rows(
        select(sysgroup_table)
        .where(sysgroup_table.c.sysgroupid.in_(sysgroup_ids))
        .order_by(sysgroup_table.c.sysgroupid)
    )
    return [row_to_sysgroup(r) for r in rows]


def update_last_used(op: OpContext, hostname: str) -> int:
    """Refresh lastused on every row for hostname. Returns the number of rows touched."""
    return op.execute(
        host_table.update().where(func.lower(host_table.c.hostname) == hostname.lower()).values(lastused=now_iso())
    )


def search_using_host(op: OpContext, hostname: str, keepalive: bool = True) -> Service:
    """Exact tier. hostname must already be lower-cased."""
    service = Service()
    if keepalive:
        update_last_used(op, hostname)
    group_ids = (
        select(host_table.c.sysgroupid)
        .where((func.lower(host_table.c.hostname) == hostname) & host_table.c.sysgroupid.isnot(None))
        .distinct()
    )
    _merge_system_groups(op, service, _groups_by_id(op, group_ids))
    if not service.found:
        return service

    # Host-level extensions. Outer join: a host without a tech owner still matches.
    row = op.first(
        select(host_table.c.requiretcw, techowner_table.c.techowner)
        .select_from(host_table.outerjoin(techowner_table, host_table.c.techownerid == techowner_table.c.techownerid))
        .where(func.lower(host_table.c.hostname) == hostname)
        .order_by(host_table.c.hostid)
    )
    if row is not None:
        service.tcw = bool(row.requiretcw) if row.requiretcw is not None else False
        service.tech_owner = row.techowner or ""
    return service


def search_using_host_match(op: OpContext, hostname: str) -> Service:
    """Pattern tier. Every rule is evaluated; the lowest matching group wins.

    Expressions use re.search semantics (unanchored) with IGNORECASE. A rule
    that does not compile is skipped and logged rather than failing the lookup.
    """
    service = Service()
    rules = op.rows(
        select(hostmatch_table.c.hostmatchid, hostmatch_table.c.expression, hostmatch_table.c.sysgroupid).order_by(
            hostmatch_table.c.hostmatchid
        )
    )
    matched: set[int] = set()
    for rule in rules:
        try:
            pattern = re.compile(rule.expression, re.IGNORECASE)
        except re.error as exc:
            op.log("skipping hostmatch %s, bad expression: %s", rule.hostmatchid, exc, level=logging.WARNING)
            continue
        if pattern.search(hostname):
            matched.add(rule.sysgroupid)
    if matched:
        _merge_system_groups(op, service, _groups_by_id(op, sorted(matched)))
    return service


def register_dynamic_candidate(op: OpContext, hostname: str, confidence: int) -> bool:
    """Admit hostname as a dynamic host unless any row (static or dynamic) holds it.

    Idempotent: the unique index on lower(hostname) turns a second admission
    into a no-op. Returns True only when a row was inserted.
    """
    now = now_iso()
    host_id = op.insert_if_absent(
        host_table,
        {
            "hostname": hostname,
            "comment": f"dynamic entry for {hostname}",
            "dynamic": True,
            "dynamic_confidence": confidence,
            "dynamic_added": now,
            "lastused": now,
        },
    )
    if host_id is None:
        return False
    op.log("registered dynamic host %s (confidence %d, id %s)", hostname, confidence, host_id)
    return True


def resolve_host(op: OpContext, hostname: str, confidence: int, keepalive: bool = True) -> Service:
    """Resolve a host name to a system group and its risk assessments.

    keepalive=False skips the lastused refresh; listing paths use it so that
    looking at a host does not keep a dynamic entry alive.
    """
    hostname = hostname.lower()
    service = search_using_host(op, hostname, keepalive=keepalive)
    if service.found:
        return service
    if confidence > ADMISSION_CONFIDENCE_THRESHOLD:
        register_dynamic_candidate(op, hostname, confidence)
    return search_using_host_match(op, hostname)


def implied_sysgroup_id(op: OpContext, hostname: str) -> Optional[int]:
    """System group the tiered matcher would give hostname, without side effects."""
    service = resolve_host(op, hostname, confidence=0, keepalive=False)
    return service.system_group.id if service.found else None
