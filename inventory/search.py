"""
inventory/search.py -- Batch host searches with a read-once result mailbox.

  run_search_batch()  -- resolve every entry inside ONE transaction and park
                         each Service under (opid, identifier). All or nothing.
  fetch_results()     -- hand back everything parked under an opid and delete
                         it in the same statement. A second fetch gets [].
  match_hosts_by_substring() -- host listing that agrees with live resolution
                         for dynamic hosts.

The opid returned by run_search_batch is the operation context's own ID, so
clients poll with the same handle the server used in its logs.
"""

import json
import logging
from dataclasses import asdict

from sqlalchemy import func, select

from inventory.errors import BatchAbortedError, InventoryError, MalformedInputError, StoreError
from inventory.hosts import implied_sysgroup_id, resolve_host
from inventory.models import Host, RRAService, Search, SearchResult, Service, SystemGroup
from inventory.store import InventoryStore, OpContext, host_table, now_iso, row_to_host, searchresult_table
from inventory.validation import validate_search


def service_to_json(service: Service) -> str:
    return json.dumps(asdict(service))


def service_from_json(raw: str) -> Service:
    """Rebuild a Service from its stored JSON. Raises StoreError if the row is unreadable."""
    try:
        data = json.loads(raw)
        return Service(
            found=bool(data.get("found")),
            system_group=SystemGroup(**(data.get("system_group") or {})),
            services=[RRAService(**s) for s in data.get("services") or []],
            tech_owner=data.get("tech_owner") or "",
            tcw=bool(data.get("tcw")),
        )
    except (ValueError, TypeError, AttributeError) as exc:
        raise StoreError("Stored search result is unreadable.", detail=str(exc)) from exc


def run_search(op: OpContext, search: Search) -> Service:
    """Resolve one search entry and store its result under op.opid."""
    if search.host:
        service = resolve_host(op, search.host, search.confidence)
    else:
        raise MalformedInputError("a search did not specify any criteria")
    op.insert(
        searchresult_table.insert().values(
            opid=op.opid,
            identifier=search.identifier,
            result=service_to_json(service),
            timestamp=now_iso(),
        )
    )
    return service


def run_search_batch(store: InventoryStore, searches: list[Search], remote_host: str = "") -> str:
    """Run a batch of searches atomically and return the opaque batch ID.

    Entries are checked structurally before the transaction opens. If any
    entry fails during resolution or storage, the transaction is rolled back
    (dynamic host admissions included) and BatchAbortedError is raised.
    """
    for search in searches:
        validate_search(search)

    with store.operation(use_transaction=True, remote_host=remote_host) as op:
        for search in searches:
            try:
                run_search(op, search)
            except InventoryError as exc:
                op.log("search %r failed: %s", search.identifier, exc.detail or exc.message, level=logging.WARNING)
                raise BatchAbortedError(search.identifier, exc.detail or exc.message) from exc
    op.log("search batch committed (%d result(s))", len(searches))
    return op.opid


def fetch_results(op: OpContext, search_id: str) -> list[SearchResult]:
    """Return and purge all results stored under search_id, in submission order.

    Rows are removed with DELETE ... RETURNING, so two concurrent fetches
    cannot both receive the same result. Use a transactional OpContext: if a
    row fails to decode, the rollback puts every row back.
    """
    rows = op.rows(
        searchresult_table.delete()
        .where(searchresult_table.c.opid == search_id)
        .returning(
            searchresult_table.c.searchresultid,
            searchresult_table.c.identifier,
            searchresult_table.c.result,
        )
    )
    rows = sorted(rows, key=lambda r: r.searchresultid)
    results = [SearchResult(identifier=r.identifier, service=service_from_json(r.result)) for r in rows]
    if results:
        op.log("returned and purged %d result(s) for search %s", len(results), search_id)
    return results


def match_hosts_by_substring(op: OpContext, fragment: str) -> list[Host]:
    """Case-insensitive substring match over all host names, ordered by hostname.

    LIKE wildcards in fragment are matched literally. A dynamic host with no
    sysgroupid gets the group the tiered matcher would resolve for it now.
    """
    if not fragment:
        raise MalformedInputError("no search criteria specified")
    rows = op.rows(
        select(host_table)
        .where(func.lower(host_table.c.hostname).contains(fragment.lower(), autoescape=True))
        .order_by(host_table.c.hostname)
    )
    hosts: list[Host] = []
    for row in rows:
        host = row_to_host(row)
        if host.sysgroup_id is None and host.dynamic:
            host.sysgroup_id = implied_sysgroup_id(op, host.hostname)
        hosts.append(host)
    return hosts
