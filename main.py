#!/usr/bin/env python3
"""
ServiceMap -- operator CLI for the asset and host inventory.

Works directly against the database named by DATABASE_URL (or .env); no API
server needs to be running.

Usage:
  python main.py search web1.example.com db2.example.com --confidence 80
  python main.py results 3f0c2a8e-...
  python main.py match example.com
  python main.py ingest indicators.json
  python main.py sweep
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from core.config import get_settings
from inventory.assets import ingest_indicator
from inventory.errors import InventoryError
from inventory.lifecycle import expire_dynamic_hosts
from inventory.models import RawIndicator, Search, Service
from inventory.search import fetch_results, match_hosts_by_substring, run_search_batch
from inventory.store import InventoryStore


def _load_indicators(path: str) -> list[RawIndicator]:
    """Read one indicator document, or a JSON list of them, from a file.

    Resolves symlinks and verifies the path is a regular file before reading.
    Raises ValueError with a printable message on any problem.
    """
    file_path = Path(path).resolve()
    if not file_path.is_file():
        raise ValueError(f"'{path}' is not a readable file.")
    try:
        data = json.loads(file_path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Could not read '{path}': {e}") from e
    docs = data if isinstance(data, list) else [data]
    indicators: list[RawIndicator] = []
    for i, doc in enumerate(docs):
        if not isinstance(doc, dict):
            raise ValueError(f"entry {i} is not a JSON object.")
        indicators.append(
            RawIndicator(
                timestamp=doc.get("timestamp", ""),
                event_source=doc.get("event_source", doc.get("eventSource", "")),
                likelihood=doc.get("likelihood"),
                type=doc.get("type", ""),
                name=doc.get("name", ""),
                zone=doc.get("zone", ""),
                details=doc.get("details"),
            )
        )
    return indicators


def _print_service(identifier: str, service: Service) -> None:
    if not service.found:
        print(f"  {identifier:<30} not found")
        return
    group = service.system_group
    print(f"  {identifier:<30} {group.name} (sysgroup {group.id}, {group.environment or 'no environment'})")
    if service.tech_owner:
        print(f"    tech owner: {service.tech_owner}{'  [TCW]' if service.tcw else ''}")
    for rra in service.services:
        print(f"    service: {rra.name} (default data: {rra.default_data or 'unset'})")


def _cmd_search(store: InventoryStore, args: argparse.Namespace) -> int:
    searches = [Search(identifier=h, host=h, confidence=args.confidence) for h in dict.fromkeys(args.hosts)]
    search_id = run_search_batch(store, searches, remote_host="cli")
    print(f"  Search ID: {search_id}\n")
    with store.operation(use_transaction=True, remote_host="cli") as op:
        results = fetch_results(op, search_id)
    for result in results:
        _print_service(result.identifier, result.service)
    print()
    return 0


def _cmd_results(store: InventoryStore, args: argparse.Namespace) -> int:
    with store.operation(use_transaction=True, remote_host="cli") as op:
        results = fetch_results(op, args.search_id)
    if not results:
        print(f"  No results for {args.search_id} (unknown, or already collected).")
        return 0
    for result in results:
        _print_service(result.identifier, result.service)
    return 0


def _cmd_match(store: InventoryStore, args: argparse.Namespace) -> int:
    with store.operation(remote_host="cli") as op:
        hosts = match_hosts_by_substring(op, args.fragment)
    if not hosts:
        print(f"  No hosts match '{args.fragment}'.")
        return 0
    for host in hosts:
        kind = "dynamic" if host.dynamic else "static"
        group = host.sysgroup_id if host.sysgroup_id is not None else "-"
        print(f"  {host.hostname:<40} {kind:<8} sysgroup {group}")
    return 0


def _cmd_ingest(store: InventoryStore, args: argparse.Namespace) -> int:
    try:
        indicators = _load_indicators(args.file)
    except ValueError as e:
        print(f"  [!] {e}")
        return 1
    failed = 0
    for raw in indicators:
        try:
            with store.operation(use_transaction=True, remote_host="cli") as op:
                asset = ingest_indicator(op, raw)
        except InventoryError as e:
            failed += 1
            print(f"  [!] {raw.type}/{raw.name}/{raw.zone}: {e.message}" + (f" ({e.detail})" if e.detail else ""))
            continue
        print(f"  {raw.type}/{raw.name}/{raw.zone} -> asset {asset.id}")
    print(f"\n  {len(indicators) - failed} ingested, {failed} failed.")
    return 1 if failed else 0


def _cmd_sweep(store: InventoryStore, args: argparse.Namespace) -> int:
    removed = expire_dynamic_hosts(store)
    print(f"  Expired {removed} dynamic host(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="servicemap",
        description="Asset inventory and host-to-service resolution.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py search web1.example.com --confidence 80
  python main.py match example.com
  python main.py ingest indicators.json
  DATABASE_URL=postgresql://user:pw@db/servicemap python main.py sweep
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_search = sub.add_parser("search", help="Resolve host names and print the results")
    p_search.add_argument("hosts", nargs="+", metavar="HOST", help="Host names to resolve")
    p_search.add_argument(
        "--confidence",
        type=int,
        default=0,
        metavar="N",
        help="Confidence (0-100) that each host exists. Above 50, unknown hosts are registered as dynamic.",
    )
    p_search.set_defaults(func=_cmd_search)

    p_results = sub.add_parser("results", help="Collect (and purge) the results of an earlier search")
    p_results.add_argument("search_id", metavar="ID")
    p_results.set_defaults(func=_cmd_results)

    p_match = sub.add_parser("match", help="List hosts whose name contains FRAGMENT")
    p_match.add_argument("fragment", metavar="FRAGMENT")
    p_match.set_defaults(func=_cmd_match)

    p_ingest = sub.add_parser("ingest", help="Ingest indicators from a JSON file (object or list)")
    p_ingest.add_argument("file", metavar="FILE")
    p_ingest.set_defaults(func=_cmd_ingest)

    p_sweep = sub.add_parser("sweep", help="Expire dynamic hosts unused for 7 days")
    p_sweep.set_defaults(func=_cmd_sweep)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    store = InventoryStore(settings.database_url)
    try:
        return args.func(store, args)
    except InventoryError as e:
        print(f"  [!] {e.message}" + (f" ({e.detail})" if e.detail else ""))
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
