"""Unit tests for inventory/assets.py -- asset identity and indicator ingestion.

Covers:
- ingest_indicator() creates one asset per (type, name, zone) and reuses it
- aggregate_indicators() returns the newest indicator per event source
- last_indicator only moves forward
- owner and triage override are applied on load
- malformed documents are rejected before anything is written
- concurrent ingestion of a new key still yields exactly one asset
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from inventory.assets import aggregate_indicators, get_asset, ingest_indicator, resolve_or_create_asset
from inventory.errors import MalformedInputError
from inventory.models import Owner, RawIndicator
from inventory.store import InventoryStore, asset_table, indicator_table, to_iso

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _indicator(
    name: str = "db1",
    source: str = "scanner",
    at: datetime = T0,
    likelihood: int = 3,
    type: str = "server",
    zone: str = "prod",
    details=None,
) -> RawIndicator:
    return RawIndicator(
        timestamp=at.isoformat(),
        event_source=source,
        likelihood=likelihood,
        type=type,
        name=name,
        zone=zone,
        details=details,
    )


def _ingest(store: InventoryStore, raw: RawIndicator):
    with store.operation(use_transaction=True) as op:
        return ingest_indicator(op, raw)


def _count(store: InventoryStore, table) -> int:
    with store.operation() as op:
        return op.scalar(select(func.count()).select_from(table))


# ---------------------------------------------------------------------------
# Asset identity
# ---------------------------------------------------------------------------


class TestAssetIdentity:
    def test_first_indicator_creates_asset_and_indicator(self, store):
        asset = _ingest(store, _indicator(details={"score": 7}))
        assert asset.id is not None
        assert (asset.type, asset.name, asset.zone) == ("server", "db1", "prod")
        assert asset.last_indicator == to_iso(T0)
        assert len(asset.indicators) == 1
        assert asset.indicators[0].details == {"score": 7}
        assert _count(store, asset_table) == 1
        assert _count(store, indicator_table) == 1

    def test_same_key_reuses_asset(self, store):
        first = _ingest(store, _indicator())
        second = _ingest(store, _indicator(source="ids", at=T0 + timedelta(minutes=5)))
        assert first.id == second.id
        assert _count(store, asset_table) == 1
        assert _count(store, indicator_table) == 2

    def test_zone_is_part_of_identity(self, store):
        prod = _ingest(store, _indicator(zone="prod"))
        dev = _ingest(store, _indicator(zone="dev"))
        assert prod.id != dev.id

    def test_resolve_or_create_returns_existing_asset(self, store):
        created = _ingest(store, _indicator())
        with store.operation() as op:
            resolved = resolve_or_create_asset(op, _indicator(at=T0 + timedelta(days=1)))
        assert resolved.id == created.id
        assert resolved.last_indicator == to_iso(T0)

    def test_get_asset_unknown_id_returns_none(self, store):
        with store.operation() as op:
            assert get_asset(op, 9999) is None


# ---------------------------------------------------------------------------
# Indicator aggregation
# ---------------------------------------------------------------------------


class TestAggregation:
    def test_one_indicator_per_source_newest_wins(self, store):
        _ingest(store, _indicator(source="scanner", at=T0, likelihood=1))
        _ingest(store, _indicator(source="scanner", at=T0 + timedelta(hours=2), likelihood=2))
        _ingest(store, _indicator(source="scanner", at=T0 + timedelta(hours=1), likelihood=9))
        asset = _ingest(store, _indicator(source="ids", at=T0, likelihood=4))

        by_source = {i.event_source: i for i in asset.indicators}
        assert [i.event_source for i in asset.indicators] == ["ids", "scanner"]
        assert by_source["scanner"].likelihood == 2
        assert by_source["ids"].likelihood == 4
        # History is kept.
        assert _count(store, indicator_table) == 4

    def test_equal_timestamps_resolve_to_latest_insert(self, store):
        _ingest(store, _indicator(likelihood=1))
        asset = _ingest(store, _indicator(likelihood=5))
        assert len(asset.indicators) == 1
        assert asset.indicators[0].likelihood == 5

    def test_timestamps_in_other_offsets_compare_in_utc(self, store):
        plus_two = timezone(timedelta(hours=2))
        # 13:30+02:00 is 11:30 UTC, earlier than T0 (12:00 UTC).
        _ingest(store, _indicator(at=T0, likelihood=1))
        asset = _ingest(store, _indicator(at=datetime(2024, 3, 1, 13, 30, tzinfo=plus_two), likelihood=8))
        assert asset.indicators[0].likelihood == 1

    def test_aggregate_for_asset_without_indicators_is_empty(self, store):
        with store.operation() as op:
            assert aggregate_indicators(op, 12345) == []


# ---------------------------------------------------------------------------
# last_indicator and ownership
# ---------------------------------------------------------------------------


class TestAssetState:
    def test_last_indicator_only_moves_forward(self, store):
        _ingest(store, _indicator(at=T0))
        later = _ingest(store, _indicator(at=T0 + timedelta(days=1)))
        assert later.last_indicator == to_iso(T0 + timedelta(days=1))
        older = _ingest(store, _indicator(source="ids", at=T0 - timedelta(days=3)))
        assert older.last_indicator == to_iso(T0 + timedelta(days=1))

    def test_owner_loaded_with_asset(self, store):
        asset = _ingest(store, _indicator())
        owner_id = store.create_owner(Owner(operator="it", team="dba", triage_key="dba-queue"))
        assert store.assign_asset_owner(asset.id, owner_id)
        with store.operation() as op:
            loaded = get_asset(op, asset.id)
        assert loaded.owner.operator == "it"
        assert loaded.owner.triage_key == "dba-queue"

    def test_triage_override_replaces_owner_key(self, store):
        asset = _ingest(store, _indicator())
        owner_id = store.create_owner(Owner(operator="it", team="dba", triage_key="dba-queue"))
        store.assign_asset_owner(asset.id, owner_id, triage_override="urgent")
        with store.operation() as op:
            loaded = get_asset(op, asset.id)
        assert loaded.owner.team == "dba"
        assert loaded.owner.triage_key == "urgent"

    def test_triage_override_without_owner(self, store):
        asset = _ingest(store, _indicator())
        store.assign_asset_owner(asset.id, None, triage_override="urgent")
        with store.operation() as op:
            loaded = get_asset(op, asset.id)
        assert loaded.owner is not None
        assert loaded.owner.triage_key == "urgent"
        assert loaded.owner.operator == ""

    def test_assign_owner_unknown_asset(self, store):
        assert store.assign_asset_owner(777, None) is False


# ---------------------------------------------------------------------------
# Rejection
# ---------------------------------------------------------------------------


class TestMalformedIndicators:
    @pytest.mark.parametrize(
        "raw",
        [
            _indicator(name=""),
            _indicator(type="   "),
            _indicator(zone=""),
            _indicator(source=""),
            _indicator(likelihood=-1),
            RawIndicator(timestamp="yesterday", event_source="s", likelihood=1, type="t", name="n", zone="z"),
            RawIndicator(timestamp="", event_source="s", likelihood=1, type="t", name="n", zone="z"),
        ],
    )
    def test_rejected_before_any_write(self, store, raw):
        with pytest.raises(MalformedInputError):
            _ingest(store, raw)
        assert _count(store, asset_table) == 0
        assert _count(store, indicator_table) == 0

    def test_unserializable_details_rejected(self, store):
        with pytest.raises(MalformedInputError, match="JSON"):
            _ingest(store, _indicator(details={"when": object()}))
        assert _count(store, asset_table) == 0


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentIngestion:
    def test_parallel_ingest_of_new_key_creates_one_asset(self, tmp_path):
        """Eight writers race on the same unseen key; all land on one asset."""
        store = InventoryStore(f"sqlite:///{tmp_path / 'race.db'}")
        workers = 8
        barrier = threading.Barrier(workers)
        asset_ids: list[int] = []
        errors: list[Exception] = []
        lock = threading.Lock()

        def ingest(n: int) -> None:
            barrier.wait()
            try:
                asset = _ingest(store, _indicator(name="race1", source=f"src{n}", at=T0 + timedelta(seconds=n)))
            except Exception as exc:  # collected and asserted below
                with lock:
                    errors.append(exc)
                return
            with lock:
                asset_ids.append(asset.id)

        threads = [threading.Thread(target=ingest, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        try:
            assert errors == []
            assert len(set(asset_ids)) == 1
            assert _count(store, asset_table) == 1
            assert _count(store, indicator_table) == workers
        finally:
            store.close()
