"""Unit tests for inventory/hosts.py -- tiered host resolution and dynamic admission.

Covers:
- exact tier: group, RRA services and host extensions (tech owner, TCW)
- host names compare case-insensitively
- exact matches take precedence over host match rules
- pattern tier: lowest matching group ID wins; broken rules are skipped
- dynamic admission: threshold, idempotence, existing rows never re-registered
- keepalive refreshes lastused; implied_sysgroup_id has no side effects
"""

from datetime import datetime, timedelta, timezone

import pytest

from inventory.hosts import (
    implied_sysgroup_id,
    register_dynamic_candidate,
    resolve_host,
    service_lookup,
)
from inventory.models import Host, HostMatchRule, RRAService, SystemGroup
from inventory.store import to_iso


def _resolve(store, hostname: str, confidence: int = 0, keepalive: bool = True):
    with store.operation(use_transaction=True) as op:
        return resolve_host(op, hostname, confidence, keepalive=keepalive)


# ---------------------------------------------------------------------------
# Exact tier
# ---------------------------------------------------------------------------


class TestExactTier:
    def test_static_host_resolves_with_services_and_extensions(self, store, seeded):
        service = _resolve(store, "web1.example.com")
        assert service.found is True
        assert service.system_group.id == seeded.web_group
        assert service.system_group.environment == "prod"
        assert [s.name for s in service.services] == ["Web Frontend"]
        assert service.services[0].avail_rep_impact == "high"
        assert service.services[0].default_data == "internal"
        assert service.tech_owner == "webops"
        assert service.tcw is True

    def test_hostname_is_case_insensitive(self, store, seeded):
        service = _resolve(store, "WEB1.Example.COM")
        assert service.found is True
        assert service.system_group.id == seeded.web_group

    def test_host_without_tech_owner_still_matches(self, store, seeded):
        store.create_host(Host(hostname="web2.example.com", sysgroup_id=seeded.web_group))
        service = _resolve(store, "web2.example.com")
        assert service.found is True
        assert service.tech_owner == ""
        assert service.tcw is False

    def test_exact_match_beats_pattern(self, store, seeded):
        # db9 matches the db pattern, but a static row puts it in the web group.
        store.create_host(Host(hostname="db9.example.com", sysgroup_id=seeded.web_group))
        service = _resolve(store, "db9.example.com")
        assert service.system_group.id == seeded.web_group

    def test_group_without_rra_has_no_services(self, store, seeded):
        store.create_host(Host(hostname="relay.example.net", sysgroup_id=seeded.mail_group))
        service = _resolve(store, "relay.example.net")
        assert service.found is True
        assert service.services == []


# ---------------------------------------------------------------------------
# Pattern tier
# ---------------------------------------------------------------------------


class TestPatternTier:
    def test_pattern_match_without_host_row(self, store, seeded):
        service = _resolve(store, "db3.example.com")
        assert service.found is True
        assert service.system_group.id == seeded.db_group
        assert [s.name for s in service.services] == ["Customer DB"]
        # Host extensions are never populated from a rule.
        assert service.tech_owner == ""
        assert service.tcw is False

    def test_pattern_is_case_insensitive_search(self, store, seeded):
        service = _resolve(store, "smtp-MAIL-01.corp")
        assert service.system_group.id == seeded.mail_group

    def test_lowest_group_id_wins_among_rules(self, store, seeded):
        store.create_hostmatch(HostMatchRule(expression="^db7", sysgroup_id=seeded.mail_group))
        assert _resolve(store, "db7.example.com").system_group.id == seeded.db_group
        # A rule added later for a lower group ID takes over.
        store.create_hostmatch(HostMatchRule(expression="db7", sysgroup_id=seeded.web_group))
        assert _resolve(store, "db7.example.com").system_group.id == seeded.web_group

    def test_invalid_expression_is_skipped(self, store, seeded, caplog):
        bad_group = store.create_sysgroup(SystemGroup(name="bad"))
        store.create_hostmatch(HostMatchRule(expression="db[", sysgroup_id=bad_group))
        with caplog.at_level("WARNING", logger="servicemap.inventory"):
            service = _resolve(store, "db4.example.com")
        assert service.system_group.id == seeded.db_group
        assert "bad expression" in caplog.text

    def test_nothing_matches(self, store, seeded):
        service = _resolve(store, "printer.lab")
        assert service.found is False
        assert service.system_group.id is None
        assert service.services == []

    def test_dynamic_host_without_group_falls_through_to_pattern(self, store, seeded):
        store.create_host(Host(hostname="mail7.example.net", dynamic=True, dynamic_confidence=90))
        service = _resolve(store, "mail7.example.net")
        assert service.found is True
        assert service.system_group.id == seeded.mail_group


# ---------------------------------------------------------------------------
# Dynamic admission
# ---------------------------------------------------------------------------


class TestDynamicAdmission:
    def test_confident_unknown_host_is_registered(self, store, seeded):
        service = _resolve(store, "Newbox.Example.com", confidence=80)
        assert service.found is False
        host = store.get_host("newbox.example.com")
        assert host is not None
        assert host.hostname == "newbox.example.com"
        assert host.dynamic is True
        assert host.dynamic_confidence == 80
        assert host.sysgroup_id is None
        assert host.dynamic_added is not None
        assert host.last_used is not None

    def test_low_confidence_host_is_not_registered(self, store, seeded):
        _resolve(store, "maybe.example.com", confidence=40)
        assert store.get_host("maybe.example.com") is None

    def test_threshold_is_exclusive(self, store, seeded):
        _resolve(store, "edge.example.com", confidence=50)
        assert store.get_host("edge.example.com") is None
        _resolve(store, "edge.example.com", confidence=51)
        assert store.get_host("edge.example.com") is not None

    def test_registered_host_still_resolves_through_patterns(self, store, seeded):
        service = _resolve(store, "db12.example.com", confidence=95)
        assert service.found is True
        assert service.system_group.id == seeded.db_group
        assert store.get_host("db12.example.com").dynamic is True

    def test_existing_static_host_never_reregistered(self, store, seeded):
        store.create_host(Host(hostname="orphan.example.com"))
        with store.operation() as op:
            assert register_dynamic_candidate(op, "orphan.example.com", 99) is False
        assert store.get_host("orphan.example.com").dynamic is False

    def test_admission_is_idempotent(self, store, seeded):
        with store.operation() as op:
            assert register_dynamic_candidate(op, "twice.example.com", 70) is True
            assert register_dynamic_candidate(op, "twice.example.com", 90) is False
        assert store.get_host("twice.example.com").dynamic_confidence == 70

    def test_admission_rolled_back_with_its_transaction(self, store, seeded):
        with pytest.raises(RuntimeError):
            with store.operation(use_transaction=True) as op:
                resolve_host(op, "ghost.example.com", 90)
                raise RuntimeError("abort")
        assert store.get_host("ghost.example.com") is None


# ---------------------------------------------------------------------------
# Keepalive and side-effect-free lookups
# ---------------------------------------------------------------------------


class TestKeepalive:
    def _stale_host(self, store, group_id):
        stale = to_iso(datetime.now(timezone.utc) - timedelta(days=3))
        store.create_host(Host(hostname="stale.example.com", sysgroup_id=group_id, last_used=stale))
        return stale

    def test_resolution_refreshes_last_used(self, store, seeded):
        stale = self._stale_host(store, seeded.web_group)
        _resolve(store, "stale.example.com")
        assert store.get_host("stale.example.com").last_used > stale

    def test_keepalive_disabled_leaves_last_used(self, store, seeded):
        stale = self._stale_host(store, seeded.web_group)
        _resolve(store, "stale.example.com", keepalive=False)
        assert store.get_host("stale.example.com").last_used == stale

    def test_implied_sysgroup_id_does_not_admit_or_touch(self, store, seeded):
        with store.operation() as op:
            assert implied_sysgroup_id(op, "db5.example.com") == seeded.db_group
            assert implied_sysgroup_id(op, "unknown.example.com") is None
        assert store.get_host("db5.example.com") is None

    def test_service_lookup_orders_by_id(self, store, seeded):
        second = store.create_rra(RRAService(name="Web Backend"), [seeded.web_group])
        with store.operation() as op:
            services = service_lookup(op, seeded.web_group)
        assert [s.id for s in services] == [seeded.web_rra, second]
