"""
inventory/models.py -- Domain dataclasses for the ServiceMap inventory.

These are pure data containers with zero logic. Resolution rules (tiered host
matching, dynamic admission, indicator aggregation) live in the engine modules
next to this file; persistence lives in inventory/store.py.

Separation of concerns: these dataclasses are the inventory's domain truth.
The api/ layer has its own Pydantic models for the HTTP contract and maps
between the two.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Owner:
    """Operational owner of an asset.

    triage_key routes incoming findings to a triage queue. An asset-level
    triage override, when present, replaces the owner's key on load.
    """

    operator: str = ""
    team: str = ""
    triage_key: str = ""
    id: Optional[int] = None


@dataclass
class RawIndicator:
    """An indicator exactly as submitted by an event publisher.

    Untrusted: must pass inventory.validation.validate_raw_indicator before
    the engine uses it. details is opaque structured data, stored as JSON.
    """

    timestamp: str  # ISO 8601
    event_source: str
    likelihood: int
    type: str
    name: str
    zone: str
    details: Any = None


@dataclass
class Indicator:
    """A persisted indicator row.

    Every row is kept. Only the newest row per (asset, event_source) is
    presented on the asset (see inventory.assets.aggregate_indicators).
    """

    timestamp: str  # ISO 8601, normalized to UTC
    event_source: str
    likelihood: int
    details: Any = None
    asset_id: Optional[int] = None
    id: Optional[int] = None


@dataclass
class Asset:
    """An inventory item identified by the (type, name, zone) triple.

    id is None before the record is written to the database.
    """

    type: str
    name: str
    zone: str
    id: Optional[int] = None
    asset_group_id: Optional[int] = None
    owner: Optional[Owner] = None
    last_indicator: str = ""  # ISO 8601
    indicators: list[Indicator] = field(default_factory=list)


@dataclass
class SystemGroup:
    id: Optional[int] = None
    name: str = ""
    environment: str = ""


@dataclass
class RRAService:
    """Risk assessment attached to a system group.

    Impacts and probabilities form two 3x3 matrices:
    availability/confidentiality/integrity x reputation/productivity/financial.
    Values are labels ("low", "medium", "high", "maximum", "unknown").
    """

    name: str
    id: Optional[int] = None
    avail_rep_impact: str = ""
    avail_prd_impact: str = ""
    avail_fin_impact: str = ""
    confi_rep_impact: str = ""
    confi_prd_impact: str = ""
    confi_fin_impact: str = ""
    integ_rep_impact: str = ""
    integ_prd_impact: str = ""
    integ_fin_impact: str = ""
    avail_rep_prob: str = ""
    avail_prd_prob: str = ""
    avail_fin_prob: str = ""
    confi_rep_prob: str = ""
    confi_prd_prob: str = ""
    confi_fin_prob: str = ""
    integ_rep_prob: str = ""
    integ_prd_prob: str = ""
    integ_fin_prob: str = ""
    default_data: str = ""  # default data classification label


@dataclass
class Host:
    """A host row. hostname identity is case-insensitive.

    Static hosts come from configuration management; dynamic hosts are
    admitted from search traffic and expire after a period of disuse.
    """

    hostname: str
    id: Optional[int] = None
    sysgroup_id: Optional[int] = None
    comment: str = ""
    dynamic: bool = False
    dynamic_confidence: Optional[int] = None
    dynamic_added: Optional[str] = None  # ISO 8601
    last_used: Optional[str] = None  # ISO 8601
    techowner_id: Optional[int] = None
    requiretcw: Optional[bool] = None


@dataclass
class HostMatchRule:
    """Regular expression mapping host names to a system group."""

    expression: str
    sysgroup_id: int
    id: Optional[int] = None
    comment: str = ""


@dataclass
class Search:
    """One entry of a search batch. identifier is chosen by the client."""

    identifier: str
    host: str = ""
    confidence: int = 0


@dataclass
class Service:
    """Outcome of resolving a host name.

    tech_owner and tcw are only populated by an exact host match; pattern
    rules describe groups, not individual hosts.
    """

    found: bool = False
    system_group: SystemGroup = field(default_factory=SystemGroup)
    services: list[RRAService] = field(default_factory=list)
    tech_owner: str = ""
    tcw: bool = False


@dataclass
class SearchResult:
    """A stored Service resolution, retrievable once by (opid, identifier)."""

    identifier: str
    service: Service
