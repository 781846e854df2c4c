"""
API request and response models for ServiceMap REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in inventory/models.py,
which own the internal domain representation. Route handlers map between the
two.

Separation of concerns: inventory/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from inventory.models import Host, RRAService, SearchResult, Service, SystemGroup

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class IndicatorCreate(BaseModel):
    """Request body for POST /api/v1/indicator.

    Publishers historically send eventSource; event_source is accepted too.
    Length and timestamp checks are repeated by the engine, which is the
    authority; these bounds only fail obviously broken documents early.
    likelihood is a strict integer: booleans, numeric strings and floats are
    rejected rather than coerced.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    timestamp: str = Field(min_length=1, max_length=64)
    event_source: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("event_source", "eventSource"),
    )
    likelihood: int = Field(ge=0, strict=True)
    type: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=255)
    zone: str = Field(min_length=1, max_length=100)
    details: Any = None


class SearchEntry(BaseModel):
    """One search in a batch. identifier is echoed back with its result."""

    identifier: str = Field(min_length=1, max_length=255)
    host: str = Field(default="", max_length=255)
    confidence: int = Field(default=0, ge=0, le=100, strict=True)


class SearchParams(BaseModel):
    """The JSON document carried in the `params` form field of POST /api/v1/search."""

    searches: list[SearchEntry] = Field(min_length=1, max_length=500)

    @field_validator("searches")
    @classmethod
    def unique_identifiers(cls, values: list[SearchEntry]) -> list[SearchEntry]:
        """Results are keyed by identifier, so two entries may not share one."""
        seen: set[str] = set()
        for entry in values:
            if entry.identifier in seen:
                raise ValueError(f"duplicate search identifier {entry.identifier!r}")
            seen.add(entry.identifier)
        return values


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class IndicatorResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: int


class SearchResponse(BaseModel):
    """Response for POST /api/v1/search. id is the handle for the results endpoint."""

    model_config = ConfigDict(frozen=True)

    id: str


class SystemGroupModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    name: str = ""
    environment: str = ""

    @classmethod
    def from_domain(cls, group: SystemGroup) -> "SystemGroupModel":
        return cls(id=group.id, name=group.name, environment=group.environment)


class RRAServiceModel(BaseModel):
    """Risk assessment with its impact and probability matrices."""

    model_config = ConfigDict(frozen=True)

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
    default_data: str = ""

    @classmethod
    def from_domain(cls, rra: RRAService) -> "RRAServiceModel":
        return cls.model_validate(rra, from_attributes=True)


class ServiceModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    found: bool
    system_group: SystemGroupModel
    services: list[RRAServiceModel] = Field(default_factory=list)
    tech_owner: str = ""
    tcw: bool = False

    @classmethod
    def from_domain(cls, service: Service) -> "ServiceModel":
        return cls(
            found=service.found,
            system_group=SystemGroupModel.from_domain(service.system_group),
            services=[RRAServiceModel.from_domain(s) for s in service.services],
            tech_owner=service.tech_owner,
            tcw=service.tcw,
        )


class SearchResultRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    service: ServiceModel

    @classmethod
    def from_domain(cls, result: SearchResult) -> "SearchResultRow":
        return cls(identifier=result.identifier, service=ServiceModel.from_domain(result.service))


class SearchResultsResponse(BaseModel):
    """Response for GET /api/v1/search/results/id. Empty once the results were fetched."""

    model_config = ConfigDict(frozen=True)

    results: list[SearchResultRow] = Field(default_factory=list)


class HostModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    hostname: str
    sysgroup_id: Optional[int] = None
    comment: str = ""
    dynamic: bool = False
    dynamic_confidence: Optional[int] = None
    dynamic_added: Optional[str] = None
    last_used: Optional[str] = None
    requiretcw: Optional[bool] = None

    @classmethod
    def from_domain(cls, host: Host) -> "HostModel":
        return cls.model_validate(host, from_attributes=True)


class HostMatchResponse(BaseModel):
    """Response for GET /api/v1/search/match."""

    model_config = ConfigDict(frozen=True)

    hosts: list[HostModel] = Field(default_factory=list)


class HostMatchRuleModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    expression: str
    comment: str = ""


class SystemGroupListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    sysgroups: list[SystemGroupModel] = Field(default_factory=list)


class SystemGroupDetailResponse(BaseModel):
    """Response for GET /api/v1/sysgroup/id: the group plus everything linked to it."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    environment: str = ""
    hosts: list[HostModel] = Field(default_factory=list)
    host_match: list[HostMatchRuleModel] = Field(default_factory=list)
    services: list[RRAServiceModel] = Field(default_factory=list)


class RRAListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    rras: list[RRAServiceModel] = Field(default_factory=list)


class RRADetailResponse(BaseModel):
    """Response for GET /api/v1/rra/id: the risk assessment and the groups it covers."""

    model_config = ConfigDict(frozen=True)

    rra: RRAServiceModel
    sysgroups: list[SystemGroupModel] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health.

    status is "healthy" when every component answers, "degraded" otherwise.
    """

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
