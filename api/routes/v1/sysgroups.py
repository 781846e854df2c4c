"""
api/routes/v1/sysgroups.py -- Read-only system group routes.

  GET /sysgroups     -- all system groups, ordered by name
  GET /sysgroup/id   -- one group with its static hosts, host match rules
                        and linked risk assessments
"""

from fastapi import APIRouter, HTTPException, Query, Request

from api.models import (
    ErrorDetail,
    HostMatchRuleModel,
    HostModel,
    RRAServiceModel,
    SystemGroupDetailResponse,
    SystemGroupListResponse,
    SystemGroupModel,
)
from inventory.hosts import service_lookup
from inventory.store import InventoryStore

router = APIRouter()


@router.get("/sysgroups", response_model=SystemGroupListResponse)
def list_sysgroups(request: Request) -> SystemGroupListResponse:
    store: InventoryStore = request.app.state.store
    return SystemGroupListResponse(sysgroups=[SystemGroupModel.from_domain(g) for g in store.list_sysgroups()])


@router.get("/sysgroup/id", response_model=SystemGroupDetailResponse)
def get_sysgroup(request: Request, id: int = Query(ge=1)) -> SystemGroupDetailResponse:
    """Return one system group. 404 if the ID does not exist."""
    store: InventoryStore = request.app.state.store
    group = store.get_sysgroup(id)
    if group is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"System group {id} not found.").model_dump(),
        )
    with store.operation() as op:
        services = service_lookup(op, id)
    return SystemGroupDetailResponse(
        id=group.id,
        name=group.name,
        environment=group.environment,
        hosts=[HostModel.from_domain(h) for h in store.hosts_for_sysgroup(id)],
        host_match=[
            HostMatchRuleModel(id=r.id, expression=r.expression, comment=r.comment)
            for r in store.hostmatch_for_sysgroup(id)
        ],
        services=[RRAServiceModel.from_domain(s) for s in services],
    )
