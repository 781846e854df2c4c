"""
api/routes/v1/rras.py -- Read-only risk assessment routes.

  GET /rras     -- all risk assessments, ordered by service name
  GET /rra/id   -- one risk assessment with the system groups it covers
"""

from fastapi import APIRouter, HTTPException, Query, Request

from api.models import ErrorDetail, RRADetailResponse, RRAListResponse, RRAServiceModel, SystemGroupModel
from inventory.store import InventoryStore

router = APIRouter()


@router.get("/rras", response_model=RRAListResponse)
def list_rras(request: Request) -> RRAListResponse:
    store: InventoryStore = request.app.state.store
    return RRAListResponse(rras=[RRAServiceModel.from_domain(r) for r in store.list_rras()])


@router.get("/rra/id", response_model=RRADetailResponse)
def get_rra(request: Request, id: int = Query(ge=1)) -> RRADetailResponse:
    """Return one risk assessment. 404 if the ID does not exist."""
    store: InventoryStore = request.app.state.store
    rra = store.get_rra(id)
    if rra is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"Risk assessment {id} not found.").model_dump(),
        )
    return RRADetailResponse(
        rra=RRAServiceModel.from_domain(rra),
        sysgroups=[SystemGroupModel.from_domain(g) for g in store.sysgroups_for_rra(id)],
    )
