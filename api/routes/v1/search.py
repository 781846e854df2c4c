"""
api/routes/v1/search.py -- Host search routes for the ServiceMap REST API.

Routes:
  POST /search             -- run a batch of host searches, return a handle
  GET  /search/results/id  -- collect (and purge) the results for a handle
  GET  /search/match       -- list hosts whose name contains a fragment

The search batch is submitted as a form field named `params` holding a JSON
document ({"searches": [{"identifier", "host", "confidence"}, ...]}), which is
what existing clients send. Results are read-once: the first successful
fetch deletes them.
"""

from fastapi import APIRouter, Form, Query, Request
from pydantic import ValidationError

from api.limiter import limiter, search_limit
from api.models import (
    HostMatchResponse,
    HostModel,
    SearchParams,
    SearchResponse,
    SearchResultRow,
    SearchResultsResponse,
)
from inventory.errors import MalformedInputError
from inventory.models import Search
from inventory.search import fetch_results, match_hosts_by_substring, run_search_batch
from inventory.store import InventoryStore

router = APIRouter()


def _remote(request: Request) -> str:
    return request.client.host if request.client else ""


@limiter.limit(search_limit)
@router.post("/search", response_model=SearchResponse)
def new_search(request: Request, params: str = Form(default="")) -> SearchResponse:
    """Resolve every entry of the batch in one transaction.

    A failure in any entry rolls the whole batch back and nothing is stored
    under the handle.
    """
    if not params:
        raise MalformedInputError("no search criteria specified")
    try:
        parsed = SearchParams.model_validate_json(params)
    except ValidationError as exc:
        raise MalformedInputError("search parameters are invalid", detail=str(exc.errors())) from exc

    store: InventoryStore = request.app.state.store
    searches = [Search(identifier=s.identifier, host=s.host, confidence=s.confidence) for s in parsed.searches]
    search_id = run_search_batch(store, searches, remote_host=_remote(request))
    return SearchResponse(id=search_id)


@limiter.limit(search_limit)
@router.get("/search/results/id", response_model=SearchResultsResponse)
def get_search_results(request: Request, id: str = Query(min_length=1, max_length=64)) -> SearchResultsResponse:
    """Return the results stored under a search handle and delete them.

    An unknown or already-collected handle yields an empty result list.
    """
    store: InventoryStore = request.app.state.store
    with store.operation(use_transaction=True, remote_host=_remote(request)) as op:
        results = fetch_results(op, id)
    return SearchResultsResponse(results=[SearchResultRow.from_domain(r) for r in results])


@limiter.limit(search_limit)
@router.get("/search/match", response_model=HostMatchResponse)
def search_match(request: Request, hostname: str = Query(min_length=1, max_length=255)) -> HostMatchResponse:
    """List hosts whose name contains `hostname`, case-insensitively.

    Dynamic hosts without a group carry the group the matcher would resolve
    for them now. Listing does not refresh lastused.
    """
    store: InventoryStore = request.app.state.store
    with store.operation(remote_host=_remote(request)) as op:
        hosts = match_hosts_by_substring(op, hostname)
    return HostMatchResponse(hosts=[HostModel.from_domain(h) for h in hosts])
