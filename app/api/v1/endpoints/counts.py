"""
Count API Endpoints.

Bulk count creation, capture of counted quantities, status changes and
derivation of adjustment requests from differences.
"""
from datetime import date
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import Counts, Requests, require_permission
from app.core.exceptions import NotFoundError
from app.core.permissions import Permissions
from app.models.count import CountStatus, CountType, CountClassification
from app.schemas.count import (
    CountCreate, CountUpdate, CountResponse, CountListResponse,
    CountDetailCreate, CountDetailCapture, CountDetailResponse,
    DetailUpdateResponse, DifferenceResponse,
    CountDashboardStats, ItemHistoryEntry,
)
from app.schemas.request import RequestDerivationResult

router = APIRouter()


# ============================================================================
# COUNTS
# ============================================================================

@router.post(
    "",
    response_model=List[CountResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create counts"
)
async def create_counts(
    data: CountCreate,
    service: Counts,
    user_id: int = Depends(require_permission(Permissions.COUNTS_CREATE)),
):
    """
    Create one count per valid item code.

    Codes missing from the branch catalog are skipped. With `items_data`
    the counts are created already closed and adjustment requests are
    derived from their differences.
    """
    return await service.create_counts(data, user_id)


@router.get("", response_model=CountListResponse, summary="List counts")
async def list_counts(
    service: Counts,
    branch_id: Optional[int] = None,
    status: Optional[List[CountStatus]] = Query(None),
    type: Optional[CountType] = None,
    classification: Optional[CountClassification] = None,
    responsible_user_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    scheduled_from: Optional[date] = None,
    scheduled_to: Optional[date] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(require_permission(Permissions.COUNTS_VIEW)),
):
    counts, total = await service.list_counts(
        branch_id=branch_id,
        status=[s.value for s in status] if status else None,
        type=type.value if type else None,
        classification=classification.value if classification else None,
        responsible_user_id=responsible_user_id,
        date_from=date_from,
        date_to=date_to,
        scheduled_from=scheduled_from,
        scheduled_to=scheduled_to,
        limit=limit,
        offset=offset,
    )
    return CountListResponse(
        items=[CountResponse.model_validate(c) for c in counts],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/dashboard", response_model=CountDashboardStats, summary="Count dashboard")
async def get_dashboard(
    service: Counts,
    branch_id: Optional[int] = None,
    user_id: int = Depends(require_permission(Permissions.COUNTS_VIEW)),
):
    return await service.get_dashboard_stats(branch_id)


@router.get("/history", response_model=List[ItemHistoryEntry], summary="Last count of items")
async def get_items_history(
    service: Counts,
    branch_id: int,
    date_from: date,
    date_to: date,
    item_codes: List[str] = Query(...),
    almacen: Optional[int] = Query(None, ge=1),
    user_id: int = Depends(require_permission(Permissions.COUNTS_VIEW)),
):
    """Most recent capture of each item between date_from (inclusive) and date_to (exclusive)."""
    return await service.get_items_history(branch_id, item_codes, date_from, date_to, almacen)


@router.get("/differences", response_model=List[DifferenceResponse], summary="Captured differences")
async def list_all_differences(
    service: Counts,
    branch_id: Optional[int] = None,
    limit: int = Query(500, ge=1, le=5000),
    user_id: int = Depends(require_permission(Permissions.COUNTS_VIEW)),
):
    return await service.list_differences(branch_id=branch_id, limit=limit)


@router.get("/next-folio", summary="Next count folio")
async def get_next_folio(
    service: Counts,
    user_id: int = Depends(require_permission(Permissions.COUNTS_VIEW)),
):
    """Folio the next created count would receive. Nothing is reserved."""
    return {"folio": await service.next_folio()}


@router.get("/folio/{folio}", response_model=CountResponse, summary="Get count by folio")
async def get_count_by_folio(
    folio: str,
    service: Counts,
    user_id: int = Depends(require_permission(Permissions.COUNTS_VIEW)),
):
    count = await service.get_count_by_folio(folio)
    if count is None:
        raise NotFoundError(f"Count {folio} not found")
    return count


@router.patch("/details/{detail_id}", response_model=DetailUpdateResponse, summary="Capture counted stock")
async def capture_detail(
    detail_id: int,
    data: CountDetailCapture,
    service: Counts,
    user_id: int = Depends(require_permission(Permissions.COUNTS_CAPTURE)),
):
    """
    Record the counted quantity of a detail.

    Capturing the last pending detail closes the count; the response then
    has `auto_closed` set and, when items exceed tolerance, an `alert`.
    """
    result = await service.update_count_detail(detail_id, data.counted_stock, user_id, data.notes)
    return DetailUpdateResponse.model_validate(result)


@router.get("/{count_id}", response_model=CountResponse, summary="Get count")
async def get_count(
    count_id: int,
    service: Counts,
    user_id: int = Depends(require_permission(Permissions.COUNTS_VIEW)),
):
    count = await service.get_count(count_id)
    if count is None:
        raise NotFoundError(f"Count {count_id} not found")
    return count


@router.patch("/{count_id}", response_model=CountResponse, summary="Update count")
async def update_count(
    count_id: int,
    data: CountUpdate,
    service: Counts,
    user_id: int = Depends(require_permission(Permissions.COUNTS_UPDATE)),
):
    """Update count fields; a `status` runs through the lifecycle rules."""
    return await service.update_count(count_id, data, user_id)


@router.delete("/{count_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete count")
async def delete_count(
    count_id: int,
    service: Counts,
    user_id: int = Depends(require_permission(Permissions.COUNTS_DELETE)),
):
    await service.delete_count(count_id, user_id)


# ============================================================================
# DETAILS
# ============================================================================

@router.get("/{count_id}/details", response_model=List[CountDetailResponse], summary="Count details")
async def get_count_details(
    count_id: int,
    service: Counts,
    user_id: int = Depends(require_permission(Permissions.COUNTS_VIEW)),
):
    return await service.get_count_details(count_id)


@router.post(
    "/{count_id}/details",
    response_model=CountDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add count detail"
)
async def add_count_detail(
    count_id: int,
    data: CountDetailCreate,
    service: Counts,
    user_id: int = Depends(require_permission(Permissions.COUNTS_UPDATE)),
):
    return await service.add_count_detail(count_id, data, user_id)


@router.get(
    "/{count_id}/differences",
    response_model=List[DifferenceResponse],
    summary="Differences of a count"
)
async def list_count_differences(
    count_id: int,
    service: Counts,
    user_id: int = Depends(require_permission(Permissions.COUNTS_VIEW)),
):
    if await service.get_count(count_id) is None:
        raise NotFoundError(f"Count {count_id} not found")
    return await service.list_differences(count_id=count_id)


# ============================================================================
# REQUESTS
# ============================================================================

@router.post(
    "/{count_id}/requests",
    response_model=RequestDerivationResult,
    summary="Create adjustment requests"
)
async def create_requests(
    count_id: int,
    service: Requests,
    user_id: int = Depends(require_permission(Permissions.REQUESTS_CREATE)),
):
    """One pending request per difference; details that already have one are skipped."""
    return await service.create_requests_from_count(count_id, user_id)
