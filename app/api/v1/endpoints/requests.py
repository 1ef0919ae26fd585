"""Adjustment request API endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.deps import Requests, require_permission
from app.core.exceptions import NotFoundError
from app.core.permissions import Permissions
from app.models.request import RequestStatus
from app.schemas.request import RequestUpdate, RequestResponse, RequestListResponse

router = APIRouter()


@router.get("", response_model=RequestListResponse, summary="List adjustment requests")
async def list_requests(
    service: Requests,
    status: Optional[RequestStatus] = None,
    branch_id: Optional[int] = None,
    count_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(require_permission(Permissions.REQUESTS_VIEW)),
):
    requests, total = await service.list_requests(
        status=status.value if status else None,
        branch_id=branch_id,
        count_id=count_id,
        limit=limit,
        offset=offset,
    )
    return RequestListResponse(
        items=[RequestResponse.model_validate(r) for r in requests],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{request_id}", response_model=RequestResponse, summary="Get adjustment request")
async def get_request(
    request_id: int,
    service: Requests,
    user_id: int = Depends(require_permission(Permissions.REQUESTS_VIEW)),
):
    request = await service.get_request(request_id)
    if request is None:
        raise NotFoundError(f"Request {request_id} not found")
    return request


@router.patch("/{request_id}", response_model=RequestResponse, summary="Review adjustment request")
async def update_request(
    request_id: int,
    data: RequestUpdate,
    service: Requests,
    user_id: int = Depends(require_permission(Permissions.REQUESTS_REVIEW)),
):
    """
    Move a request through review:

    pendiente -> en_revision -> ajustado | rechazado
    """
    return await service.update_request(request_id, data, user_id)
