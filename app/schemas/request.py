"""Adjustment request schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from pydantic import Field

from app.models.request import RequestStatus
from app.schemas.base import BaseResponseSchema, BaseUpdateSchema


class RequestUpdate(BaseUpdateSchema):
    """Review of an adjustment request."""
    status: Optional[RequestStatus] = None
    resolution_notes: Optional[str] = None
    evidence_file: Optional[str] = Field(None, max_length=500)


class RequestResponse(BaseResponseSchema):
    id: int
    folio: str
    count_id: int
    count_detail_id: int
    branch_id: int
    item_code: str
    system_stock: Decimal
    counted_stock: Decimal
    difference: Decimal
    status: str
    requested_by_user_id: Optional[int] = None
    reviewed_by_user_id: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    evidence_file: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class RequestListResponse(BaseResponseSchema):
    items: List[RequestResponse]
    total: int
    limit: int
    offset: int


class RequestDerivationResult(BaseResponseSchema):
    """Outcome of deriving requests from a count."""
    created: int
    skipped: int
    total_differences: int
    requests: List[RequestResponse] = Field(default_factory=list)
