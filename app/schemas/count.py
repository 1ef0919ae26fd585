"""
Count Schemas

Pydantic schemas for inventory counts and their details.
"""
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List

from pydantic import AliasChoices, Field, field_validator, model_validator

from app.config import settings
from app.models.count import CountType, CountClassification, CountPriority, CountStatus
from app.schemas.base import BaseResponseSchema, BaseCreateSchema, BaseUpdateSchema


# ============================================================================
# COUNT SCHEMAS
# ============================================================================

class CountItemValue(BaseCreateSchema):
    """An item with its already-known counted quantity (direct adjustments)."""
    item_code: str = Field(..., min_length=1, max_length=50)
    counted_stock: Decimal = Field(
        ..., ge=0, validation_alias=AliasChoices("counted_stock", "count")
    )


class CountCreate(BaseCreateSchema):
    """
    Schema for bulk count creation.

    One count is created per item. For a direct adjustment send
    classification 'ajuste' and `items_data` instead of `items`.
    """
    branch_id: int
    almacen: int = Field(default=1, ge=1)
    type: CountType = CountType.CICLICO
    classification: CountClassification = CountClassification.INVENTARIO
    priority: CountPriority = CountPriority.MEDIA
    responsible_user_id: Optional[int] = None
    scheduled_date: Optional[date] = None
    notes: Optional[str] = None
    tolerance_percentage: Decimal = Field(
        default=Decimal(str(settings.DEFAULT_TOLERANCE_PERCENTAGE)), ge=0, le=100
    )

    items: List[str] = Field(default_factory=list)
    items_data: Optional[List[CountItemValue]] = None

    # Skip items already counted in [exclude_counted_from, exclude_counted_to)
    exclude_counted_from: Optional[date] = None
    exclude_counted_to: Optional[date] = None

    @model_validator(mode="after")
    def check_exclusion_range(self):
        if (self.exclude_counted_from is None) != (self.exclude_counted_to is None):
            raise ValueError("exclude_counted_from and exclude_counted_to must be sent together")
        if self.exclude_counted_from and self.exclude_counted_from >= self.exclude_counted_to:
            raise ValueError("exclude_counted_from must be before exclude_counted_to")
        return self

    @property
    def is_direct_adjustment(self) -> bool:
        return self.classification == CountClassification.AJUSTE.value and bool(self.items_data)


class CountUpdate(BaseUpdateSchema):
    """Schema for updating a count."""
    status: Optional[CountStatus] = None
    notes: Optional[str] = None
    responsible_user_id: Optional[int] = None
    scheduled_date: Optional[date] = None
    priority: Optional[CountPriority] = None
    tolerance_percentage: Optional[Decimal] = Field(None, ge=0, le=100)


class CountResponse(BaseResponseSchema):
    """Schema for count response."""
    id: int
    folio: str
    branch_id: int
    almacen: int
    type: str
    classification: str
    priority: str
    status: str
    responsible_user_id: Optional[int] = None
    created_by_user_id: Optional[int] = None
    assigned_at: Optional[datetime] = None
    scheduled_date: Optional[date] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    tolerance_percentage: Decimal
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CountListResponse(BaseResponseSchema):
    items: List[CountResponse]
    total: int
    limit: int
    offset: int


# ============================================================================
# COUNT DETAIL SCHEMAS
# ============================================================================

class CountDetailCreate(BaseCreateSchema):
    """
    Schema for adding a detail to a count.

    System stock, description and unit are read from the branch when not
    sent. Without counted_stock the detail stays pending capture.
    """
    item_code: str = Field(..., min_length=1, max_length=50)
    warehouse_id: Optional[int] = Field(None, ge=1)
    warehouse_name: Optional[str] = Field(None, max_length=200)
    item_description: Optional[str] = Field(None, max_length=500)
    unit: Optional[str] = Field(None, max_length=20)
    system_stock: Optional[Decimal] = None
    counted_stock: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None

    @field_validator("item_code")
    @classmethod
    def strip_code(cls, v: str) -> str:
        return v.strip()


class CountDetailCapture(BaseUpdateSchema):
    """Schema for capturing the counted quantity of a detail."""
    counted_stock: Decimal = Field(..., ge=0)
    notes: Optional[str] = None


class CountDetailResponse(BaseResponseSchema):
    """Schema for count detail response."""
    id: int
    count_id: int
    item_code: str
    item_description: Optional[str] = None
    unit: Optional[str] = None
    warehouse_id: int
    warehouse_name: Optional[str] = None
    system_stock: Decimal
    counted_stock: Optional[Decimal] = None
    difference: Optional[Decimal] = None
    difference_percentage: Optional[Decimal] = None
    counted_at: Optional[datetime] = None
    counted_by_user_id: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime


class CountAlertResponse(BaseResponseSchema):
    count_id: int
    folio: str
    branch_id: int
    branch_name: str
    line: str
    tolerance_percentage: float
    items: List[dict]


class DetailUpdateResponse(BaseResponseSchema):
    """Captured detail plus the outcome of a triggered auto-close."""
    detail: CountDetailResponse
    count: CountResponse
    auto_closed: bool = False
    alert: Optional[CountAlertResponse] = None


class DifferenceResponse(CountDetailResponse):
    """A captured detail whose counted stock differs from the system stock."""
    folio: str
    branch_id: int


# ============================================================================
# DASHBOARD / HISTORY SCHEMAS
# ============================================================================

class CountDashboardStats(BaseResponseSchema):
    open_counts: int = 0
    in_progress_counts: int = 0
    scheduled_counts: int = 0
    counted_counts: int = 0
    closed_counts: int = 0
    pending_requests: int = 0


class ItemHistoryEntry(BaseResponseSchema):
    """Latest capture of an item inside a date range."""
    item_code: str
    last_counted_at: datetime
    count_id: int
    folio: str
    almacen: int
