"""Stock and catalog schemas."""
from typing import Optional, List, Dict

from pydantic import BaseModel, Field

from app.schemas.base import BaseCreateSchema


class BatchStockRequest(BaseCreateSchema):
    item_codes: List[str] = Field(..., min_length=1)
    almacen: int = Field(default=1, ge=1)


class CompareStockRequest(BaseCreateSchema):
    """Counted quantities keyed by item code."""
    counted: Dict[str, float] = Field(..., min_length=1)
    almacen: int = Field(default=1, ge=1)
    tolerance: Optional[float] = Field(None, ge=0)


class StockValue(BaseModel):
    branch_id: int
    item_code: str
    almacen: int
    stock: float


class BranchStock(BaseModel):
    branch_id: int
    branch_code: Optional[str] = None
    branch_name: Optional[str] = None
    status: Optional[str] = None
    stock: float


class ItemInfo(BaseModel):
    item_code: str
    description: Optional[str] = None
    unit: Optional[str] = None
    line: Optional[str] = None
    min_stock: Optional[float] = None
    stock: float = 0.0
    average_cost: Optional[float] = None
    rack: Optional[str] = None


class ItemListing(BaseModel):
    item_code: str
    description: Optional[str] = None
    unit: Optional[str] = None
    line: Optional[str] = None
    stock: float = 0.0


class Warehouse(BaseModel):
    warehouse_id: int
    name: str


class WarehouseStock(BaseModel):
    warehouse_id: int
    warehouse_name: str
    stock: float


class ItemWarehousesStock(BaseModel):
    item_code: str
    warehouses: List[WarehouseStock]
    total_stock: float


class CompareStockItem(BaseModel):
    item_code: str
    system_stock: float
    counted_stock: float
    difference: float
    difference_percentage: float
    exceeds_tolerance: bool


class CompareStockSummary(BaseModel):
    total_items: int
    items_with_difference: int
    items_exceeding_tolerance: int


class CompareStockResponse(BaseModel):
    branch_id: int
    tolerance: float
    items: List[CompareStockItem]
    summary: CompareStockSummary


class CacheInvalidationResponse(BaseModel):
    branch_id: int
    item_code: Optional[str] = None
    removed: int
