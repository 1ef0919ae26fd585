"""
Stock API endpoints.

Read-only stock and catalog lookups against branch databases, served
through the branch-isolated cache. Unreachable branches answer 0 / empty
instead of failing.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.api.deps import Registry, Stock, require_permission
from app.core.exceptions import NotFoundError
from app.core.permissions import Permissions
from app.schemas.stock import (
    BatchStockRequest, CompareStockRequest, CompareStockResponse,
    StockValue, BranchStock, ItemInfo, ItemListing,
    Warehouse, ItemWarehousesStock, CacheInvalidationResponse,
)

router = APIRouter()


def _require_branch(registry, branch_id: int) -> None:
    if registry.get_entry(branch_id) is None:
        raise NotFoundError(f"Branch {branch_id} not found")


# Routes with fixed segments must be declared before /{branch_id}/{item_code}

@router.get("/all-branches/{item_code}", response_model=List[BranchStock], summary="Stock in every branch")
async def get_stock_all_branches(
    item_code: str,
    service: Stock,
    almacen: int = Query(1, ge=1),
    user_id: int = Depends(require_permission(Permissions.STOCK_VIEW)),
):
    return await service.get_stock_all_branches(item_code, almacen)


@router.get("/cache/stats", summary="Cache statistics")
async def get_cache_stats(
    service: Stock,
    user_id: int = Depends(require_permission(Permissions.CACHE_MANAGE)),
):
    return await service.cache_stats()


@router.delete("/cache", summary="Flush the whole stock cache")
async def flush_cache(
    service: Stock,
    user_id: int = Depends(require_permission(Permissions.CACHE_MANAGE)),
):
    return {"removed": await service.flush_cache()}


@router.post("/{branch_id}/batch", response_model=List[StockValue], summary="Stock of many items")
async def get_batch_stock(
    branch_id: int,
    data: BatchStockRequest,
    service: Stock,
    registry: Registry,
    user_id: int = Depends(require_permission(Permissions.STOCK_VIEW)),
):
    _require_branch(registry, branch_id)
    stocks = await service.get_batch_stock(branch_id, data.item_codes, data.almacen)
    return [
        StockValue(branch_id=branch_id, item_code=code, almacen=data.almacen, stock=stock)
        for code, stock in stocks.items()
    ]


@router.get("/{branch_id}/items", response_model=List[ItemListing], summary="Search items")
async def search_items(
    branch_id: int,
    service: Stock,
    registry: Registry,
    search: Optional[str] = None,
    line: Optional[str] = None,
    almacen: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(require_permission(Permissions.STOCK_VIEW)),
):
    """Paged item listing filtered by text (code or description) and line."""
    _require_branch(registry, branch_id)
    return await service.search_items(branch_id, search, line, almacen, limit, offset)


@router.get("/{branch_id}/lines", response_model=List[str], summary="Product lines")
async def get_lines(
    branch_id: int,
    service: Stock,
    registry: Registry,
    user_id: int = Depends(require_permission(Permissions.STOCK_VIEW)),
):
    _require_branch(registry, branch_id)
    return await service.get_lines(branch_id)


@router.get("/{branch_id}/lines/{line}/items", response_model=List[str], summary="Item codes of a line")
async def get_line_item_codes(
    branch_id: int,
    line: str,
    service: Stock,
    registry: Registry,
    user_id: int = Depends(require_permission(Permissions.STOCK_VIEW)),
):
    """Every item code of a product line, e.g. to build a count by line."""
    _require_branch(registry, branch_id)
    return await service.get_item_codes(branch_id, line)


@router.get("/{branch_id}/warehouses", response_model=List[Warehouse], summary="Warehouses")
async def get_warehouses(
    branch_id: int,
    service: Stock,
    registry: Registry,
    user_id: int = Depends(require_permission(Permissions.STOCK_VIEW)),
):
    _require_branch(registry, branch_id)
    return await service.get_warehouses(branch_id)


@router.get("/{branch_id}/items/{item_code}/info", response_model=ItemInfo, summary="Item record")
async def get_item_info(
    branch_id: int,
    item_code: str,
    service: Stock,
    registry: Registry,
    user_id: int = Depends(require_permission(Permissions.STOCK_VIEW)),
):
    _require_branch(registry, branch_id)
    item = await service.get_item_info(branch_id, item_code)
    if item is None:
        raise NotFoundError(f"Item {item_code} not found in branch {branch_id}")
    return item


@router.get(
    "/{branch_id}/items/{item_code}/warehouses",
    response_model=ItemWarehousesStock,
    summary="Item stock per warehouse"
)
async def get_item_warehouses_stock(
    branch_id: int,
    item_code: str,
    service: Stock,
    registry: Registry,
    user_id: int = Depends(require_permission(Permissions.STOCK_VIEW)),
):
    _require_branch(registry, branch_id)
    return await service.get_item_warehouses_stock(branch_id, item_code)


@router.post("/{branch_id}/compare", response_model=CompareStockResponse, summary="Compare counted stock")
async def compare_stock(
    branch_id: int,
    data: CompareStockRequest,
    service: Stock,
    registry: Registry,
    user_id: int = Depends(require_permission(Permissions.STOCK_VIEW)),
):
    """Counted quantities against system stock, flagging items beyond tolerance."""
    _require_branch(registry, branch_id)
    return await service.compare_stock(branch_id, data.counted, data.almacen, data.tolerance)


@router.delete("/{branch_id}/cache", response_model=CacheInvalidationResponse, summary="Clear branch cache")
async def invalidate_cache(
    branch_id: int,
    service: Stock,
    item_code: Optional[str] = None,
    user_id: int = Depends(require_permission(Permissions.CACHE_MANAGE)),
):
    removed = await service.invalidate_cache(branch_id, item_code)
    return CacheInvalidationResponse(branch_id=branch_id, item_code=item_code, removed=removed)


@router.get("/{branch_id}/{item_code}", response_model=StockValue, summary="Stock of one item")
async def get_stock(
    branch_id: int,
    item_code: str,
    service: Stock,
    registry: Registry,
    almacen: int = Query(1, ge=1),
    user_id: int = Depends(require_permission(Permissions.STOCK_VIEW)),
):
    _require_branch(registry, branch_id)
    stock = await service.get_stock(branch_id, item_code, almacen)
    return StockValue(branch_id=branch_id, item_code=item_code, almacen=almacen, stock=stock)
