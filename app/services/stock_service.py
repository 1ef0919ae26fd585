"""
Stock Service

Cache-fronted stock, item and listing lookups against branch databases.
Read paths degrade instead of failing: an unreachable branch or a missing
table yields zero stock, no item or an empty listing, and is logged.
"""
import asyncio
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from app.config import settings
from app.core.branch_registry import BranchConnectionRegistry
from app.core.exceptions import BranchUnavailable, QueryError
from app.core.remote_query import RemoteQueryExecutor
from app.services.cache_service import StockCache

logger = logging.getLogger(__name__)


PRIMARY_WAREHOUSE = 1


def warehouse_label(warehouse_id: int, name: Optional[str] = None) -> str:
    if name:
        return name
    if warehouse_id == PRIMARY_WAREHOUSE:
        return "Sucursal principal"
    return f"Bodega {warehouse_id}"


def chunked(items: List[Any], size: int) -> Iterable[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    return float(value)


class StockService:
    """Stock and catalog reads for one or all branches."""

    def __init__(
        self,
        registry: BranchConnectionRegistry,
        executor: RemoteQueryExecutor,
        cache: StockCache,
    ):
        self.registry = registry
        self.executor = executor
        self.cache = cache

    async def _safe_run(self, branch_id: int, query_name: str, params: dict, **filters) -> List[dict]:
        try:
            return await self.executor.run(branch_id, query_name, params, **filters)
        except (BranchUnavailable, QueryError) as e:
            logger.warning(f"{query_name} degraded for branch {branch_id}: {e}")
            return []

    # ==================== Stock ====================

    async def get_stock(self, branch_id: int, item_code: str, almacen: int = PRIMARY_WAREHOUSE) -> float:
        """Stock of one item; 0 when not found or the branch cannot answer."""
        cached = await self.cache.get_stock(branch_id, item_code, almacen)
        if cached is not None:
            return cached

        try:
            rows = await self.executor.run(
                branch_id, "warehouse_stock", {"codes": [item_code], "almacen": almacen}
            )
        except (BranchUnavailable, QueryError) as e:
            logger.warning(f"Stock lookup degraded for {item_code} on branch {branch_id}: {e}")
            return 0.0

        stock = _to_float(rows[0]["stock"]) if rows else 0.0
        await self.cache.set_stock(branch_id, item_code, stock, almacen)
        return stock

    async def get_batch_stock(
        self,
        branch_id: int,
        item_codes: Iterable[str],
        almacen: int = PRIMARY_WAREHOUSE,
        use_cache: bool = True,
        raise_errors: bool = False,
    ) -> Dict[str, float]:
        """
        Stock of many items in one branch.

        Only cache misses reach the branch, one IN query per chunk. Codes
        the branch does not know are cached as 0.

        Args:
            use_cache: False skips the cache read (results are still stored)
            raise_errors: re-raise branch errors instead of answering 0
        """
        codes = list(dict.fromkeys(item_codes))
        if use_cache:
            hits, misses = await self.cache.get_multiple(branch_id, codes, almacen)
        else:
            hits, misses = {}, codes

        if not misses:
            return hits

        fetched: Dict[str, float] = {}
        try:
            for chunk in chunked(misses, settings.SEED_CHUNK_SIZE):
                rows = await self.executor.run(
                    branch_id, "warehouse_stock", {"codes": chunk, "almacen": almacen}
                )
                found = {str(row["item_code"]).strip(): _to_float(row["stock"]) for row in rows}
                for code in chunk:
                    fetched[code] = found.get(code, 0.0)
        except (BranchUnavailable, QueryError) as e:
            if raise_errors:
                raise
            logger.warning(f"Batch stock degraded on branch {branch_id}: {e}")
            for code in misses:
                fetched.setdefault(code, 0.0)
            return {**hits, **fetched}

        await self.cache.set_multiple(branch_id, fetched, almacen)
        return {**hits, **fetched}

    async def refresh_stock(
        self,
        branch_id: int,
        item_codes: Iterable[str],
        almacen: int = PRIMARY_WAREHOUSE,
    ) -> Dict[str, float]:
        """Fresh stock straight from the branch. Branch errors propagate."""
        return await self.get_batch_stock(
            branch_id, item_codes, almacen, use_cache=False, raise_errors=True
        )

    async def get_stock_all_branches(self, item_code: str, almacen: int = PRIMARY_WAREHOUSE) -> List[dict]:
        """Stock of one item in every registered branch."""
        branch_ids = self.registry.branch_ids()
        stocks = await asyncio.gather(
            *(self.get_stock(bid, item_code, almacen) for bid in branch_ids)
        )
        result = []
        for branch_id, stock in zip(branch_ids, stocks):
            entry = self.registry.get_entry(branch_id)
            result.append({
                "branch_id": branch_id,
                "branch_code": entry.config.code if entry else None,
                "branch_name": entry.config.name if entry else None,
                "status": entry.state.status.value if entry else None,
                "stock": stock,
            })
        return result

    # ==================== Items ====================

    async def get_item_info(self, branch_id: int, item_code: str) -> Optional[dict]:
        cached = await self.cache.get_item(branch_id, item_code)
        if cached is not None:
            return cached

        rows = await self._safe_run(branch_id, "item_info", {"code": item_code})
        if not rows:
            return None

        row = rows[0]
        item = {
            "item_code": row["item_code"],
            "description": row.get("description"),
            "unit": row.get("unit"),
            "line": (row["item_code"] or "")[:5],
            "min_stock": _to_float(row.get("min_stock")) if row.get("min_stock") is not None else None,
            "stock": _to_float(row.get("stock")),
            "average_cost": _to_float(row.get("average_cost")) if row.get("average_cost") is not None else None,
            "rack": row.get("rack"),
        }
        await self.cache.set_item(branch_id, item_code, item)
        return item

    async def search_items(
        self,
        branch_id: int,
        search: Optional[str] = None,
        line: Optional[str] = None,
        almacen: int = PRIMARY_WAREHOUSE,
        limit: int = 50,
        offset: int = 0,
    ) -> List[dict]:
        """Paged item listing with optional text and line filters."""
        signature = {"search": search, "line": line, "almacen": almacen, "limit": limit, "offset": offset}
        cached = await self.cache.get_listing(branch_id, "items", signature)
        if cached is not None:
            return cached

        params: Dict[str, Any] = {"almacen": almacen, "limit": limit, "offset": offset}
        if search:
            params["search"] = f"%{search}%"
        if line:
            params["line"] = line

        rows = await self._safe_run(
            branch_id, "search_items", params, search=bool(search), line=bool(line)
        )
        items = [
            {
                "item_code": row["item_code"],
                "description": row.get("description"),
                "unit": row.get("unit"),
                "line": (row["item_code"] or "")[:5],
                "stock": _to_float(row.get("stock")),
            }
            for row in rows
        ]
        if items:
            await self.cache.set_listing(branch_id, "items", signature, items)
        return items

    async def get_item_codes(self, branch_id: int, line: Optional[str] = None) -> List[str]:
        params = {"line": line} if line else {}
        rows = await self._safe_run(branch_id, "item_codes", params, line=bool(line))
        return [row["item_code"] for row in rows]

    async def get_lines(self, branch_id: int) -> List[str]:
        cached = await self.cache.get_listing(branch_id, "lines")
        if cached is not None:
            return cached

        rows = await self._safe_run(branch_id, "lines", {})
        lines = [row["line"] for row in rows if row.get("line")]
        if lines:
            await self.cache.set_listing(branch_id, "lines", None, lines)
        return lines

    async def get_warehouses(self, branch_id: int) -> List[dict]:
        cached = await self.cache.get_listing(branch_id, "warehouses")
        if cached is not None:
            return cached

        rows = await self._safe_run(branch_id, "warehouses", {})
        warehouses = [
            {
                "warehouse_id": int(row["warehouse_id"]),
                "name": warehouse_label(int(row["warehouse_id"]), row.get("name")),
            }
            for row in rows
        ]
        if warehouses:
            await self.cache.set_listing(branch_id, "warehouses", None, warehouses)
        return warehouses

    async def get_item_warehouses_stock(self, branch_id: int, item_code: str) -> dict:
        rows = await self._safe_run(branch_id, "item_warehouses_stock", {"code": item_code})
        warehouses = [
            {
                "warehouse_id": int(row["warehouse_id"]),
                "warehouse_name": warehouse_label(int(row["warehouse_id"]), row.get("warehouse_name")),
                "stock": _to_float(row.get("stock")),
            }
            for row in rows
        ]
        return {
            "item_code": item_code,
            "warehouses": warehouses,
            "total_stock": sum(w["stock"] for w in warehouses),
        }

    # ==================== Comparison ====================

    async def compare_stock(
        self,
        branch_id: int,
        counted: Dict[str, float],
        almacen: int = PRIMARY_WAREHOUSE,
        tolerance: Optional[float] = None,
    ) -> dict:
        """Compare counted quantities against system stock."""
        tolerance = settings.STOCK_COMPARE_TOLERANCE if tolerance is None else tolerance
        system = await self.get_batch_stock(branch_id, counted.keys(), almacen)

        items = []
        for code, counted_qty in counted.items():
            system_qty = system.get(code, 0.0)
            difference = counted_qty - system_qty
            if system_qty != 0:
                percentage = Decimal(str(difference)) / Decimal(str(system_qty)) * 100
            elif difference != 0:
                percentage = Decimal("100")
            else:
                percentage = Decimal("0")
            percentage = float(percentage.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
            items.append({
                "item_code": code,
                "system_stock": system_qty,
                "counted_stock": counted_qty,
                "difference": difference,
                "difference_percentage": percentage,
                "exceeds_tolerance": abs(percentage) > tolerance,
            })

        return {
            "branch_id": branch_id,
            "tolerance": tolerance,
            "items": items,
            "summary": {
                "total_items": len(items),
                "items_with_difference": sum(1 for i in items if i["difference"] != 0),
                "items_exceeding_tolerance": sum(1 for i in items if i["exceeds_tolerance"]),
            },
        }

    # ==================== Cache ====================

    async def invalidate_cache(self, branch_id: int, item_code: Optional[str] = None) -> int:
        return await self.cache.invalidate(branch_id, item_code)

    async def flush_cache(self) -> int:
        removed = await self.cache.flush_all()
        logger.info(f"Stock cache flushed: {removed} keys")
        return removed

    async def cache_stats(self) -> Dict[str, Any]:
        return await self.cache.stats()
