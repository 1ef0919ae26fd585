import pytest

from app.core.exceptions import BranchUnavailable


ITEMS = {
    "ABC0100001": {1: 10, 2: 3},
    "ABC0100002": 4,
    "XYZ0200001": 0,
}


async def test_get_stock_reads_branch_then_cache(branch_factory, stock_service, stock_cache):
    branch = await branch_factory("SUC01", ITEMS)

    assert await stock_service.get_stock(branch.id, "ABC0100001") == 10.0
    assert await stock_cache.get_stock(branch.id, "ABC0100001") == 10.0

    # A change in the branch is not seen until the entry expires or is invalidated
    branch.set_stock("ABC0100001", 99)
    assert await stock_service.get_stock(branch.id, "ABC0100001") == 10.0

    await stock_service.invalidate_cache(branch.id, "ABC0100001")
    assert await stock_service.get_stock(branch.id, "ABC0100001") == 99.0


async def test_get_stock_per_warehouse(branch_factory, stock_service):
    branch = await branch_factory("SUC01", ITEMS)

    assert await stock_service.get_stock(branch.id, "ABC0100001", almacen=2) == 3.0
    assert await stock_service.get_stock(branch.id, "ABC0100002", almacen=2) == 0.0


async def test_get_stock_degrades_to_zero(branch_factory, stock_service):
    down = await branch_factory("SUC02", reachable=False)
    unknown_layout = await branch_factory("SUC03", variant="none")

    assert await stock_service.get_stock(down.id, "ABC0100001") == 0.0
    assert await stock_service.get_stock(unknown_layout.id, "ABC0100001") == 0.0
    assert await stock_service.get_stock(404, "ABC0100001") == 0.0


async def test_batch_stock_only_queries_misses(branch_factory, stock_service, stock_cache):
    branch = await branch_factory("SUC01", ITEMS)
    await stock_cache.set_stock(branch.id, "ABC0100002", 42.0)

    stocks = await stock_service.get_batch_stock(branch.id, ["ABC0100001", "ABC0100002", "NOPE"])

    assert stocks == {"ABC0100001": 10.0, "ABC0100002": 42.0, "NOPE": 0.0}
    # Unknown codes are cached as zero
    assert await stock_cache.get_stock(branch.id, "NOPE") == 0.0


async def test_refresh_stock_bypasses_cache_and_raises(branch_factory, stock_service, stock_cache):
    branch = await branch_factory("SUC01", ITEMS)
    await stock_cache.set_stock(branch.id, "ABC0100002", 42.0)

    assert await stock_service.refresh_stock(branch.id, ["ABC0100002"]) == {"ABC0100002": 4.0}
    assert await stock_cache.get_stock(branch.id, "ABC0100002") == 4.0

    down = await branch_factory("SUC02", reachable=False)
    with pytest.raises(BranchUnavailable):
        await stock_service.refresh_stock(down.id, ["ABC0100002"])


async def test_stock_all_branches(branch_factory, stock_service):
    first = await branch_factory("SUC01", ITEMS)
    second = await branch_factory("SUC02", {"ABC0100001": 7}, variant="Articulos")
    down = await branch_factory("SUC03", reachable=False)

    rows = await stock_service.get_stock_all_branches("ABC0100001")

    by_branch = {row["branch_id"]: row for row in rows}
    assert by_branch[first.id]["stock"] == 10.0
    assert by_branch[second.id]["stock"] == 7.0
    assert by_branch[down.id]["stock"] == 0.0
    assert by_branch[down.id]["status"] == "error"


async def test_item_info(branch_factory, stock_service):
    branch = await branch_factory("SUC01", ITEMS)
    legacy = await branch_factory("SUC02", {"XYZ0200001": 5}, variant="Articulos")

    info = await stock_service.get_item_info(branch.id, "ABC0100001")
    assert info["description"] == "Articulo ABC0100001"
    assert info["line"] == "ABC01"
    assert info["stock"] == 10.0
    assert info["rack"] == "R1"

    legacy_info = await stock_service.get_item_info(legacy.id, "XYZ0200001")
    assert legacy_info["unit"] == "PZA"
    assert legacy_info["stock"] == 5.0

    assert await stock_service.get_item_info(branch.id, "NOPE") is None


async def test_search_items_filters(branch_factory, stock_service):
    branch = await branch_factory("SUC01", ITEMS)

    by_line = await stock_service.search_items(branch.id, line="ABC01")
    assert [i["item_code"] for i in by_line] == ["ABC0100001", "ABC0100002"]

    by_text = await stock_service.search_items(branch.id, search="XYZ")
    assert [i["item_code"] for i in by_text] == ["XYZ0200001"]

    paged = await stock_service.search_items(branch.id, limit=1, offset=1)
    assert [i["item_code"] for i in paged] == ["ABC0100002"]


async def test_lines_and_warehouses(branch_factory, stock_service):
    branch = await branch_factory("SUC01", ITEMS, warehouses={1: "Piso de venta"})

    assert await stock_service.get_lines(branch.id) == ["ABC01", "XYZ02"]
    assert await stock_service.get_warehouses(branch.id) == [
        {"warehouse_id": 1, "name": "Piso de venta"},
        {"warehouse_id": 2, "name": "Bodega 2"},
    ]


async def test_item_warehouses_stock(branch_factory, stock_service):
    branch = await branch_factory("SUC01", ITEMS)

    result = await stock_service.get_item_warehouses_stock(branch.id, "ABC0100001")

    assert result["total_stock"] == 13.0
    assert [w["warehouse_id"] for w in result["warehouses"]] == [1, 2]
    assert result["warehouses"][0]["warehouse_name"] == "Sucursal principal"


async def test_compare_stock(branch_factory, stock_service):
    branch = await branch_factory("SUC01", ITEMS)

    result = await stock_service.compare_stock(
        branch.id, {"ABC0100001": 9, "ABC0100002": 4, "XYZ0200001": 2}, tolerance=5.0
    )

    items = {i["item_code"]: i for i in result["items"]}
    assert items["ABC0100001"]["difference"] == -1.0
    assert items["ABC0100001"]["difference_percentage"] == -10.0
    assert items["ABC0100001"]["exceeds_tolerance"] is True
    assert items["ABC0100002"]["difference_percentage"] == 0.0
    assert items["XYZ0200001"]["difference_percentage"] == 100.0
    assert result["summary"] == {
        "total_items": 3,
        "items_with_difference": 2,
        "items_exceeding_tolerance": 2,
    }


async def test_batch_stock_matches_padded_branch_codes(branch_factory, stock_service, executor, monkeypatch):
    branch = await branch_factory("SUC01", ITEMS)
    run = executor.run

    async def padded_codes(branch_id, query_name, params, **filters):
        rows = await run(branch_id, query_name, params, **filters)
        return [{**row, "item_code": f"{row['item_code']}   "} for row in rows]

    monkeypatch.setattr(executor, "run", padded_codes)

    stock = await stock_service.refresh_stock(branch.id, ["ABC0100001", "ABC0100002"])

    assert stock == {"ABC0100001": 10.0, "ABC0100002": 4.0}
