import sqlite3

import pytest

from app.core.exceptions import BranchUnavailable, QueryError, SchemaMismatch
from app.core.remote_query import normalize_params


ITEMS = {"ABC0100001": 10, "ABC0100002": 4, "XYZ0200001": 0}


@pytest.mark.parametrize("params, expected", [
    (None, {}),
    ({"codes": ("A", "B")}, {"codes": ["A", "B"]}),
    ({"code": "A"}, {"code": "A"}),
    (["A", 3], {"p0": "A", "p1": 3}),
    ("A", {"p0": "A"}),
    (7, {"p0": 7}),
])
def test_normalize_params(params, expected):
    assert normalize_params(params) == expected


async def test_query_with_in_list(branch_factory, executor):
    branch = await branch_factory("SUC01", ITEMS)

    rows = await executor.query(
        branch.id,
        "SELECT Clave_Articulo AS code FROM articulo WHERE Clave_Articulo IN :codes ORDER BY code",
        {"codes": ["ABC0100001", "XYZ0200001", "NOPE"]},
    )

    assert rows == [{"code": "ABC0100001"}, {"code": "XYZ0200001"}]


async def test_query_positional_params(branch_factory, executor):
    branch = await branch_factory("SUC01", ITEMS)

    rows = await executor.query(
        branch.id, "SELECT Descripcion AS d FROM articulo WHERE Clave_Articulo = :p0", "ABC0100002"
    )

    assert rows == [{"d": "Articulo ABC0100002"}]


async def test_query_unavailable_branch(branch_factory, executor):
    branch = await branch_factory("SUC02", reachable=False)

    with pytest.raises(BranchUnavailable):
        await executor.query(branch.id, "SELECT 1")
    with pytest.raises(BranchUnavailable):
        await executor.query(404, "SELECT 1")


async def test_query_error_normalizes_missing_table(branch_factory, executor):
    branch = await branch_factory("SUC01", ITEMS)

    with pytest.raises(QueryError) as exc_info:
        await executor.query(branch.id, "SELECT * FROM no_existe")

    assert exc_info.value.is_missing_table
    assert exc_info.value.branch_id == branch.id


async def test_query_all_skips_failing_branches(branch_factory, executor):
    first = await branch_factory("SUC01", ITEMS)
    legacy = await branch_factory("SUC02", {"ABC0100001": 1}, variant="Articulos")
    await branch_factory("SUC03", reachable=False)

    results = await executor.query_all("SELECT COUNT(*) AS n FROM articulo")

    # Only connected branches answer; the legacy one fails on the missing table
    assert results == {first.id: [{"n": 3}], legacy.id: []}


async def test_run_uses_branch_variant(branch_factory, executor):
    modern = await branch_factory("SUC01", ITEMS)
    legacy = await branch_factory("SUC02", {"ABC0100001": 6, "ABC0100009": 2}, variant="Articulos")

    modern_rows = await executor.run(modern.id, "catalog_codes", {"codes": ["ABC0100001", "ABC0100009"]})
    legacy_rows = await executor.run(legacy.id, "catalog_codes", {"codes": ["ABC0100001", "ABC0100009"]})

    assert {r["item_code"] for r in modern_rows} == {"ABC0100001"}
    assert {r["item_code"] for r in legacy_rows} == {"ABC0100001", "ABC0100009"}


async def test_run_reprobes_after_layout_change(branch_factory, executor, registry, tmp_path):
    branch = await branch_factory("SUC01", {"ABC0100001": 6}, variant="Articulos")
    assert registry.schema_variant(branch.id).value == "Articulos"

    # The branch migrates to the modern layout while registered
    with sqlite3.connect(branch.path) as conn:
        conn.execute("ALTER TABLE Articulos RENAME TO viejo")
        conn.execute(
            "CREATE TABLE articulo (Clave_Articulo TEXT, Descripcion TEXT, "
            "Unidad_Medida TEXT, Inventario_Minimo REAL)"
        )
        conn.execute("INSERT INTO articulo VALUES ('ABC0100001', 'Nuevo', 'PZA', 1)")

    rows = await executor.run(branch.id, "catalog_codes", {"codes": ["ABC0100001"]})

    assert rows == [{"item_code": "ABC0100001"}]
    assert registry.schema_variant(branch.id).value == "articulo"


async def test_run_without_known_layout_raises_schema_mismatch(branch_factory, executor):
    branch = await branch_factory("SUC01", variant="none")

    with pytest.raises(SchemaMismatch):
        await executor.run(branch.id, "catalog_codes", {"codes": ["A"]})


async def test_run_query_without_equivalent_returns_empty(branch_factory, executor):
    legacy = await branch_factory("SUC02", {"ABC0100001": 6}, variant="Articulos")

    assert await executor.run(legacy.id, "warehouse_name", {"almacen": 1}) == []


async def test_run_all(branch_factory, executor):
    modern = await branch_factory("SUC01", ITEMS)
    legacy = await branch_factory("SUC02", {"ABC0100001": 6}, variant="Articulos")
    await branch_factory("SUC03", variant="none")

    results = await executor.run_all("warehouse_stock", {"codes": ["ABC0100001"], "almacen": 1})

    assert [float(r["stock"]) for r in results[modern.id]] == [10.0]
    assert [float(r["stock"]) for r in results[legacy.id]] == [6.0]
    assert len(results) == 3
