"""
Branch schema variants.

Branch ERP databases come in two layouts:

- ``articulo``: catalog in ``articulo``, per-warehouse stock in
  ``articuloalm``, warehouse names in ``almacenes``.
- ``Articulos``: older single-table layout holding description, unit and
  stock of warehouse 1 only.

Each variant maps a fixed set of query names to SQL templates written
against SQLAlchemy named binds. Templates stay portable between MySQL and
SQLite (IFNULL, SUBSTR, LIMIT/OFFSET). The variant of a branch is probed
once by the registry and cached on its entry.

Usage:
    queries = queries_for(SchemaVariant.ARTICULO)
    sql = queries.get("catalog_codes")
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


# MySQL ER_NO_SUCH_TABLE
MYSQL_NO_SUCH_TABLE = 1146

CATALOG_TABLE = "articulo"


class SchemaVariant(str, Enum):
    """Known branch catalog layouts, in probe order."""
    ARTICULO = "articulo"
    ARTICULOS = "Articulos"


@dataclass(frozen=True)
class BranchQueries:
    """SQL templates for one schema variant."""
    variant: SchemaVariant
    probe: str
    templates: Dict[str, Optional[str]] = field(default_factory=dict)
    # Extra WHERE clauses appended to search_items / item_codes
    search_filter: str = ""
    line_filter: str = ""

    def get(self, name: str) -> Optional[str]:
        """Template for a query name; None when the variant has no equivalent."""
        if name not in self.templates:
            raise KeyError(f"Unknown branch query '{name}'")
        return self.templates[name]

    def render(self, name: str, search: bool = False, line: bool = False) -> Optional[str]:
        """Template with the optional search/line filters filled in."""
        template = self.get(name)
        if template is None or "{filters}" not in template:
            return template
        filters = ""
        if search:
            filters += f" {self.search_filter}"
        if line:
            filters += f" {self.line_filter}"
        return template.replace("{filters}", filters)


ARTICULO_QUERIES = BranchQueries(
    variant=SchemaVariant.ARTICULO,
    probe="SELECT COUNT(*) AS n FROM articulo WHERE 1 = 0",
    templates={
        "catalog_codes": (
            "SELECT DISTINCT Clave_Articulo AS item_code FROM articulo "
            "WHERE Clave_Articulo IN :codes"
        ),
        "catalog_details": (
            "SELECT Clave_Articulo AS item_code, Descripcion AS description, "
            "Unidad_Medida AS unit FROM articulo WHERE Clave_Articulo IN :codes"
        ),
        "warehouse_stock": (
            "SELECT aa.Clave_Articulo AS item_code, aa.Almacen AS warehouse_id, "
            "al.Nombre AS warehouse_name, IFNULL(aa.Existencia_Fisica, 0) AS stock "
            "FROM articuloalm aa LEFT JOIN almacenes al ON al.Almacen = aa.Almacen "
            "WHERE aa.Clave_Articulo IN :codes AND aa.Almacen = :almacen"
        ),
        "warehouse_name": "SELECT Nombre AS name FROM almacenes WHERE Almacen = :almacen LIMIT 1",
        "warehouses": (
            "SELECT DISTINCT aa.Almacen AS warehouse_id, al.Nombre AS name "
            "FROM articuloalm aa LEFT JOIN almacenes al ON al.Almacen = aa.Almacen "
            "WHERE aa.Almacen IS NOT NULL ORDER BY aa.Almacen"
        ),
        "lines": (
            "SELECT DISTINCT SUBSTR(Clave_Articulo, 1, 5) AS line FROM articulo "
            "WHERE Clave_Articulo IS NOT NULL ORDER BY line"
        ),
        "item_info": (
            "SELECT a.Clave_Articulo AS item_code, a.Descripcion AS description, "
            "a.Unidad_Medida AS unit, a.Inventario_Minimo AS min_stock, "
            "IFNULL(aa.Existencia_Fisica, 0) AS stock, aa.Costo_Promedio AS average_cost, "
            "aa.Rack AS rack "
            "FROM articulo a LEFT JOIN articuloalm aa "
            "ON aa.Clave_Articulo = a.Clave_Articulo AND aa.Almacen = 1 "
            "WHERE a.Clave_Articulo = :code LIMIT 1"
        ),
        "search_items": (
            "SELECT a.Clave_Articulo AS item_code, a.Descripcion AS description, "
            "a.Unidad_Medida AS unit, IFNULL(aa.Existencia_Fisica, 0) AS stock "
            "FROM articulo a LEFT JOIN articuloalm aa "
            "ON aa.Clave_Articulo = a.Clave_Articulo AND aa.Almacen = :almacen "
            "WHERE 1 = 1{filters} ORDER BY a.Clave_Articulo LIMIT :limit OFFSET :offset"
        ),
        "item_codes": (
            "SELECT a.Clave_Articulo AS item_code FROM articulo a "
            "WHERE 1 = 1{filters} ORDER BY a.Clave_Articulo"
        ),
        "item_warehouses_stock": (
            "SELECT aa.Almacen AS warehouse_id, al.Nombre AS warehouse_name, "
            "IFNULL(aa.Existencia_Fisica, 0) AS stock "
            "FROM articuloalm aa LEFT JOIN almacenes al ON al.Almacen = aa.Almacen "
            "WHERE aa.Clave_Articulo = :code ORDER BY aa.Almacen"
        ),
    },
    search_filter="AND (a.Clave_Articulo LIKE :search OR a.Descripcion LIKE :search)",
    line_filter="AND SUBSTR(a.Clave_Articulo, 1, 5) = :line",
)


ARTICULOS_QUERIES = BranchQueries(
    variant=SchemaVariant.ARTICULOS,
    probe="SELECT COUNT(*) AS n FROM Articulos WHERE 1 = 0",
    templates={
        "catalog_codes": (
            "SELECT DISTINCT Clave_Articulo AS item_code FROM Articulos "
            "WHERE Clave_Articulo IN :codes"
        ),
        "catalog_details": (
            "SELECT Clave_Articulo AS item_code, Descripcion AS description, "
            "IFNULL(Unidad, 'PZA') AS unit FROM Articulos WHERE Clave_Articulo IN :codes"
        ),
        # Single-table layout only tracks warehouse 1
        "warehouse_stock": (
            "SELECT Clave_Articulo AS item_code, 1 AS warehouse_id, NULL AS warehouse_name, "
            "IFNULL(Existencia_Fisica, 0) AS stock FROM Articulos "
            "WHERE Clave_Articulo IN :codes AND :almacen = 1"
        ),
        "warehouse_name": None,
        "warehouses": "SELECT 1 AS warehouse_id, NULL AS name",
        "lines": (
            "SELECT DISTINCT SUBSTR(Clave_Articulo, 1, 5) AS line FROM Articulos "
            "WHERE Clave_Articulo IS NOT NULL ORDER BY line"
        ),
        "item_info": (
            "SELECT Clave_Articulo AS item_code, Descripcion AS description, "
            "IFNULL(Unidad, 'PZA') AS unit, NULL AS min_stock, "
            "IFNULL(Existencia_Fisica, 0) AS stock, NULL AS average_cost, NULL AS rack "
            "FROM Articulos WHERE Clave_Articulo = :code LIMIT 1"
        ),
        "search_items": (
            "SELECT a.Clave_Articulo AS item_code, a.Descripcion AS description, "
            "IFNULL(a.Unidad, 'PZA') AS unit, "
            "CASE WHEN :almacen = 1 THEN IFNULL(a.Existencia_Fisica, 0) ELSE 0 END AS stock "
            "FROM Articulos a WHERE 1 = 1{filters} "
            "ORDER BY a.Clave_Articulo LIMIT :limit OFFSET :offset"
        ),
        "item_codes": (
            "SELECT a.Clave_Articulo AS item_code FROM Articulos a "
            "WHERE 1 = 1{filters} ORDER BY a.Clave_Articulo"
        ),
        "item_warehouses_stock": (
            "SELECT 1 AS warehouse_id, NULL AS warehouse_name, "
            "IFNULL(Existencia_Fisica, 0) AS stock FROM Articulos WHERE Clave_Articulo = :code"
        ),
    },
    search_filter="AND (a.Clave_Articulo LIKE :search OR a.Descripcion LIKE :search)",
    line_filter="AND SUBSTR(a.Clave_Articulo, 1, 5) = :line",
)


VARIANT_QUERIES: Dict[SchemaVariant, BranchQueries] = {
    SchemaVariant.ARTICULO: ARTICULO_QUERIES,
    SchemaVariant.ARTICULOS: ARTICULOS_QUERIES,
}


def queries_for(variant: SchemaVariant) -> BranchQueries:
    return VARIANT_QUERIES[variant]


def is_missing_table_error(exc: DBAPIError) -> bool:
    """True when a driver error means the referenced table does not exist."""
    orig = getattr(exc, "orig", None) or exc
    args = getattr(orig, "args", ())
    if args and args[0] == MYSQL_NO_SUCH_TABLE:
        return True
    message = str(orig).lower()
    return (
        "no such table" in message
        or "doesn't exist" in message
        or ("relation" in message and "does not exist" in message)
    )


async def probe_schema_variant(engine: AsyncEngine) -> Optional[SchemaVariant]:
    """
    Find which catalog layout a branch uses.

    Returns None when neither table exists. Errors other than a missing
    table propagate to the caller.
    """
    for variant in SchemaVariant:
        try:
            async with engine.connect() as conn:
                await conn.execute(text(VARIANT_QUERIES[variant].probe))
            return variant
        except DBAPIError as e:
            if not is_missing_table_error(e):
                raise
            logger.debug(f"Schema probe: table '{variant.value}' not present")
    return None
