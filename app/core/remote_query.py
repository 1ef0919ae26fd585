"""
Remote Query Executor

Read-only query execution against branch databases, either one branch at
a time or fanned out to every connected branch. Each branch is its own
failure domain: a fan-out never lets one branch's error reach the others.

Usage:
    executor = RemoteQueryExecutor(registry)

    rows = await executor.query(branch_id, "SELECT ... WHERE code IN :codes", {"codes": codes})
    by_branch = await executor.query_all("SELECT COUNT(*) AS n FROM articulo")

    # Named query resolved through the branch's schema variant
    rows = await executor.run(branch_id, "catalog_codes", {"codes": codes})
"""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Dict, List

from sqlalchemy import bindparam, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from app.core.branch_registry import BranchConnectionRegistry
from app.core.branch_schema import (
    CATALOG_TABLE,
    is_missing_table_error,
    queries_for,
)
from app.core.exceptions import BranchUnavailable, QueryError, SchemaMismatch

logger = logging.getLogger(__name__)


def normalize_params(params: Any) -> Dict[str, Any]:
    """
    Turn caller parameters into named binds.

    - None: no parameters
    - Mapping: used as is; list/tuple/set values become lists for IN binds
    - Sequence: bound positionally as p0, p1, ...
    - Scalar: treated as a one-element sequence
    """
    if params is None:
        return {}
    if isinstance(params, Mapping):
        return {
            key: list(value) if isinstance(value, (list, tuple, set, frozenset)) else value
            for key, value in params.items()
        }
    if isinstance(params, (str, bytes)) or not isinstance(params, Sequence):
        params = [params]
    return {f"p{i}": value for i, value in enumerate(params)}


def _build_statement(sql: str, params: Dict[str, Any]):
    stmt = text(sql)
    expanding = [bindparam(key, expanding=True) for key, value in params.items() if isinstance(value, list)]
    if expanding:
        stmt = stmt.bindparams(*expanding)
    return stmt


def _error_code(exc: SQLAlchemyError) -> Any:
    if isinstance(exc, DBAPIError):
        if is_missing_table_error(exc):
            return QueryError.NO_SUCH_TABLE
        args = getattr(exc.orig, "args", ())
        if args and isinstance(args[0], int):
            return args[0]
        return type(exc.orig).__name__
    return type(exc).__name__


class RemoteQueryExecutor:
    """Parameterized read queries against one branch or all of them."""

    def __init__(self, registry: BranchConnectionRegistry):
        self.registry = registry

    async def query(self, branch_id: int, sql: str, params: Any = None) -> List[dict]:
        """
        Run a read query on one branch.

        Raises:
            BranchUnavailable: branch unknown or in error
            QueryError: the query failed; `code` holds the driver error code
        """
        engine = self.registry.get(branch_id)
        if engine is None:
            entry = self.registry.get_entry(branch_id)
            reason = entry.state.error_message if entry else "not registered"
            raise BranchUnavailable(branch_id, reason)

        bound = normalize_params(params)
        try:
            async with engine.connect() as conn:
                result = await conn.execute(_build_statement(sql, bound), bound)
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            code = _error_code(e)
            logger.warning(f"Query failed on branch {branch_id} ({code}): {e}")
            raise QueryError(branch_id, str(e), code) from e

    async def query_all(self, sql: str, params: Any = None) -> Dict[int, List[dict]]:
        """
        Run a read query on every connected branch in parallel.

        A branch whose query fails contributes an empty list.
        """
        branch_ids = self.registry.connected_ids()
        results = await asyncio.gather(
            *(self.query(bid, sql, params) for bid in branch_ids),
            return_exceptions=True,
        )
        return self._collect(branch_ids, results)

    async def run(self, branch_id: int, query_name: str, params: Any = None,
                  search: bool = False, line: bool = False) -> List[dict]:
        """
        Run a named query using the branch's schema variant.

        A missing-table failure triggers one re-probe of the branch schema
        and a retry with the new variant's template. Queries the variant has
        no equivalent for return no rows.

        Raises:
            BranchUnavailable, QueryError
            SchemaMismatch: the branch has no known catalog table
        """
        retried = False
        while True:
            variant = self.registry.schema_variant(branch_id)
            if variant is None:
                if self.registry.get(branch_id) is None:
                    raise BranchUnavailable(branch_id)
                variant = await self.registry.reprobe(branch_id)
                retried = True
                if variant is None:
                    raise SchemaMismatch(branch_id, CATALOG_TABLE)

            sql = queries_for(variant).render(query_name, search=search, line=line)
            if sql is None:
                return []

            try:
                return await self.query(branch_id, sql, params)
            except QueryError as e:
                if not e.is_missing_table or retried:
                    raise
                logger.info(f"Branch {branch_id}: table missing for variant {variant.value}, re-probing")
                retried = True
                new_variant = await self.registry.reprobe(branch_id)
                if new_variant is None:
                    raise SchemaMismatch(branch_id, CATALOG_TABLE) from e
                if new_variant == variant:
                    raise

    async def run_all(self, query_name: str, params: Any = None) -> Dict[int, List[dict]]:
        """Named query on every connected branch; failing branches yield []."""
        branch_ids = self.registry.connected_ids()
        results = await asyncio.gather(
            *(self.run(bid, query_name, params) for bid in branch_ids),
            return_exceptions=True,
        )
        return self._collect(branch_ids, results)

    @staticmethod
    def _collect(branch_ids: List[int], results: List[Any]) -> Dict[int, List[dict]]:
        collected: Dict[int, List[dict]] = {}
        for branch_id, result in zip(branch_ids, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"Branch {branch_id} returned no data: {result}")
                collected[branch_id] = []
            else:
                collected[branch_id] = result
        return collected
