"""
Shared pytest fixtures.

The local store is a file-backed SQLite database per test. Branch ERP
databases are SQLite files too, registered through their DSN, in either
the `articulo` layout or the legacy `Articulos` layout.
"""
import os
import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

# -------- Test environment, before any app import --------
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="inventory-counts-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT / 'app.db'}"
os.environ["BRANCH_HEALTH_CHECK_ENABLED"] = "false"
os.environ["BRANCH_CONNECT_TIMEOUT"] = "5"
os.environ.pop("REDIS_URL", None)
os.environ.pop("NOTIFICATION_WEBHOOK_URL", None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app.core.branch_registry import BranchConnectionRegistry, BranchConfig  # noqa: E402
from app.core.remote_query import RemoteQueryExecutor  # noqa: E402
from app.database import Base, custom_json_dumps  # noqa: E402
from app.models import Branch, Role, User, ALL_PERMISSIONS  # noqa: E402
from app.services.audit_service import AuditService  # noqa: E402
from app.services.cache_service import InMemoryCache, StockCache  # noqa: E402
from app.services.count_service import CountService  # noqa: E402
from app.services.event_service import EventBroadcaster  # noqa: E402
from app.services.request_service import RequestService  # noqa: E402
from app.services.stock_service import StockService  # noqa: E402


StockLevels = Union[float, Dict[int, float]]


# -------- Local store --------

@pytest_asyncio.fixture
async def local_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'local.db'}",
        json_serializer=custom_json_dumps,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(local_engine):
    return async_sessionmaker(
        local_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def admin_user(session_factory) -> User:
    async with session_factory() as session:
        role = Role(name="Administrador", permissions=[ALL_PERMISSIONS])
        user = User(name="Ana Supervisora", email="ana@example.com", phone_number="5512345678", role=role)
        session.add_all([role, user])
        await session.commit()
        await session.refresh(user)
        return user


# -------- Branch databases --------

@dataclass
class FakeBranch:
    """A registered branch backed by a SQLite file."""
    id: int
    code: str
    name: str
    path: Path
    variant: str

    def set_stock(self, item_code: str, stock: float, almacen: int = 1) -> None:
        with sqlite3.connect(self.path) as conn:
            if self.variant == "articulo":
                updated = conn.execute(
                    "UPDATE articuloalm SET Existencia_Fisica = ? WHERE Clave_Articulo = ? AND Almacen = ?",
                    (stock, item_code, almacen),
                ).rowcount
                if not updated:
                    conn.execute(
                        "INSERT INTO articuloalm (Clave_Articulo, Almacen, Existencia_Fisica) VALUES (?, ?, ?)",
                        (item_code, almacen, stock),
                    )
            else:
                conn.execute(
                    "UPDATE Articulos SET Existencia_Fisica = ? WHERE Clave_Articulo = ?",
                    (stock, item_code),
                )


def _stock_by_warehouse(levels: StockLevels) -> Dict[int, float]:
    if isinstance(levels, dict):
        return levels
    return {1: levels}


def build_branch_database(
    path: Path,
    items: Dict[str, StockLevels],
    variant: str = "articulo",
    warehouses: Optional[Dict[int, str]] = None,
) -> None:
    """Create a branch ERP database with the given items and stock."""
    with sqlite3.connect(path) as conn:
        if variant == "articulo":
            conn.execute(
                "CREATE TABLE articulo (Clave_Articulo TEXT PRIMARY KEY, Descripcion TEXT, "
                "Unidad_Medida TEXT, Inventario_Minimo REAL)"
            )
            conn.execute(
                "CREATE TABLE articuloalm (Clave_Articulo TEXT, Almacen INTEGER, "
                "Existencia_Fisica REAL, Costo_Promedio REAL, Rack TEXT)"
            )
            conn.execute("CREATE TABLE almacenes (Almacen INTEGER PRIMARY KEY, Nombre TEXT)")
            for code, levels in items.items():
                conn.execute(
                    "INSERT INTO articulo VALUES (?, ?, ?, ?)", (code, f"Articulo {code}", "PZA", 2)
                )
                for almacen, stock in _stock_by_warehouse(levels).items():
                    conn.execute(
                        "INSERT INTO articuloalm VALUES (?, ?, ?, ?, ?)",
                        (code, almacen, stock, 10.5, "R1"),
                    )
            for almacen, name in (warehouses or {}).items():
                conn.execute("INSERT INTO almacenes VALUES (?, ?)", (almacen, name))
        elif variant == "Articulos":
            conn.execute(
                "CREATE TABLE Articulos (Clave_Articulo TEXT PRIMARY KEY, Descripcion TEXT, "
                "Unidad TEXT, Existencia_Fisica REAL)"
            )
            for code, levels in items.items():
                stock = _stock_by_warehouse(levels).get(1, 0)
                conn.execute(
                    "INSERT INTO Articulos VALUES (?, ?, ?, ?)", (code, f"Articulo {code}", None, stock)
                )
        else:
            # Neither known layout
            conn.execute("CREATE TABLE productos (clave TEXT)")


@pytest_asyncio.fixture
async def registry():
    registry = BranchConnectionRegistry(connect_timeout=5)
    yield registry
    await registry.close_all()


@pytest.fixture
def branch_factory(tmp_path, session_factory, registry):
    """
    Create a branch row plus its SQLite ERP database and register it.

    Usage:
        branch = await branch_factory("SUC01", {"ABC0100001": 10, "ABC0100002": {1: 5, 2: 7}})
    """
    async def make(
        code: str = "SUC01",
        items: Optional[Dict[str, StockLevels]] = None,
        variant: str = "articulo",
        warehouses: Optional[Dict[int, str]] = None,
        reachable: bool = True,
    ) -> FakeBranch:
        path = tmp_path / f"branch_{code}.db"
        if reachable:
            build_branch_database(path, items or {}, variant, warehouses)
            dsn = f"sqlite+aiosqlite:///{path}"
        else:
            dsn = f"sqlite+aiosqlite:///{tmp_path / 'missing-dir' / 'nowhere.db'}"

        async with session_factory() as session:
            branch = Branch(code=code, name=f"Sucursal {code}", db_dsn=dsn)
            session.add(branch)
            await session.commit()
            await session.refresh(branch)

        await registry.add_or_replace(BranchConfig.from_model(branch))
        fake = FakeBranch(id=branch.id, code=code, name=branch.name, path=path, variant=variant)
        return fake

    return make


# -------- Services --------

class RecordingNotifier:
    """Stands in for NotificationService and records every call."""

    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def named(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def notify_assignment(self, user_id, folio, branch_name, items_count):
        self.calls.append(("notify_assignment", {
            "user_id": user_id, "folio": folio, "branch_name": branch_name, "items_count": items_count,
        }))
        return True

    async def notify_reassignment(self, user_id, folio, branch_name, items_count):
        self.calls.append(("notify_reassignment", {
            "user_id": user_id, "folio": folio, "branch_name": branch_name, "items_count": items_count,
        }))
        return True

    async def notify_count_finished(self, branch_id, folio, branch_name, user_name, alert=None):
        self.calls.append(("notify_count_finished", {
            "branch_id": branch_id, "folio": folio, "branch_name": branch_name,
            "user_name": user_name, "alert": alert,
        }))
        return 0

    async def notify_request_created(self, branch_id, folio, branch_name, item_code, difference,
                                     user_name, origin="count"):
        self.calls.append(("notify_request_created", {
            "branch_id": branch_id, "folio": folio, "item_code": item_code, "difference": difference,
        }))
        return 0

    async def get_user_name(self, user_id):
        return "Sistema" if user_id is None else f"Usuario {user_id}"


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def events() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def stock_cache() -> StockCache:
    return StockCache(InMemoryCache(), stock_ttl=300, item_ttl=3600, enabled=True)


@pytest.fixture
def executor(registry) -> RemoteQueryExecutor:
    return RemoteQueryExecutor(registry)


@pytest.fixture
def stock_service(registry, executor, stock_cache) -> StockService:
    return StockService(registry, executor, stock_cache)


@pytest.fixture
def audit(session_factory) -> AuditService:
    return AuditService(session_factory)


@pytest.fixture
def make_count_service(registry, executor, stock_service, audit, notifier, events):
    def make(session: AsyncSession) -> CountService:
        return CountService(
            session,
            registry=registry,
            executor=executor,
            stock_service=stock_service,
            audit=audit,
            notifier=notifier,
            events=events,
        )
    return make


@pytest.fixture
def count_service(db, make_count_service) -> CountService:
    return make_count_service(db)


@pytest.fixture
def request_service(db, registry, audit, notifier, events) -> RequestService:
    return RequestService(db, registry=registry, audit=audit, notifier=notifier, events=events)
