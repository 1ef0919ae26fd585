import pytest

from app.core.exceptions import CallerError, NotFoundError
from app.schemas.branch import BranchCreate, BranchUpdate
from app.schemas.count import CountCreate
from app.services.branch_service import BranchService, load_active_branch_configs
from tests.conftest import build_branch_database


@pytest.fixture
def branch_service(db, registry, stock_cache, audit):
    return BranchService(db, registry, cache=stock_cache, audit=audit)


async def test_create_branch_registers_connection(branch_service, registry, tmp_path):
    path = tmp_path / "suc10.db"
    build_branch_database(path, {"ABC0100001": 1})

    branch = await branch_service.create_branch(
        BranchCreate(code="SUC10", name="Norte", db_dsn=f"sqlite+aiosqlite:///{path}")
    )

    assert branch.status == "active"
    assert registry.get(branch.id) is not None
    assert registry.branch_name(branch.id) == "Norte"


async def test_create_branch_rejects_duplicate_code(branch_service, registry, tmp_path):
    dsn = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'suc10.db'}"
    branch = await branch_service.create_branch(BranchCreate(code="SUC10", name="Norte", db_dsn=dsn))

    # Registered even though the database cannot be reached yet
    assert registry.get(branch.id) is None
    assert registry.get_entry(branch.id) is not None

    with pytest.raises(CallerError):
        await branch_service.create_branch(BranchCreate(code="SUC10", name="Otra", db_dsn=dsn))


async def test_inactive_branch_is_not_registered(branch_service, registry, db):
    branch = await branch_service.create_branch(
        BranchCreate(code="SUC11", name="Cerrada", db_host="10.0.0.1", status="inactive")
    )

    assert registry.get_entry(branch.id) is None
    assert [b.code for b in await branch_service.list_branches()] == []
    assert [b.code for b in await branch_service.list_branches(include_inactive=True)] == ["SUC11"]
    assert await load_active_branch_configs(db) == []


async def test_update_branch_reconnects_and_clears_cache(branch_factory, branch_service, registry, stock_cache, tmp_path):
    fake = await branch_factory("SUC01", {"ABC0100001": 1})
    await stock_cache.set_stock(fake.id, "ABC0100001", 1.0)

    moved = tmp_path / "moved.db"
    build_branch_database(moved, {"ABC0100001": 9}, variant="Articulos")
    branch = await branch_service.update_branch(
        fake.id, BranchUpdate(name="Centro", db_dsn=f"sqlite+aiosqlite:///{moved}")
    )

    assert branch.name == "Centro"
    assert registry.schema_variant(fake.id).value == "Articulos"
    assert await stock_cache.get_stock(fake.id, "ABC0100001") is None


async def test_deactivate_branch_disconnects(branch_factory, branch_service, registry):
    fake = await branch_factory("SUC01", {"ABC0100001": 1})

    await branch_service.update_branch(fake.id, BranchUpdate(status="inactive"))

    assert registry.get_entry(fake.id) is None


async def test_update_branch_errors(branch_factory, branch_service):
    fake = await branch_factory("SUC01", {"ABC0100001": 1})

    with pytest.raises(CallerError):
        await branch_service.update_branch(fake.id, BranchUpdate())
    with pytest.raises(NotFoundError):
        await branch_service.update_branch(999, BranchUpdate(name="X"))


async def test_delete_branch_with_counts_is_refused(branch_factory, branch_service, count_service, registry):
    used = await branch_factory("SUC01", {"ABC0100001": 1})
    unused = await branch_factory("SUC02", {"ABC0100001": 1})
    await count_service.create_counts(CountCreate(branch_id=used.id, items=["ABC0100001"]), None)

    with pytest.raises(CallerError, match="deactivate"):
        await branch_service.delete_branch(used.id)

    await branch_service.delete_branch(unused.id)
    assert await branch_service.get_branch(unused.id) is None
    assert registry.get_entry(unused.id) is None


async def test_load_active_branch_configs(branch_factory, db):
    first = await branch_factory("SUC01", {"A": 1})
    second = await branch_factory("SUC02", reachable=False)

    configs = await load_active_branch_configs(db)

    assert [(c.id, c.code) for c in configs] == [(first.id, "SUC01"), (second.id, "SUC02")]
