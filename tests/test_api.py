"""
API smoke tests.

The application state is wired against the per-test local store and
branch registry; the lifespan handler is not run.
"""
import httpx
import pytest
import pytest_asyncio

from app.database import get_db
from app.main import app, configure_state
from app.models import Role, User
from app.services.cache_service import InMemoryCache


ITEMS = {"ABC0100001": 10, "ABC0100002": 4}


@pytest_asyncio.fixture
async def client(session_factory, registry):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    configure_state(app, session_factory, registry, InMemoryCache())
    app.dependency_overrides[get_db] = override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def headers(admin_user):
    return {"X-User-Id": str(admin_user.id)}


@pytest_asyncio.fixture
async def viewer_headers(session_factory):
    async with session_factory() as session:
        role = Role(name="Consulta", permissions=["stock.view", "counts.view"])
        user = User(name="Luis Consulta", email="luis@example.com", role=role)
        session.add_all([role, user])
        await session.commit()
        return {"X-User-Id": str(user.id)}


async def test_missing_user_header(client):
    response = await client.get("/api/v1/counts")
    assert response.status_code == 401


async def test_permission_denied(client, branch_factory, viewer_headers):
    branch = await branch_factory("SUC01", ITEMS)

    allowed = await client.get(f"/api/v1/stock/{branch.id}/ABC0100001", headers=viewer_headers)
    denied = await client.post(
        "/api/v1/counts", json={"branch_id": branch.id, "items": ["ABC0100001"]}, headers=viewer_headers
    )

    assert allowed.status_code == 200
    assert allowed.json()["stock"] == 10.0
    assert denied.status_code == 403


async def test_stock_endpoints(client, branch_factory, headers):
    branch = await branch_factory("SUC01", ITEMS)

    batch = await client.post(
        f"/api/v1/stock/{branch.id}/batch",
        json={"item_codes": ["ABC0100001", "NOPE"]},
        headers=headers,
    )
    assert batch.status_code == 200
    assert {row["item_code"]: row["stock"] for row in batch.json()} == {"ABC0100001": 10.0, "NOPE": 0.0}

    lines = await client.get(f"/api/v1/stock/{branch.id}/lines", headers=headers)
    assert lines.json() == ["ABC01"]

    missing = await client.get("/api/v1/stock/999/ABC0100001", headers=headers)
    assert missing.status_code == 404


async def test_branch_status(client, branch_factory, headers):
    await branch_factory("SUC01", ITEMS)
    await branch_factory("SUC02", reachable=False)

    response = await client.get("/api/v1/branches/status", headers=headers)

    body = response.json()
    assert response.status_code == 200
    assert body["connected"] == 1
    assert body["total"] == 2
    assert [b["status"] for b in body["branches"]] == ["connected", "error"]


async def test_count_lifecycle(client, branch_factory, headers):
    branch = await branch_factory("SUC01", ITEMS)

    created = await client.post(
        "/api/v1/counts",
        json={"branch_id": branch.id, "items": ["ABC0100001", "NOPE"]},
        headers=headers,
    )
    assert created.status_code == 201
    counts = created.json()
    assert len(counts) == 1
    count_id = counts[0]["id"]

    started = await client.patch(f"/api/v1/counts/{count_id}", json={"status": "contando"}, headers=headers)
    assert started.status_code == 200
    assert started.json()["status"] == "contando"

    again = await client.patch(f"/api/v1/counts/{count_id}", json={"status": "contando"}, headers=headers)
    assert again.status_code == 409

    details = (await client.get(f"/api/v1/counts/{count_id}/details", headers=headers)).json()
    captured = await client.patch(
        f"/api/v1/counts/details/{details[0]['id']}", json={"counted_stock": 7}, headers=headers
    )
    body = captured.json()
    assert captured.status_code == 200
    assert body["auto_closed"] is True
    assert body["count"]["status"] == "cerrado"
    assert body["alert"]["items"][0]["item_code"] == "ABC0100001"

    derived = await client.post(f"/api/v1/counts/{count_id}/requests", headers=headers)
    assert derived.json()["created"] == 1
    request_id = derived.json()["requests"][0]["id"]

    reviewed = await client.patch(
        f"/api/v1/requests/{request_id}", json={"status": "en_revision"}, headers=headers
    )
    assert reviewed.status_code == 200
    assert reviewed.json()["reviewed_by_user_id"] == int(headers["X-User-Id"])

    invalid = await client.patch(f"/api/v1/requests/{request_id}", json={"status": "pendiente"}, headers=headers)
    assert invalid.status_code == 400

    dashboard = await client.get("/api/v1/counts/dashboard", headers=headers)
    assert dashboard.json()["closed_counts"] == 1


async def test_create_counts_invalid_items(client, branch_factory, headers):
    branch = await branch_factory("SUC01", ITEMS)

    response = await client.post(
        "/api/v1/counts", json={"branch_id": branch.id, "items": ["NOPE"]}, headers=headers
    )

    assert response.status_code == 400
    assert "No valid items" in response.json()["detail"]


async def test_unknown_count_is_404(client, headers):
    response = await client.get("/api/v1/counts/12345", headers=headers)
    assert response.status_code == 404


async def test_cache_management(client, branch_factory, headers, viewer_headers):
    branch = await branch_factory("SUC01", ITEMS)
    await client.get(f"/api/v1/stock/{branch.id}/ABC0100001", headers=headers)

    stats = await client.get("/api/v1/stock/cache/stats", headers=headers)
    assert stats.status_code == 200
    assert stats.json()["backend"] == "memory"

    denied = await client.delete("/api/v1/stock/cache", headers=viewer_headers)
    assert denied.status_code == 403

    flushed = await client.delete("/api/v1/stock/cache", headers=headers)
    assert flushed.status_code == 200
    assert flushed.json()["removed"] >= 1


async def test_line_item_codes(client, branch_factory, headers):
    branch = await branch_factory("SUC01", ITEMS)

    response = await client.get(f"/api/v1/stock/{branch.id}/lines/ABC01/items", headers=headers)

    assert response.status_code == 200
    assert sorted(response.json()) == ["ABC0100001", "ABC0100002"]


async def test_next_folio_is_not_reserved(client, branch_factory, headers):
    branch = await branch_factory("SUC01", ITEMS)

    preview = (await client.get("/api/v1/counts/next-folio", headers=headers)).json()["folio"]
    again = (await client.get("/api/v1/counts/next-folio", headers=headers)).json()["folio"]
    created = await client.post(
        "/api/v1/counts", json={"branch_id": branch.id, "items": ["ABC0100001"]}, headers=headers
    )

    assert preview == again
    assert created.json()[0]["folio"] == preview
