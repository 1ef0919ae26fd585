from decimal import Decimal

import pytest

from app.config import settings
from app.core.exceptions import CallerError, InvalidStatusTransition, NotFoundError, TooManyDifferences
from app.schemas.count import CountCreate, CountDetailCreate
from app.schemas.request import RequestUpdate
from app.services.event_service import EventType


ITEMS = {"ABC0100001": 10, "ABC0100002": 4, "XYZ0200001": 0}


async def closed_count(branch, count_service, captures: dict):
    """A count with one detail per capture, every detail captured and the count closed."""
    codes = list(captures)
    counts = await count_service.create_counts(CountCreate(branch_id=branch.id, items=codes[:1]), None)
    count = counts[0]
    for code in codes[1:]:
        await count_service.add_count_detail(count.id, CountDetailCreate(item_code=code), None)
    await count_service.transition_status(count, "contando", None)
    for detail in await count_service.get_count_details(count.id):
        await count_service.update_count_detail(detail.id, Decimal(str(captures[detail.item_code])), None)
    assert count.status == "cerrado"
    return count


async def test_derive_requests_from_differences(branch_factory, count_service, request_service, notifier, admin_user):
    branch = await branch_factory("SUC01", ITEMS)
    count = await closed_count(branch, count_service, {"ABC0100001": 8, "ABC0100002": 4, "XYZ0200001": 3})

    result = await request_service.create_requests_from_count(count.id, admin_user.id)

    assert result["created"] == 2
    assert result["skipped"] == 0
    assert result["total_differences"] == 2
    requests = result["requests"]
    assert [r.item_code for r in requests] == ["ABC0100001", "XYZ0200001"]
    assert [r.difference for r in requests] == [Decimal("-2"), Decimal("3")]
    assert all(r.status == "pendiente" for r in requests)
    assert [int(r.folio.rsplit("-", 1)[1]) for r in requests] == [1, 2]

    created = notifier.named("notify_request_created")
    assert [c["item_code"] for c in created] == ["ABC0100001", "XYZ0200001"]
    assert created[0]["folio"] == count.folio


async def test_derivation_is_idempotent(branch_factory, count_service, request_service):
    branch = await branch_factory("SUC01", ITEMS)
    count = await closed_count(branch, count_service, {"ABC0100001": 8, "ABC0100002": 1})

    first = await request_service.create_requests_from_count(count.id, None)
    second = await request_service.create_requests_from_count(count.id, None)

    assert first["created"] == 2
    assert second == {"created": 0, "skipped": 2, "total_differences": 2, "requests": []}
    _, total = await request_service.list_requests(count_id=count.id)
    assert total == 2


async def test_derivation_without_differences(branch_factory, count_service, request_service):
    branch = await branch_factory("SUC01", ITEMS)
    count = await closed_count(branch, count_service, {"ABC0100001": 10})

    result = await request_service.create_requests_from_count(count.id, None)

    assert result == {"created": 0, "skipped": 0, "total_differences": 0, "requests": []}


async def test_derivation_requires_counted_or_closed(branch_factory, count_service, request_service):
    branch = await branch_factory("SUC01", ITEMS)
    counts = await count_service.create_counts(CountCreate(branch_id=branch.id, items=["ABC0100001"]), None)

    with pytest.raises(InvalidStatusTransition):
        await request_service.create_requests_from_count(counts[0].id, None)
    with pytest.raises(NotFoundError):
        await request_service.create_requests_from_count(9999, None)


async def test_derivation_cap(branch_factory, count_service, request_service, monkeypatch):
    branch = await branch_factory("SUC01", ITEMS)
    count = await closed_count(branch, count_service, {"ABC0100001": 8, "ABC0100002": 1})
    monkeypatch.setattr(settings, "MAX_REQUESTS_PER_BATCH", 1)

    with pytest.raises(TooManyDifferences):
        await request_service.create_requests_from_count(count.id, None)

    _, total = await request_service.list_requests(count_id=count.id)
    assert total == 0


async def test_review_flow_stamps_reviewer(branch_factory, count_service, request_service, events, admin_user):
    branch = await branch_factory("SUC01", ITEMS)
    count = await closed_count(branch, count_service, {"ABC0100001": 8})
    request = (await request_service.create_requests_from_count(count.id, None))["requests"][0]
    queue = events.subscribe()

    request = await request_service.update_request(
        request.id, RequestUpdate(status="en_revision"), admin_user.id
    )
    assert request.status == "en_revision"
    assert request.reviewed_by_user_id == admin_user.id
    assert request.reviewed_at is not None

    request = await request_service.update_request(
        request.id,
        RequestUpdate(status="ajustado", resolution_notes="Ajuste aplicado", evidence_file="ajuste.pdf"),
        admin_user.id,
    )
    assert request.status == "ajustado"
    assert request.resolution_notes == "Ajuste aplicado"
    assert request.evidence_file == "ajuste.pdf"

    changes = [m["payload"] for m in [queue.get_nowait(), queue.get_nowait()]]
    assert [(c["old_status"], c["new_status"]) for c in changes] == [
        ("pendiente", "en_revision"),
        ("en_revision", "ajustado"),
    ]

    with pytest.raises(InvalidStatusTransition):
        await request_service.update_request(request.id, RequestUpdate(status="pendiente"), admin_user.id)


async def test_review_rejections(branch_factory, count_service, request_service):
    branch = await branch_factory("SUC01", ITEMS)
    count = await closed_count(branch, count_service, {"ABC0100001": 8})
    request = (await request_service.create_requests_from_count(count.id, None))["requests"][0]

    with pytest.raises(InvalidStatusTransition):
        await request_service.update_request(request.id, RequestUpdate(status="ajustado"), None)
    with pytest.raises(CallerError):
        await request_service.update_request(request.id, RequestUpdate(), None)
    with pytest.raises(NotFoundError):
        await request_service.update_request(9999, RequestUpdate(status="en_revision"), None)


async def test_notes_only_update_keeps_status(branch_factory, count_service, request_service, admin_user):
    branch = await branch_factory("SUC01", ITEMS)
    count = await closed_count(branch, count_service, {"ABC0100001": 8})
    request = (await request_service.create_requests_from_count(count.id, None))["requests"][0]

    request = await request_service.update_request(
        request.id, RequestUpdate(resolution_notes="Recontar el lunes"), admin_user.id
    )

    assert request.status == "pendiente"
    assert request.reviewed_by_user_id == admin_user.id


async def test_list_requests_filters(branch_factory, count_service, request_service):
    branch = await branch_factory("SUC01", ITEMS)
    other = await branch_factory("SUC02", ITEMS)
    first = await closed_count(branch, count_service, {"ABC0100001": 8, "ABC0100002": 1})
    second = await closed_count(other, count_service, {"ABC0100001": 1})
    created = (await request_service.create_requests_from_count(first.id, None))["requests"]
    await request_service.create_requests_from_count(second.id, None)
    await request_service.update_request(created[0].id, RequestUpdate(status="en_revision"), None)

    _, total = await request_service.list_requests()
    assert total == 3

    pending, total = await request_service.list_requests(status="pendiente")
    assert total == 2
    assert created[0].id not in [r.id for r in pending]

    by_branch, total = await request_service.list_requests(branch_id=other.id)
    assert total == 1
    assert by_branch[0].count_id == second.id

    page, total = await request_service.list_requests(limit=1, offset=1)
    assert total == 3
    assert len(page) == 1
