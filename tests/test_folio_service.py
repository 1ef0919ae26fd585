from datetime import datetime

import pytest

from app.models import Branch, Count
from app.models.request import AdjustmentRequest
from app.services.folio_service import FolioService, FolioTemplate


TEMPLATE = "CNT-{YEAR}{MONTH}-{NUMBER}"


@pytest.fixture
def now():
    return datetime(2026, 10, 19, 9, 30)


def test_template_resolves_date_placeholders(now):
    template = FolioTemplate.parse(TEMPLATE, now=now, padding=4)

    assert template.prefix == "CNT-202610-"
    assert template.suffix == ""
    assert template.format(7) == "CNT-202610-0007"


def test_template_without_number_gets_one_appended(now):
    template = FolioTemplate.parse("SOL{DAY}", now=now, padding=3)

    assert template.format(12) == "SOL19-012"


def test_template_with_suffix(now):
    template = FolioTemplate.parse("{YEAR}/{NUMBER}/A", now=now, padding=2)

    assert template.format(5) == "2026/05/A"
    assert template.number_of("2026/05/A") == 5
    assert template.number_of("2026/05/B") is None
    assert template.number_of("2025/05/A") is None
    assert template.number_of("2026/xx/A") is None


async def _add_count(db, folio: str) -> None:
    branch = Branch(code=f"B-{folio}", name="Sucursal", db_dsn="sqlite+aiosqlite:///unused.db")
    db.add(branch)
    await db.flush()
    db.add(Count(folio=folio, branch_id=branch.id))
    await db.commit()


async def test_allocate_starts_at_one(db):
    folios = await FolioService(db).allocate("CNT-{NUMBER}", 3, Count.folio)
    await db.commit()

    assert folios == ["CNT-0001", "CNT-0002", "CNT-0003"]


async def test_allocate_continues_from_counter(db):
    service = FolioService(db)

    first = await service.allocate("CNT-{NUMBER}", 2, Count.folio)
    second = await service.allocate("CNT-{NUMBER}", 1, Count.folio)
    await db.commit()

    assert first == ["CNT-0001", "CNT-0002"]
    assert second == ["CNT-0003"]


async def test_allocate_continues_after_existing_folios(db):
    await _add_count(db, "CNT-0042")

    folios = await FolioService(db).allocate("CNT-{NUMBER}", 3, Count.folio)

    assert folios == ["CNT-0043", "CNT-0044", "CNT-0045"]


async def test_prefixes_have_independent_counters(db):
    service = FolioService(db)

    counts = await service.allocate("CNT-{NUMBER}", 2, Count.folio)
    requests = await service.allocate("SOL-{NUMBER}", 1, AdjustmentRequest.folio)

    assert counts[-1] == "CNT-0002"
    assert requests == ["SOL-0001"]


async def test_allocate_zero_returns_nothing(db):
    assert await FolioService(db).allocate("CNT-{NUMBER}", 0, Count.folio) == []


async def test_preview_does_not_reserve(db):
    service = FolioService(db)
    await service.allocate("CNT-{NUMBER}", 4, Count.folio)
    await db.commit()

    assert await service.preview("CNT-{NUMBER}", Count.folio) == "CNT-0005"
    assert await service.preview("CNT-{NUMBER}", Count.folio) == "CNT-0005"
    assert await service.allocate("CNT-{NUMBER}", 1, Count.folio) == ["CNT-0005"]
