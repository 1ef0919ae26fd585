"""
Folio Service for Sequential Count and Request Numbers

Folios come from a template with {YEAR}, {MONTH}, {DAY} and {NUMBER}
placeholders, e.g. CNT-{YEAR}{MONTH}-{NUMBER} -> CNT-202610-0001.
Everything before {NUMBER} (after date substitution) is the prefix, and
each prefix has its own counter row in folio_sequences.

A bulk creation reserves one contiguous block of numbers. The counter row
is locked with SELECT ... FOR UPDATE, so two batches sharing a prefix never
receive overlapping blocks.

USAGE:
    from app.services.folio_service import FolioService

    async def create_counts(db: AsyncSession):
        folios = await FolioService(db).allocate("CNT-{YEAR}{MONTH}-{NUMBER}", 3, Count.folio)
        # Returns: ['CNT-202610-0001', 'CNT-202610-0002', 'CNT-202610-0003']
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import utc_now
from app.models.folio_sequence import FolioSequence

logger = logging.getLogger(__name__)


NUMBER_PLACEHOLDER = "{NUMBER}"


def _insert_for(db: AsyncSession):
    """INSERT construct with ON CONFLICT support for the local store dialect."""
    if db.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


@dataclass(frozen=True)
class FolioTemplate:
    """A folio template resolved for one date."""
    prefix: str
    suffix: str
    padding: int

    @classmethod
    def parse(
        cls,
        template: str,
        now: Optional[datetime] = None,
        padding: Optional[int] = None,
    ) -> "FolioTemplate":
        """
        Resolve the date placeholders of a template.

        A template without {NUMBER} gets "-{NUMBER}" appended.
        """
        now = now or utc_now()
        if NUMBER_PLACEHOLDER not in template:
            template = f"{template}-{NUMBER_PLACEHOLDER}"

        resolved = (
            template
            .replace("{YEAR}", f"{now.year:04d}")
            .replace("{MONTH}", f"{now.month:02d}")
            .replace("{DAY}", f"{now.day:02d}")
        )
        prefix, _, suffix = resolved.partition(NUMBER_PLACEHOLDER)
        return cls(
            prefix=prefix,
            suffix=suffix.replace(NUMBER_PLACEHOLDER, ""),
            padding=padding or settings.FOLIO_NUMBER_PADDING,
        )

    def format(self, number: int) -> str:
        return f"{self.prefix}{str(number).zfill(self.padding)}{self.suffix}"

    def number_of(self, folio: str) -> Optional[int]:
        """Sequence number inside a folio of this template, or None."""
        if not folio.startswith(self.prefix):
            return None
        body = folio[len(self.prefix):]
        if self.suffix:
            if not body.endswith(self.suffix):
                return None
            body = body[:-len(self.suffix)]
        return int(body) if body.isdigit() else None


class FolioService:
    """Allocates folio blocks from the per-prefix counters."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def allocate(self, template: str, quantity: int, column) -> List[str]:
        """
        Reserve `quantity` consecutive folios.

        Args:
            template: Folio template (see module docstring)
            quantity: Number of folios to reserve
            column: Folio column of the owning table (e.g. Count.folio),
                scanned so numbering continues after folios created
                before the counter existed

        Returns:
            Folios in ascending order
        """
        if quantity <= 0:
            return []

        folio_template = FolioTemplate.parse(template)
        sequence = await self._lock_sequence(folio_template.prefix)

        highest = await self._highest_existing(folio_template, column)
        start = max(sequence.current_number, highest) + 1
        sequence.current_number = start + quantity - 1
        await self.db.flush()

        logger.debug(
            f"Allocated folios {folio_template.format(start)}.."
            f"{folio_template.format(sequence.current_number)}"
        )
        return [folio_template.format(number) for number in range(start, start + quantity)]

    async def preview(self, template: str, column) -> str:
        """What the next folio would be, without reserving it."""
        folio_template = FolioTemplate.parse(template)
        result = await self.db.execute(
            select(FolioSequence.current_number)
            .where(FolioSequence.prefix == folio_template.prefix)
        )
        current = result.scalar_one_or_none() or 0
        highest = await self._highest_existing(folio_template, column)
        return folio_template.format(max(current, highest) + 1)

    async def _lock_sequence(self, prefix: str) -> FolioSequence:
        """Counter row of a prefix, locked for this transaction. Created on first use."""
        sequence = await self._select_for_update(prefix)
        if sequence is not None:
            return sequence

        # Another transaction may insert the same prefix first
        await self.db.execute(
            _insert_for(self.db)(FolioSequence)
            .values(prefix=prefix, current_number=0, updated_at=utc_now())
            .on_conflict_do_nothing(index_elements=["prefix"])
        )

        sequence = await self._select_for_update(prefix)
        if sequence is None:
            raise RuntimeError(f"Folio sequence '{prefix}' could not be created")
        return sequence

    async def _select_for_update(self, prefix: str) -> Optional[FolioSequence]:
        result = await self.db.execute(
            select(FolioSequence)
            .where(FolioSequence.prefix == prefix)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _highest_existing(self, folio_template: FolioTemplate, column) -> int:
        """Highest sequence number already used by a folio with this prefix."""
        result = await self.db.execute(
            select(column)
            .where(column.startswith(folio_template.prefix, autoescape=True))
            .order_by(func.length(column).desc(), column.desc())
            .limit(1)
        )
        folio = result.scalar_one_or_none()
        if folio is None:
            return 0
        return folio_template.number_of(folio) or 0
