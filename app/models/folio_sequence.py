"""
Folio Sequence Model for Atomic Folio Allocation

One row per resolved folio prefix (e.g. 'CNT-202610-'). Allocation locks
the row with SELECT ... FOR UPDATE, so concurrent bulk creations sharing a
prefix receive disjoint blocks of numbers.

USAGE:
    from app.services.folio_service import FolioService

    async def create(db):
        folios = await FolioService(db).allocate("CNT-{YEAR}{MONTH}-{NUMBER}", 3, Count.folio)
        # ['CNT-202610-0001', 'CNT-202610-0002', 'CNT-202610-0003']
"""
from datetime import datetime

from sqlalchemy import String, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utc_now


class FolioSequence(Base):
    """
    Last number handed out for a folio prefix.

    Example:
        prefix = "CNT-202610-"
        current_number = 42
        → Next folio: CNT-202610-0043
    """
    __tablename__ = "folio_sequences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prefix: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    current_number: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Last used sequence number"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<FolioSequence(prefix='{self.prefix}', current={self.current_number})>"
