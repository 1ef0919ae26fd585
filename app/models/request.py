from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Integer, DateTime, ForeignKey, Index, Text, Numeric
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, utc_now
from app.models.count import Count, CountDetail


class RequestStatus(str, Enum):
    """Review status of an adjustment request."""
    PENDIENTE = "pendiente"
    EN_REVISION = "en_revision"
    AJUSTADO = "ajustado"      # Terminal, adjustment applied in the ERP
    RECHAZADO = "rechazado"    # Terminal


class AdjustmentRequest(Base):
    """
    Adjustment request derived from a count detail with a non-zero
    difference. At most one request exists per count detail.
    """
    __tablename__ = "requests"
    __table_args__ = (
        Index("idx_requests_status", "status"),
        Index("idx_requests_branch", "branch_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    folio: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)

    count_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("counts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    count_detail_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("count_details.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    branch_id: Mapped[int] = mapped_column(Integer, ForeignKey("branches.id"), nullable=False)
    item_code: Mapped[str] = mapped_column(String(50), nullable=False)

    system_stock: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False)
    counted_stock: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False)
    difference: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=RequestStatus.PENDIENTE.value, nullable=False
    )

    requested_by_user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reviewed_by_user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence_file: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    count: Mapped["Count"] = relationship(lazy="joined")
    count_detail: Mapped["CountDetail"] = relationship(lazy="joined")

    def __repr__(self) -> str:
        return f"<AdjustmentRequest(folio='{self.folio}', status='{self.status}')>"
