"""
Inventory count models.

A Count covers exactly one item in one warehouse of one branch and owns a
single CountDetail seeded from the branch ERP. Counts are created in bulk,
one per item, and share a contiguous block of folios.
"""
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, Integer, DateTime, ForeignKey, Index, Text, Numeric, Date
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, utc_now


# ============================================================================
# ENUMS
# ============================================================================

class CountStatus(str, Enum):
    """Lifecycle status of a count."""
    PENDIENTE = "pendiente"   # Created, nobody counting yet
    CONTANDO = "contando"     # Operator started counting
    CONTADO = "contado"       # Counting finished, awaiting close
    CERRADO = "cerrado"       # Closed, ready for adjustment requests
    CANCELADO = "cancelado"


class CountType(str, Enum):
    """How the items of a count were selected."""
    CICLICO = "ciclico"
    POR_FAMILIA = "por_familia"
    POR_ZONA = "por_zona"
    RANGO = "rango"
    TOTAL = "total"


class CountClassification(str, Enum):
    """Business purpose of a count."""
    INVENTARIO = "inventario"
    AJUSTE = "ajuste"         # Direct adjustment, counted values known up front
    CICLICO = "ciclico"


class CountPriority(str, Enum):
    BAJA = "baja"
    MEDIA = "media"
    ALTA = "alta"
    URGENTE = "urgente"


# ============================================================================
# MODELS
# ============================================================================

class Count(Base):
    """Physical count of one item in one branch warehouse."""
    __tablename__ = "counts"
    __table_args__ = (
        Index("idx_counts_branch_status", "branch_id", "status"),
        Index("idx_counts_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    folio: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)

    branch_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("branches.id"), nullable=False, index=True
    )
    almacen: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    type: Mapped[str] = mapped_column(String(20), default=CountType.CICLICO.value, nullable=False)
    classification: Mapped[str] = mapped_column(
        String(20), default=CountClassification.INVENTARIO.value, nullable=False
    )
    priority: Mapped[str] = mapped_column(
        String(20), default=CountPriority.MEDIA.value, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=CountStatus.PENDIENTE.value, nullable=False, index=True
    )

    # Assignment
    responsible_user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_by_user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Lifecycle timestamps
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    tolerance_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("5.0"), nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    details: Mapped[List["CountDetail"]] = relationship(
        back_populates="count",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CountDetail.id",
    )

    def __repr__(self) -> str:
        return f"<Count(folio='{self.folio}', status='{self.status}')>"


class CountDetail(Base):
    """
    System stock snapshot and captured quantity for one item.

    `difference` is counted - system. `difference_percentage` is 100 when
    the system stock is zero and something was counted, 0 when both are
    zero, otherwise the signed percentage over system stock.
    """
    __tablename__ = "count_details"
    __table_args__ = (
        Index("idx_count_details_item", "item_code"),
        Index("idx_count_details_counted_at", "counted_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    count_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("counts.id", ondelete="CASCADE"), nullable=False, index=True
    )

    item_code: Mapped[str] = mapped_column(String(50), nullable=False)
    item_description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    warehouse_id: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    warehouse_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    system_stock: Mapped[Decimal] = mapped_column(
        Numeric(15, 3), default=Decimal("0"), nullable=False
    )
    counted_stock: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 3), nullable=True)
    difference: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 3), nullable=True)
    difference_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)

    counted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    counted_by_user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    count: Mapped["Count"] = relationship(back_populates="details")

    def __repr__(self) -> str:
        return f"<CountDetail(item='{self.item_code}', counted={self.counted_stock})>"
