from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, Integer, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utc_now


class BranchStatus(str, Enum):
    """Administrative status of a branch row."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class Branch(Base):
    """
    A retail branch and the credentials of its ERP database.

    Only rows with status 'active' are loaded into the connection
    registry at startup.
    """
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # ERP database connection
    db_host: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    db_port: Mapped[int] = mapped_column(Integer, default=3306, nullable=False)
    db_user: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    db_password: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    db_database: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    db_dsn: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Full SQLAlchemy URL, overrides the host/port/user fields"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=BranchStatus.ACTIVE.value,
        nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Branch(code='{self.code}', name='{self.name}')>"
