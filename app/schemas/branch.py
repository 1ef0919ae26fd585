"""Branch administration and health schemas."""
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field

from app.models.branch import BranchStatus
from app.schemas.base import BaseResponseSchema, BaseCreateSchema, BaseUpdateSchema


class BranchCreate(BaseCreateSchema):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=200)
    db_host: Optional[str] = Field(None, max_length=255)
    db_port: int = Field(default=3306, ge=1, le=65535)
    db_user: Optional[str] = Field(None, max_length=100)
    db_password: Optional[str] = Field(None, max_length=255)
    db_database: Optional[str] = Field(None, max_length=100)
    db_dsn: Optional[str] = None
    status: BranchStatus = BranchStatus.ACTIVE


class BranchUpdate(BaseUpdateSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    db_host: Optional[str] = Field(None, max_length=255)
    db_port: Optional[int] = Field(None, ge=1, le=65535)
    db_user: Optional[str] = Field(None, max_length=100)
    db_password: Optional[str] = Field(None, max_length=255)
    db_database: Optional[str] = Field(None, max_length=100)
    db_dsn: Optional[str] = None
    status: Optional[BranchStatus] = None


class BranchResponse(BaseResponseSchema):
    """Branch row. Credentials are never returned."""
    id: int
    code: str
    name: str
    db_host: Optional[str] = None
    db_port: int
    db_database: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: datetime


class BranchConnectionStatus(BaseModel):
    id: int
    code: str
    name: str
    status: str
    last_check: Optional[datetime] = None
    error_message: Optional[str] = None
    schema_variant: Optional[str] = None


class BranchStatusList(BaseModel):
    branches: List[BranchConnectionStatus]
    connected: int
    total: int
