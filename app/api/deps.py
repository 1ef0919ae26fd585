from typing import Annotated, Optional
import logging

from fastapi import Depends, Header, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.core.branch_registry import BranchConnectionRegistry
from app.core.permissions import PermissionChecker
from app.services.branch_service import BranchService
from app.services.count_service import CountService
from app.services.request_service import RequestService
from app.services.settings_service import SettingsService
from app.services.stock_service import StockService


logger = logging.getLogger(__name__)


# ==================== Identity ====================

async def get_current_user_id(
    x_user_id: Annotated[Optional[int], Header()] = None,
) -> int:
    """
    Id of the acting user.

    Token verification happens upstream; this service trusts the
    X-User-Id header set by the gateway.
    """
    if x_user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id


def get_permission_checker(request: Request) -> PermissionChecker:
    return request.app.state.permission_checker


def require_permission(permission_code: str):
    """
    Dependency factory to require a permission.

    Usage:
        @router.post("/", dependencies=[Depends(require_permission("counts.create"))])
        async def create_count():
            ...
    """
    async def permission_dependency(
        user_id: Annotated[int, Depends(get_current_user_id)],
        checker: Annotated[PermissionChecker, Depends(get_permission_checker)],
    ) -> int:
        if not await checker.has_permission(user_id, permission_code):
            logger.info(f"User {user_id} denied {permission_code}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied. Required: {permission_code}"
            )
        return user_id

    return permission_dependency


# ==================== Shared components ====================

def get_registry(request: Request) -> BranchConnectionRegistry:
    return request.app.state.registry


# ==================== Services ====================

def get_stock_service(request: Request) -> StockService:
    return request.app.state.stock_service


def get_settings_service(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> SettingsService:
    return SettingsService(db, request.app.state.cache_backend)


def get_count_service(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    settings_service: Annotated[SettingsService, Depends(get_settings_service)],
) -> CountService:
    state = request.app.state
    return CountService(
        db,
        registry=state.registry,
        executor=state.executor,
        stock_service=state.stock_service,
        audit=state.audit,
        notifier=state.notifier,
        events=state.events,
        settings_service=settings_service,
    )


def get_request_service(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    settings_service: Annotated[SettingsService, Depends(get_settings_service)],
) -> RequestService:
    state = request.app.state
    return RequestService(
        db,
        registry=state.registry,
        audit=state.audit,
        notifier=state.notifier,
        events=state.events,
        settings_service=settings_service,
    )


def get_branch_service(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BranchService:
    state = request.app.state
    return BranchService(db, state.registry, cache=state.stock_cache, audit=state.audit)


# Type aliases for cleaner endpoint signatures
Registry = Annotated[BranchConnectionRegistry, Depends(get_registry)]
Stock = Annotated[StockService, Depends(get_stock_service)]
Counts = Annotated[CountService, Depends(get_count_service)]
Requests = Annotated[RequestService, Depends(get_request_service)]
Branches = Annotated[BranchService, Depends(get_branch_service)]
