"""
Branch API endpoints.

Connection health of every registered branch plus administrative
create/update/delete of branch rows. Changes take effect in the
connection registry immediately.
"""
from typing import List

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import Branches, Registry, require_permission
from app.core.exceptions import NotFoundError
from app.core.permissions import Permissions
from app.jobs.scheduler import scheduler, get_job_status
from app.schemas.branch import (
    BranchCreate, BranchUpdate, BranchResponse,
    BranchConnectionStatus, BranchStatusList,
)

router = APIRouter()


def _status_list(registry) -> BranchStatusList:
    statuses = registry.list_statuses()
    return BranchStatusList(
        branches=[BranchConnectionStatus(**s) for s in statuses],
        connected=registry.connected_count(),
        total=len(statuses),
    )


# ============================================================================
# HEALTH
# ============================================================================

@router.get("/status", response_model=BranchStatusList, summary="Branch connection status")
async def get_branches_status(
    registry: Registry,
    user_id: int = Depends(require_permission(Permissions.BRANCHES_VIEW)),
):
    """Last known connection state of every registered branch."""
    return _status_list(registry)


@router.post("/health-check", response_model=BranchStatusList, summary="Run health check now")
async def run_health_check(
    registry: Registry,
    user_id: int = Depends(require_permission(Permissions.BRANCHES_MANAGE)),
):
    await registry.check_all_health()
    return _status_list(registry)


@router.get("/jobs", summary="Background jobs")
async def get_background_jobs(
    user_id: int = Depends(require_permission(Permissions.BRANCHES_VIEW)),
):
    """Scheduled jobs (branch health checks, cache sweep) and their next run."""
    return {"running": scheduler.running, "jobs": get_job_status()}


# ============================================================================
# ADMINISTRATION
# ============================================================================

@router.get("", response_model=List[BranchResponse], summary="List branches")
async def list_branches(
    service: Branches,
    include_inactive: bool = Query(False),
    user_id: int = Depends(require_permission(Permissions.BRANCHES_VIEW)),
):
    return await service.list_branches(include_inactive=include_inactive)


@router.get("/{branch_id}", response_model=BranchResponse, summary="Get branch")
async def get_branch(
    branch_id: int,
    service: Branches,
    user_id: int = Depends(require_permission(Permissions.BRANCHES_VIEW)),
):
    branch = await service.get_branch(branch_id)
    if branch is None:
        raise NotFoundError(f"Branch {branch_id} not found")
    return branch


@router.post(
    "",
    response_model=BranchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create branch"
)
async def create_branch(
    data: BranchCreate,
    service: Branches,
    user_id: int = Depends(require_permission(Permissions.BRANCHES_MANAGE)),
):
    """Create a branch and, when active, connect to it."""
    return await service.create_branch(data, user_id)


@router.put("/{branch_id}", response_model=BranchResponse, summary="Update branch")
async def update_branch(
    branch_id: int,
    data: BranchUpdate,
    service: Branches,
    user_id: int = Depends(require_permission(Permissions.BRANCHES_MANAGE)),
):
    return await service.update_branch(branch_id, data, user_id)


@router.delete("/{branch_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete branch")
async def delete_branch(
    branch_id: int,
    service: Branches,
    user_id: int = Depends(require_permission(Permissions.BRANCHES_MANAGE)),
):
    await service.delete_branch(branch_id, user_id)
