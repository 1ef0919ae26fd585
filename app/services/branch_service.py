"""
Branch Service

Branch rows in the local store are the source of truth for the connection
registry: active rows are loaded at startup, and every administrative
change is mirrored into the registry and clears the branch's cache.
"""
import logging
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.branch_registry import BranchConnectionRegistry, BranchConfig, BranchState
from app.core.exceptions import CallerError, NotFoundError
from app.models.branch import Branch, BranchStatus
from app.models.count import Count
from app.schemas.branch import BranchCreate, BranchUpdate
from app.services.audit_service import AuditService
from app.services.cache_service import StockCache

logger = logging.getLogger(__name__)


async def load_active_branch_configs(db: AsyncSession) -> List[BranchConfig]:
    """Connection settings of every active branch."""
    result = await db.execute(
        select(Branch)
        .where(Branch.status == BranchStatus.ACTIVE.value)
        .order_by(Branch.id)
    )
    configs = [BranchConfig.from_model(branch) for branch in result.scalars().all()]
    logger.info(f"Loaded {len(configs)} active branches")
    return configs


class BranchService:
    """Administrative operations on branches."""

    def __init__(
        self,
        db: AsyncSession,
        registry: BranchConnectionRegistry,
        cache: Optional[StockCache] = None,
        audit: Optional[AuditService] = None,
    ):
        self.db = db
        self.registry = registry
        self.cache = cache
        self.audit = audit

    async def list_branches(self, include_inactive: bool = False) -> List[Branch]:
        query = select(Branch).order_by(Branch.id)
        if not include_inactive:
            query = query.where(Branch.status == BranchStatus.ACTIVE.value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_branch(self, branch_id: int) -> Optional[Branch]:
        return await self.db.get(Branch, branch_id)

    async def create_branch(self, data: BranchCreate, user_id: Optional[int] = None) -> Branch:
        existing = await self.db.scalar(select(Branch.id).where(Branch.code == data.code))
        if existing is not None:
            raise CallerError(f"Branch code '{data.code}' already exists")

        branch = Branch(**data.model_dump())
        self.db.add(branch)
        await self.db.commit()
        await self.db.refresh(branch)
        logger.info(f"Branch {branch.code} created (id {branch.id})")

        if branch.status == BranchStatus.ACTIVE.value:
            state = await self.registry.add_or_replace(BranchConfig.from_model(branch))
            self._log_state(branch, state)

        if self.audit:
            await self.audit.append(
                user_id, "CREATE", "BRANCH", branch.id,
                new_values={"code": branch.code, "name": branch.name, "status": branch.status},
            )
        return branch

    async def update_branch(self, branch_id: int, data: BranchUpdate, user_id: Optional[int] = None) -> Branch:
        """Update a branch and reconnect (or disconnect) it."""
        branch = await self.get_branch(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch {branch_id} not found")

        update_data = data.model_dump(exclude_unset=True)
        if not update_data:
            raise CallerError("No fields to update")

        old_values = {field: getattr(branch, field) for field in update_data if field != "db_password"}
        for field, value in update_data.items():
            setattr(branch, field, value)

        await self.db.commit()
        await self.db.refresh(branch)

        if branch.status == BranchStatus.ACTIVE.value:
            state = await self.registry.add_or_replace(BranchConfig.from_model(branch))
            self._log_state(branch, state)
        else:
            await self.registry.remove(branch.id)
            logger.info(f"Branch {branch.code} deactivated, connection closed")

        await self._invalidate(branch.id)

        if self.audit:
            await self.audit.append(
                user_id, "UPDATE", "BRANCH", branch.id,
                old_values=old_values,
                new_values={k: v for k, v in update_data.items() if k != "db_password"},
            )
        return branch

    async def delete_branch(self, branch_id: int, user_id: Optional[int] = None) -> None:
        """Delete a branch without counts. Branches with history must be deactivated."""
        branch = await self.get_branch(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch {branch_id} not found")

        counts = await self.db.scalar(select(func.count(Count.id)).where(Count.branch_id == branch_id))
        if counts:
            raise CallerError(
                f"Branch {branch.code} has {counts} counts and cannot be deleted; deactivate it instead"
            )

        code = branch.code
        await self.db.delete(branch)
        await self.db.commit()

        await self.registry.remove(branch_id)
        await self._invalidate(branch_id)
        logger.info(f"Branch {code} deleted")

        if self.audit:
            await self.audit.append(user_id, "DELETE", "BRANCH", branch_id, old_values={"code": code})

    async def _invalidate(self, branch_id: int) -> None:
        if self.cache is not None:
            removed = await self.cache.invalidate(branch_id)
            logger.debug(f"Cleared {removed} cache entries of branch {branch_id}")

    @staticmethod
    def _log_state(branch: Branch, state: BranchState) -> None:
        if state.is_connected:
            logger.info(f"Branch {branch.code} connected")
        else:
            logger.warning(f"Branch {branch.code} registered but not reachable: {state.error_message}")
