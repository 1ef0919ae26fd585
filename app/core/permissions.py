from typing import Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.role import ALL_PERMISSIONS
from app.models.user import User


class Permissions:
    """Permission codes checked by the API."""
    COUNTS_VIEW = "counts.view"
    COUNTS_CREATE = "counts.create"
    COUNTS_UPDATE = "counts.update"
    COUNTS_DELETE = "counts.delete"
    COUNTS_CAPTURE = "counts.capture"
    REQUESTS_VIEW = "requests.view"
    REQUESTS_CREATE = "requests.create"
    REQUESTS_REVIEW = "requests.review"
    STOCK_VIEW = "stock.view"
    CACHE_MANAGE = "cache.manage"
    BRANCHES_VIEW = "branches.view"
    BRANCHES_MANAGE = "branches.manage"


class PermissionChecker:
    """
    Permission checker backed by the users/roles tables.

    Built once at startup with the local session factory and shared by
    every request. A role listing "all" passes every check; inactive
    users fail every check.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self.session_factory() as session:
            return await session.get(User, user_id)

    async def get_permissions(self, user_id: int) -> Set[str]:
        """
        Permission codes of a user.

        Returns:
            Empty set for unknown or inactive users
        """
        user = await self.get_user(user_id)
        if user is None or not user.is_active or user.role is None:
            return set()
        return set(user.role.permissions or [])

    async def has_permission(self, user_id: int, permission_code: str) -> bool:
        """
        Check if user has a specific permission.

        Args:
            user_id: ID of the acting user
            permission_code: The permission code to check (e.g., 'counts.create')
        """
        permissions = await self.get_permissions(user_id)
        return ALL_PERMISSIONS in permissions or permission_code in permissions
