import logging
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """
    Audit trail for counts, requests and branch administration.

    Entries are written in their own session, after the triggering
    operation has committed. A failed write is logged and never raised.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(
        self,
        user_id: Optional[int],
        action: str,
        entity_type: str,
        entity_id: Optional[int] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> bool:
        """
        Record an audit entry.

        Args:
            user_id: ID of the user performing the action
            action: The action performed (CREATE, UPDATE, DELETE, STATUS_CHANGE, etc.)
            entity_type: Type of entity (COUNT, COUNT_DETAIL, REQUEST, BRANCH)
            entity_id: ID of the affected entity
            old_values: Previous values (for updates)
            new_values: New values (for creates/updates)
            description: Human-readable description

        Returns:
            True when the entry was stored
        """
        try:
            async with self.session_factory() as session:
                session.add(AuditLog(
                    user_id=user_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    old_values=old_values,
                    new_values=new_values,
                    description=description,
                ))
                await session.commit()
            return True
        except Exception as e:
            logger.error(f"Audit log failed for {action} {entity_type} {entity_id}: {e}")
            return False
