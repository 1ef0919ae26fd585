"""
Count Notification Service

Sends chat notifications about counts and adjustment requests:
- assignment / reassignment of a count to an operator
- count finished (to subscribers of the branch)
- adjustment request created (to subscribers of the branch)

Messages are posted to NOTIFICATION_WEBHOOK_URL (a messaging gateway).
Without a webhook the message is only logged. Delivery is best effort:
every failure is logged and swallowed.
"""
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.user import User, NotificationSubscription


logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Types of notifications."""
    COUNT_ASSIGNED = "count_assigned"
    COUNT_REASSIGNED = "count_reassigned"
    COUNT_FINISHED = "count_finished"
    REQUEST_CREATED = "request_created"


MESSAGE_TEMPLATES = {
    NotificationType.COUNT_ASSIGNED: (
        "Hola {user_name}, se te asignó el conteo {folio} en {branch_name} "
        "({items_count} artículos)."
    ),
    NotificationType.COUNT_REASSIGNED: (
        "Hola {user_name}, se te reasignó el conteo {folio} en {branch_name} "
        "({items_count} artículos)."
    ),
    NotificationType.COUNT_FINISHED: (
        "Conteo {folio} finalizado en {branch_name} por {user_name}."
    ),
    NotificationType.REQUEST_CREATED: (
        "Solicitud de ajuste en {branch_name}: artículo {item_code}, "
        "diferencia {difference}, capturó {user_name} ({origin})."
    ),
}

# Items listed in a count-finished alert before summarizing the rest
ALERT_ITEMS_LIMIT = 5


@dataclass
class CountAlert:
    """Items of a closed count whose difference exceeds its tolerance."""
    count_id: int
    folio: str
    branch_id: int
    branch_name: str
    line: str
    tolerance_percentage: float
    items: List[Dict[str, Any]] = field(default_factory=list)

    def summary(self) -> str:
        lines = [
            "ALERTA INVENTARIO",
            f"Conteo: {self.folio}",
            f"Sucursal: {self.branch_name}",
            f"Línea: {self.line}",
            "",
            "Diferencias encontradas:",
        ]
        for item in self.items[:ALERT_ITEMS_LIMIT]:
            lines.append(
                f"- {item['item_code']}: {item['system_stock']} vs {item['counted_stock']} "
                f"(Diff: {item['difference']})"
            )
        if len(self.items) > ALERT_ITEMS_LIMIT:
            lines.append(f"... y {len(self.items) - ALERT_ITEMS_LIMIT} más.")
        return "\n".join(lines)


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only, with country code 52 added to 10-digit numbers."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 10:
        return None
    if len(digits) == 10:
        digits = "52" + digits
    return digits


class NotificationService:
    """Best-effort notifications for the counting workflow."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.webhook_url = webhook_url if webhook_url is not None else settings.NOTIFICATION_WEBHOOK_URL
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT

    # ==================== Public API ====================

    async def notify_assignment(
        self,
        user_id: int,
        folio: str,
        branch_name: str,
        items_count: int,
    ) -> bool:
        return await self._notify_user(
            NotificationType.COUNT_ASSIGNED, user_id, folio, branch_name, items_count
        )

    async def notify_reassignment(
        self,
        user_id: int,
        folio: str,
        branch_name: str,
        items_count: int,
    ) -> bool:
        return await self._notify_user(
            NotificationType.COUNT_REASSIGNED, user_id, folio, branch_name, items_count
        )

    async def notify_count_finished(
        self,
        branch_id: int,
        folio: str,
        branch_name: str,
        user_name: str,
        alert: Optional[CountAlert] = None,
    ) -> int:
        """Notify subscribers of the branch. Returns messages sent."""
        try:
            message = MESSAGE_TEMPLATES[NotificationType.COUNT_FINISHED].format(
                folio=folio, branch_name=branch_name, user_name=user_name
            )
            if alert is not None and alert.items:
                message = f"{message}\n\n{alert.summary()}"
            subscribers = await self._get_subscribers(NotificationType.COUNT_FINISHED, branch_id)
            sent = 0
            for subscriber in subscribers:
                if await self._send(subscriber.phone_number, NotificationType.COUNT_FINISHED, message, subscriber.name):
                    sent += 1
            return sent
        except Exception as e:
            logger.error(f"Count finished notification failed for {folio}: {e}")
            return 0

    async def notify_request_created(
        self,
        branch_id: int,
        folio: str,
        branch_name: str,
        item_code: str,
        difference: float,
        user_name: str,
        origin: str = "count",
    ) -> int:
        """Notify subscribers of the branch about a new adjustment request."""
        try:
            message = MESSAGE_TEMPLATES[NotificationType.REQUEST_CREATED].format(
                branch_name=branch_name,
                item_code=item_code,
                difference=difference,
                user_name=user_name,
                origin=f"Conteo {folio}" if origin == "count" else "Directo",
            )
            subscribers = await self._get_subscribers(NotificationType.REQUEST_CREATED, branch_id)
            sent = 0
            for subscriber in subscribers:
                if await self._send(subscriber.phone_number, NotificationType.REQUEST_CREATED, message, subscriber.name):
                    sent += 1
            return sent
        except Exception as e:
            logger.error(f"Request notification failed for {folio}: {e}")
            return 0

    async def get_user_name(self, user_id: Optional[int]) -> str:
        if user_id is None:
            return "Sistema"
        try:
            async with self.session_factory() as session:
                user = await session.get(User, user_id)
                return user.name if user else f"Usuario {user_id}"
        except Exception as e:
            logger.warning(f"Cannot resolve user {user_id}: {e}")
            return f"Usuario {user_id}"

    # ==================== Internals ====================

    async def _notify_user(
        self,
        notification_type: NotificationType,
        user_id: int,
        folio: str,
        branch_name: str,
        items_count: int,
    ) -> bool:
        try:
            async with self.session_factory() as session:
                user = await session.get(User, user_id)
            if user is None:
                logger.warning(f"Cannot notify user {user_id}: user not found")
                return False
            if not user.phone_number:
                logger.warning(f"Cannot send notification to {user.name}: No phone number provided")
                return False

            message = MESSAGE_TEMPLATES[notification_type].format(
                user_name=user.name,
                folio=folio,
                branch_name=branch_name,
                items_count=items_count,
            )
            return await self._send(user.phone_number, notification_type, message, user.name)
        except Exception as e:
            logger.error(f"{notification_type.value} notification failed for {folio}: {e}")
            return False

    async def _get_subscribers(self, notification_type: NotificationType, branch_id: int) -> List[User]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(User)
                .join(NotificationSubscription, NotificationSubscription.user_id == User.id)
                .where(
                    NotificationSubscription.event_key == notification_type.value,
                    or_(
                        NotificationSubscription.branch_id == branch_id,
                        NotificationSubscription.branch_id.is_(None),
                    ),
                    User.status == "active",
                )
                .distinct()
            )
            return list(result.scalars().all())

    async def _send(
        self,
        phone: Optional[str],
        notification_type: NotificationType,
        message: str,
        recipient_name: str,
    ) -> bool:
        number = normalize_phone(phone)
        if number is None:
            logger.warning(f"Invalid phone number for {recipient_name}: {phone}")
            return False

        if not self.webhook_url:
            logger.info(f"[NOTIFICATION] {notification_type.value} to {recipient_name}: {message[:100]}")
            return True

        import httpx

        payload = {
            "to": number,
            "type": notification_type.value,
            "message": message,
        }
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.webhook_url, json=payload, timeout=self.timeout)
                response.raise_for_status()
            logger.info(f"[NOTIFICATION] {notification_type.value} sent to {recipient_name}")
            return True
        except Exception as e:
            logger.error(f"Failed to send {notification_type.value} to {recipient_name}: {e}")
            return False
