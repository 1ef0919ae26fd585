"""
Adjustment Request Service

Derives adjustment requests from counted differences and drives their
review:

    pendiente -> en_revision -> ajustado | rechazado

A count detail yields at most one request, so deriving twice from the
same count creates nothing the second time.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.branch_registry import BranchConnectionRegistry
from app.core.exceptions import NotFoundError, InvalidStatusTransition, TooManyDifferences, CallerError
from app.database import utc_now
from app.models.count import Count, CountDetail
from app.models.request import AdjustmentRequest, RequestStatus
from app.schemas.request import RequestUpdate
from app.services.audit_service import AuditService
from app.services.count_state_machine import REQUESTABLE_STATUSES
from app.services.event_service import EventBroadcaster, EventType
from app.services.folio_service import FolioService
from app.services.notification_service import NotificationService
from app.services.request_state_machine import validate_transition
from app.services.settings_service import SettingsService, REQUEST_FOLIO_FORMAT

logger = logging.getLogger(__name__)


class RequestService:
    """Service for adjustment request operations."""

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[BranchConnectionRegistry] = None,
        audit: Optional[AuditService] = None,
        notifier: Optional[NotificationService] = None,
        events: Optional[EventBroadcaster] = None,
        settings_service: Optional[SettingsService] = None,
    ):
        self.db = db
        self.registry = registry
        self.audit = audit
        self.notifier = notifier
        self.events = events
        self.settings_service = settings_service or SettingsService(db)

    # ========================================================================
    # DERIVATION
    # ========================================================================

    async def create_requests_from_count(self, count_id: int, user_id: Optional[int]) -> Dict[str, Any]:
        """
        Create one pending request per captured difference of a count.

        Returns:
            {"created", "skipped", "total_differences", "requests"}

        Raises:
            NotFoundError: unknown count
            InvalidStatusTransition: count is not 'contado' or 'cerrado'
            TooManyDifferences: more new requests than MAX_REQUESTS_PER_BATCH
        """
        count = await self.db.get(Count, count_id)
        if count is None:
            raise NotFoundError(f"Count {count_id} not found")
        if count.status not in REQUESTABLE_STATUSES:
            raise InvalidStatusTransition(
                f"Count {count.folio} must be counted or closed to create requests (status '{count.status}')"
            )

        result = await self.db.execute(
            select(CountDetail)
            .where(
                CountDetail.count_id == count_id,
                CountDetail.counted_stock.is_not(None),
                CountDetail.counted_stock != CountDetail.system_stock,
            )
            .order_by(CountDetail.item_code)
        )
        differences = list(result.scalars().all())
        if not differences:
            return {"created": 0, "skipped": 0, "total_differences": 0, "requests": []}

        # One query for every existing request of the count
        existing_result = await self.db.execute(
            select(AdjustmentRequest.count_detail_id).where(AdjustmentRequest.count_id == count_id)
        )
        existing = set(existing_result.scalars().all())
        to_create = [d for d in differences if d.id not in existing]

        if not to_create:
            return {
                "created": 0,
                "skipped": len(differences),
                "total_differences": len(differences),
                "requests": [],
            }

        if len(to_create) > settings.MAX_REQUESTS_PER_BATCH:
            raise TooManyDifferences(
                f"Too many differences ({len(to_create)}). "
                f"Max allowed is {settings.MAX_REQUESTS_PER_BATCH}."
            )

        template = await self.settings_service.get_value(
            REQUEST_FOLIO_FORMAT, settings.DEFAULT_REQUEST_FOLIO_FORMAT
        )

        try:
            folios = await FolioService(self.db).allocate(template, len(to_create), AdjustmentRequest.folio)
            created: List[AdjustmentRequest] = []
            for folio, detail in zip(folios, to_create):
                request = AdjustmentRequest(
                    folio=folio,
                    count_id=count_id,
                    count_detail_id=detail.id,
                    branch_id=count.branch_id,
                    item_code=detail.item_code,
                    system_stock=detail.system_stock,
                    counted_stock=detail.counted_stock,
                    difference=detail.counted_stock - detail.system_stock,
                    status=RequestStatus.PENDIENTE.value,
                    requested_by_user_id=user_id,
                )
                self.db.add(request)
                created.append(request)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Created {len(created)} adjustment requests from count {count.folio}")

        requests = await self._fetch_many([r.id for r in created])
        await self._after_create(count, requests, user_id)

        return {
            "created": len(created),
            "skipped": len(differences) - len(created),
            "total_differences": len(differences),
            "requests": requests,
        }

    async def _after_create(self, count: Count, requests: List[AdjustmentRequest], user_id: Optional[int]):
        branch_name = self._branch_name(count.branch_id)
        user_name = await self.notifier.get_user_name(user_id) if self.notifier else "Sistema"

        for request in requests:
            self._emit(EventType.REQUEST_CREATED, {
                "id": request.id,
                "folio": request.folio,
                "count_id": request.count_id,
                "branch_id": request.branch_id,
                "item_code": request.item_code,
                "difference": request.difference,
            })
            if self.notifier:
                await self.notifier.notify_request_created(
                    branch_id=request.branch_id,
                    folio=count.folio,
                    branch_name=branch_name,
                    item_code=request.item_code,
                    difference=float(request.difference),
                    user_name=user_name,
                    origin="count",
                )

        if self.audit:
            await self.audit.append(
                user_id, "CREATE_REQUESTS", "COUNT", count.id,
                new_values={"folios": [r.folio for r in requests]},
                description=f"{len(requests)} requests derived from count {count.folio}",
            )

    # ========================================================================
    # QUERIES
    # ========================================================================

    async def get_request(self, request_id: int) -> Optional[AdjustmentRequest]:
        result = await self.db.execute(
            select(AdjustmentRequest).where(AdjustmentRequest.id == request_id)
        )
        return result.scalar_one_or_none()

    async def list_requests(
        self,
        status: Optional[str] = None,
        branch_id: Optional[int] = None,
        count_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AdjustmentRequest], int]:
        """List requests with filters, newest first."""
        query = select(AdjustmentRequest)

        if status:
            query = query.where(AdjustmentRequest.status == status)
        if branch_id:
            query = query.where(AdjustmentRequest.branch_id == branch_id)
        if count_id:
            query = query.where(AdjustmentRequest.count_id == count_id)

        total = await self.db.scalar(
            select(func.count()).select_from(query.with_only_columns(AdjustmentRequest.id).subquery())
        )

        query = query.order_by(AdjustmentRequest.created_at.desc(), AdjustmentRequest.id.desc())
        query = query.offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total or 0

    # ========================================================================
    # REVIEW
    # ========================================================================

    async def update_request(
        self,
        request_id: int,
        data: RequestUpdate,
        user_id: Optional[int],
    ) -> AdjustmentRequest:
        """
        Review a request.

        Touching status or resolution notes stamps the acting user as
        reviewer and the current time as reviewed_at.
        """
        request = await self.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found")

        update_data = data.model_dump(exclude_unset=True)
        if not update_data:
            raise CallerError("No fields to update")

        old_status = request.status
        new_status = update_data.get("status")
        if new_status is not None:
            validate_transition(old_status, new_status)
            request.status = new_status

        if "resolution_notes" in update_data:
            request.resolution_notes = update_data["resolution_notes"]
        if "evidence_file" in update_data:
            request.evidence_file = update_data["evidence_file"]

        if new_status is not None or "resolution_notes" in update_data:
            request.reviewed_by_user_id = user_id
            request.reviewed_at = utc_now()

        await self.db.commit()
        await self.db.refresh(request)

        if new_status is not None and new_status != old_status:
            logger.info(f"Request {request.folio}: {old_status} -> {new_status}")
            self._emit(EventType.REQUEST_STATUS_CHANGED, {
                "id": request.id,
                "folio": request.folio,
                "old_status": old_status,
                "new_status": new_status,
                "reviewed_by_user_id": user_id,
            })

        if self.audit:
            await self.audit.append(
                user_id, "UPDATE", "REQUEST", request.id,
                old_values={"status": old_status},
                new_values=update_data,
            )
        return request

    # ========================================================================
    # HELPERS
    # ========================================================================

    async def _fetch_many(self, ids: List[int]) -> List[AdjustmentRequest]:
        if not ids:
            return []
        result = await self.db.execute(
            select(AdjustmentRequest)
            .where(AdjustmentRequest.id.in_(ids))
            .order_by(AdjustmentRequest.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    def _branch_name(self, branch_id: int) -> str:
        if self.registry is None:
            return f"Sucursal {branch_id}"
        return self.registry.branch_name(branch_id)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.emit(event, payload)
        except Exception as e:
            logger.warning(f"Event '{event}' not emitted: {e}")
