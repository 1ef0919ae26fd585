"""
Count Service

Lifecycle of inventory counts:

    pendiente -> contando -> contado -> cerrado
    pendiente -> cancelado

Counts are created in bulk, one per item, after validating the item codes
against the branch catalog. Each count is seeded with one detail holding
the branch's system stock for the selected warehouse. Capturing the last
pending detail of a count closes it automatically.

Remote branch reads happen before the local transaction is opened and are
never part of it. Side effects (events, notifications, audit) run after
commit and never fail the operation that triggered them.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, date, time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from sqlalchemy import select, func, update, delete, case, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.branch_registry import BranchConnectionRegistry
from app.core.exceptions import (
    BranchUnavailable,
    CallerError,
    InvalidItemSet,
    InventoryError,
    InvalidStatusTransition,
    NotFoundError,
    QueryError,
    AlreadyStarted,
)
from app.core.remote_query import RemoteQueryExecutor
from app.database import utc_now
from app.models.branch import Branch
from app.models.count import Count, CountDetail, CountStatus
from app.models.request import AdjustmentRequest, RequestStatus
from app.schemas.count import CountCreate, CountUpdate, CountDetailCreate
from app.services.audit_service import AuditService
from app.services.count_state_machine import can_transition, validate_transition, is_terminal
from app.services.event_service import EventBroadcaster, EventType
from app.services.folio_service import FolioService
from app.services.notification_service import NotificationService, CountAlert
from app.services.request_service import RequestService
from app.services.settings_service import SettingsService, COUNT_FOLIO_FORMAT
from app.services.stock_service import StockService, chunked

logger = logging.getLogger(__name__)


HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def compute_difference(system_stock: Decimal, counted_stock: Decimal) -> Tuple[Decimal, Decimal]:
    """
    Difference and signed percentage of a capture.

    system 0 / counted 5 -> (5, 100); system 0 / counted 0 -> (0, 0);
    system 20 / counted 18 -> (-2, -10).
    """
    system_stock = _decimal(system_stock)
    counted_stock = _decimal(counted_stock)
    difference = counted_stock - system_stock
    if system_stock != 0:
        percentage = (difference / system_stock * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
    elif difference != 0:
        percentage = HUNDRED
    else:
        percentage = Decimal("0")
    return difference, percentage


def normalize_item_codes(codes: Iterable[Any]) -> List[str]:
    """Trimmed, non-empty, de-duplicated codes in their original order."""
    normalized = []
    seen: Set[str] = set()
    for code in codes or []:
        if code is None:
            continue
        value = str(code).strip()
        if value and value not in seen:
            seen.add(value)
            normalized.append(value)
    return normalized


def _as_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class DetailUpdateResult:
    """Outcome of a detail capture, including any auto-close it triggered."""
    detail: CountDetail
    count: Count
    auto_closed: bool = False
    alert: Optional[CountAlert] = None


class CountService:
    """Service for inventory count operations."""

    def __init__(
        self,
        db: AsyncSession,
        registry: BranchConnectionRegistry,
        executor: RemoteQueryExecutor,
        stock_service: StockService,
        audit: Optional[AuditService] = None,
        notifier: Optional[NotificationService] = None,
        events: Optional[EventBroadcaster] = None,
        settings_service: Optional[SettingsService] = None,
    ):
        self.db = db
        self.registry = registry
        self.executor = executor
        self.stock_service = stock_service
        self.audit = audit
        self.notifier = notifier
        self.events = events
        self.settings_service = settings_service or SettingsService(db)

    # ========================================================================
    # CREATION
    # ========================================================================

    async def create_counts(self, data: CountCreate, user_id: Optional[int]) -> List[Count]:
        """
        Create one count per valid item code.

        Raises:
            NotFoundError: unknown branch
            InvalidItemSet: empty set, too many items, none in the catalog,
                or every item already counted in the exclusion range
            SchemaMismatch: the branch has no catalog table
            BranchUnavailable: the branch cannot be queried
        """
        direct = data.is_direct_adjustment
        counted_values: Dict[str, Decimal] = {}
        if direct:
            for item in data.items_data:
                code = item.item_code.strip()
                if code:
                    counted_values[code] = item.counted_stock
            codes = normalize_item_codes(counted_values.keys())
        else:
            codes = normalize_item_codes(data.items)

        if not codes:
            raise InvalidItemSet("No items specified for count")
        if len(codes) > settings.MAX_ITEMS_PER_COUNT:
            raise InvalidItemSet(
                f"Too many items ({len(codes)}). Max allowed is {settings.MAX_ITEMS_PER_COUNT}."
            )

        branch = await self.db.get(Branch, data.branch_id)
        if branch is None:
            raise NotFoundError(f"Branch {data.branch_id} not found")

        almacen = data.almacen or 1

        # Step 1: keep only codes present in the branch catalog
        in_catalog = await self._catalog_codes(data.branch_id, codes)
        valid_codes = [code for code in codes if code in in_catalog]
        if not valid_codes:
            raise InvalidItemSet("No valid items found in catalog for the requested codes")
        if len(valid_codes) < len(codes):
            logger.info(
                f"Branch {data.branch_id}: {len(codes) - len(valid_codes)} codes not in catalog were skipped"
            )

        # Step 2: optionally drop items already counted in the range
        if data.exclude_counted_from and data.exclude_counted_to:
            already = await self._counted_codes_in_range(
                data.branch_id, valid_codes, data.exclude_counted_from, data.exclude_counted_to, almacen
            )
            valid_codes = [code for code in valid_codes if code not in already]
            if not valid_codes:
                raise InvalidItemSet("All items have already been counted in the specified period")

        # Step 3: system stock snapshot from the branch
        seed_rows = await self._seed_rows(data.branch_id, valid_codes, almacen)
        vanished = [code for code in valid_codes if code not in seed_rows]
        if vanished:
            logger.warning(
                f"Branch {data.branch_id}: {len(vanished)} items vanished from the catalog, skipped"
            )
            valid_codes = [code for code in valid_codes if code in seed_rows]
        if not valid_codes:
            raise InvalidItemSet("No valid items found in catalog for the requested codes")

        template = await self.settings_service.get_value(
            COUNT_FOLIO_FORMAT, settings.DEFAULT_COUNT_FOLIO_FORMAT
        )

        # Step 4: one transaction for the folio block and every count
        now = utc_now()
        status = CountStatus.CERRADO.value if direct else CountStatus.PENDIENTE.value
        created: List[Count] = []
        try:
            folios = await FolioService(self.db).allocate(template, len(valid_codes), Count.folio)
            for folio, code in zip(folios, valid_codes):
                row = seed_rows[code]
                count = Count(
                    folio=folio,
                    branch_id=data.branch_id,
                    almacen=almacen,
                    type=data.type,
                    classification=data.classification,
                    priority=data.priority,
                    status=status,
                    responsible_user_id=data.responsible_user_id,
                    created_by_user_id=user_id,
                    assigned_at=now if data.responsible_user_id else None,
                    scheduled_date=data.scheduled_date,
                    tolerance_percentage=data.tolerance_percentage,
                    notes=data.notes,
                    started_at=now if direct else None,
                    finished_at=now if direct else None,
                    closed_at=now if direct else None,
                )
                detail = CountDetail(
                    item_code=code,
                    item_description=row["item_description"],
                    unit=row["unit"],
                    warehouse_id=row["warehouse_id"],
                    warehouse_name=row["warehouse_name"],
                    system_stock=row["system_stock"],
                )
                if direct:
                    counted = counted_values[code]
                    detail.counted_stock = counted
                    detail.difference, detail.difference_percentage = compute_difference(
                        row["system_stock"], counted
                    )
                    detail.counted_at = now
                    detail.counted_by_user_id = user_id
                count.details.append(detail)
                self.db.add(count)
                created.append(count)

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        count_ids = [count.id for count in created]
        logger.info(
            f"Created {len(count_ids)} counts for branch {data.branch_id} "
            f"({folios[0]}..{folios[-1]}, warehouse {almacen})"
        )

        # Step 5: committed state for callers, then side effects
        counts = await self._fetch_counts(count_ids)
        for count in counts:
            self._emit(EventType.COUNT_CREATED, self._count_payload(count))

        if data.responsible_user_id and counts and self.notifier:
            await self.notifier.notify_assignment(
                data.responsible_user_id,
                counts[0].folio,
                self.registry.branch_name(data.branch_id),
                len(counts),
            )

        if self.audit:
            await self.audit.append(
                user_id, "CREATE", "COUNT", count_ids[0],
                new_values={
                    "branch_id": data.branch_id,
                    "almacen": almacen,
                    "folios": [c.folio for c in counts],
                    "classification": data.classification,
                },
                description=f"{len(counts)} counts created",
            )

        # Step 6: direct adjustments become requests right away
        if direct:
            requests = self._request_service()
            for count_id in count_ids:
                try:
                    await requests.create_requests_from_count(count_id, user_id)
                except Exception as e:
                    logger.error(f"Auto-creating requests for count {count_id} failed: {e}")

        return counts

    async def _catalog_codes(self, branch_id: int, codes: List[str]) -> Set[str]:
        found: Set[str] = set()
        for chunk in chunked(codes, settings.SEED_CHUNK_SIZE):
            rows = await self.executor.run(branch_id, "catalog_codes", {"codes": chunk})
            found.update(str(row["item_code"]).strip() for row in rows if row.get("item_code"))
        return found

    async def _seed_rows(self, branch_id: int, codes: List[str], almacen: int) -> Dict[str, dict]:
        """
        Catalog data and system stock of each code.

        Codes without a stock row get 0. The warehouse name comes from the
        stock rows, then the warehouses table, then "Almacén {n}".
        """
        rows: Dict[str, dict] = {}
        warehouse_name: Optional[str] = None

        for chunk in chunked(codes, settings.SEED_CHUNK_SIZE):
            catalog = await self.executor.run(branch_id, "catalog_details", {"codes": chunk})
            stock = await self.executor.run(
                branch_id, "warehouse_stock", {"codes": chunk, "almacen": almacen}
            )
            stock_by_code = {str(s["item_code"]).strip(): s for s in stock}

            if warehouse_name is None:
                named = [s["warehouse_name"] for s in stock if s.get("warehouse_name")]
                if named:
                    warehouse_name = named[0]

            for info in catalog:
                code = str(info["item_code"]).strip()
                stock_row = stock_by_code.get(code)
                rows[code] = {
                    "item_description": info.get("description"),
                    "unit": info.get("unit"),
                    "warehouse_id": int(stock_row["warehouse_id"]) if stock_row else almacen,
                    "warehouse_name": None,
                    "system_stock": _decimal(stock_row["stock"]) if stock_row else Decimal("0"),
                }

        if warehouse_name is None:
            warehouse_name = await self._warehouse_name(branch_id, almacen)
        for row in rows.values():
            row["warehouse_name"] = warehouse_name
        return rows

    async def _warehouse_name(self, branch_id: int, almacen: int) -> str:
        try:
            rows = await self.executor.run(branch_id, "warehouse_name", {"almacen": almacen})
            if rows and rows[0].get("name"):
                return rows[0]["name"]
        except (BranchUnavailable, QueryError) as e:
            logger.warning(f"Warehouse name lookup failed for {almacen} on branch {branch_id}: {e}")
        return f"Almacén {almacen}"

    async def _counted_codes_in_range(
        self,
        branch_id: int,
        codes: List[str],
        date_from: Union[date, datetime],
        date_to: Union[date, datetime],
        almacen: Optional[int] = None,
    ) -> Set[str]:
        """Codes captured in [date_from, date_to) for the branch, from the local store."""
        counted: Set[str] = set()
        for chunk in chunked(codes, settings.HISTORY_CHUNK_SIZE):
            query = (
                select(CountDetail.item_code)
                .join(Count, Count.id == CountDetail.count_id)
                .where(
                    Count.branch_id == branch_id,
                    CountDetail.item_code.in_(chunk),
                    CountDetail.counted_at.is_not(None),
                    CountDetail.counted_at >= _as_datetime(date_from),
                    CountDetail.counted_at < _as_datetime(date_to),
                )
                .distinct()
            )
            if almacen:
                query = query.where(Count.almacen == almacen)
            result = await self.db.execute(query)
            counted.update(result.scalars().all())
        return counted

    # ========================================================================
    # QUERIES
    # ========================================================================

    async def get_count(self, count_id: int) -> Optional[Count]:
        """Get a count by ID."""
        result = await self.db.execute(select(Count).where(Count.id == count_id))
        return result.scalar_one_or_none()

    async def next_folio(self) -> str:
        template = await self.settings_service.get_value(
            COUNT_FOLIO_FORMAT, settings.DEFAULT_COUNT_FOLIO_FORMAT
        )
        return await FolioService(self.db).preview(template, Count.folio)

    async def get_count_by_folio(self, folio: str) -> Optional[Count]:
        result = await self.db.execute(select(Count).where(Count.folio == folio))
        return result.scalar_one_or_none()

    async def list_counts(
        self,
        branch_id: Optional[int] = None,
        status: Optional[Union[str, Sequence[str]]] = None,
        type: Optional[str] = None,
        classification: Optional[str] = None,
        responsible_user_id: Optional[int] = None,
        date_from: Optional[Union[date, datetime]] = None,
        date_to: Optional[Union[date, datetime]] = None,
        scheduled_from: Optional[date] = None,
        scheduled_to: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Count], int]:
        """List counts with filters, newest folio first."""
        query = select(Count)

        if branch_id:
            query = query.where(Count.branch_id == branch_id)
        if status:
            if isinstance(status, str):
                query = query.where(Count.status == status)
            else:
                query = query.where(Count.status.in_(list(status)))
        if type:
            query = query.where(Count.type == type)
        if classification:
            query = query.where(Count.classification == classification)
        if responsible_user_id:
            query = query.where(Count.responsible_user_id == responsible_user_id)
        if date_from:
            query = query.where(Count.created_at >= _as_datetime(date_from))
        if date_to:
            # A plain date includes the whole day
            if isinstance(date_to, datetime):
                query = query.where(Count.created_at <= date_to)
            else:
                query = query.where(Count.created_at < datetime.combine(date_to, time.max))
        if scheduled_from:
            query = query.where(Count.scheduled_date >= scheduled_from)
        if scheduled_to:
            query = query.where(Count.scheduled_date <= scheduled_to)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))

        query = query.order_by(Count.folio.desc()).offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total or 0

    async def get_count_details(self, count_id: int) -> List[CountDetail]:
        if await self.get_count(count_id) is None:
            raise NotFoundError(f"Count {count_id} not found")
        result = await self.db.execute(
            select(CountDetail)
            .where(CountDetail.count_id == count_id)
            .order_by(CountDetail.item_code, CountDetail.id)
        )
        return list(result.scalars().all())

    async def get_count_detail(self, detail_id: int) -> Optional[CountDetail]:
        result = await self.db.execute(select(CountDetail).where(CountDetail.id == detail_id))
        return result.scalar_one_or_none()

    # ========================================================================
    # DETAILS
    # ========================================================================

    async def add_count_detail(
        self,
        count_id: int,
        data: CountDetailCreate,
        user_id: Optional[int],
    ) -> CountDetail:
        """
        Add a detail to a count.

        Missing system stock, description and unit are read from the
        branch (degrading to 0 / empty when it cannot answer).
        """
        count = await self._get_open_count(count_id)
        warehouse_id = data.warehouse_id or count.almacen

        system_stock = data.system_stock
        if system_stock is None:
            system_stock = _decimal(
                await self.stock_service.get_stock(count.branch_id, data.item_code, warehouse_id)
            )

        description, unit = data.item_description, data.unit
        if description is None or unit is None:
            info = await self.stock_service.get_item_info(count.branch_id, data.item_code)
            if info:
                description = description if description is not None else info.get("description")
                unit = unit if unit is not None else info.get("unit")

        detail = CountDetail(
            count_id=count.id,
            item_code=data.item_code,
            item_description=description,
            unit=unit,
            warehouse_id=warehouse_id,
            warehouse_name=data.warehouse_name,
            system_stock=system_stock,
            notes=data.notes,
        )
        if data.counted_stock is not None:
            detail.counted_stock = data.counted_stock
            detail.difference, detail.difference_percentage = compute_difference(
                system_stock, data.counted_stock
            )
            detail.counted_at = utc_now()
            detail.counted_by_user_id = user_id

        self.db.add(detail)
        await self.db.commit()
        await self.db.refresh(detail)

        logger.info(f"Detail {detail.item_code} added to count {count.folio} (warehouse {warehouse_id})")
        self._emit(EventType.COUNT_DETAIL_ADDED, self._detail_payload(detail, count))
        if self.audit:
            await self.audit.append(
                user_id, "CREATE", "COUNT_DETAIL", detail.id,
                new_values={
                    "count_id": count.id,
                    "item_code": detail.item_code,
                    "system_stock": detail.system_stock,
                    "counted_stock": detail.counted_stock,
                },
            )
        return detail

    async def update_count_detail(
        self,
        detail_id: int,
        counted_stock: Decimal,
        user_id: Optional[int],
        notes: Optional[str] = None,
    ) -> DetailUpdateResult:
        """
        Capture the counted quantity of a detail.

        When no detail of the count is left uncaptured the count is closed
        through transition_status; the result then carries auto_closed and
        the alert of items beyond tolerance.
        """
        detail = await self.get_count_detail(detail_id)
        if detail is None:
            raise NotFoundError(f"Count detail {detail_id} not found")
        count = await self._get_open_count(detail.count_id)

        old_values = {"counted_stock": detail.counted_stock, "notes": detail.notes}
        counted_stock = Decimal(str(counted_stock))
        detail.counted_stock = counted_stock
        detail.difference, detail.difference_percentage = compute_difference(
            detail.system_stock, counted_stock
        )
        detail.counted_at = utc_now()
        detail.counted_by_user_id = user_id
        if notes is not None:
            detail.notes = notes

        await self.db.commit()
        await self.db.refresh(detail)

        self._emit(EventType.COUNT_DETAIL_UPDATED, self._detail_payload(detail, count))
        if self.audit:
            await self.audit.append(
                user_id, "UPDATE", "COUNT_DETAIL", detail.id,
                old_values=old_values,
                new_values={
                    "counted_stock": detail.counted_stock,
                    "difference": detail.difference,
                    "difference_percentage": detail.difference_percentage,
                },
            )

        result = DetailUpdateResult(detail=detail, count=count)

        pending = await self.db.scalar(
            select(func.count(CountDetail.id)).where(
                CountDetail.count_id == count.id,
                CountDetail.counted_at.is_(None),
            )
        )
        if not pending and can_transition(count.status, CountStatus.CERRADO.value):
            try:
                result.alert = await self.transition_status(count, CountStatus.CERRADO.value, user_id)
                result.auto_closed = True
                logger.info(f"Count {count.folio} closed automatically after its last capture")
            except InventoryError as e:
                logger.warning(f"Auto-close of count {count.folio} failed: {e.message}")

        return result

    # ========================================================================
    # UPDATE / STATUS
    # ========================================================================

    async def update_count(self, count_id: int, data: CountUpdate, user_id: Optional[int]) -> Count:
        """
        Update a count.

        Non-status fields are saved first, then a status change runs
        through transition_status. A new responsible user triggers a
        reassignment event and notification.
        """
        count = await self.get_count(count_id)
        if count is None:
            raise NotFoundError(f"Count {count_id} not found")

        update_data = data.model_dump(exclude_unset=True)
        if not update_data:
            raise CallerError("No fields to update")

        new_status = update_data.pop("status", None)
        if new_status is not None:
            # Reject before saving anything else
            validate_transition(count.status, new_status)

        old_values: Dict[str, Any] = {}
        new_values: Dict[str, Any] = {}
        reassigned_to: Optional[int] = None

        for field, value in update_data.items():
            current = getattr(count, field)
            if current == value:
                continue
            old_values[field] = current
            new_values[field] = value
            setattr(count, field, value)
            if field == "responsible_user_id" and value is not None:
                reassigned_to = value
                count.assigned_at = utc_now()

        if new_values:
            await self.db.commit()
            await self.db.refresh(count)
            logger.info(f"Count {count.folio} updated: {', '.join(new_values)}")

            if reassigned_to is not None:
                self._emit(EventType.COUNT_REASSIGNED, {
                    **self._count_payload(count),
                    "previous_user_id": old_values.get("responsible_user_id"),
                })
                if self.notifier:
                    items_count = await self.db.scalar(
                        select(func.count(CountDetail.id)).where(CountDetail.count_id == count.id)
                    )
                    await self.notifier.notify_reassignment(
                        reassigned_to,
                        count.folio,
                        self.registry.branch_name(count.branch_id),
                        items_count or 0,
                    )

            if self.audit:
                await self.audit.append(
                    user_id, "UPDATE", "COUNT", count.id,
                    old_values=old_values, new_values=new_values,
                )

        if new_status is not None:
            await self.transition_status(count, new_status, user_id)

        return count

    async def transition_status(
        self,
        count: Count,
        new_status: str,
        user_id: Optional[int],
    ) -> Optional[CountAlert]:
        """
        Move a count to a new status and fire its side effects.

        Starting ('contando') is a conditional UPDATE on status 'pendiente',
        so only one of two racing starts succeeds. Every other change is
        conditional on the status the caller read, so a stale count cannot
        overwrite a status someone else set meanwhile. Starting also reloads the
        system stock from the branch; when the branch cannot answer the
        count is started anyway with a system note.

        Returns:
            The tolerance alert when the count was closed with items beyond
            its tolerance, else None

        Raises:
            AlreadyStarted, InvalidStatusTransition
        """
        if not validate_transition(count.status, new_status):
            return None

        old_status = count.status
        now = utc_now()

        if new_status == CountStatus.CONTANDO.value:
            result = await self.db.execute(
                update(Count)
                .where(Count.id == count.id, Count.status == CountStatus.PENDIENTE.value)
                .values(status=new_status, started_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await self.db.rollback()
                raise AlreadyStarted("Count already started")
        else:
            # Only from the status this caller validated against
            values: Dict[str, Any] = {"status": new_status, "updated_at": now}
            if new_status in (CountStatus.CONTADO.value, CountStatus.CERRADO.value):
                values["finished_at"] = func.coalesce(Count.finished_at, now)
            if new_status == CountStatus.CERRADO.value:
                values["closed_at"] = func.coalesce(Count.closed_at, now)
            result = await self.db.execute(
                update(Count)
                .where(Count.id == count.id, Count.status == old_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await self.db.rollback()
                raise InvalidStatusTransition(
                    f"Count {count.folio} is no longer '{old_status}', cannot change it to '{new_status}'"
                )

        await self.db.commit()
        await self.db.refresh(count)
        logger.info(f"Count {count.folio}: {old_status} -> {new_status}")

        if new_status == CountStatus.CONTANDO.value:
            await self._refresh_system_stock(count)

        alert = None
        if new_status == CountStatus.CERRADO.value:
            alert = await self._build_alert(count)

        self._emit(EventType.COUNT_STATUS_CHANGED, {
            **self._count_payload(count),
            "old_status": old_status,
            "new_status": new_status,
        })

        if new_status in (CountStatus.CONTADO.value, CountStatus.CERRADO.value) and self.notifier:
            await self.notifier.notify_count_finished(
                count.branch_id,
                count.folio,
                self.registry.branch_name(count.branch_id),
                await self.notifier.get_user_name(user_id),
                alert,
            )

        if self.audit:
            await self.audit.append(
                user_id, "STATUS_CHANGE", "COUNT", count.id,
                old_values={"status": old_status},
                new_values={"status": new_status},
            )
        return alert

    async def _refresh_system_stock(self, count: Count) -> None:
        """Reload system stock of every detail; on branch failure leave a note."""
        details = await self.get_count_details(count.id)
        if not details:
            return

        codes = normalize_item_codes(d.item_code for d in details)
        try:
            stocks = await self.stock_service.refresh_stock(count.branch_id, codes, count.almacen)
        except (BranchUnavailable, QueryError) as e:
            logger.warning(f"Stock refresh failed when starting count {count.folio}: {e}")
            note = (
                f"[sistema] No se pudo sincronizar la existencia con la sucursal "
                f"al iniciar el conteo ({utc_now():%Y-%m-%d %H:%M} UTC)"
            )
            count.notes = f"{count.notes}\n{note}" if count.notes else note
            await self.db.commit()
            await self.db.refresh(count)
            return

        for detail in details:
            stock = _decimal(stocks.get(detail.item_code, 0))
            detail.system_stock = stock
            if detail.counted_stock is not None:
                detail.difference, detail.difference_percentage = compute_difference(
                    stock, detail.counted_stock
                )
        await self.db.commit()
        logger.info(f"System stock refreshed for {len(details)} details of count {count.folio}")

    async def _build_alert(self, count: Count) -> Optional[CountAlert]:
        tolerance = _decimal(count.tolerance_percentage)
        details = await self.get_count_details(count.id)
        flagged = [
            {
                "item_code": d.item_code,
                "system_stock": float(d.system_stock),
                "counted_stock": float(d.counted_stock),
                "difference": float(d.difference),
                "difference_percentage": float(d.difference_percentage),
            }
            for d in details
            if d.counted_stock is not None
            and d.difference_percentage is not None
            and abs(d.difference_percentage) > tolerance
        ]
        if not flagged:
            return None
        return CountAlert(
            count_id=count.id,
            folio=count.folio,
            branch_id=count.branch_id,
            branch_name=self.registry.branch_name(count.branch_id),
            line=details[0].item_code[:5] if details else "N/A",
            tolerance_percentage=float(tolerance),
            items=flagged,
        )

    # ========================================================================
    # DELETE
    # ========================================================================

    async def delete_count(self, count_id: int, user_id: Optional[int] = None) -> None:
        """Hard delete a count with its details and requests."""
        count = await self.get_count(count_id)
        if count is None:
            raise NotFoundError(f"Count {count_id} not found")
        folio = count.folio

        try:
            await self.db.execute(delete(AdjustmentRequest).where(AdjustmentRequest.count_id == count_id))
            await self.db.execute(delete(CountDetail).where(CountDetail.count_id == count_id))
            await self.db.execute(delete(Count).where(Count.id == count_id))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        self.db.expunge(count)

        logger.info(f"Count {folio} deleted")
        if self.audit:
            await self.audit.append(
                user_id, "DELETE", "COUNT", count_id, old_values={"folio": folio}
            )

    # ========================================================================
    # REPORTING
    # ========================================================================

    async def get_dashboard_stats(self, branch_id: Optional[int] = None) -> Dict[str, int]:
        """Count totals by lifecycle stage plus pending requests."""
        def total(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        count_query = select(
            total(Count.status.in_([CountStatus.PENDIENTE.value, CountStatus.CONTANDO.value])).label("open_counts"),
            total(Count.status == CountStatus.CONTANDO.value).label("in_progress_counts"),
            total(
                and_(Count.status == CountStatus.PENDIENTE.value, Count.scheduled_date.is_not(None))
            ).label("scheduled_counts"),
            total(Count.status == CountStatus.CONTADO.value).label("counted_counts"),
            total(Count.status == CountStatus.CERRADO.value).label("closed_counts"),
        )
        request_query = select(func.count(AdjustmentRequest.id)).where(
            AdjustmentRequest.status == RequestStatus.PENDIENTE.value
        )
        if branch_id:
            count_query = count_query.where(Count.branch_id == branch_id)
            request_query = request_query.where(AdjustmentRequest.branch_id == branch_id)

        stats = (await self.db.execute(count_query)).one()
        pending_requests = await self.db.scalar(request_query)

        return {
            "open_counts": int(stats.open_counts),
            "in_progress_counts": int(stats.in_progress_counts),
            "scheduled_counts": int(stats.scheduled_counts),
            "counted_counts": int(stats.counted_counts),
            "closed_counts": int(stats.closed_counts),
            "pending_requests": int(pending_requests or 0),
        }

    async def list_differences(
        self,
        count_id: Optional[int] = None,
        branch_id: Optional[int] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """Captured details whose counted stock differs from the system stock."""
        query = (
            select(CountDetail, Count.folio, Count.branch_id)
            .join(Count, Count.id == CountDetail.count_id)
            .where(
                CountDetail.counted_stock.is_not(None),
                CountDetail.counted_stock != CountDetail.system_stock,
            )
        )
        if count_id:
            query = query.where(CountDetail.count_id == count_id)
        if branch_id:
            query = query.where(Count.branch_id == branch_id)
        query = query.order_by(CountDetail.counted_at.desc(), CountDetail.id.desc()).limit(limit)

        result = await self.db.execute(query)
        differences = []
        for detail, folio, detail_branch_id in result.all():
            row = {column.key: getattr(detail, column.key) for column in CountDetail.__table__.columns}
            row.update(folio=folio, branch_id=detail_branch_id)
            differences.append(row)
        return differences

    async def get_items_history(
        self,
        branch_id: int,
        item_codes: Iterable[str],
        date_from: Union[date, datetime],
        date_to: Union[date, datetime],
        almacen: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Latest capture of each item in [date_from, date_to) for a branch."""
        codes = normalize_item_codes(item_codes)
        if not codes:
            return []

        history: List[Dict[str, Any]] = []
        for chunk in chunked(codes, settings.HISTORY_CHUNK_SIZE):
            latest = (
                select(
                    CountDetail.item_code.label("item_code"),
                    func.max(CountDetail.counted_at).label("last_counted_at"),
                )
                .join(Count, Count.id == CountDetail.count_id)
                .where(
                    Count.branch_id == branch_id,
                    CountDetail.item_code.in_(chunk),
                    CountDetail.counted_at.is_not(None),
                    CountDetail.counted_at >= _as_datetime(date_from),
                    CountDetail.counted_at < _as_datetime(date_to),
                )
                .group_by(CountDetail.item_code)
            )
            if almacen:
                latest = latest.where(Count.almacen == almacen)
            latest = latest.subquery()

            query = (
                select(
                    latest.c.item_code,
                    latest.c.last_counted_at,
                    func.min(Count.id).label("count_id"),
                    func.min(Count.folio).label("folio"),
                    func.min(Count.almacen).label("almacen"),
                )
                .select_from(latest)
                .join(
                    CountDetail,
                    and_(
                        CountDetail.item_code == latest.c.item_code,
                        CountDetail.counted_at == latest.c.last_counted_at,
                    ),
                )
                .join(Count, Count.id == CountDetail.count_id)
                .where(Count.branch_id == branch_id)
                .group_by(latest.c.item_code, latest.c.last_counted_at)
            )
            if almacen:
                query = query.where(Count.almacen == almacen)

            result = await self.db.execute(query)
            for row in result.all():
                history.append({
                    "item_code": row.item_code,
                    "last_counted_at": row.last_counted_at,
                    "count_id": row.count_id,
                    "folio": row.folio or "",
                    "almacen": row.almacen or 1,
                })
        return history

    # ========================================================================
    # HELPERS
    # ========================================================================

    async def _get_open_count(self, count_id: int) -> Count:
        count = await self.get_count(count_id)
        if count is None:
            raise NotFoundError(f"Count {count_id} not found")
        if is_terminal(count.status):
            raise CallerError(f"Count {count.folio} is '{count.status}' and cannot be modified")
        return count

    async def _fetch_counts(self, ids: List[int]) -> List[Count]:
        if not ids:
            return []
        result = await self.db.execute(
            select(Count)
            .where(Count.id.in_(ids))
            .order_by(Count.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    def _request_service(self) -> RequestService:
        return RequestService(
            self.db,
            registry=self.registry,
            audit=self.audit,
            notifier=self.notifier,
            events=self.events,
            settings_service=self.settings_service,
        )

    @staticmethod
    def _count_payload(count: Count) -> Dict[str, Any]:
        return {
            "id": count.id,
            "folio": count.folio,
            "branch_id": count.branch_id,
            "almacen": count.almacen,
            "status": count.status,
            "responsible_user_id": count.responsible_user_id,
        }

    @staticmethod
    def _detail_payload(detail: CountDetail, count: Count) -> Dict[str, Any]:
        return {
            "id": detail.id,
            "count_id": count.id,
            "folio": count.folio,
            "branch_id": count.branch_id,
            "item_code": detail.item_code,
            "counted_stock": detail.counted_stock,
            "difference": detail.difference,
        }

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.emit(event, payload)
        except Exception as e:
            logger.warning(f"Event '{event}' not emitted: {e}")
