"""
Branch Connection Registry

Single source of truth for which branch ERP databases are reachable and
how to reach them. The registry holds one SQLAlchemy AsyncEngine (its own
connection pool) per branch, together with the branch's liveness state and
its probed schema variant.

Key Principles:
1. A branch whose ping fails is still registered, with status 'error',
   so the next health check can bring it back.
2. Nothing raises past the registry boundary. Failed pings downgrade the
   status and record the message.
3. State updates replace the whole BranchState in one assignment, so
   readers never see a status from one check and an error from another.
4. Replacing a branch config always builds a new engine; the old one is
   disposed.

The registry is built by the application lifespan (app/main.py), kept on
app.state and handed to the services that need it.

Usage:
    registry = BranchConnectionRegistry(scheduler=scheduler)
    await registry.initialize([BranchConfig.from_model(b) for b in branches])

    engine = registry.get(branch_id)
    if engine is None:
        ...  # branch unavailable, degrade
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from app.config import settings
from app.core.branch_schema import SchemaVariant, probe_schema_variant
from app.database import utc_now

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class BranchConfig:
    """Connection settings for one branch database."""
    id: int
    code: str
    name: str
    host: Optional[str] = None
    port: int = 3306
    user: Optional[str] = None
    password: Optional[str] = None
    database: Optional[str] = None
    dsn: Optional[str] = None
    pool_size: int = field(default_factory=lambda: settings.BRANCH_POOL_SIZE)

    @classmethod
    def from_model(cls, branch) -> "BranchConfig":
        return cls(
            id=branch.id,
            code=branch.code,
            name=branch.name,
            host=branch.db_host,
            port=branch.db_port or 3306,
            user=branch.db_user,
            password=branch.db_password,
            database=branch.db_database,
            dsn=branch.db_dsn,
        )

    def url(self) -> Union[str, URL]:
        if self.dsn:
            return self.dsn
        return URL.create(
            settings.BRANCH_DB_DRIVER,
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )


@dataclass(frozen=True)
class BranchState:
    """Liveness snapshot of a branch, replaced as a whole on every check."""
    status: ConnectionStatus
    last_check: datetime
    error_message: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED


@dataclass
class BranchEntry:
    config: BranchConfig
    engine: Optional[AsyncEngine]
    state: BranchState
    schema_variant: Optional[SchemaVariant] = None

    @property
    def is_connected(self) -> bool:
        return self.engine is not None and self.state.is_connected


def create_branch_engine(config: BranchConfig) -> AsyncEngine:
    """Build the connection pool for a branch."""
    url = config.url()
    if str(url).startswith("sqlite"):
        return create_async_engine(url)
    return create_async_engine(
        url,
        pool_size=config.pool_size,
        max_overflow=0,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={"connect_timeout": settings.BRANCH_CONNECT_TIMEOUT},
    )


class BranchConnectionRegistry:
    """
    Owns one connection pool per branch and tracks its health.

    Features:
    - Parallel connect on startup and parallel health checks
    - Recurring health check through APScheduler
    - Add, replace and remove branches at runtime
    - Schema variant probed once per branch and cached
    """

    HEALTH_JOB_ID = "branch_health_check"

    def __init__(
        self,
        scheduler=None,
        health_check_interval: Optional[int] = None,
        connect_timeout: Optional[float] = None,
    ):
        """
        Args:
            scheduler: APScheduler scheduler that runs the health check
                loop. Without one, health checks only run on demand.
            health_check_interval: Seconds between health checks
            connect_timeout: Seconds allowed for a single ping
        """
        self._branches: Dict[int, BranchEntry] = {}
        self._lock = asyncio.Lock()
        self._scheduler = scheduler
        self.health_check_interval = health_check_interval or settings.BRANCH_HEALTH_CHECK_INTERVAL
        self.connect_timeout = connect_timeout or settings.BRANCH_CONNECT_TIMEOUT

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    async def initialize(self, configs: Iterable[BranchConfig]) -> None:
        """Connect every branch in parallel, then start the health check loop."""
        configs = list(configs)
        entries = await asyncio.gather(*(self._open(config) for config in configs))

        async with self._lock:
            replaced = [self._swap(entry) for entry in entries]
        await self._dispose_all(replaced)

        logger.info(
            f"Branch registry initialized: {self.connected_count()}/{len(configs)} branches connected"
        )
        self._start_health_checks()

    async def add_or_replace(self, config: BranchConfig) -> BranchState:
        """Register a branch, replacing any previous entry and its pool."""
        entry = await self._open(config)
        async with self._lock:
            old = self._swap(entry)
        await self._dispose_all([old])

        if entry.is_connected:
            logger.info(f"Branch {config.code} ({config.id}) connected")
        else:
            logger.warning(
                f"Branch {config.code} ({config.id}) registered with error: {entry.state.error_message}"
            )
        return entry.state

    async def remove(self, branch_id: int) -> bool:
        """Close the branch pool and forget the branch."""
        async with self._lock:
            entry = self._branches.pop(branch_id, None)
        if entry is None:
            return False
        await self._dispose_all([entry])
        logger.info(f"Branch {entry.config.code} ({branch_id}) removed")
        return True

    async def close_all(self) -> None:
        """Stop the health check loop and close every pool."""
        self._stop_health_checks()
        async with self._lock:
            entries = list(self._branches.values())
            self._branches.clear()
        await self._dispose_all(entries)
        logger.info(f"Branch registry closed ({len(entries)} pools)")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, branch_id: int) -> Optional[AsyncEngine]:
        """Usable engine for a branch, or None if unknown or in error."""
        entry = self._branches.get(branch_id)
        if entry is None:
            logger.warning(f"Branch {branch_id} is not registered")
            return None
        if not entry.is_connected:
            logger.warning(
                f"Branch {branch_id} unavailable: {entry.state.error_message or entry.state.status.value}"
            )
            return None
        return entry.engine

    def get_by_code(self, code: str) -> Optional[AsyncEngine]:
        for branch_id, entry in list(self._branches.items()):
            if entry.config.code == code:
                return self.get(branch_id)
        logger.warning(f"Branch code {code} is not registered")
        return None

    def get_entry(self, branch_id: int) -> Optional[BranchEntry]:
        return self._branches.get(branch_id)

    def get_config(self, branch_id: int) -> Optional[BranchConfig]:
        entry = self._branches.get(branch_id)
        return entry.config if entry else None

    def branch_name(self, branch_id: int) -> str:
        entry = self._branches.get(branch_id)
        return entry.config.name if entry else f"Sucursal {branch_id}"

    def schema_variant(self, branch_id: int) -> Optional[SchemaVariant]:
        entry = self._branches.get(branch_id)
        return entry.schema_variant if entry else None

    def branch_ids(self) -> List[int]:
        return list(self._branches.keys())

    def connected_ids(self) -> List[int]:
        return [bid for bid, entry in list(self._branches.items()) if entry.is_connected]

    def connected_count(self) -> int:
        return len(self.connected_ids())

    def list_statuses(self) -> List[dict]:
        """Snapshot of every branch for observability."""
        statuses = []
        for branch_id, entry in sorted(self._branches.items()):
            state = entry.state
            statuses.append({
                "id": branch_id,
                "code": entry.config.code,
                "name": entry.config.name,
                "status": state.status.value,
                "last_check": state.last_check,
                "error_message": state.error_message,
                "schema_variant": entry.schema_variant.value if entry.schema_variant else None,
            })
        return statuses

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_health(self, branch_id: int) -> Optional[BranchState]:
        """Ping one branch and record the outcome."""
        entry = self._branches.get(branch_id)
        if entry is None:
            return None
        if entry.engine is None:
            return entry.state

        state, variant = await self._ping(entry.config, entry.engine, entry.schema_variant)

        # Entry may have been replaced while the ping was in flight
        if self._branches.get(branch_id) is not entry:
            return self._branches[branch_id].state if branch_id in self._branches else None

        if state.status != entry.state.status:
            if state.is_connected:
                logger.info(f"Branch {entry.config.code} ({branch_id}) recovered")
            else:
                logger.warning(
                    f"Branch {entry.config.code} ({branch_id}) went down: {state.error_message}"
                )
        entry.schema_variant = variant
        entry.state = state
        return state

    async def check_all_health(self) -> Dict[int, str]:
        """Ping every registered branch in parallel."""
        branch_ids = self.branch_ids()
        states = await asyncio.gather(*(self.check_health(bid) for bid in branch_ids))
        result = {
            bid: state.status.value
            for bid, state in zip(branch_ids, states)
            if state is not None
        }
        logger.debug(f"Branch health check: {self.connected_count()}/{len(result)} connected")
        return result

    async def reprobe(self, branch_id: int) -> Optional[SchemaVariant]:
        """Forget the cached schema variant of a branch and probe again."""
        entry = self._branches.get(branch_id)
        if entry is None or entry.engine is None:
            return None
        try:
            variant = await probe_schema_variant(entry.engine)
        except Exception as e:
            logger.warning(f"Schema probe failed for branch {branch_id}: {e}")
            return entry.schema_variant
        if self._branches.get(branch_id) is entry:
            entry.schema_variant = variant
        return variant

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _open(self, config: BranchConfig) -> BranchEntry:
        try:
            engine = create_branch_engine(config)
        except Exception as e:
            # Bad URL or missing driver. Keep the branch registered in error.
            logger.error(f"Cannot build engine for branch {config.code} ({config.id}): {e}")
            state = BranchState(ConnectionStatus.ERROR, utc_now(), str(e))
            return BranchEntry(config=config, engine=None, state=state)

        state, variant = await self._ping(config, engine)
        return BranchEntry(config=config, engine=engine, state=state, schema_variant=variant)

    async def _ping(
        self,
        config: BranchConfig,
        engine: AsyncEngine,
        variant: Optional[SchemaVariant] = None,
    ) -> Tuple[BranchState, Optional[SchemaVariant]]:
        try:
            await asyncio.wait_for(self._execute_ping(engine), timeout=self.connect_timeout)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.debug(f"Ping failed for branch {config.code} ({config.id}): {message}")
            return BranchState(ConnectionStatus.ERROR, utc_now(), message), variant

        if variant is None:
            try:
                variant = await probe_schema_variant(engine)
            except Exception as e:
                logger.warning(f"Schema probe failed for branch {config.code} ({config.id}): {e}")
            if variant is None:
                logger.warning(f"Branch {config.code} ({config.id}) has no known catalog table")

        return BranchState(ConnectionStatus.CONNECTED, utc_now()), variant

    @staticmethod
    async def _execute_ping(engine: AsyncEngine) -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    def _swap(self, entry: BranchEntry) -> Optional[BranchEntry]:
        old = self._branches.get(entry.config.id)
        self._branches[entry.config.id] = entry
        return old

    @staticmethod
    async def _dispose_all(entries: Iterable[Optional[BranchEntry]]) -> None:
        for entry in entries:
            if entry is None or entry.engine is None:
                continue
            try:
                await entry.engine.dispose()
            except Exception as e:
                logger.warning(f"Error closing pool of branch {entry.config.id}: {e}")

    def _start_health_checks(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.add_job(
            self.check_all_health,
            'interval',
            seconds=self.health_check_interval,
            id=self.HEALTH_JOB_ID,
            name='Branch Health Check',
            replace_existing=True,
        )
        logger.info(f"Branch health check scheduled every {self.health_check_interval}s")

    def _stop_health_checks(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.get_job(self.HEALTH_JOB_ID) is not None:
            self._scheduler.remove_job(self.HEALTH_JOB_ID)
