from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.api.v1.router import api_router
from app.core.branch_registry import BranchConnectionRegistry
from app.core.exceptions import InventoryError
from app.core.permissions import PermissionChecker
from app.core.remote_query import RemoteQueryExecutor
from app.database import init_db, async_session_factory, utc_now
from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from app.services.audit_service import AuditService
from app.services.branch_service import load_active_branch_configs
from app.services.cache_service import CacheBackend, StockCache, get_cache_backend
from app.services.event_service import EventBroadcaster
from app.services.notification_service import NotificationService
from app.services.stock_service import StockService


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def configure_state(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    registry: BranchConnectionRegistry,
    cache_backend: CacheBackend,
) -> None:
    """Wire the shared components the API dependencies read from app.state."""
    stock_cache = StockCache(cache_backend)
    executor = RemoteQueryExecutor(registry)

    app.state.registry = registry
    app.state.executor = executor
    app.state.cache_backend = cache_backend
    app.state.stock_cache = stock_cache
    app.state.stock_service = StockService(registry, executor, stock_cache)
    app.state.audit = AuditService(session_factory)
    app.state.notifier = NotificationService(session_factory)
    app.state.events = EventBroadcaster()
    app.state.permission_checker = PermissionChecker(session_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create local tables
    - Start background scheduler (cache sweep, branch health checks)
    - Connect every active branch

    Shutdown closes every branch pool before stopping the scheduler.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()

    cache_backend = get_cache_backend()
    start_scheduler(cache_backend)

    registry = BranchConnectionRegistry(
        scheduler=scheduler if settings.BRANCH_HEALTH_CHECK_ENABLED else None
    )
    async with async_session_factory() as session:
        configs = await load_active_branch_configs(session)
    await registry.initialize(configs)

    configure_state(app, async_session_factory, registry, cache_backend)

    yield

    logger.info("Shutting down...")
    await registry.close_all()
    shutdown_scheduler()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Inventory counts across branch ERP databases: stock lookups, "
                "count lifecycle and adjustment requests.",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(InventoryError)
async def inventory_error_handler(request: Request, exc: InventoryError):
    """Domain errors carry their own HTTP status."""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": type(exc).__name__},
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint with database and branch status."""
    from sqlalchemy import text

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": utc_now().isoformat(),
        "checks": {
            "database": "unknown",
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    registry = getattr(request.app.state, "registry", None)
    if registry is not None:
        health_status["checks"]["branches"] = {
            "connected": registry.connected_count(),
            "total": len(registry.branch_ids()),
        }

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status
