"""
APScheduler configuration.

One process-wide AsyncIOScheduler runs the recurring background work:
- branch health checks (registered by BranchConnectionRegistry.initialize)
- expiry sweep of the in-process cache

A failure inside a job is logged and never stops the scheduler.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.services.cache_service import CacheBackend, InMemoryCache

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone='UTC'
)


async def sweep_expired_cache(backend: CacheBackend):
    """Drop expired entries from the in-process cache."""
    if not isinstance(backend, InMemoryCache):
        return
    try:
        removed = await backend.cleanup_expired()
        if removed:
            logger.debug(f"Cache sweep removed {removed} expired entries")
    except Exception as e:
        logger.error(f"Cache sweep failed: {e}")


def start_scheduler(cache_backend: Optional[CacheBackend] = None):
    """Start the background job scheduler."""
    if not scheduler.running:
        if cache_backend is not None:
            scheduler.add_job(
                sweep_expired_cache,
                'interval',
                minutes=5,
                args=[cache_backend],
                id='sweep_expired_cache',
                name='Sweep Expired Cache Entries',
                replace_existing=True,
            )

        scheduler.start()
        logger.info("Background job scheduler started")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    result = []
    for job in jobs:
        # Pending jobs (scheduler not started) have no next_run_time yet
        next_run = getattr(job, 'next_run_time', None)
        result.append({
            'id': job.id,
            'name': job.name,
            'next_run_time': str(next_run) if next_run else None,
            'trigger': str(job.trigger),
        })
    return result
