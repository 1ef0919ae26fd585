"""
Background Jobs Module

Handles scheduled tasks for:
- Branch database health checks
- Cache expiry sweeps
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
]
