"""Background jobs module."""

from calmesh.jobs.queue import SyncJobQueue, get_job_queue, set_job_queue
from calmesh.jobs.scheduler import setup_scheduler, shutdown_scheduler

__all__ = ["SyncJobQueue", "get_job_queue", "set_job_queue", "setup_scheduler", "shutdown_scheduler"]
