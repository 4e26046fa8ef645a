"""FastAPI dependencies resolving the services wired up at startup."""

from fastapi import Request

from calmesh.jobs.queue import SyncJobQueue
from calmesh.sync.conflicts import ConflictResolver


def get_queue(request: Request) -> SyncJobQueue:
    return request.app.state.job_queue


def get_conflict_resolver(request: Request) -> ConflictResolver:
    return request.app.state.conflict_resolver
