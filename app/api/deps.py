"""Shared FastAPI dependencies."""

from app.repos.store import JobStore, get_store
from app.services.job_controller import JobController


def get_job_store() -> JobStore:
    return get_store()


def get_job_controller() -> JobController:
    """A controller bound to the configured store."""
    return JobController(get_store())
