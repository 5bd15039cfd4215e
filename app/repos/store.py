"""Job store -- the persistence seam of the pipeline.

The job controller only talks to a ``JobStore``.  Two implementations:

- ``InMemoryStore``: process-local dicts, for development and tests.
  Terminal jobs move into a TTL cache and are evicted after
  ``STORE_JOB_TTL_SECONDS``; live jobs are never evicted.  Deployment
  records are capped at ``STORE_MAX_DEPLOYMENTS``, oldest dropped first.
  Each project keeps one file snapshot, replaced on every save.
- ``PostgresStore`` (``app.repos.pg_store``): asyncpg-backed.

``get_store()`` returns the configured singleton.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Protocol

from cachetools import TTLCache

from app.config import settings
from app.errors import JobNotFoundError
from app.models import GenerationJob, JobStatus, utcnow
from shipwright_kit.fileset import FileSet

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    async def create_job(self, job: GenerationJob) -> GenerationJob: ...

    async def get_job(self, job_id: str) -> GenerationJob | None: ...

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> GenerationJob: ...

    async def load_project_files(self, project_id: str) -> FileSet: ...

    async def save_project_files(self, project_id: str, files: FileSet) -> None: ...

    async def save_project(
        self,
        project_id: str,
        *,
        user_id: str,
        name: str,
        app_type: str,
        deployed_url: str | None = None,
    ) -> None: ...

    async def save_deployment(
        self,
        project_id: str,
        *,
        job_id: str,
        status: str,
        deployed_url: str | None,
        attempts: int,
        signature: str = "",
        build_log: str = "",
    ) -> None: ...

    async def close(self) -> None: ...


class InMemoryStore:
    """Dict-backed ``JobStore``."""

    def __init__(
        self,
        *,
        job_ttl_seconds: float | None = None,
        max_deployments: int | None = None,
    ) -> None:
        ttl = job_ttl_seconds or settings.STORE_JOB_TTL_SECONDS
        self._live: dict[str, GenerationJob] = {}
        self._finished: TTLCache[str, GenerationJob] = TTLCache(maxsize=10_000, ttl=ttl)
        self.projects: dict[str, dict[str, Any]] = {}
        self.project_files: dict[str, FileSet] = {}
        self.deployments: deque[dict[str, Any]] = deque(
            maxlen=max_deployments or settings.STORE_MAX_DEPLOYMENTS
        )
        self._lock = asyncio.Lock()

    async def create_job(self, job: GenerationJob) -> GenerationJob:
        async with self._lock:
            self._put(job)
        return job

    async def get_job(self, job_id: str) -> GenerationJob | None:
        return self._live.get(job_id) or self._finished.get(job_id)

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> GenerationJob:
        async with self._lock:
            job = self._live.get(job_id) or self._finished.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            updated = job.with_status(status, result=result, error=error)
            self._put(updated)
        return updated

    def _put(self, job: GenerationJob) -> None:
        if job.status.is_terminal:
            self._live.pop(job.id, None)
            self._finished[job.id] = job
        else:
            self._live[job.id] = job

    async def load_project_files(self, project_id: str) -> FileSet:
        return dict(self.project_files.get(project_id, {}))

    async def save_project_files(self, project_id: str, files: FileSet) -> None:
        self.project_files[project_id] = dict(files)

    async def save_project(
        self,
        project_id: str,
        *,
        user_id: str,
        name: str,
        app_type: str,
        deployed_url: str | None = None,
    ) -> None:
        existing = self.projects.get(project_id, {})
        self.projects[project_id] = {
            **existing,
            "id": project_id,
            "user_id": user_id,
            "name": name,
            "app_type": app_type,
            "deployed_url": deployed_url or existing.get("deployed_url"),
            "updated_at": utcnow(),
        }

    async def save_deployment(
        self,
        project_id: str,
        *,
        job_id: str,
        status: str,
        deployed_url: str | None,
        attempts: int,
        signature: str = "",
        build_log: str = "",
    ) -> None:
        self.deployments.append({
            "project_id": project_id,
            "job_id": job_id,
            "status": status,
            "deployed_url": deployed_url,
            "attempts": attempts,
            "signature": signature,
            "build_log": build_log,
            "created_at": utcnow(),
        })

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_store: JobStore | None = None


def get_store() -> JobStore:
    """Return the store selected by ``STORE_BACKEND``, creating it once."""
    global _store
    if _store is None:
        if settings.STORE_BACKEND == "postgres":
            from app.repos.pg_store import PostgresStore

            _store = PostgresStore()
        else:
            _store = InMemoryStore()
        logger.info("Job store: %s", type(_store).__name__)
    return _store


def set_store(store: JobStore | None) -> None:
    """Replace the singleton (tests, worker)."""
    global _store
    _store = store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None
