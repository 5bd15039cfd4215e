"""Jobs router -- create, inspect and run generation jobs."""

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, status
from pydantic import BaseModel, Field

from app.api.deps import get_job_controller, get_job_store
from app.errors import ConflictError, JobNotFoundError
from app.models import GenerationJob, JobKind
from app.repos.store import JobStore
from app.services.job_controller import JobController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])

# Job ids with an execute() in flight in this process.
_running: set[str] = set()


class CreateJobRequest(BaseModel):
    """Request body for creating a generation job."""

    user_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1, max_length=20_000, description="What to build or change")
    kind: JobKind = JobKind.INITIAL
    project_id: str | None = Field(None, description="Required for follow-up jobs")
    context: dict[str, Any] = Field(default_factory=dict)


def _job_to_dict(job: GenerationJob) -> dict:
    return job.model_dump(mode="json")


async def _run_job(controller: JobController, job_id: str) -> None:
    try:
        await controller.execute(job_id)
    finally:
        _running.discard(job_id)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_job(
    body: CreateJobRequest,
    store: JobStore = Depends(get_job_store),
) -> dict:
    job = GenerationJob(
        id=str(uuid4()),
        user_id=body.user_id,
        prompt=body.prompt,
        kind=body.kind,
        project_id=body.project_id,
        context=body.context,
    )
    await store.create_job(job)
    logger.info("Created %s job %s for user %s", job.kind.value, job.id, job.user_id)
    return _job_to_dict(job)


@router.get("/{job_id}")
async def get_job(job_id: str, store: JobStore = Depends(get_job_store)) -> dict:
    job = await store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return _job_to_dict(job)


@router.post("/{job_id}/execute", status_code=status.HTTP_202_ACCEPTED)
async def execute_job(
    job_id: str,
    background_tasks: BackgroundTasks,
    store: JobStore = Depends(get_job_store),
    controller: JobController = Depends(get_job_controller),
) -> dict:
    """Schedule ``execute()`` for *job_id*; 409 while a run is already in flight."""
    job = await store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    if job_id in _running:
        raise ConflictError(f"Job {job_id} is already running")
    if job.status.is_terminal:
        return {"job_id": job_id, "status": job.status.value, "scheduled": False}

    _running.add(job_id)
    background_tasks.add_task(_run_job, controller, job_id)
    return {"job_id": job_id, "status": job.status.value, "scheduled": True}
