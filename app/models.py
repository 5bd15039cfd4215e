"""Generation job model and its status lifecycle.

``pending → processing → {completed | failed}``.  Transitions never move
backwards and terminal states are final.  ``processing → processing`` is
allowed so progress payloads can be written while a job runs.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.errors import InvalidTransitionError


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobKind(str, Enum):
    INITIAL = "initial"
    FOLLOW_UP = "follow_up"


_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({
        JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def check_transition(job_id: str, current: JobStatus, target: JobStatus) -> None:
    """Raise ``InvalidTransitionError`` unless *current* → *target* is allowed."""
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(job_id, current.value, target.value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationJob(BaseModel):
    """One request to generate or edit a project."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    project_id: str | None = None
    kind: JobKind = JobKind.INITIAL
    prompt: str
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Conversation history, app_type, existing_project_id, ...",
    )
    status: JobStatus = JobStatus.PENDING
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def app_type(self) -> str:
        """``"web3"`` or ``"farcaster"`` (the default template)."""
        return "web3" if self.context.get("app_type") == "web3" else "farcaster"

    def with_status(
        self,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> GenerationJob:
        """Return a copy moved to *status*, stamping lifecycle timestamps."""
        check_transition(self.id, self.status, status)
        now = utcnow()
        update: dict[str, Any] = {"status": status, "updated_at": now}
        if result is not None:
            update["result"] = result
        if error is not None:
            update["error"] = error
        if status is JobStatus.PROCESSING and self.started_at is None:
            update["started_at"] = now
        if status.is_terminal:
            update["completed_at"] = now
        return self.model_copy(update=update)


__all__ = [
    "GenerationJob",
    "JobKind",
    "JobStatus",
    "check_transition",
    "utcnow",
]
