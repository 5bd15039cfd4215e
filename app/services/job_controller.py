"""Job controller -- run one generation job from ``pending`` to a terminal state.

The controller is the only writer of job status.  ``execute()`` is
idempotent per job id: a terminal job is left alone, and a job left
``processing`` by a crashed run resumes from the FileSet persisted
before the crash instead of generating again.

Stages, in order, each working on a complete FileSet snapshot:

1. produce files: template + generation (initial) or an edit of the
   stored project (follow-up);
2. build validation loop (skipped when disabled; a crash here is logged
   and the unvalidated files go on to deployment);
3. deployment loop;
4. persist, record the deployment, write the terminal result, notify.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from app.clients import notify_client, template_client
from app.clients.llm_client import GenerationGateway
from app.config import settings
from app.errors import (
    BadRequestError,
    ExhaustedRetriesError,
    JobNotFoundError,
    NotFoundError,
    PipelineError,
    StuckError,
)
from app.models import GenerationJob, JobKind, JobStatus
from app.repos.store import JobStore
from app.services.build_validator import BuildValidator, apply_generated_changes
from app.services.deploy_orchestrator import DeploymentOrchestrator, DeploymentOutcome
from app.services.metadata_injector import apply_project_metadata, generate_project_name
from app.services.prompts import build_edit_prompt, build_generate_prompt
from shipwright_kit.fileset import FileSet, without_null_bytes, without_prefix
from shipwright_kit.signature import error_signature

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 1000


@dataclass
class _RunState:
    """What the controller knows so far; reported if the job fails."""

    project_id: str | None = None
    project_name: str | None = None
    files: FileSet = field(default_factory=dict)
    deploy_attempts: int = 0


class JobController:
    """Drives generation jobs against a ``JobStore``.

    Collaborators default to the real clients; tests pass fakes.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        gateway_factory: Callable[[], GenerationGateway] = GenerationGateway,
        fetch_template=None,
        notify=None,
        validator_factory: Callable[..., BuildValidator] | None = None,
        orchestrator_factory: Callable[..., DeploymentOrchestrator] | None = None,
    ) -> None:
        self._store = store
        self._gateway_factory = gateway_factory
        self._fetch_template = fetch_template or template_client.fetch_template
        self._notify = notify or notify_client.notify
        self._validator_factory = validator_factory or BuildValidator
        self._orchestrator_factory = orchestrator_factory or DeploymentOrchestrator

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self, job_id: str) -> None:
        """Run *job_id* to completion.  Never leaves it ``processing``.

        Raises
        ------
        JobNotFoundError
            If the store has no such job.
        """
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status.is_terminal:
            logger.info("Job %s already %s, nothing to do", job_id, job.status.value)
            return
        if job.status is JobStatus.PENDING:
            job = await self._store.update_job_status(job_id, JobStatus.PROCESSING)
        else:
            logger.info("Resuming job %s", job_id)

        gateway = None
        state = _RunState()
        try:
            gateway = self._gateway_factory()
            if job.kind is JobKind.FOLLOW_UP:
                await self._produce_edit(job, gateway, state)
            else:
                await self._produce_initial(job, gateway, state)
            await self._validate(job, gateway, state)
            outcome = await self._deploy(job, gateway, state)
            await self._finish(job, gateway, state, outcome)
        except Exception as exc:
            logger.exception("Job %s failed", job_id)
            await self._fail(job, gateway, state, exc)

    # ------------------------------------------------------------------
    # Stage 1: files
    # ------------------------------------------------------------------

    async def _checkpoint(self, job: GenerationJob, state: _RunState, **payload) -> None:
        """Record progress; ``files_ready`` marks the FileSet as persisted."""
        await self._store.update_job_status(
            job.id,
            JobStatus.PROCESSING,
            result={"project_id": state.project_id, "files_ready": True, **payload},
        )

    async def _persist(self, project_id: str, files: FileSet) -> None:
        clean, skipped = without_null_bytes(files)
        for path in skipped:
            logger.warning("Not persisting %s: contains NUL bytes", path)
        await self._store.save_project_files(project_id, clean)

    async def _produce_initial(self, job: GenerationJob, gateway: GenerationGateway, state: _RunState) -> None:
        progress = job.result or {}
        project_id = (
            job.project_id
            or job.context.get("existing_project_id")
            or progress.get("project_id")
            or str(uuid4())
        )
        state.project_id = project_id
        state.project_name = job.context.get("project_name") or generate_project_name(job.prompt)

        existing = await self._store.load_project_files(project_id) if progress.get("files_ready") else {}
        if existing:
            logger.info("Job %s: resuming from %d persisted file(s)", job.id, len(existing))
            state.files = existing
            return

        template = await self._fetch_template(job.app_type)
        system_prompt, user_prompt = build_generate_prompt(
            job.prompt, template, job.app_type, job.context.get("history"),
        )
        raw = await gateway.complete(system_prompt, user_prompt, "generate")
        files = apply_generated_changes(template, raw)
        if job.app_type != "web3":
            files = without_prefix(files, ("contracts/",))
        files = apply_project_metadata(
            files, project_id, state.project_name, description=job.prompt[:160],
        )

        await self._store.save_project(
            project_id, user_id=job.user_id, name=state.project_name, app_type=job.app_type,
        )
        await self._persist(project_id, files)
        state.files = files
        await self._checkpoint(job, state, status="generated")

    async def _produce_edit(self, job: GenerationJob, gateway: GenerationGateway, state: _RunState) -> None:
        project_id = job.project_id or job.context.get("existing_project_id")
        if not project_id:
            raise BadRequestError(f"Follow-up job {job.id} has no project id")
        state.project_id = project_id
        state.project_name = job.context.get("project_name")

        files = await self._store.load_project_files(project_id)
        if not files:
            raise NotFoundError(f"No stored files for project {project_id}")

        if (job.result or {}).get("files_ready"):
            logger.info("Job %s: edit already applied, resuming", job.id)
            state.files = files
            return

        system_prompt, user_prompt = build_edit_prompt(
            job.prompt, files, job.app_type, job.context.get("history"),
        )
        raw = await gateway.complete(system_prompt, user_prompt, "edit")
        files = apply_generated_changes(files, raw)
        await self._persist(project_id, files)
        state.files = files
        await self._checkpoint(job, state, status="edited")

    # ------------------------------------------------------------------
    # Stage 2: build validation
    # ------------------------------------------------------------------

    async def _validate(self, job: GenerationJob, gateway: GenerationGateway, state: _RunState) -> None:
        if not settings.BUILD_VALIDATION_ENABLED:
            return
        try:
            validator = self._validator_factory(
                Path(settings.SCRATCH_ROOT) / state.project_id, app_type=job.app_type,
            )
            result = await validator.validate(
                state.files, gateway.complete, max_iterations=settings.BUILD_MAX_ITERATIONS,
            )
        except Exception:
            logger.exception("Job %s: build validation crashed, deploying unvalidated files", job.id)
            return

        if not result.success:
            logger.warning(
                "Job %s: local build still failing after %d iteration(s)%s, deploying anyway",
                job.id, result.iterations, " (stuck)" if result.stuck else "",
            )
        if result.files != state.files:
            await self._persist(state.project_id, result.files)
        state.files = result.files

    # ------------------------------------------------------------------
    # Stage 3: deployment
    # ------------------------------------------------------------------

    async def _deploy(self, job: GenerationJob, gateway: GenerationGateway, state: _RunState) -> DeploymentOutcome:
        project_id = state.project_id

        async def on_files_updated(files: FileSet) -> None:
            state.files = files
            await self._persist(project_id, files)

        async def on_progress(payload: dict) -> None:
            state.deploy_attempts = max(state.deploy_attempts, int(payload.get("attempt", 0)))
            await self._checkpoint(job, state, **payload)

        orchestrator = self._orchestrator_factory(
            gateway.complete, app_type=job.app_type, on_files_updated=on_files_updated,
        )
        outcome = await orchestrator.deploy(
            project_id,
            state.files,
            max_attempts=settings.DEPLOY_MAX_ATTEMPTS,
            stuck_threshold=settings.DEPLOY_STUCK_THRESHOLD,
            is_web3=job.app_type == "web3",
            on_progress=on_progress,
        )
        state.files = outcome.files
        state.deploy_attempts = outcome.attempts
        return outcome

    # ------------------------------------------------------------------
    # Stage 4: terminal state
    # ------------------------------------------------------------------

    async def _send_notification(
        self, user_id: str, event: str, project_id: str, url: str | None, **kwargs,
    ) -> None:
        """Notify the user; a failing notifier never affects the job."""
        try:
            await self._notify(user_id, event, project_id, url, **kwargs)
        except Exception:
            logger.exception("Notification %s for project %s failed", event, project_id)

    def _base_result(self, gateway: GenerationGateway | None, state: _RunState) -> dict:
        result = {
            "project_id": state.project_id,
            "project_name": state.project_name,
            "files": sorted(state.files),
            "attempts": state.deploy_attempts,
            "usage": gateway.usage.to_dict() if gateway is not None else {},
        }
        if state.project_id:
            result["url"] = f"https://{state.project_id}.{settings.CUSTOM_DOMAIN_BASE}"
        return result

    async def _finish(
        self,
        job: GenerationJob,
        gateway: GenerationGateway,
        state: _RunState,
        outcome: DeploymentOutcome,
    ) -> None:
        project_id = state.project_id
        await self._persist(project_id, outcome.files)
        await self._store.save_deployment(
            project_id,
            job_id=job.id,
            status="success" if outcome.success else outcome.failure_kind,
            deployed_url=outcome.deployed_url,
            attempts=outcome.attempts,
            signature=outcome.signature,
            build_log=outcome.last_error[:MAX_ERROR_CHARS],
        )

        result = {
            **self._base_result(gateway, state),
            "success": outcome.success,
            "deployed_url": outcome.deployed_url,
            "history": [record.to_dict() for record in outcome.history],
        }
        if outcome.contract_addresses:
            result["contract_addresses"] = outcome.contract_addresses

        if outcome.success:
            await self._store.save_project(
                project_id,
                user_id=job.user_id,
                name=state.project_name or project_id,
                app_type=job.app_type,
                deployed_url=outcome.deployed_url,
            )
            result["diagnostic"] = None
            await self._store.update_job_status(job.id, JobStatus.COMPLETED, result=result)
            logger.info("Job %s completed: %s", job.id, outcome.deployed_url)
            event = "edit_complete" if job.kind is JobKind.FOLLOW_UP else "deployment_complete"
            await self._send_notification(
                job.user_id, event, project_id, outcome.deployed_url,
                project_name=state.project_name or "",
            )
            return

        if outcome.stuck:
            error: PipelineError = StuckError(
                outcome.signature, outcome.attempts, last_error=outcome.last_error[:MAX_ERROR_CHARS],
            )
            result["status"] = "stuck_on_error"
        else:
            error = ExhaustedRetriesError(
                outcome.attempts,
                signature=outcome.signature,
                last_error=outcome.last_error[:MAX_ERROR_CHARS],
            )
            result["status"] = "deployment_failed_all_attempts"
        result["diagnostic"] = {"kind": outcome.failure_kind, **error.detail}

        await self._store.update_job_status(
            job.id, JobStatus.FAILED, result=result, error=error.message,
        )
        logger.warning("Job %s failed: %s", job.id, error.message)
        await self._send_notification(
            job.user_id, "deployment_failed", project_id, None,
            project_name=state.project_name or "",
        )

    async def _fail(
        self,
        job: GenerationJob,
        gateway: GenerationGateway | None,
        state: _RunState,
        exc: Exception,
    ) -> None:
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        result = {
            **self._base_result(gateway, state),
            "success": False,
            "deployed_url": None,
            "status": "error",
            "diagnostic": {
                "kind": "error",
                "signature": error_signature(message),
                "attempts": state.deploy_attempts,
                "last_error": message[:MAX_ERROR_CHARS],
            },
        }
        try:
            await self._store.update_job_status(job.id, JobStatus.FAILED, result=result, error=message)
        except Exception:
            logger.exception("Job %s: could not record failure", job.id)
            return
        if state.project_id:
            await self._send_notification(
                job.user_id, "deployment_failed", state.project_id, None,
                project_name=state.project_name or "",
            )
