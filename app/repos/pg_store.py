"""Postgres job store -- reads and writes for generation_jobs, projects,
project_files and deployments."""

import json
from typing import Any

from app.errors import JobNotFoundError
from app.models import GenerationJob, JobStatus
from app.repos.db import close_pool, get_pool
from shipwright_kit.fileset import FileSet

_JOB_COLUMNS = """
    id, user_id, project_id, kind, prompt, context, status, result, error,
    created_at, updated_at, started_at, completed_at
"""


def _job_from_row(row) -> GenerationJob:
    data = dict(row)
    for key in ("context", "result"):
        value = data.get(key)
        if isinstance(value, str):
            data[key] = json.loads(value)
    if data.get("context") is None:
        data["context"] = {}
    return GenerationJob.model_validate(data)


def _dump(value: dict[str, Any] | None) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


class PostgresStore:
    """asyncpg-backed ``JobStore``."""

    # -- jobs ------------------------------------------------------------------

    async def create_job(self, job: GenerationJob) -> GenerationJob:
        pool = await get_pool()
        await pool.execute(
            """
            INSERT INTO generation_jobs
                (id, user_id, project_id, kind, prompt, context, status,
                 created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9)
            """,
            job.id,
            job.user_id,
            job.project_id,
            job.kind.value,
            job.prompt,
            _dump(job.context),
            job.status.value,
            job.created_at,
            job.updated_at,
        )
        return job

    async def get_job(self, job_id: str) -> GenerationJob | None:
        pool = await get_pool()
        row = await pool.fetchrow(
            f"SELECT {_JOB_COLUMNS} FROM generation_jobs WHERE id = $1", job_id,
        )
        return _job_from_row(row) if row else None

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> GenerationJob:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        updated = job.with_status(status, result=result, error=error)

        pool = await get_pool()
        # The status guard keeps a concurrent writer from moving a job
        # out of a terminal state.
        row = await pool.fetchrow(
            f"""
            UPDATE generation_jobs
               SET status = $2,
                   result = COALESCE($3::jsonb, result),
                   error = COALESCE($4, error),
                   updated_at = $5,
                   started_at = $6,
                   completed_at = $7
             WHERE id = $1
               AND status NOT IN ('completed', 'failed')
            RETURNING {_JOB_COLUMNS}
            """,
            job_id,
            updated.status.value,
            _dump(result),
            error,
            updated.updated_at,
            updated.started_at,
            updated.completed_at,
        )
        if row is None:
            current = await self.get_job(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            current.with_status(status)  # raises InvalidTransitionError
            return current
        return _job_from_row(row)

    # -- projects --------------------------------------------------------------

    async def load_project_files(self, project_id: str) -> FileSet:
        pool = await get_pool()
        rows = await pool.fetch(
            "SELECT filename, content FROM project_files WHERE project_id = $1 ORDER BY filename",
            project_id,
        )
        return {r["filename"]: r["content"] for r in rows}

    async def save_project_files(self, project_id: str, files: FileSet) -> None:
        """Replace the stored snapshot with *files* in one transaction."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM project_files WHERE project_id = $1", project_id,
                )
                await conn.executemany(
                    """
                    INSERT INTO project_files (project_id, filename, content)
                    VALUES ($1, $2, $3)
                    """,
                    [(project_id, name, content) for name, content in files.items()],
                )

    async def save_project(
        self,
        project_id: str,
        *,
        user_id: str,
        name: str,
        app_type: str,
        deployed_url: str | None = None,
    ) -> None:
        pool = await get_pool()
        await pool.execute(
            """
            INSERT INTO projects (id, user_id, name, app_type, deployed_url)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO UPDATE
               SET name = EXCLUDED.name,
                   app_type = EXCLUDED.app_type,
                   deployed_url = COALESCE(EXCLUDED.deployed_url, projects.deployed_url),
                   updated_at = now()
            """,
            project_id,
            user_id,
            name,
            app_type,
            deployed_url,
        )

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
        pool = await get_pool()
        await pool.execute(
            """
            INSERT INTO deployments
                (project_id, job_id, status, deployed_url, attempts, signature, build_log)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            project_id,
            job_id,
            status,
            deployed_url,
            attempts,
            signature,
            build_log,
        )

    async def close(self) -> None:
        await close_pool()
