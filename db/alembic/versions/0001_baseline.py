"""Baseline schema for the job store.

Revision ID: 0001_baseline
Revises: None
Create Date: 2026-10-18

Idempotent (CREATE ... IF NOT EXISTS) so it can run against a database
that was bootstrapped by hand.
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_baseline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.execute("""
        CREATE TABLE IF NOT EXISTS projects (
            id              TEXT PRIMARY KEY,
            user_id         TEXT NOT NULL,
            name            VARCHAR(255) NOT NULL,
            app_type        VARCHAR(20) NOT NULL DEFAULT 'farcaster',
            deployed_url    TEXT,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_projects_user_id ON projects(user_id)"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS generation_jobs (
            id              TEXT PRIMARY KEY,
            user_id         TEXT NOT NULL,
            project_id      TEXT,
            kind            VARCHAR(20) NOT NULL DEFAULT 'initial',
            prompt          TEXT NOT NULL,
            context         JSONB NOT NULL DEFAULT '{}'::jsonb,
            status          VARCHAR(20) NOT NULL DEFAULT 'pending',
            result          JSONB,
            error           TEXT,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            started_at      TIMESTAMPTZ,
            completed_at    TIMESTAMPTZ,
            CONSTRAINT generation_jobs_status_check
                CHECK (status IN ('pending', 'processing', 'completed', 'failed'))
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_generation_jobs_status ON generation_jobs(status)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_generation_jobs_project_id ON generation_jobs(project_id)"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS project_files (
            project_id      TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            filename        TEXT NOT NULL,
            content         TEXT NOT NULL,
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (project_id, filename)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS deployments (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            project_id      TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            job_id          TEXT REFERENCES generation_jobs(id) ON DELETE SET NULL,
            status          VARCHAR(50) NOT NULL,
            deployed_url    TEXT,
            attempts        INTEGER NOT NULL DEFAULT 0,
            signature       TEXT NOT NULL DEFAULT '',
            build_log       TEXT NOT NULL DEFAULT '',
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_deployments_project_id ON deployments(project_id)"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS deployments CASCADE")
    op.execute("DROP TABLE IF EXISTS project_files CASCADE")
    op.execute("DROP TABLE IF EXISTS generation_jobs CASCADE")
    op.execute("DROP TABLE IF EXISTS projects CASCADE")
