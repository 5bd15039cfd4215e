"""Health check router."""

import logging

import asyncpg
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.config import VERSION, settings
from app.repos.db import get_pool

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Report liveness, with a real database round-trip for the Postgres store."""
    if settings.STORE_BACKEND != "postgres":
        return {"status": "ok", "store": "memory"}

    try:
        pool = await get_pool()
        await pool.fetchval("SELECT 1")
    except (asyncpg.PostgresError, OSError, TimeoutError) as exc:
        logger.warning("Health check: database unreachable (%s)", exc)
        return JSONResponse(
            {"status": "degraded", "store": "postgres", "db": "unreachable"},
            status_code=503,
        )
    return {"status": "ok", "store": "postgres", "db": "connected"}


@router.get("/health/version")
async def health_version() -> dict:
    return {"version": VERSION}
