"""Notification client -- tell the user a job finished.

Notifications are best-effort: a missing ``NOTIFY_URL``, an HTTP error
or a network failure is logged and reported as ``False``, never raised.
A failed notification must not fail the job that triggered it.
"""

import logging

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({"deployment_complete", "deployment_failed", "edit_complete"})

_TITLES = {
    "deployment_complete": "Deployment complete",
    "deployment_failed": "Deployment failed",
    "edit_complete": "Changes deployed",
}

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=settings.NOTIFY_TIMEOUT_S)
    return _client


async def close_client() -> None:
    """Close the shared notification HTTP client."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def _body(event_type: str, project_name: str) -> str:
    if event_type == "deployment_complete":
        return f'Your app "{project_name}" has been deployed.'
    if event_type == "deployment_failed":
        return f'Deployment of "{project_name}" ran into an error.'
    return f'Your changes to "{project_name}" are live.'


async def notify(
    user_id: str,
    event_type: str,
    project_id: str,
    url: str | None = None,
    *,
    project_name: str = "",
) -> bool:
    """Send one notification; return whether it was accepted."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown notification event: {event_type!r}")
    if not settings.NOTIFY_URL:
        logger.debug("NOTIFY_URL not set, skipping %s for %s", event_type, project_id)
        return False

    headers = {"Content-Type": "application/json"}
    if settings.NOTIFY_API_KEY:
        headers["x-api-key"] = settings.NOTIFY_API_KEY
    payload = {
        "user_id": user_id,
        "event": event_type,
        "project_id": project_id,
        "title": _TITLES[event_type],
        "body": _body(event_type, project_name or project_id),
        "target_url": url or settings.APP_URL,
    }

    try:
        response = await _get_client().post(settings.NOTIFY_URL, headers=headers, json=payload)
    except httpx.HTTPError as exc:
        logger.warning("Notification %s for %s failed: %s", event_type, project_id, exc)
        return False
    if response.status_code >= 400:
        logger.warning(
            "Notification %s for %s rejected: HTTP %d",
            event_type, project_id, response.status_code,
        )
        return False
    logger.info("Sent %s notification to user %s", event_type, user_id)
    return True
