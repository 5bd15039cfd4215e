"""Template client -- seed a new project's FileSet from a template.

Two sources, selected by ``TEMPLATE_SOURCE``:

- ``github``: walk the GitHub contents API of the template repo for the
  app type, downloading each file.  Network errors are retried with
  backoff; individual files that fail to download are skipped.
- ``local``: read ``TEMPLATE_LOCAL_ROOT/<repo name>`` from disk.

Both skip VCS metadata, build output, lockfiles, dotfiles and binary
files.
"""

import asyncio
import logging

import httpx
from cachetools import TTLCache

from app.config import settings
from app.errors import TemplateFetchError
from shipwright_kit.backoff import RetryDelay
from shipwright_kit.fileset import FileSet
from shipwright_kit.workspace import DEFAULT_SKIP_DIRS, DEFAULT_SKIP_FILES, read_tree

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"

# Fetched templates rarely change; keep them for 10 minutes.
_template_cache: TTLCache[tuple[str, str, str], FileSet] = TTLCache(maxsize=8, ttl=600)

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for GitHub API calls."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=30.0, follow_redirects=True)
    return _client


async def close_client() -> None:
    """Close the shared HTTP client.  Called during app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


# ── Helpers ──────────────────────────────────────────────────────────────────


def template_repo(app_type: str) -> str:
    """Return the template repository name for *app_type*."""
    return settings.TEMPLATE_REPO_WEB3 if app_type == "web3" else settings.TEMPLATE_REPO_FARCASTER


def _headers() -> dict:
    headers = {
        "Accept": "application/vnd.github+json",
        "User-Agent": "shipwright",
    }
    if settings.GITHUB_TOKEN:
        headers["Authorization"] = f"Bearer {settings.GITHUB_TOKEN}"
    return headers


def _skip(name: str) -> bool:
    return name in DEFAULT_SKIP_DIRS or name in DEFAULT_SKIP_FILES or name.startswith(".")


async def _get_with_retry(url: str, *, headers: dict | None = None) -> httpx.Response:
    """GET *url*, retrying network errors with exponential backoff."""
    delay = RetryDelay(initial_s=1.0, max_s=8.0)
    attempts = settings.TEMPLATE_FETCH_RETRIES
    for attempt in range(1, attempts + 1):
        try:
            return await _get_client().get(url, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            if attempt == attempts:
                raise
            wait = delay.for_attempt(attempt)
            logger.warning(
                "Template fetch %s (attempt %d/%d), retrying in %.1fs",
                type(exc).__name__, attempt, attempts, wait,
            )
            await asyncio.sleep(wait)
    raise AssertionError("unreachable")  # pragma: no cover


async def _walk(owner: str, repo: str, ref: str, dir_path: str, files: FileSet) -> None:
    url = f"{GITHUB_API_BASE}/repos/{owner}/{repo}/contents/{dir_path}"
    response = await _get_with_retry(url + f"?ref={ref}", headers=_headers())
    if response.status_code != 200:
        raise TemplateFetchError(
            f"GitHub API error {response.status_code} listing {dir_path or '/'}",
            source=f"{owner}/{repo}",
        )

    for item in response.json():
        name = item.get("name", "")
        if _skip(name):
            continue
        item_path = item.get("path") or (f"{dir_path}/{name}" if dir_path else name)

        if item.get("type") == "dir":
            await _walk(owner, repo, ref, item_path, files)
            continue
        if item.get("type") != "file" or not item.get("download_url"):
            continue

        try:
            file_response = await _get_with_retry(item["download_url"])
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning("Skipping template file %s after retries: %s", item_path, exc)
            continue
        if file_response.status_code != 200:
            logger.warning("Skipping template file %s: HTTP %d", item_path, file_response.status_code)
            continue

        content = file_response.text
        if "\x00" in content:
            logger.debug("Skipping binary template file %s", item_path)
            continue
        files[item_path] = content


# ── Public API ───────────────────────────────────────────────────────────────


async def fetch_from_github(app_type: str) -> FileSet:
    """Fetch the template for *app_type* from GitHub (cached)."""
    owner, repo, ref = settings.TEMPLATE_REPO_OWNER, template_repo(app_type), settings.TEMPLATE_REPO_REF
    key = (owner, repo, ref)
    cached = _template_cache.get(key)
    if cached is not None:
        return dict(cached)

    files: FileSet = {}
    try:
        await _walk(owner, repo, ref, "", files)
    except (httpx.TimeoutException, httpx.TransportError) as exc:
        raise TemplateFetchError(
            f"Template fetch failed: {type(exc).__name__}", source=f"{owner}/{repo}",
        ) from exc
    if not files:
        raise TemplateFetchError("Template repository is empty", source=f"{owner}/{repo}")

    logger.info("Fetched %d template file(s) from %s/%s@%s", len(files), owner, repo, ref)
    _template_cache[key] = dict(files)
    return files


async def load_from_disk(app_type: str) -> FileSet:
    """Read the template for *app_type* from ``TEMPLATE_LOCAL_ROOT``."""
    root = f"{settings.TEMPLATE_LOCAL_ROOT}/{template_repo(app_type)}"
    try:
        files = await asyncio.to_thread(read_tree, root)
    except (ValueError, OSError) as exc:
        raise TemplateFetchError(f"Local template unavailable: {exc}", source=root) from exc
    logger.info("Loaded %d template file(s) from %s", len(files), root)
    return files


async def fetch_template(app_type: str) -> FileSet:
    """Return the template FileSet for *app_type* from the configured source."""
    if settings.TEMPLATE_SOURCE == "local":
        return await load_from_disk(app_type)
    return await fetch_from_github(app_type)
