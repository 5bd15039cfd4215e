"""Deployment platform client -- push a FileSet, get a URL or a build log.

Two endpoints on ``DEPLOY_API_URL``:

- ``POST /deploy`` with ``{projectId, files, flags}`` →
  ``{deployedUrl, status, buildLog?, errorLog?}``.  A ``status`` of
  ``deployment_failed`` means the platform built the project and the
  build failed; the logs say why.
- ``POST /contracts/deploy`` with ``{projectId, files}`` →
  ``{addresses: {ContractName: "0x..."}}``.

Timeouts and connection failures are raised as the underlying ``httpx``
exceptions; the orchestrator classifies them as transient.
"""

import logging
from dataclasses import dataclass

import httpx

from app.config import settings
from app.errors import DeployPlatformError, TransientInfraError

logger = logging.getLogger(__name__)

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for the deployment API."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(
            base_url=settings.DEPLOY_API_URL,
            timeout=settings.DEPLOY_TIMEOUT_S,
        )
    return _client


async def close_client() -> None:
    """Close the shared deployment HTTP client.  Called during app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


# Gateway-level statuses: the platform itself is unhealthy, not the code.
_GATEWAY_STATUS_CODES = frozenset({502, 503, 504})

FAILED_STATUSES = frozenset({"deployment_failed", "failed", "error"})


@dataclass(frozen=True)
class DeployResult:
    """Outcome reported by the platform for one deployment request."""

    status: str
    deployed_url: str = ""
    build_log: str = ""
    error_log: str = ""

    @property
    def success(self) -> bool:
        return self.status not in FAILED_STATUSES and bool(self.deployed_url)


def _headers() -> dict:
    headers = {"Content-Type": "application/json"}
    if settings.DEPLOY_API_TOKEN:
        headers["Authorization"] = f"Bearer {settings.DEPLOY_API_TOKEN}"
    return headers


def _json_body(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        raise DeployPlatformError(
            f"Deployment API returned non-JSON body ({response.status_code})",
            status=response.status_code,
        ) from None
    if not isinstance(data, dict):
        raise DeployPlatformError(
            "Deployment API returned an unexpected payload", status=response.status_code,
        )
    return data


async def deploy(project_id: str, files: dict[str, str], *, flags: dict | None = None) -> DeployResult:
    """Deploy *files* as *project_id*.

    Raises
    ------
    TransientInfraError
        When the platform answers with a gateway error (502/503/504).
    DeployPlatformError
        When the response cannot be interpreted.
    httpx.TimeoutException, httpx.TransportError
        On network failure.
    """
    client = _get_client()
    response = await client.post(
        "/deploy",
        headers=_headers(),
        json={"projectId": project_id, "files": files, "flags": flags or {}},
    )
    if response.status_code in _GATEWAY_STATUS_CODES:
        raise TransientInfraError(f"Deployment API {response.status_code}")

    data = _json_body(response)
    status = str(data.get("status") or ("deployed" if response.is_success else "deployment_failed"))
    if not response.is_success and status not in FAILED_STATUSES:
        status = "deployment_failed"

    result = DeployResult(
        status=status,
        deployed_url=data.get("deployedUrl") or "",
        build_log=data.get("buildLog") or "",
        error_log=data.get("errorLog") or data.get("error") or "",
    )
    logger.info(
        "Deploy %s -> %s (%s)", project_id, result.status, result.deployed_url or "no url",
    )
    return result


async def deploy_contracts(project_id: str, files: dict[str, str]) -> dict[str, str]:
    """Deploy the Solidity sources in *files*; return ``{name: address}``.

    Raises
    ------
    DeployPlatformError
        On any non-success status or unusable payload.
    """
    client = _get_client()
    response = await client.post(
        "/contracts/deploy",
        headers=_headers(),
        json={"projectId": project_id, "files": files},
    )
    data = _json_body(response)
    if not response.is_success:
        raise DeployPlatformError(
            f"Contract deployment failed: {data.get('error') or response.status_code}",
            status=response.status_code,
        )
    addresses = data.get("addresses") or {}
    if not isinstance(addresses, dict):
        raise DeployPlatformError("Contract deployment returned no address map")
    return {str(k): str(v) for k, v in addresses.items()}
