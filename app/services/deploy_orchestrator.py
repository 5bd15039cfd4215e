"""Deployment orchestrator -- deploy, classify failures, fix, retry.

One ``deploy()`` call drives a bounded loop against the hosting platform:

- success ends the loop;
- a transient failure (timeout, connection reset, gateway error) is
  retried unchanged after a backoff delay; so is a platform error
  (an unusable response or HTTP failure);
- a content failure (the platform built the code and the build broke)
  is parsed, compared with the previous content failure, and unless the
  loop is stuck or out of attempts, fixed through the generation
  service before the next attempt.

Web3 projects with Solidity sources first deploy their contracts so the
application ships with real addresses.  If that fails, the application
is deployed with its placeholders.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx

from app.clients import deploy_client
from app.config import settings
from app.errors import DeployPlatformError, PatchParseFailure, TransientInfraError
from app.services.build_validator import GenerateFn, apply_generated_changes
from app.services.contract_injector import contract_deploy_payload, inject_contract_addresses
from app.services.prompts import build_fix_prompt
from app.services.retry_machine import AttemptRecord, RetryState, RetryTracker
from shipwright_kit.backoff import RetryDelay
from shipwright_kit.fileset import FileSet, has_contracts
from shipwright_kit.log_parser import parse_errors, select_files_to_fix
from shipwright_kit.signature import error_signature

logger = logging.getLogger(__name__)

# One row of the attempt history reported in the job result.
DeploymentAttempt = AttemptRecord

ProgressFn = Callable[[dict], Awaitable[None]]
FilesUpdatedFn = Callable[[FileSet], Awaitable[None]]

_TRANSIENT_MARKERS = ("timeout", "etimedout", "econnreset", "connection reset")


def is_transient(exc: BaseException) -> bool:
    """True for failures of the path to the platform rather than of the code."""
    if isinstance(exc, (TransientInfraError, httpx.TimeoutException, httpx.TransportError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


@dataclass(frozen=True)
class DeploymentOutcome:
    deployed_url: str | None
    files: FileSet
    success: bool
    attempts: int
    stuck: bool = False
    history: list[AttemptRecord] = field(default_factory=list)
    last_error: str = ""
    signature: str = ""
    contract_addresses: dict[str, str] = field(default_factory=dict)

    @property
    def failure_kind(self) -> str | None:
        if self.success:
            return None
        return "stuck" if self.stuck else "exhausted"


class DeploymentOrchestrator:
    """Bounded deploy-and-fix loop for one project.

    Parameters
    ----------
    generate:
        ``GenerationGateway.complete``-compatible callable used for fixes.
    on_files_updated:
        Awaited with the new FileSet after every applied fix so a crash
        mid-loop resumes from the fixed files.
    """

    def __init__(
        self,
        generate: GenerateFn,
        *,
        app_type: str = "farcaster",
        on_files_updated: FilesUpdatedFn | None = None,
        deploy_fn=None,
        deploy_contracts_fn=None,
        backoff: RetryDelay | None = None,
    ) -> None:
        self._generate = generate
        self._app_type = app_type
        self._on_files_updated = on_files_updated
        self._deploy = deploy_fn or deploy_client.deploy
        self._deploy_contracts = deploy_contracts_fn or deploy_client.deploy_contracts
        self._backoff = backoff or RetryDelay(
            initial_s=settings.DEPLOY_BACKOFF_INITIAL_S,
            max_s=max(settings.DEPLOY_BACKOFF_MAX_S, settings.DEPLOY_BACKOFF_INITIAL_S),
        )

    async def _deploy_prerequisites(self, project_id: str, files: FileSet) -> tuple[FileSet, dict[str, str]]:
        try:
            addresses = await self._deploy_contracts(project_id, contract_deploy_payload(files))
        except (DeployPlatformError, TransientInfraError, httpx.HTTPError) as exc:
            logger.error(
                "Contract deployment for %s failed, deploying app with placeholders: %s",
                project_id, exc,
            )
            return files, {}
        logger.info("Deployed %d contract(s) for %s", len(addresses), project_id)
        return inject_contract_addresses(files, addresses), addresses

    async def _fix(self, files: FileSet, build_log: str, error_log: str) -> FileSet:
        parsed = parse_errors(build_log, error_log, failed=True)
        targets = select_files_to_fix(parsed, files)
        if not targets:
            logger.warning("No files identified for fixing, retrying unchanged")
            return files
        system_prompt, user_prompt = build_fix_prompt(parsed, targets, self._app_type)
        raw = await self._generate(system_prompt, user_prompt, "fix")
        try:
            return apply_generated_changes(files, raw)
        except PatchParseFailure as exc:
            logger.warning("Fix response unusable (%s), retrying unchanged", exc.message)
            return files

    async def deploy(
        self,
        project_id: str,
        files: FileSet,
        *,
        max_attempts: int = 4,
        stuck_threshold: int = 3,
        is_web3: bool = False,
        on_progress: ProgressFn | None = None,
    ) -> DeploymentOutcome:
        """Deploy *files*, fixing content failures, until success or a bound is hit.

        Platform errors (unusable responses, HTTP failures) use up an
        attempt and are retried unchanged, like transient failures.

        Raises
        ------
        GenerationFatalError, GenerationUnavailableError
            When a fix could not be generated.
        """
        current = dict(files)
        addresses: dict[str, str] = {}
        if is_web3 and has_contracts(current):
            current, addresses = await self._deploy_prerequisites(project_id, current)

        tracker = RetryTracker(max_attempts=max_attempts, stuck_threshold=stuck_threshold)
        flags = {"isWeb3": is_web3, "skipContracts": bool(addresses)}

        async def _progress(payload: dict) -> None:
            if on_progress is not None:
                await on_progress({**payload, "maxAttempts": max_attempts})

        def _outcome(url: str | None = None) -> DeploymentOutcome:
            return DeploymentOutcome(
                deployed_url=url,
                files=current,
                success=tracker.state is RetryState.SUCCESS,
                attempts=tracker.attempt,
                stuck=tracker.stuck,
                history=list(tracker.history),
                last_error=tracker.last_error,
                signature=tracker.last_signature,
                contract_addresses=addresses,
            )

        while True:
            attempt = tracker.begin_attempt()
            logger.info("Deploying %s (attempt %d/%d)", project_id, attempt, max_attempts)

            try:
                result = await self._deploy(project_id, current, flags=flags)
            except (DeployPlatformError, TransientInfraError, httpx.HTTPError) as exc:
                # The platform never built the code; retry without a fix.
                transient = is_transient(exc)
                message = f"{type(exc).__name__}: {exc}"
                if transient:
                    logger.warning("Transient deployment failure on attempt %d: %s", attempt, message)
                else:
                    logger.error("Deployment platform error on attempt %d: %s", attempt, message)
                if tracker.record_transient(message) is RetryState.EXHAUSTED:
                    return _outcome()
                await _progress({
                    "status": "deployment_timeout" if transient else "deployment_error",
                    "attempt": attempt,
                    "error": message[:500],
                })
                wait = self._backoff.for_attempt(attempt)
                logger.info("Retrying deployment in %.1fs", wait)
                await asyncio.sleep(wait)
                continue

            if result.success:
                tracker.record_success()
                logger.info("Deployed %s to %s", project_id, result.deployed_url)
                return _outcome(result.deployed_url)

            error_text = result.error_log or result.build_log or f"Deployment {result.status}"
            parsed = parse_errors(result.build_log, result.error_log, failed=True)
            signature = error_signature(parsed.digest)
            state = tracker.record_content_failure(signature, error_text)
            logger.warning(
                "Deployment failed on attempt %d (%d consecutive): %s",
                attempt, tracker.consecutive, parsed.summary,
            )

            if state is RetryState.STUCK:
                logger.error(
                    "Stuck on the same deployment error after %d consecutive attempts",
                    tracker.consecutive,
                )
                return _outcome()
            if state is RetryState.EXHAUSTED:
                logger.error("All %d deployment attempts failed", max_attempts)
                return _outcome()

            await _progress({
                "status": "deployment_retry",
                "attempt": attempt,
                "consecutiveSameErrorCount": tracker.consecutive,
                "error": error_text[:500],
                "hasLogs": bool(result.build_log),
            })
            current = await self._fix(current, result.build_log, result.error_log)
            if self._on_files_updated is not None:
                await self._on_files_updated(current)
            await _progress({
                "status": "deployment_retrying",
                "attempt": attempt + 1,
                "consecutiveSameErrorCount": tracker.consecutive,
                "fixesApplied": True,
            })
