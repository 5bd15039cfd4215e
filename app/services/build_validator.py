"""Build validator loop -- compile locally, fix, repeat.

Each iteration mirrors the in-memory FileSet into a scratch workspace,
installs dependencies when ``package.json`` changed, and runs the build
command.  A failed build is parsed into structured errors; unless the
loop is stuck or out of iterations, the affected files are sent to the
generation service with a fix prompt and the reply is applied as diffs
or whole files.

The loop never raises for a failing build: it always hands back the
latest FileSet together with what it learned.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from app.config import settings
from app.errors import GenerationFatalError, GenerationUnavailableError, PatchParseFailure
from app.services.prompts import build_fix_prompt
from app.services.retry_machine import RetryState, RetryTracker
from shipwright_kit import runner
from shipwright_kit.errors import ParseError
from shipwright_kit.fileset import FileSet
from shipwright_kit.log_parser import parse_errors, select_files_to_fix
from shipwright_kit.patcher import apply_diffs_with_report
from shipwright_kit.response_parser import changes_to_diffs, parse_file_changes
from shipwright_kit.runner import RunResult
from shipwright_kit.signature import error_signature
from shipwright_kit.workspace import ScratchWorkspace

logger = logging.getLogger(__name__)

# (system_prompt, user_prompt, stage) -> generated text
GenerateFn = Callable[[str, str, str], Awaitable[str]]
RunFn = Callable[..., Awaitable[RunResult]]


@dataclass(frozen=True)
class BuildValidationResult:
    files: FileSet
    success: bool
    iterations: int
    last_error: str = ""
    stuck: bool = False
    error_history: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "iterations": self.iterations,
            "stuck": self.stuck,
            "last_error": self.last_error[:1000],
            "error_history": self.error_history,
        }


def apply_generated_changes(files: FileSet, raw: str) -> FileSet:
    """Apply a generation reply (diffs and/or whole files) to *files*.

    Raises
    ------
    PatchParseFailure
        When the reply holds no usable file changes.
    """
    try:
        changes = parse_file_changes(raw)
    except ParseError as exc:
        raise PatchParseFailure(str(exc), raw_length=len(raw)) from exc

    report = apply_diffs_with_report(files, changes_to_diffs(changes))
    for note in report.conflicts:
        logger.warning("Patch conflict: %s", note)
    for path in report.failed:
        logger.warning("Patch could not be applied to %s", path)
    logger.info(
        "Applied %d change(s): %d file(s) updated", len(changes), len(report.changed),
    )
    return report.files


class BuildValidator:
    """Local build-and-fix loop for one project.

    Parameters
    ----------
    workspace_root:
        Scratch directory for this project.  Reused across iterations and
        jobs so dependency installs are cached.
    app_type:
        ``"farcaster"`` or ``"web3"``; selects the fix prompt context.
    run_command:
        Subprocess runner, ``shipwright_kit.runner.run`` by default.
    """

    def __init__(
        self,
        workspace_root: str | Path,
        *,
        app_type: str = "farcaster",
        install_command: str | None = None,
        build_command: str | None = None,
        timeout_s: int | None = None,
        stuck_repeats: int | None = None,
        run_command: RunFn | None = None,
    ) -> None:
        self._workspace = ScratchWorkspace(workspace_root)
        self._app_type = app_type
        self._install_command = install_command or settings.BUILD_INSTALL_COMMAND
        self._build_command = build_command or settings.BUILD_COMMAND
        self._timeout_s = timeout_s or settings.BUILD_TIMEOUT_S
        self._stuck_repeats = stuck_repeats or settings.BUILD_STUCK_REPEATS
        self._run = run_command or runner.run

    async def _build_once(self, files: FileSet) -> RunResult:
        self._workspace.write_snapshot(files)
        cwd = str(self._workspace.root)

        if self._workspace.needs_install(files):
            logger.info("Installing dependencies in %s", cwd)
            installed = await self._run(self._install_command, timeout_s=self._timeout_s, cwd=cwd)
            if not installed.ok:
                return installed
            self._workspace.mark_installed(files)

        return await self._run(self._build_command, timeout_s=self._timeout_s, cwd=cwd)

    async def validate(
        self,
        files: FileSet,
        generate: GenerateFn,
        *,
        max_iterations: int = 3,
    ) -> BuildValidationResult:
        """Run up to *max_iterations* builds, fixing errors in between."""
        tracker = RetryTracker(max_attempts=max_iterations, stuck_threshold=self._stuck_repeats)
        current = dict(files)
        history: list[str] = []

        def _result(success: bool = False) -> BuildValidationResult:
            return BuildValidationResult(
                files=current,
                success=success,
                iterations=tracker.attempt,
                last_error=tracker.last_error,
                stuck=tracker.stuck,
                error_history=history,
            )

        while True:
            iteration = tracker.begin_attempt()
            logger.info("Build iteration %d/%d", iteration, max_iterations)
            result = await self._build_once(current)

            if result.ok:
                tracker.record_success()
                logger.info("Build passed on iteration %d", iteration)
                return _result(success=True)

            if result.killed:
                history.append(f"iteration {iteration}: build timed out")
                if tracker.record_transient(result.stderr) is RetryState.EXHAUSTED:
                    return _result()
                continue

            parsed = parse_errors(result.stdout, result.stderr, failed=True)
            signature = error_signature(parsed.digest)
            history.append(f"iteration {iteration}: {parsed.summary}")
            state = tracker.record_content_failure(signature, parsed.digest)
            logger.warning("Build failed (iteration %d): %s", iteration, parsed.summary)

            if state is RetryState.STUCK:
                logger.warning("Same build errors on consecutive iterations, stopping")
                return _result()
            if state is RetryState.EXHAUSTED:
                logger.warning("Build still failing after %d iteration(s)", iteration)
                return _result()

            targets = select_files_to_fix(parsed, current)
            if not targets:
                logger.warning("No files identified for fixing, stopping")
                return _result()

            system_prompt, user_prompt = build_fix_prompt(parsed, targets, self._app_type)
            try:
                raw = await generate(system_prompt, user_prompt, "fix")
            except (GenerationFatalError, GenerationUnavailableError) as exc:
                logger.error("Fix request failed: %s", exc)
                return _result()

            try:
                current = apply_generated_changes(current, raw)
            except PatchParseFailure as exc:
                logger.warning("Fix response unusable (%s), rebuilding unchanged", exc.message)
