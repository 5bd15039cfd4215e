"""Command runner: structured subprocess execution for local builds.

Provides ``run()`` for executing package-manager commands inside the
scratch workspace and returning structured ``RunResult`` models.
Command validation, environment isolation, timeout management and
output truncation are all handled transparently.

No generation calls here; this is a pure systems layer.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import time

from pydantic import BaseModel, ConfigDict, Field

from shipwright_kit.errors import SandboxViolation

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_STDOUT_BYTES: int = 50_000  # 50 KB
MAX_STDERR_BYTES: int = 20_000  # 20 KB
DEFAULT_TIMEOUT_S: int = 120

INJECTION_CHARS: frozenset[str] = frozenset({
    ";", "|", "&", "`", "$", "(", ")", "{", "}", "<", ">",
})

BUILD_COMMAND_PREFIXES: tuple[str, ...] = (
    "npm install", "npm ci", "npm run ",
    "pnpm install", "pnpm run ", "pnpm build",
    "yarn install", "yarn build", "yarn run ",
    "npx ",
)

# Env vars safe to propagate (no secrets).
_SAFE_ENV_KEYS: tuple[str, ...] = (
    "PATH", "HOME", "TEMP", "TMP", "TMPDIR",
    "SYSTEMROOT", "USERPROFILE", "LANG",
    "NODE_OPTIONS", "NPM_CONFIG_CACHE",
)

# Always set for builds: non-interactive, no telemetry.
_BUILD_ENV: dict[str, str] = {
    "CI": "1",
    "NEXT_TELEMETRY_DISABLED": "1",
}


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class RunResult(BaseModel):
    """Structured result of a subprocess invocation."""

    model_config = ConfigDict(frozen=True)

    exit_code: int = Field(..., description="Process exit code (-1 if crashed or killed)")
    stdout: str = Field(default="", description="Captured stdout (may be truncated)")
    stderr: str = Field(default="", description="Captured stderr (may be truncated)")
    duration_ms: int = Field(default=0, ge=0, description="Wall-clock duration in ms")
    truncated: bool = Field(default=False, description="True if stdout or stderr was truncated")
    killed: bool = Field(default=False, description="True if the process was killed due to timeout")
    command: str = Field(..., description="The command that was executed")

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.killed


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def validate_command(
    command: str,
    allowed_prefixes: tuple[str, ...] | None = None,
) -> str | None:
    """Check *command* against safety rules.

    Returns ``None`` when the command is acceptable, or an error-message
    string explaining why it was rejected.
    """
    if not command or not command.strip():
        return "Error: Command is empty"

    cmd = command.strip()
    for ch in cmd:
        if ch in INJECTION_CHARS:
            return f"Error: Command contains disallowed character '{ch}'"

    prefixes = allowed_prefixes if allowed_prefixes is not None else BUILD_COMMAND_PREFIXES
    if not cmd.lower().startswith(prefixes):
        return (
            f"Error: Command not in allowlist. "
            f"Allowed prefixes: {', '.join(prefixes)}"
        )
    return None


def _build_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    """Restricted environment: safe host vars, build defaults, then *extra*."""
    env: dict[str, str] = {}
    for key in _SAFE_ENV_KEYS:
        val = os.environ.get(key)
        if val:
            env[key] = val
    env.update(_BUILD_ENV)
    if extra:
        env.update(extra)
    return env


def _truncate(text: str, max_bytes: int) -> tuple[str, bool]:
    """Keep the *tail* of *text*; build errors are printed last."""
    if len(text) <= max_bytes:
        return text, False
    return (
        f"[... truncated {len(text) - max_bytes} leading chars ...]\n\n" + text[-max_bytes:],
        True,
    )


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


# ---------------------------------------------------------------------------
# Core runner
# ---------------------------------------------------------------------------


async def run(
    command: str,
    *,
    timeout_s: int = DEFAULT_TIMEOUT_S,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    allowed_prefixes: tuple[str, ...] | None = None,
) -> RunResult:
    """Execute *command* in a subprocess and return a ``RunResult``.

    Parameters
    ----------
    command:
        Shell command string.  Must pass ``validate_command``.
    timeout_s:
        Maximum wall-clock seconds before the process is killed.
    cwd:
        Working directory for the subprocess.  ``None`` → inherit.
    env:
        Extra environment variables merged on top of the safe base set.
    allowed_prefixes:
        Override the default ``BUILD_COMMAND_PREFIXES`` for validation.

    Raises
    ------
    SandboxViolation
        When the command fails validation.
    """
    error = validate_command(command, allowed_prefixes)
    if error:
        raise SandboxViolation(command, reason=error)

    merged_env = _build_env(env)
    start = time.perf_counter()

    def _sync() -> tuple[int, str, str, bool]:
        """Run in a thread so the event loop stays free."""
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                cwd=cwd,
                env=merged_env,
                shell=True,
                timeout=timeout_s,
            )
            return result.returncode, result.stdout or "", result.stderr or "", False
        except subprocess.TimeoutExpired as exc:
            return -1, _decode(exc.stdout), _decode(exc.stderr), True

    loop = asyncio.get_running_loop()
    try:
        exit_code, raw_out, raw_err, was_killed = await loop.run_in_executor(None, _sync)
    except OSError as exc:
        elapsed = int((time.perf_counter() - start) * 1000)
        return RunResult(
            exit_code=-1,
            stderr=f"Error: {exc}",
            duration_ms=elapsed,
            command=command,
        )

    elapsed = int((time.perf_counter() - start) * 1000)
    stdout, trunc_out = _truncate(raw_out, MAX_STDOUT_BYTES)
    stderr, trunc_err = _truncate(raw_err, MAX_STDERR_BYTES)
    if was_killed:
        stderr = f"{stderr}\nError: command timed out after {timeout_s}s".lstrip("\n")

    return RunResult(
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_ms=elapsed,
        truncated=trunc_out or trunc_err,
        killed=was_killed,
        command=command,
    )


__all__ = [
    "BUILD_COMMAND_PREFIXES",
    "RunResult",
    "run",
    "validate_command",
]
