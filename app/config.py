"""Application configuration loaded from environment variables.

Uses ``pydantic-settings`` for automatic env-var loading, type coercion,
and ``.env`` file support.  Validates required settings on import and fails
fast if critical vars are missing outside of tests.
"""

VERSION = "0.1.0"

import sys

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ---------------------------------------------------------------------------
# Required var names, checked after instantiation (not during), so tests
# that leave them blank still work.
# ---------------------------------------------------------------------------
_REQUIRED_VARS: list[str] = [
    "ANTHROPIC_API_KEY",
    "DEPLOY_API_URL",
]


class Settings(BaseSettings):
    """Application settings, sourced from environment / ``.env`` file.

    Required vars (must be set in production, may be blank in test):
      ANTHROPIC_API_KEY, DEPLOY_API_URL
    ``DATABASE_URL`` is additionally required when ``STORE_BACKEND=postgres``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- required in production (default empty so tests don't fail) --
    ANTHROPIC_API_KEY: str = ""
    DEPLOY_API_URL: str = ""
    DATABASE_URL: str = ""

    # -- optional with sensible defaults --
    APP_URL: str = "http://localhost:8000"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # Job store: "memory" keeps jobs in-process (dev / tests), "postgres"
    # uses the asyncpg pool.  Terminal jobs are evicted from the memory
    # store after STORE_JOB_TTL_SECONDS; only the newest
    # STORE_MAX_DEPLOYMENTS deployment records are kept.
    STORE_BACKEND: str = "memory"
    STORE_JOB_TTL_SECONDS: int = Field(default=3600, ge=1)
    STORE_MAX_DEPLOYMENTS: int = Field(default=1000, ge=1)

    # -------------------------------------------------------------------------
    # Generation models, per call site ("stage").
    #
    #   generate : initial project generation
    #   edit     : follow-up edits to an existing project
    #   fix      : build / deployment error repair
    #
    # Each stage may name a fallback model used on the penultimate attempt
    # when the primary model is overloaded.  Leave blank for no fallback.
    # -------------------------------------------------------------------------
    LLM_GENERATE_MODEL: str = "claude-sonnet-4-5"
    LLM_GENERATE_FALLBACK_MODEL: str = "claude-haiku-4-5"
    LLM_GENERATE_MAX_TOKENS: int = 32_000
    LLM_GENERATE_TEMPERATURE: float = 0.7

    LLM_EDIT_MODEL: str = "claude-sonnet-4-5"
    LLM_EDIT_FALLBACK_MODEL: str = "claude-haiku-4-5"
    LLM_EDIT_MAX_TOKENS: int = 32_000
    LLM_EDIT_TEMPERATURE: float = 0.3

    LLM_FIX_MODEL: str = "claude-sonnet-4-5"
    LLM_FIX_FALLBACK_MODEL: str = ""
    LLM_FIX_MAX_TOKENS: int = 16_000
    LLM_FIX_TEMPERATURE: float = 0.0

    # Hard override for every stage, for cost-safe testing.
    LLM_FORCE_MODEL: str = ""

    LLM_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    LLM_BACKOFF_INITIAL_S: float = Field(default=2.0, gt=0)
    LLM_BACKOFF_MAX_S: float = Field(default=30.0, gt=0)
    LLM_TIMEOUT_S: float = Field(default=300.0, gt=0)

    # -- deployment platform --
    DEPLOY_API_TOKEN: str = ""
    DEPLOY_TIMEOUT_S: float = Field(default=600.0, gt=0)
    DEPLOY_BACKOFF_INITIAL_S: float = Field(default=2.0, gt=0)
    DEPLOY_BACKOFF_MAX_S: float = Field(default=30.0, gt=0)
    CUSTOM_DOMAIN_BASE: str = "shipwright.app"

    # -- template source --
    TEMPLATE_SOURCE: str = "github"  # "github" | "local"
    TEMPLATE_REPO_OWNER: str = "shipwright-templates"
    TEMPLATE_REPO_FARCASTER: str = "farcaster-miniapp"
    TEMPLATE_REPO_WEB3: str = "web3-miniapp"
    TEMPLATE_REPO_REF: str = "main"
    TEMPLATE_LOCAL_ROOT: str = "templates"
    GITHUB_TOKEN: str = ""
    TEMPLATE_FETCH_RETRIES: int = Field(default=3, ge=1)

    # -- notifications --
    NOTIFY_URL: str = ""
    NOTIFY_API_KEY: str = ""
    NOTIFY_TIMEOUT_S: float = Field(default=10.0, gt=0)

    # -- local build validation --
    BUILD_VALIDATION_ENABLED: bool = True
    SCRATCH_ROOT: str = "/tmp/shipwright"
    BUILD_INSTALL_COMMAND: str = "npm install --no-audit --no-fund"
    BUILD_COMMAND: str = "npm run build"
    BUILD_TIMEOUT_S: int = Field(default=300, ge=1)

    # -------------------------------------------------------------------------
    # Retry bounds, shared by initial generation and follow-up edits.
    # A loop is "stuck" once the same error signature has been seen on
    # this many consecutive failed iterations / attempts.
    # -------------------------------------------------------------------------
    BUILD_MAX_ITERATIONS: int = Field(default=3, ge=1)
    BUILD_STUCK_REPEATS: int = Field(default=2, ge=2)
    DEPLOY_MAX_ATTEMPTS: int = Field(default=4, ge=1)
    DEPLOY_STUCK_THRESHOLD: int = Field(default=3, ge=2)

    @model_validator(mode="after")
    def _apply_force_model(self) -> "Settings":
        """If LLM_FORCE_MODEL is set, every stage uses it with no fallback."""
        if self.LLM_FORCE_MODEL:
            for stage in STAGES:
                setattr(self, f"LLM_{stage.upper()}_MODEL", self.LLM_FORCE_MODEL)
                setattr(self, f"LLM_{stage.upper()}_FALLBACK_MODEL", "")
        return self


STAGES: tuple[str, ...] = ("generate", "edit", "fix")

settings = Settings()


def get_stage_model(stage: str) -> tuple[str, str]:
    """Return ``(primary_model, fallback_model)`` for a generation stage.

    The fallback is ``""`` when none is configured.

    Raises
    ------
    ValueError
        If *stage* is not one of ``STAGES``.
    """
    if stage not in STAGES:
        raise ValueError(f"Unknown generation stage: {stage!r}")
    key = stage.upper()
    return (
        getattr(settings, f"LLM_{key}_MODEL"),
        getattr(settings, f"LLM_{key}_FALLBACK_MODEL"),
    )


def get_stage_limits(stage: str) -> tuple[int, float]:
    """Return ``(max_tokens, temperature)`` for a generation stage."""
    if stage not in STAGES:
        raise ValueError(f"Unknown generation stage: {stage!r}")
    key = stage.upper()
    return (
        getattr(settings, f"LLM_{key}_MAX_TOKENS"),
        getattr(settings, f"LLM_{key}_TEMPERATURE"),
    )


# Validate at import time, but only when NOT running under pytest.
if "pytest" not in sys.modules:
    _missing = [v for v in _REQUIRED_VARS if not getattr(settings, v)]
    if settings.STORE_BACKEND == "postgres" and not settings.DATABASE_URL:
        _missing.append("DATABASE_URL")
    if _missing:
        print(
            f"[config] FATAL: missing required environment variables: "
            f"{', '.join(_missing)}",
            file=sys.stderr,
        )
        sys.exit(1)
