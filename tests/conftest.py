"""Shared test fixtures.

Provides:
- ``set_test_config``: autouse fixture that patches settings and installs
  a fresh ``InMemoryStore`` as the store singleton
- ``store``: that store
- ``FakeGateway`` / ``gateway``: scripted stand-in for ``GenerationGateway``
- ``make_job``: builds ``GenerationJob`` objects with sensible defaults
"""

import pytest

from app.clients.llm_client import UsageTotals
from app.models import GenerationJob, JobKind
from app.repos.store import InMemoryStore, set_store


def pytest_configure(config):
    """Register custom markers.

    Tests that need real external services (Postgres, a Node toolchain)
    should be decorated with ``@pytest.mark.integration``.  Run pytest with
    ``-m 'not integration'`` to skip them.
    """
    config.addinivalue_line(
        "markers",
        "integration: tests requiring external services (database, node, etc.)",
    )


# ---------------------------------------------------------------------------
# Canonical test identifiers
# ---------------------------------------------------------------------------

USER_ID = "user-1"
PROJECT_ID = "proj-1"

# ---------------------------------------------------------------------------
# Environment patching
# ---------------------------------------------------------------------------

_SETTINGS_PATCHES: dict[str, object] = {
    "app.config.settings.ANTHROPIC_API_KEY": "test-key",
    "app.config.settings.DEPLOY_API_URL": "http://deploy.test",
    "app.config.settings.DEPLOY_API_TOKEN": "",
    "app.config.settings.APP_URL": "http://localhost:8000",
    "app.config.settings.CUSTOM_DOMAIN_BASE": "shipwright.test",
    "app.config.settings.STORE_BACKEND": "memory",
    "app.config.settings.NOTIFY_URL": "",
    "app.config.settings.GITHUB_TOKEN": "",
    "app.config.settings.TEMPLATE_SOURCE": "github",
    "app.config.settings.LOG_FILE": "",
    "app.config.settings.BUILD_VALIDATION_ENABLED": False,
    "app.config.settings.LLM_BACKOFF_INITIAL_S": 0.01,
    "app.config.settings.LLM_BACKOFF_MAX_S": 0.01,
    "app.config.settings.DEPLOY_BACKOFF_INITIAL_S": 0.01,
    "app.config.settings.DEPLOY_BACKOFF_MAX_S": 0.01,
}


@pytest.fixture(autouse=True)
def set_test_config(monkeypatch, tmp_path):
    """Patch application settings for a safe, offline test environment.

    ``autouse=True`` so every test gets a deterministic configuration and
    its own empty job store.
    """
    for target, value in _SETTINGS_PATCHES.items():
        monkeypatch.setattr(target, value)
    monkeypatch.setattr("app.config.settings.SCRATCH_ROOT", str(tmp_path / "scratch"))
    fresh = InMemoryStore(job_ttl_seconds=60)
    set_store(fresh)
    yield fresh
    set_store(None)


@pytest.fixture
def store(set_test_config) -> InMemoryStore:
    """The ``InMemoryStore`` installed for this test."""
    return set_test_config


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeGateway:
    """Scripted generation gateway: returns *replies* in order, records calls."""

    def __init__(self, *replies: str) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[str, str, str]] = []
        self.usage = UsageTotals()

    async def complete(self, system_prompt: str, user_prompt: str, stage: str) -> str:
        self.calls.append((system_prompt, user_prompt, stage))
        if not self.replies:
            raise AssertionError(f"Unexpected generation call for stage {stage!r}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def stages(self) -> list[str]:
        return [stage for _, _, stage in self.calls]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_job():
    """Factory for ``GenerationJob`` objects."""

    def _make(**overrides) -> GenerationJob:
        fields = {
            "id": "job-1",
            "user_id": USER_ID,
            "prompt": "a pixel art gallery",
            "kind": JobKind.INITIAL,
        }
        fields.update(overrides)
        return GenerationJob(**fields)

    return _make
