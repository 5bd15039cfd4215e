"""Tests for the job controller -- generation jobs end to end with fakes."""

import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from app.clients.deploy_client import DeployResult
from app.errors import GenerationUnavailableError, JobNotFoundError
from app.models import JobKind, JobStatus
from app.services.build_validator import BuildValidationResult, BuildValidator
from app.services.deploy_orchestrator import DeploymentOrchestrator
from app.services.job_controller import JobController
from shipwright_kit.backoff import RetryDelay
from shipwright_kit.runner import RunResult

PAGE = "src/app/page.tsx"
LAYOUT_PATH = "src/app/layout.tsx"
LAYOUT = """\
import type { Metadata } from "next";

export const metadata: Metadata = {
  title: "Template",
}

export default function RootLayout({ children }) {
  return children;
}
"""
TEMPLATE = {"package.json": "{}", LAYOUT_PATH: LAYOUT, PAGE: "template page"}


def _reply(*files: tuple[str, str]) -> str:
    return json.dumps([{"filename": name, "content": content} for name, content in files])


def _ts_fail(message: str = "Type 'number' is not assignable to type 'string'.") -> DeployResult:
    return DeployResult(status="deployment_failed", build_log=f"./{PAGE}:1:1\nType error: {message}\n")


def _deployed(url: str = "https://deployed.test") -> DeployResult:
    return DeployResult(status="deployed", deployed_url=url)


class FakePlatform:
    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.deployed: list[dict] = []

    async def __call__(self, project_id, files, *, flags):
        self.deployed.append(dict(files))
        return self.outcomes.pop(0)


@pytest.fixture
def notify() -> AsyncMock:
    return AsyncMock(return_value=True)


@pytest.fixture
def fetch_template() -> AsyncMock:
    return AsyncMock(return_value=dict(TEMPLATE))


def _controller(store, gateway, platform, *, notify, fetch_template, validator_factory=None) -> JobController:
    def orchestrator_factory(generate, **kwargs):
        return DeploymentOrchestrator(
            generate,
            deploy_fn=platform,
            backoff=RetryDelay(initial_s=0.001, max_s=0.001, jitter=False),
            **kwargs,
        )

    return JobController(
        store,
        gateway_factory=lambda: gateway,
        fetch_template=fetch_template,
        notify=notify,
        validator_factory=validator_factory,
        orchestrator_factory=orchestrator_factory,
    )


# ---------------------------------------------------------------------------
# Initial generation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initial_job_generates_and_deploys(store, gateway, make_job, notify, fetch_template):
    gateway.replies.append(_reply((PAGE, "generated page")))
    platform = FakePlatform(_deployed())
    await store.create_job(make_job())

    await _controller(store, gateway, platform, notify=notify, fetch_template=fetch_template).execute("job-1")

    job = await store.get_job("job-1")
    assert job.status is JobStatus.COMPLETED
    result = job.result
    project_id = result["project_id"]
    assert result["success"] is True
    assert result["deployed_url"] == "https://deployed.test"
    assert result["project_name"] == "A Pixel Art Gallery"
    assert result["files"] == sorted(TEMPLATE)
    assert result["diagnostic"] is None
    assert result["attempts"] == 1
    assert result["url"] == f"https://{project_id}.shipwright.test"

    fetch_template.assert_awaited_once_with("farcaster")
    assert gateway.stages == ["generate"]
    stored = store.project_files[project_id]
    assert stored[PAGE] == "generated page"
    assert "A Pixel Art Gallery | Farcaster Miniapp" in stored[LAYOUT_PATH]
    assert platform.deployed[0] == stored
    assert store.projects[project_id]["deployed_url"] == "https://deployed.test"
    assert store.deployments[0]["status"] == "success"
    notify.assert_awaited_once_with(
        "user-1", "deployment_complete", project_id, "https://deployed.test",
        project_name="A Pixel Art Gallery",
    )


@pytest.mark.asyncio
async def test_initial_job_uses_given_project_id_and_name(store, gateway, make_job, notify, fetch_template):
    gateway.replies.append(_reply((PAGE, "generated")))
    await store.create_job(make_job(project_id="proj-9", context={"project_name": "Zine"}))

    await _controller(store, gateway, FakePlatform(_deployed()), notify=notify, fetch_template=fetch_template).execute("job-1")

    result = (await store.get_job("job-1")).result
    assert result["project_id"] == "proj-9"
    assert result["project_name"] == "Zine"


@pytest.mark.asyncio
async def test_contracts_are_dropped_for_non_web3_apps(store, gateway, make_job, notify, fetch_template):
    gateway.replies.append(_reply((PAGE, "p"), ("contracts/Token.sol", "contract Token {}")))
    await store.create_job(make_job())

    await _controller(store, gateway, FakePlatform(_deployed()), notify=notify, fetch_template=fetch_template).execute("job-1")

    project_id = (await store.get_job("job-1")).result["project_id"]
    assert "contracts/Token.sol" not in store.project_files[project_id]


@pytest.mark.asyncio
async def test_deploy_fix_is_persisted(store, gateway, make_job, notify, fetch_template):
    gateway.replies.extend([_reply((PAGE, "broken")), _reply((PAGE, "fixed"))])
    platform = FakePlatform(_ts_fail(), _deployed())
    await store.create_job(make_job())

    await _controller(store, gateway, platform, notify=notify, fetch_template=fetch_template).execute("job-1")

    job = await store.get_job("job-1")
    assert job.status is JobStatus.COMPLETED
    assert job.result["attempts"] == 2
    assert gateway.stages == ["generate", "fix"]
    assert store.project_files[job.result["project_id"]][PAGE] == "fixed"
    assert [h["outcome"] for h in job.result["history"]] == ["fixing_content", "success"]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stuck_deployment_fails_job(store, gateway, make_job, notify, fetch_template):
    gateway.replies.extend([_reply((PAGE, "v1")), _reply((PAGE, "v2")), _reply((PAGE, "v3"))])
    platform = FakePlatform(_ts_fail(), _ts_fail(), _ts_fail())
    await store.create_job(make_job())

    await _controller(store, gateway, platform, notify=notify, fetch_template=fetch_template).execute("job-1")

    job = await store.get_job("job-1")
    assert job.status is JobStatus.FAILED
    assert job.error == "Stuck on the same error after 3 consecutive attempt(s)"
    assert job.result["status"] == "stuck_on_error"
    assert job.result["success"] is False
    diagnostic = job.result["diagnostic"]
    assert diagnostic["kind"] == "stuck"
    assert diagnostic["attempts"] == 3
    assert diagnostic["signature"]
    assert store.deployments[0]["status"] == "stuck"
    notify.assert_awaited_once()
    assert notify.await_args.args[1] == "deployment_failed"


@pytest.mark.asyncio
async def test_exhausted_deployment_fails_job(store, gateway, make_job, notify, fetch_template):
    gateway.replies.extend([_reply((PAGE, "v0"))] + [_reply((PAGE, f"v{i}")) for i in range(1, 4)])
    platform = FakePlatform(*(_ts_fail(m) for m in ("Cannot find name 'a'.", "Cannot find name 'b'.", "Cannot find name 'c'.", "Cannot find name 'd'.")))
    await store.create_job(make_job())

    await _controller(store, gateway, platform, notify=notify, fetch_template=fetch_template).execute("job-1")

    job = await store.get_job("job-1")
    assert job.status is JobStatus.FAILED
    assert job.result["status"] == "deployment_failed_all_attempts"
    assert job.result["diagnostic"]["kind"] == "exhausted"
    assert job.result["attempts"] == 4
    assert job.error == "Deployment failed after 4 attempt(s)"


@pytest.mark.asyncio
async def test_generation_error_fails_job_with_diagnostic(store, gateway, make_job, notify, fetch_template):
    gateway.replies.append(GenerationUnavailableError("Generation service unavailable", attempts=3))
    platform = FakePlatform()
    await store.create_job(make_job())

    await _controller(store, gateway, platform, notify=notify, fetch_template=fetch_template).execute("job-1")

    job = await store.get_job("job-1")
    assert job.status is JobStatus.FAILED
    assert job.error == "Generation service unavailable"
    assert job.result["diagnostic"]["kind"] == "error"
    assert job.result["diagnostic"]["signature"] == "generation service unavailable"
    assert platform.deployed == []
    assert notify.await_args.args[1] == "deployment_failed"


@pytest.mark.asyncio
async def test_unknown_job_raises(store, gateway, notify, fetch_template):
    controller = _controller(store, gateway, FakePlatform(), notify=notify, fetch_template=fetch_template)
    with pytest.raises(JobNotFoundError):
        await controller.execute("missing")


@pytest.mark.asyncio
async def test_terminal_job_is_left_alone(store, gateway, make_job, notify, fetch_template):
    await store.create_job(make_job(status=JobStatus.COMPLETED, result={"success": True}))

    await _controller(store, gateway, FakePlatform(), notify=notify, fetch_template=fetch_template).execute("job-1")

    assert (await store.get_job("job-1")).result == {"success": True}
    assert gateway.calls == []
    notify.assert_not_awaited()


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_processing_job_resumes_from_persisted_files(store, gateway, make_job, notify, fetch_template):
    store.project_files["proj-1"] = {PAGE: "persisted"}
    await store.create_job(make_job(
        status=JobStatus.PROCESSING, result={"project_id": "proj-1", "files_ready": True},
    ))
    platform = FakePlatform(_deployed())

    await _controller(store, gateway, platform, notify=notify, fetch_template=fetch_template).execute("job-1")

    assert gateway.calls == []
    fetch_template.assert_not_awaited()
    assert platform.deployed == [{PAGE: "persisted"}]
    assert (await store.get_job("job-1")).status is JobStatus.COMPLETED


# ---------------------------------------------------------------------------
# Follow-up edits
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_follow_up_edits_stored_project(store, gateway, make_job, notify, fetch_template):
    store.project_files["proj-1"] = {PAGE: "line1\nline2\n"}
    gateway.replies.append(json.dumps([{"filename": PAGE, "unifiedDiff": "@@ -2,1 +2,1 @@\n-line2\n+LINE2\n"}]))
    platform = FakePlatform(_deployed())
    await store.create_job(make_job(kind=JobKind.FOLLOW_UP, project_id="proj-1", prompt="shout line two"))

    await _controller(store, gateway, platform, notify=notify, fetch_template=fetch_template).execute("job-1")

    job = await store.get_job("job-1")
    assert job.status is JobStatus.COMPLETED
    assert gateway.stages == ["edit"]
    assert store.project_files["proj-1"][PAGE] == "line1\nLINE2\n"
    fetch_template.assert_not_awaited()
    assert notify.await_args.args[1] == "edit_complete"


@pytest.mark.asyncio
async def test_follow_up_without_project_fails(store, gateway, make_job, notify, fetch_template):
    await store.create_job(make_job(kind=JobKind.FOLLOW_UP))

    await _controller(store, gateway, FakePlatform(), notify=notify, fetch_template=fetch_template).execute("job-1")

    job = await store.get_job("job-1")
    assert job.status is JobStatus.FAILED
    assert "has no project id" in job.error
    notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_follow_up_without_stored_files_fails(store, gateway, make_job, notify, fetch_template):
    await store.create_job(make_job(kind=JobKind.FOLLOW_UP, context={"existing_project_id": "proj-7"}))

    await _controller(store, gateway, FakePlatform(), notify=notify, fetch_template=fetch_template).execute("job-1")

    job = await store.get_job("job-1")
    assert job.status is JobStatus.FAILED
    assert job.error == "No stored files for project proj-7"


@pytest.mark.asyncio
async def test_follow_up_resume_skips_edit(store, gateway, make_job, notify, fetch_template):
    store.project_files["proj-1"] = {PAGE: "already edited"}
    await store.create_job(make_job(
        kind=JobKind.FOLLOW_UP,
        project_id="proj-1",
        status=JobStatus.PROCESSING,
        result={"project_id": "proj-1", "files_ready": True, "status": "edited"},
    ))
    platform = FakePlatform(_deployed())

    await _controller(store, gateway, platform, notify=notify, fetch_template=fetch_template).execute("job-1")

    assert gateway.calls == []
    assert platform.deployed == [{PAGE: "already edited"}]


# ---------------------------------------------------------------------------
# Build validation stage
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_validated_files_are_deployed(store, gateway, make_job, notify, fetch_template, monkeypatch, tmp_path):
    monkeypatch.setattr("app.config.settings.BUILD_VALIDATION_ENABLED", True)
    gateway.replies.extend([_reply((PAGE, "const x: string = 1;")), _reply((PAGE, "const x = 1;"))])
    builds = [
        RunResult(exit_code=1, stdout=f"./{PAGE}:1:7\nType error: bad\n", command="npm run build"),
        RunResult(exit_code=0, command="npm run build"),
    ]
    roots: list[Path] = []

    async def run(command, *, timeout_s, cwd):
        if command.startswith("npm install"):
            (Path(cwd) / "node_modules").mkdir(exist_ok=True)
            return RunResult(exit_code=0, command=command)
        return builds.pop(0)

    def validator_factory(root, **kwargs):
        roots.append(root)
        return BuildValidator(root, run_command=run, **kwargs)

    platform = FakePlatform(_deployed())
    await store.create_job(make_job(project_id="proj-1"))

    await _controller(
        store, gateway, platform, notify=notify, fetch_template=fetch_template,
        validator_factory=validator_factory,
    ).execute("job-1")

    assert gateway.stages == ["generate", "fix"]
    assert platform.deployed[0][PAGE] == "const x = 1;"
    assert store.project_files["proj-1"][PAGE] == "const x = 1;"
    assert roots == [tmp_path / "scratch" / "proj-1"]


@pytest.mark.asyncio
async def test_validation_crash_deploys_unvalidated_files(store, gateway, make_job, notify, fetch_template, monkeypatch):
    monkeypatch.setattr("app.config.settings.BUILD_VALIDATION_ENABLED", True)
    gateway.replies.append(_reply((PAGE, "generated")))

    class CrashingValidator:
        async def validate(self, files, generate, *, max_iterations):
            raise OSError("disk full")

    platform = FakePlatform(_deployed())
    await store.create_job(make_job())

    await _controller(
        store, gateway, platform, notify=notify, fetch_template=fetch_template,
        validator_factory=lambda root, **kwargs: CrashingValidator(),
    ).execute("job-1")

    assert (await store.get_job("job-1")).status is JobStatus.COMPLETED
    assert platform.deployed[0][PAGE] == "generated"


@pytest.mark.asyncio
async def test_failing_validation_still_deploys(store, gateway, make_job, notify, fetch_template, monkeypatch):
    monkeypatch.setattr("app.config.settings.BUILD_VALIDATION_ENABLED", True)
    gateway.replies.append(_reply((PAGE, "generated")))

    class FailingValidator:
        async def validate(self, files, generate, *, max_iterations):
            return BuildValidationResult(files=files, success=False, iterations=max_iterations, stuck=True)

    platform = FakePlatform(_deployed())
    await store.create_job(make_job())

    await _controller(
        store, gateway, platform, notify=notify, fetch_template=fetch_template,
        validator_factory=lambda root, **kwargs: FailingValidator(),
    ).execute("job-1")

    assert len(platform.deployed) == 1
    assert (await store.get_job("job-1")).status is JobStatus.COMPLETED


# ---------------------------------------------------------------------------
# Regeneration and collaborator failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pending_initial_job_regenerates_existing_project(store, gateway, make_job, notify, fetch_template):
    store.project_files["proj-1"] = {PAGE: "old page"}
    gateway.replies.append(_reply((PAGE, "todo page")))
    platform = FakePlatform(_deployed())
    await store.create_job(make_job(project_id="proj-1", prompt="make it a todo app"))

    await _controller(store, gateway, platform, notify=notify, fetch_template=fetch_template).execute("job-1")

    assert gateway.stages == ["generate"]
    fetch_template.assert_awaited_once()
    assert store.project_files["proj-1"][PAGE] == "todo page"
    assert platform.deployed[0][PAGE] == "todo page"


@pytest.mark.asyncio
async def test_gateway_construction_failure_fails_job(store, make_job, notify, fetch_template):
    def broken_gateway():
        raise RuntimeError("no api key")

    await store.create_job(make_job())
    controller = JobController(
        store, gateway_factory=broken_gateway, fetch_template=fetch_template, notify=notify,
    )

    await controller.execute("job-1")

    job = await store.get_job("job-1")
    assert job.status is JobStatus.FAILED
    assert job.error == "no api key"
    assert job.result["usage"] == {}


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_job(store, gateway, make_job, fetch_template):
    gateway.replies.append(_reply((PAGE, "generated")))
    notify = AsyncMock(side_effect=RuntimeError("notifier down"))
    await store.create_job(make_job())

    await _controller(store, gateway, FakePlatform(_deployed()), notify=notify, fetch_template=fetch_template).execute("job-1")

    job = await store.get_job("job-1")
    assert job.status is JobStatus.COMPLETED
    notify.assert_awaited_once()
