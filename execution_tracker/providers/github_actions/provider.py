"""GitHub Actions provider implementation."""

import asyncio
import logging
from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import aiohttp

from execution_tracker.providers.base import (
    Artifact,
    PipelineProvider,
    RunLifecycle,
    RunStatus,
    TriggeredRun,
    TriggerPayload,
)
from execution_tracker.providers.github_actions.config import GitHubActionsConfig
from execution_tracker.providers.github_actions.models import (
    ArtifactsResponse,
    WorkflowRun,
    WorkflowRunsResponse,
    WorkflowRunStatus,
)

log = logging.getLogger(__name__)

API_VERSION = "2022-11-28"

STATUS_TO_LIFECYCLE: Mapping[WorkflowRunStatus, RunLifecycle] = {
    "queued": "pending",
    "requested": "pending",
    "waiting": "pending",
    "pending": "pending",
    "in_progress": "in_progress",
    "completed": "completed",
}


@dataclass(frozen=True, kw_only=True)
class GitHubActionsProvider(PipelineProvider):
    """GitHub Actions pipeline provider.

    Runs are started with a ``repository_dispatch`` event. GitHub does not
    return the created run, so the provider lists the workflow's runs before
    and after dispatching and picks the run that was not there before.
    """

    config: GitHubActionsConfig
    session: aiohttp.ClientSession = field(repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: GitHubActionsConfig
    ) -> AsyncGenerator["GitHubActionsProvider", None]:
        """Create provider with managed session lifecycle."""
        headers = {
            "Authorization": f"Bearer {config.token.get_secret_value()}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
        }
        async with aiohttp.ClientSession(
            base_url=config.api_base_url,
            headers=headers,
        ) as session:
            yield cls(config=config, session=session)

    @property
    def repo_path(self) -> str:
        """API path prefix of the configured repository."""
        return f"/repos/{self.config.owner}/{self.config.repo}"

    async def trigger_run(self, payload: TriggerPayload) -> TriggeredRun:
        """Dispatch the test workflow and locate the run it created."""
        before = await self.list_workflow_runs(per_page=5)
        before_ids = {run.id for run in before}

        url = f"{self.repo_path}/dispatches"
        body = {
            "event_type": self.config.event_type,
            "client_payload": payload.to_client_payload(),
        }

        log.info(
            "Dispatching workflow: api_base_url=%s, url=%s, owner=%s, repo=%s, "
            "workflow_id=%s, request_id=%s, test_cases=%d",
            self.config.api_base_url,
            url,
            self.config.owner,
            self.config.repo,
            self.config.workflow_id,
            payload.request_id,
            len(payload.test_case_ids),
        )

        async with self.session.post(url, json=body) as response:
            if response.status != 204:
                text = await response.text()
                raise RuntimeError(
                    f"Failed to dispatch workflow: {response.status} {text}"
                )

        for attempt in range(1, self.config.discovery_attempts + 1):
            await asyncio.sleep(self.config.discovery_interval)

            after = await self.list_workflow_runs(per_page=10)
            new_runs = [run for run in after if run.id not in before_ids]
            if new_runs:
                run = new_runs[0]
                log.info(
                    "Located workflow run %s for request %s (attempt %d)",
                    run.id,
                    payload.request_id,
                    attempt,
                )
                return TriggeredRun(
                    run_id=str(run.id),
                    status_url=run.url or f"{self.repo_path}/actions/runs/{run.id}",
                    html_url=run.html_url,
                )

            log.info(
                "Workflow run for request %s not visible yet (attempt %d/%d)",
                payload.request_id,
                attempt,
                self.config.discovery_attempts,
            )

        raise RuntimeError("Workflow run did not appear after triggering")

    async def list_workflow_runs(self, per_page: int) -> Sequence[WorkflowRun]:
        """List the most recent runs of the configured workflow."""
        url = f"{self.repo_path}/actions/workflows/{self.config.workflow_id}/runs"
        params = {"per_page": str(per_page)}

        async with self.session.get(url, params=params) as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(
                    f"Failed to list workflow runs: {response.status} {text}"
                )
            data = await response.json()

        return WorkflowRunsResponse.model_validate(data).workflow_runs

    async def get_run_status(self, run: TriggeredRun) -> RunStatus:
        """Fetch the status of a workflow run."""
        url = f"{self.repo_path}/actions/runs/{run.run_id}"

        async with self.session.get(url) as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(
                    f"Failed to get workflow status: {response.status} {text}"
                )
            data = await response.json()

        workflow_run = WorkflowRun.model_validate(data)
        return RunStatus(
            status=STATUS_TO_LIFECYCLE[workflow_run.status],
            conclusion=workflow_run.conclusion,
        )

    async def list_artifacts(self, run: TriggeredRun) -> Sequence[Artifact]:
        """List the non-expired artifacts of a workflow run."""
        url = f"{self.repo_path}/actions/runs/{run.run_id}/artifacts"

        async with self.session.get(url) as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(
                    f"Failed to list artifacts: {response.status} {text}"
                )
            data = await response.json()

        return [
            Artifact(
                id=str(artifact.id),
                name=artifact.name,
                size_bytes=artifact.size_in_bytes,
            )
            for artifact in ArtifactsResponse.model_validate(data).artifacts
            if not artifact.expired
        ]

    async def download_artifact(self, artifact: Artifact) -> bytes:
        """Download an artifact as a ZIP archive."""
        url = f"{self.repo_path}/actions/artifacts/{artifact.id}/zip"

        async with self.session.get(url) as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(
                    f"Failed to download artifact {artifact.name}: "
                    f"{response.status} {text}"
                )
            return await response.read()
