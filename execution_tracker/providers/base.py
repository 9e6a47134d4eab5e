"""Abstract base class for CI/CD pipeline providers."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

import aiohttp

log = logging.getLogger(__name__)

type RunLifecycle = Literal["pending", "in_progress", "completed"]


@dataclass(frozen=True, kw_only=True)
class TriggerPayload:
    """Client payload sent with a trigger, identifying the request."""

    request_id: str
    test_case_ids: Sequence[str]
    requirement_id: str | None = None
    requirement_name: str | None = None
    callback_url: str | None = None

    def to_client_payload(self) -> Mapping[str, Any]:
        """Render the payload in the shape the test workflow reads."""
        return {
            "requirementId": self.requirement_id or f"bulk_{self.request_id}",
            "requirementName": self.requirement_name or "Bulk Test Execution",
            "testCases": list(self.test_case_ids),
            "callbackUrl": self.callback_url,
            "requestId": self.request_id,
        }


@dataclass(frozen=True, kw_only=True)
class TriggeredRun:
    """Handle of a run located after triggering."""

    run_id: str
    status_url: str
    html_url: str | None = None


@dataclass(frozen=True, kw_only=True)
class RunStatus:
    """Lifecycle status of a CI run."""

    status: RunLifecycle
    conclusion: str | None = None

    @property
    def is_completed(self) -> bool:
        """Whether the run reached a terminal CI status."""
        return self.status == "completed"


@dataclass(frozen=True, kw_only=True)
class Artifact:
    """An artifact attached to a CI run."""

    id: str
    name: str
    size_bytes: int = 0


@dataclass(frozen=True, kw_only=True)
class PipelineProvider(ABC):
    """Abstract base for CI/CD pipeline providers.

    A provider triggers one run per execution request and exposes the run's
    status and artifacts so results can be fetched once it has finished.
    """

    @abstractmethod
    async def trigger_run(self, payload: TriggerPayload) -> TriggeredRun:
        """Trigger a run and locate it once the CI system has created it.

        Args:
            payload: Request identity and expected test cases

        Returns:
            Handle of the newly created run

        """

    @abstractmethod
    async def get_run_status(self, run: TriggeredRun) -> RunStatus:
        """Fetch the current status of a run."""

    @abstractmethod
    async def list_artifacts(self, run: TriggeredRun) -> Sequence[Artifact]:
        """List the artifacts attached to a run."""

    @abstractmethod
    async def download_artifact(self, artifact: Artifact) -> bytes:
        """Download an artifact archive as raw ZIP bytes."""

    async def wait_for_completion(
        self,
        run: TriggeredRun,
        max_attempts: int = 90,
        poll_interval: float = 2,
    ) -> RunStatus:
        """Poll a run until it completes.

        Individual failed polls are logged and count as attempts.

        Args:
            run: Run returned from trigger_run
            max_attempts: Maximum number of status checks (default: 90)
            poll_interval: Seconds between checks (default: 2)

        Returns:
            The completed run status

        Raises:
            TimeoutError: If the run does not complete within max_attempts

        """
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                status = await self.get_run_status(run)
            except (RuntimeError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = exc
                log.warning(
                    "Poll %d/%d for run %s failed: %s",
                    attempt,
                    max_attempts,
                    run.run_id,
                    exc,
                )
            else:
                if status.is_completed:
                    return status
                log.info(
                    "Poll %d/%d: run %s still in status=%s",
                    attempt,
                    max_attempts,
                    run.run_id,
                    status.status,
                )

            if attempt < max_attempts:
                await asyncio.sleep(poll_interval)

        message = f"Run {run.run_id} did not complete after {max_attempts} polls"
        if last_error is not None:
            message = f"{message} (last error: {last_error})"
        raise TimeoutError(message)
