"""Polling fallback that fetches results from CI run artifacts."""

import asyncio
import io
import logging
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass

import aiohttp

from execution_tracker.junit.parser import ParseError, parse_reports
from execution_tracker.models.request import TestCaseRef
from execution_tracker.models.result import TestResultRecord
from execution_tracker.normalizer import (
    JUnitSource,
    RawResultSource,
    not_found_record,
    parse_json_report,
    reconcile,
)
from execution_tracker.providers.base import Artifact, PipelineProvider, TriggeredRun

log = logging.getLogger(__name__)

RESULT_ARTIFACT_TOKENS = ("test-results", "results", "junit")


def select_result_artifacts(artifacts: Sequence[Artifact]) -> Sequence[Artifact]:
    """Keep the artifacts whose name suggests they carry test results."""
    return [
        artifact
        for artifact in artifacts
        if any(token in artifact.name.lower() for token in RESULT_ARTIFACT_TOKENS)
    ]


def extract_sources(archive: bytes) -> Sequence[RawResultSource]:
    """Read every report out of an artifact ZIP.

    XML reports are preferred; JSON reports are only read from archives
    holding no XML at all.

    Raises:
        zipfile.BadZipFile: If the archive is not a valid ZIP file

    """
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        names = [name for name in zf.namelist() if not name.endswith("/")]
        xml_names = [name for name in names if name.lower().endswith(".xml")]

        if xml_names:
            report = parse_reports(zf.read(name) for name in xml_names)
            log.info(
                "Parsed %d test case(s) from %d XML report(s) (%s)",
                len(report.tests),
                len(xml_names),
                report.framework,
            )
            return [JUnitSource(report=report)] if report.tests else []

        sources: list[RawResultSource] = []
        for name in names:
            if not name.lower().endswith(".json"):
                continue
            try:
                sources.append(
                    parse_json_report(zf.read(name).decode("utf-8", errors="replace"))
                )
            except ParseError as exc:
                log.warning("Skipping report %s: %s", name, exc)
        return sources


@dataclass(frozen=True, kw_only=True)
class ArtifactPoller:
    """Waits for a CI run to finish and turns its artifacts into results."""

    provider: PipelineProvider
    poll_interval: float = 2
    max_attempts: int = 90
    download_attempts: int = 3

    async def poll(
        self, run: TriggeredRun, test_cases: Sequence[TestCaseRef]
    ) -> dict[str, TestResultRecord]:
        """Poll the run until it completes, then collect its results.

        Raises:
            TimeoutError: If the run does not complete within the attempt bound

        """
        log.info(
            "Polling run %s every %ss (max %d attempts)",
            run.run_id,
            self.poll_interval,
            self.max_attempts,
        )
        status = await self.provider.wait_for_completion(
            run, max_attempts=self.max_attempts, poll_interval=self.poll_interval
        )
        log.info("Run %s completed with conclusion=%s", run.run_id, status.conclusion)
        return await self.collect(run, test_cases)

    async def collect(
        self, run: TriggeredRun, test_cases: Sequence[TestCaseRef]
    ) -> dict[str, TestResultRecord]:
        """Download the run's result artifacts and reconcile them.

        Returns:
            One record per test case; test cases without a result are Not Found

        """
        artifacts = select_result_artifacts(await self.provider.list_artifacts(run))
        if not artifacts:
            log.warning("No test result artifacts found for run %s", run.run_id)
            return _all_not_found(
                test_cases, f"No test result artifacts found for run {run.run_id}"
            )

        sources: list[RawResultSource] = []
        for artifact in artifacts:
            log.info(
                "Downloading artifact %s (%d bytes)",
                artifact.name,
                artifact.size_bytes,
            )
            archive = await self._download(artifact)
            if archive is None:
                continue
            try:
                sources.extend(await asyncio.to_thread(extract_sources, archive))
            except zipfile.BadZipFile as exc:
                log.warning("Artifact %s is not a valid ZIP: %s", artifact.name, exc)

        if not sources:
            return _all_not_found(
                test_cases,
                f"No parseable test reports in artifacts of run {run.run_id}",
            )

        return reconcile(sources, test_cases)

    async def _download(self, artifact: Artifact) -> bytes | None:
        """Download an artifact, retrying failed attempts.

        Returns:
            The archive, or None once every attempt failed

        """
        for attempt in range(1, self.download_attempts + 1):
            try:
                return await self.provider.download_artifact(artifact)
            except (RuntimeError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                log.warning(
                    "Download %d/%d of artifact %s failed: %s",
                    attempt,
                    self.download_attempts,
                    artifact.name,
                    exc,
                )
            if attempt < self.download_attempts:
                await asyncio.sleep(self.poll_interval)

        log.error(
            "Skipping artifact %s after %d failed download(s)",
            artifact.name,
            self.download_attempts,
        )
        return None


def _all_not_found(
    test_cases: Sequence[TestCaseRef], logs: str
) -> dict[str, TestResultRecord]:
    return {
        test_case.id: not_found_record(test_case.id, test_case.display_name, logs=logs)
        for test_case in test_cases
    }
