"""Tests for the artifact poller."""

import zipfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

import pytest

from execution_tracker.channels.poller import (
    ArtifactPoller,
    extract_sources,
    select_result_artifacts,
)
from execution_tracker.models.request import TestCaseRef
from execution_tracker.normalizer import BareListSource, JUnitSource, ResultListSource
from execution_tracker.providers.base import (
    Artifact,
    PipelineProvider,
    RunStatus,
    TriggeredRun,
    TriggerPayload,
)
from execution_tracker.testing.junit import (
    artifact_zip,
    junit_document,
    junit_testcase,
    junit_testsuite,
)

RUN = TriggeredRun(run_id="42", status_url="https://ci.test/runs/42")


@dataclass(frozen=True, kw_only=True)
class ArtifactProvider(PipelineProvider):
    """Provider serving a completed run with fixed artifacts."""

    artifacts: Sequence[Artifact] = ()
    archives: Mapping[str, bytes] = field(default_factory=dict)
    statuses: list[RunStatus] = field(default_factory=list)
    failures: dict[str, list[Exception]] = field(default_factory=dict)
    downloads: list[str] = field(default_factory=list)

    async def trigger_run(
        self, payload: TriggerPayload
    ) -> TriggeredRun:  # pragma: no cover
        """Return the fixed run."""
        return RUN

    async def get_run_status(self, run: TriggeredRun) -> RunStatus:
        """Return queued statuses, then completed."""
        if self.statuses:
            return self.statuses.pop(0)
        return RunStatus(status="completed", conclusion="success")

    async def list_artifacts(self, run: TriggeredRun) -> Sequence[Artifact]:
        """Return the configured artifacts."""
        return self.artifacts

    async def download_artifact(self, artifact: Artifact) -> bytes:
        """Return the archive registered for the artifact, failing first if told."""
        self.downloads.append(artifact.id)
        if pending := self.failures.get(artifact.id):
            raise pending.pop(0)
        return self.archives[artifact.id]


TEST_CASES = [TestCaseRef(id="TC_001"), TestCaseRef(id="TC_002", name="Checkout")]


def test_select_result_artifacts() -> None:
    """Keeps only artifacts named like result bundles."""
    artifacts = [
        Artifact(id="1", name="Test-Results"),
        Artifact(id="2", name="coverage-report"),
        Artifact(id="3", name="junit-xml"),
        Artifact(id="4", name="e2e-results"),
    ]

    selected = select_result_artifacts(artifacts)

    assert [artifact.id for artifact in selected] == ["1", "3", "4"]


def test_extract_sources_prefers_xml() -> None:
    """Reads every XML report and ignores JSON next to it."""
    archive = artifact_zip(
        {
            "reports/a.xml": junit_testsuite("a", [junit_testcase("TC_001")]),
            "reports/b.xml": junit_testsuite("b", [junit_testcase("TC_002")]),
            "results.json": '[{"id": "TC_001", "status": "failed"}]',
        }
    )

    sources = extract_sources(archive)

    assert len(sources) == 1
    source = sources[0]
    assert isinstance(source, JUnitSource)
    assert [test.name for test in source.report.tests] == ["TC_001", "TC_002"]


def test_extract_sources_reads_json_without_xml() -> None:
    """Falls back to JSON reports when the archive holds no XML."""
    archive = artifact_zip(
        {
            "results.json": '{"results": [{"id": "TC_001", "status": "passed"}]}',
            "more.json": '[{"id": "TC_002", "status": "passed"}]',
            "broken.json": "{",
            "notes.txt": "ignored",
        }
    )

    sources = extract_sources(archive)

    assert sorted(type(source).__name__ for source in sources) == sorted(
        [ResultListSource.__name__, BareListSource.__name__]
    )


def test_extract_sources_rejects_bad_zip() -> None:
    """Raises BadZipFile for an archive that is not a ZIP."""
    with pytest.raises(zipfile.BadZipFile):
        extract_sources(b"not a zip")


async def test_poll_waits_for_completion_then_collects() -> None:
    """Polls the run status until completed before reading artifacts."""
    provider = ArtifactProvider(
        statuses=[RunStatus(status="pending"), RunStatus(status="in_progress")],
        artifacts=[Artifact(id="1", name="test-results")],
        archives={
            "1": artifact_zip(
                {
                    "junit.xml": junit_testsuite(
                        "s",
                        [
                            junit_testcase("TC_001"),
                            junit_testcase(
                                "TC_002", failure=("AssertionError", "x", "")
                            ),
                        ],
                    )
                }
            )
        },
    )
    poller = ArtifactPoller(provider=provider, poll_interval=0.001, max_attempts=5)

    records = await poller.poll(RUN, TEST_CASES)

    assert provider.statuses == []
    assert records["TC_001"].status == "Passed"
    assert records["TC_002"].status == "Failed"
    assert records["TC_002"].source == "xml"


async def test_poll_raises_when_run_never_completes() -> None:
    """Gives up after the attempt bound."""
    provider = ArtifactProvider(statuses=[RunStatus(status="pending")] * 3)
    poller = ArtifactPoller(provider=provider, poll_interval=0.001, max_attempts=2)

    with pytest.raises(TimeoutError, match="did not complete after 2 polls"):
        await poller.poll(RUN, TEST_CASES)


async def test_collect_without_artifacts_reports_not_found() -> None:
    """Marks every test case Not Found when the run has no result artifacts."""
    provider = ArtifactProvider(artifacts=[Artifact(id="1", name="coverage")])

    records = await ArtifactPoller(provider=provider).collect(RUN, TEST_CASES)

    assert {record.status for record in records.values()} == {"Not Found"}
    assert records["TC_002"].name == "Checkout"
    assert "No test result artifacts" in records["TC_001"].logs


async def test_collect_with_unreadable_artifacts_reports_not_found() -> None:
    """Marks every test case Not Found when no artifact holds a report."""
    provider = ArtifactProvider(
        artifacts=[
            Artifact(id="1", name="test-results"),
            Artifact(id="2", name="junit"),
        ],
        archives={"1": b"garbage", "2": artifact_zip({"readme.md": "nothing"})},
    )

    records = await ArtifactPoller(provider=provider).collect(RUN, TEST_CASES)

    assert {record.status for record in records.values()} == {"Not Found"}
    assert "No parseable test reports" in records["TC_001"].logs


async def test_collect_merges_every_artifact() -> None:
    """Combines results spread across several artifacts."""
    provider = ArtifactProvider(
        artifacts=[
            Artifact(id="1", name="unit-test-results"),
            Artifact(id="2", name="e2e-test-results"),
        ],
        archives={
            "1": artifact_zip(
                {"a.xml": junit_testsuite("a", [junit_testcase("TC_001")])}
            ),
            "2": artifact_zip({"b.json": '[{"id": "TC_002", "status": "skipped"}]'}),
        },
    )

    records = await ArtifactPoller(provider=provider).collect(RUN, TEST_CASES)

    assert records["TC_001"].status == "Passed"
    assert records["TC_002"].status == "Skipped"


def _two_shard_provider(failures: dict[str, list[Exception]]) -> ArtifactProvider:
    return ArtifactProvider(
        artifacts=[
            Artifact(id="1", name="test-results-1"),
            Artifact(id="2", name="test-results-2"),
        ],
        archives={
            "1": artifact_zip(
                {"a.xml": junit_testsuite("a", [junit_testcase("TC_001")])}
            ),
            "2": artifact_zip(
                {"b.xml": junit_testsuite("b", [junit_testcase("TC_002")])}
            ),
        },
        failures=failures,
    )


async def test_collect_retries_failed_downloads() -> None:
    """Retries an artifact whose download failed transiently."""
    provider = _two_shard_provider(
        {"2": [RuntimeError("Failed to download artifact: 502 Bad Gateway")]}
    )
    poller = ArtifactPoller(provider=provider, poll_interval=0.001)

    records = await poller.collect(RUN, TEST_CASES)

    assert records["TC_001"].status == "Passed"
    assert records["TC_002"].status == "Passed"
    assert provider.downloads.count("2") == 2


async def test_collect_skips_artifact_that_keeps_failing() -> None:
    """Keeps the other artifacts' results when one never downloads."""
    provider = _two_shard_provider(
        {"2": [RuntimeError("Failed to download artifact: 502 Bad Gateway")] * 5}
    )
    poller = ArtifactPoller(
        provider=provider, poll_interval=0.001, download_attempts=2
    )

    records = await poller.poll(RUN, TEST_CASES)

    assert records["TC_001"].status == "Passed"
    assert records["TC_001"].source == "xml"
    assert records["TC_002"].status == "Not Found"
    assert provider.downloads.count("2") == 2


def test_extract_sources_honours_declared_encoding() -> None:
    """Parses reports written in UTF-16 as their declaration says."""
    document = junit_document(
        junit_testsuite(
            "nunit", [junit_testcase("TC_001", classname="Tests.Ünïcode")]
        )
    ).replace('encoding="utf-8"', 'encoding="utf-16"')
    archive = artifact_zip({"TestResult.xml": document.encode("utf-16")})

    sources = extract_sources(archive)

    assert len(sources) == 1
    source = sources[0]
    assert isinstance(source, JUnitSource)
    assert [test.classname for test in source.report.tests] == ["Tests.Ünïcode"]
