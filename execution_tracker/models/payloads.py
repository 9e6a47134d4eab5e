"""Pydantic models for raw results delivered by the push channel and artifacts."""

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from pydantic import Field

from execution_tracker.models.base import Model


class FailurePayload(Model):
    """Failure block as sent by a webhook or a JSON report."""

    type: str | None = None
    message: str | None = None
    stack_trace: str | None = Field(default=None, alias="stackTrace")
    text: str | None = None


class JUnitXmlPayload(Model):
    """JUnit XML embedded in a per-test-case push event."""

    available: bool = False
    content: str | None = None


class RawTestPayload(Model):
    """One test result in any of the loosely specified producer shapes.

    ``duration`` is in milliseconds, ``time`` in seconds. The status may be
    carried under ``status``, ``state`` or ``result``.
    """

    id: str | None = None
    name: str | None = None
    title: str | None = None
    classname: str | None = None
    status: str | None = None
    state: str | None = None
    result: str | None = None
    duration: float | None = None
    time: float | None = None
    logs: str | None = None
    raw_output: str | None = Field(default=None, alias="rawOutput")
    failure: FailurePayload | str | None = None
    error: FailurePayload | str | None = None
    failure_message: str | None = Field(default=None, alias="failureMessage")
    failed: bool = False
    junit_xml: JUnitXmlPayload | None = Field(default=None, alias="junitXml")

    @property
    def raw_status(self) -> str | None:
        """First status-like field that is present."""
        return self.status or self.state or self.result

    @property
    def has_failure_indicator(self) -> bool:
        """Whether any field signals a failure independent of the status."""
        return bool(self.failure or self.error or self.failure_message or self.failed)

    @property
    def duration_ms(self) -> int:
        """Duration normalized to whole milliseconds."""
        if self.duration is not None:
            return max(0, round(self.duration))
        if self.time is not None:
            return max(0, round(self.time * 1000))
        return 0

    @property
    def embedded_xml(self) -> str | None:
        """Embedded JUnit XML content when the producer attached one."""
        if self.junit_xml and self.junit_xml.available and self.junit_xml.content:
            return self.junit_xml.content
        return None


class TestCaseResultEvent(Model):
    """Inbound ``test-case-result`` push event."""

    __test__ = False

    request_id: str = Field(alias="requestId", min_length=1)
    test_case_id: str = Field(alias="testCaseId", min_length=1)
    test_case: RawTestPayload = Field(alias="testCase")
    timestamp: datetime | None = None


class BulkResultsEvent(Model):
    """Inbound legacy ``test-results`` push event carrying many results."""

    request_id: str = Field(alias="requestId", min_length=1)
    results: Sequence[dict[str, Any]]
    timestamp: datetime | None = None
