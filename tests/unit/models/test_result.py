"""Tests for result models."""

import pytest

from execution_tracker.models.request import ExecutionRequest, TestCaseRef
from execution_tracker.models.result import SourceLocation, TestResultRecord
from execution_tracker.testing.factories import (
    FailureDetailFactory,
    TestResultRecordFactory,
)


def test_failed_record_requires_failure() -> None:
    """Rejects a Failed record without failure detail."""
    with pytest.raises(ValueError, match="requires failure detail"):
        TestResultRecord(id="TC_001", name="login", status="Failed")


def test_non_failed_record_rejects_failure() -> None:
    """Rejects failure detail on a record that did not fail."""
    with pytest.raises(ValueError, match="cannot carry failure detail"):
        TestResultRecord(
            id="TC_001",
            name="login",
            status="Passed",
            failure=FailureDetailFactory.build(),
        )


def test_rejects_negative_duration() -> None:
    """Rejects a negative duration."""
    with pytest.raises(ValueError, match="negative duration"):
        TestResultRecord(id="TC_001", name="login", status="Passed", duration_ms=-1)


@pytest.mark.parametrize(
    ("status", "terminal"),
    [
        ("Passed", True),
        ("Failed", True),
        ("Skipped", True),
        ("Cancelled", True),
        ("Not Found", True),
        ("Running", False),
        ("Not Started", False),
    ],
)
def test_is_terminal(status: str, terminal: bool) -> None:
    """Only final statuses count towards completion."""
    failure = FailureDetailFactory.build() if status == "Failed" else None
    record = TestResultRecordFactory.build(status=status, failure=failure)

    assert record.is_terminal is terminal


def test_precedence_prefers_xml() -> None:
    """XML-parsed records outrank every other source."""
    xml = TestResultRecordFactory.build(source="xml")
    push = TestResultRecordFactory.build(source="push")
    fallback = TestResultRecordFactory.build(source="fallback")

    assert xml.precedence > push.precedence > fallback.precedence


def test_source_location_display() -> None:
    """Formats a location as file:line."""
    assert SourceLocation(file="test_login.py", line=42).display == "test_login.py:42"


def test_test_case_display_name_defaults_to_id() -> None:
    """Falls back to a generated name when the test case has none."""
    assert TestCaseRef(id="TC_001").display_name == "Test TC_001"
    assert TestCaseRef(id="TC_001", name="Login").display_name == "Login"


def test_execution_request_counts_terminal_expected_records() -> None:
    """Counts only expected ids whose record is terminal."""
    request = ExecutionRequest(
        request_id="req_1",
        expected_test_ids=frozenset(["TC_001", "TC_002", "TC_003"]),
        results_by_id={
            "TC_001": TestResultRecordFactory.build(id="TC_001"),
            "TC_002": TestResultRecordFactory.build(id="TC_002", status="Running"),
        },
    )

    assert request.completed_count == 1
    assert not request.is_terminal


def test_snapshot_is_a_copy() -> None:
    """Mutating a snapshot leaves the live table untouched."""
    record = TestResultRecordFactory.build(id="TC_001")
    request = ExecutionRequest(
        request_id="req_1",
        expected_test_ids=frozenset(["TC_001"]),
        results_by_id={"TC_001": record},
    )

    snapshot = dict(request.snapshot())
    snapshot.pop("TC_001")

    assert request.results_by_id == {"TC_001": record}
