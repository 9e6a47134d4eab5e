"""Normalization of raw results from every channel into canonical records."""

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

from pydantic import ValidationError

from execution_tracker.junit.classifier import classify, placeholder_failure
from execution_tracker.junit.parser import (
    JUnitReport,
    ParseError,
    ParsedXmlTest,
    RawFailure,
    parse_report,
)
from execution_tracker.models.payloads import FailurePayload, RawTestPayload
from execution_tracker.models.request import TestCaseRef
from execution_tracker.models.result import (
    FailureDetail,
    ResultSource,
    TestResultRecord,
    TestStatus,
    utc_now,
)

log = logging.getLogger(__name__)

NOT_FOUND_LOGS = "Test result not found in artifacts"

# Checked in order against the lowercased raw status.
STATUS_KEYWORDS: Sequence[tuple[TestStatus, Sequence[str]]] = (
    ("Not Found", ("not found", "not run")),
    ("Passed", ("pass", "success")),
    ("Failed", ("fail", "error")),
    ("Skipped", ("skip", "pending")),
    ("Not Started", ("not started", "queued")),
    ("Running", ("running", "in progress", "in_progress")),
    ("Cancelled", ("cancel",)),
)


@dataclass(frozen=True, kw_only=True)
class JUnitSource:
    """Tests parsed from one or more JUnit XML documents."""

    report: JUnitReport


@dataclass(frozen=True, kw_only=True)
class ResultListSource:
    """JSON report shaped as an object with a ``results`` array."""

    results: Sequence[RawTestPayload]


@dataclass(frozen=True, kw_only=True)
class BareListSource:
    """JSON report that is a bare array of test entries."""

    tests: Sequence[RawTestPayload]


type RawResultSource = JUnitSource | ResultListSource | BareListSource


def normalize_status(raw: str | None, *, failure_indicator: bool = False) -> TestStatus:
    """Map a producer's free-form status onto the canonical vocabulary.

    Unrecognized statuses are treated as Passed unless the producer also
    signalled a failure some other way.

    Args:
        raw: Status as sent by the producer, if any
        failure_indicator: Whether the payload carries failure data

    Returns:
        The canonical status

    """
    value = (raw or "").strip().lower()

    if value == "ok":
        return "Passed"
    for status, keywords in STATUS_KEYWORDS:
        if any(keyword in value for keyword in keywords):
            return status

    if failure_indicator:
        return "Failed"

    log.debug("Unrecognized status %r treated as Passed", raw)
    return "Passed"


def find_match(test_id: str, tests: Sequence[ParsedXmlTest]) -> ParsedXmlTest | None:
    """Find the parsed test belonging to a requested test id.

    An exact name match wins. Otherwise the first test whose name or
    classname contains the id, or whose name is contained in the id, is used.
    """
    if not test_id:
        return None

    for test in tests:
        if test.name == test_id:
            return test

    for test in tests:
        if _fuzzy_match(test_id, test.name, test.classname):
            return test
    return None


def match_to_test_id(
    raw_test: RawTestPayload, requested_ids: Iterable[str]
) -> str | None:
    """Resolve which requested id a loosely identified raw result belongs to."""
    requested = [test_id for test_id in requested_ids if test_id]

    if raw_test.id and raw_test.id in requested:
        return raw_test.id

    for test_id in requested:
        if _fuzzy_match(test_id, raw_test.name, raw_test.title):
            return test_id
    return None


def _fuzzy_match(test_id: str, name: str | None, secondary: str | None) -> bool:
    if name and (test_id in name or name in test_id):
        return True
    return bool(secondary and test_id in secondary)


def record_from_xml_test(
    test_id: str,
    test: ParsedXmlTest,
    *,
    received_at: datetime | None = None,
) -> TestResultRecord:
    """Build an XML-sourced record from a parsed ``testcase``."""
    failure: FailureDetail | None = None
    if test.status == "Failed":
        raw = test.failure or RawFailure(type="TestFailure", message="")
        failure = classify(raw, classname=test.classname, method=test.name)

    logs = "\n".join(part for part in (test.system_out, test.system_err) if part)

    return TestResultRecord(
        id=test_id,
        name=test.name or f"Test {test_id}",
        status=test.status,
        duration_ms=round(test.time * 1000),
        logs=logs,
        failure=failure,
        received_at=received_at or utc_now(),
        source="xml",
    )


def record_from_payload(
    test_id: str,
    payload: RawTestPayload,
    *,
    source: ResultSource,
    name: str | None = None,
    received_at: datetime | None = None,
) -> TestResultRecord:
    """Build a record from a loosely shaped JSON or webhook result."""
    status = normalize_status(
        payload.raw_status, failure_indicator=payload.has_failure_indicator
    )
    failure = _payload_failure(payload) if status == "Failed" else None

    return TestResultRecord(
        id=test_id,
        name=payload.name or payload.title or name or f"Test {test_id}",
        status=status,
        duration_ms=payload.duration_ms,
        logs=payload.logs or payload.raw_output or "",
        failure=failure,
        received_at=received_at or utc_now(),
        source=source,
    )


def _payload_failure(payload: RawTestPayload) -> FailureDetail:
    raw_output = payload.raw_output or payload.logs or ""
    method = payload.name or payload.title

    blocks = ((payload.failure, "TestFailure"), (payload.error, "TestError"))
    for block, default_type in blocks:
        match block:
            case FailurePayload():
                return classify(
                    RawFailure(
                        type=block.type or default_type,
                        message=block.message or block.text or "",
                        stack_trace=block.stack_trace or block.text or raw_output,
                    ),
                    classname=payload.classname,
                    method=method,
                    structured=bool(block.type or block.stack_trace),
                )
            case str() if block:
                return placeholder_failure(
                    raw_output, message=block, failure_type=default_type
                )

    return placeholder_failure(raw_output, message=payload.failure_message)


def record_from_push(
    test_id: str,
    payload: RawTestPayload,
    *,
    name: str | None = None,
    received_at: datetime | None = None,
) -> TestResultRecord:
    """Build a record from a push event, preferring its embedded JUnit XML.

    Embedded XML that fails to parse or holds no matching test case falls
    back to the webhook's own status.
    """
    if (xml_text := payload.embedded_xml) is not None:
        try:
            report = parse_report(xml_text)
        except ParseError as exc:
            log.warning("Embedded JUnit XML for %s is malformed: %s", test_id, exc)
        else:
            if (test := find_match(test_id, report.tests)) is not None:
                return record_from_xml_test(test_id, test, received_at=received_at)
            log.info("Embedded JUnit XML has no test case for %s", test_id)

    return record_from_payload(
        test_id, payload, source="push", name=name, received_at=received_at
    )


def not_found_record(
    test_id: str,
    name: str | None = None,
    *,
    logs: str = NOT_FOUND_LOGS,
) -> TestResultRecord:
    """Synthesize the record of an expected test that produced no result."""
    return TestResultRecord(
        id=test_id,
        name=name or f"Test {test_id}",
        status="Not Found",
        logs=logs,
        source="fallback",
    )


def reconcile(
    sources: Iterable[RawResultSource],
    test_cases: Sequence[TestCaseRef],
    *,
    received_at: datetime | None = None,
) -> dict[str, TestResultRecord]:
    """Produce exactly one record per expected test case from raw sources.

    Args:
        sources: Parsed result sources of a run, in any mix of formats
        test_cases: Test cases the run was expected to execute
        received_at: Receipt time stamped on every produced record

    Returns:
        Records keyed by test id, covering every expected id

    """
    received_at = received_at or utc_now()
    records: dict[str, TestResultRecord] = {}

    for source in sources:
        match source:
            case JUnitSource():
                found = _normalize_junit(source, test_cases, received_at)
            case ResultListSource():
                found = _normalize_payloads(source.results, test_cases, received_at)
            case BareListSource():
                found = _normalize_payloads(source.tests, test_cases, received_at)

        for test_id, record in found.items():
            records[test_id] = merge_record(records.get(test_id), record)

    for test_case in test_cases:
        if test_case.id not in records:
            log.info("No result found for test %s", test_case.id)
            records[test_case.id] = not_found_record(
                test_case.id, test_case.display_name
            )

    return records


def _normalize_junit(
    source: JUnitSource,
    test_cases: Sequence[TestCaseRef],
    received_at: datetime,
) -> Mapping[str, TestResultRecord]:
    records: dict[str, TestResultRecord] = {}
    for test_case in test_cases:
        if (test := find_match(test_case.id, source.report.tests)) is not None:
            records[test_case.id] = record_from_xml_test(
                test_case.id, test, received_at=received_at
            )
    return records


def _normalize_payloads(
    payloads: Sequence[RawTestPayload],
    test_cases: Sequence[TestCaseRef],
    received_at: datetime,
) -> Mapping[str, TestResultRecord]:
    records: dict[str, TestResultRecord] = {}
    for test_case in test_cases:
        payload = next(
            (
                payload
                for payload in payloads
                if match_to_test_id(payload, [test_case.id]) is not None
            ),
            None,
        )
        if payload is not None:
            records[test_case.id] = record_from_payload(
                test_case.id,
                payload,
                source="fallback",
                name=test_case.name,
                received_at=received_at,
            )
    return records


def parse_json_report(text: str) -> RawResultSource:
    """Parse a JSON results file into the matching source variant.

    Entries that are not objects or fail validation are logged and skipped.

    Raises:
        ParseError: If the text is not JSON or has an unrecognized shape

    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"JSON parsing failed: {exc}") from exc

    match data:
        case list():
            return BareListSource(tests=_validate_entries(data))
        case {"results": list() as results}:
            return ResultListSource(results=_validate_entries(results))
        case {"tests": list() as tests}:
            return BareListSource(tests=_validate_entries(tests))
        case _:
            raise ParseError("Unrecognized JSON report shape")


def _validate_entries(entries: Sequence[object]) -> Sequence[RawTestPayload]:
    payloads: list[RawTestPayload] = []
    for index, entry in enumerate(entries):
        try:
            payloads.append(RawTestPayload.model_validate(entry))
        except ValidationError as exc:
            log.warning("Skipping invalid result entry %d: %s", index, exc)
    return payloads


def merge_record(
    existing: TestResultRecord | None, incoming: TestResultRecord
) -> TestResultRecord:
    """Decide which of two records for the same test id to keep.

    Higher-precedence sources win and equal precedence is last-write-wins by
    receipt time. A terminal record is never replaced by a non-terminal one,
    while a lower-precedence terminal record may still resolve a non-terminal
    one.
    """
    if existing is None:
        return incoming
    if existing.is_terminal and not incoming.is_terminal:
        return existing
    if incoming.precedence > existing.precedence:
        return incoming
    if incoming.precedence < existing.precedence:
        if incoming.is_terminal and not existing.is_terminal:
            return incoming
        return existing
    return incoming if incoming.received_at >= existing.received_at else existing
