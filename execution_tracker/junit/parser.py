"""Parser for JUnit XML test reports.

Handles the dialects emitted by pytest, JUnit, TestNG, NUnit and Maven
Surefire: any number of ``testsuite`` elements (as the root, under a
``testsuites`` wrapper, or nested) each holding ``testcase`` children.
"""

import logging
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Literal

log = logging.getLogger(__name__)

# Checked in order; the first token found wins.
FRAMEWORK_TOKENS: Sequence[tuple[str, str]] = (
    ("pytest", "pytest"),
    ("testng", "TestNG"),
    ("junit", "JUnit"),
    ("surefire", "Maven Surefire"),
    ("nunit", "NUnit"),
)

UNKNOWN_FRAMEWORK = "Unknown"

# Raw bytes are decoded by the parser according to the XML declaration.
type ReportDocument = str | bytes


class ParseError(Exception):
    """Raised when a report is not well-formed XML."""


@dataclass(frozen=True, kw_only=True)
class RawFailure:
    """A ``failure`` or ``error`` element before classification."""

    type: str
    message: str
    stack_trace: str = ""


@dataclass(frozen=True, kw_only=True)
class ParsedXmlTest:
    """One ``testcase`` element."""

    name: str
    classname: str
    time: float
    status: Literal["Passed", "Failed", "Skipped"]
    failure: RawFailure | None = None
    system_out: str = ""
    system_err: str = ""


@dataclass(frozen=True, kw_only=True)
class JUnitReport:
    """Tests parsed from one or more report documents."""

    tests: Sequence[ParsedXmlTest]
    framework: str = UNKNOWN_FRAMEWORK


def parse_report(document: ReportDocument) -> JUnitReport:
    """Parse a single JUnit XML document.

    Raises:
        ParseError: If the document is not well-formed XML

    """
    try:
        root = ET.fromstring(document)
    except (ET.ParseError, ValueError) as exc:
        raise ParseError(f"XML parsing failed: {exc}") from exc

    xml_text = (
        document if isinstance(document, str) else ET.tostring(root, encoding="unicode")
    )

    tests: list[ParsedXmlTest] = []
    framework = UNKNOWN_FRAMEWORK

    for index, testsuite in enumerate(root.iter("testsuite")):
        if index == 0:
            framework = detect_framework(xml_text, testsuite)
        tests.extend(_parse_testcase(case) for case in testsuite.findall("testcase"))

    log.debug("Parsed %d test case(s) from JUnit XML (%s)", len(tests), framework)
    return JUnitReport(tests=tests, framework=framework)


def parse_reports(documents: Iterable[ReportDocument]) -> JUnitReport:
    """Parse every document of a run and concatenate their tests.

    A malformed document is logged and skipped so the remaining documents
    still contribute; tests only it covered end up unmatched.
    """
    tests: list[ParsedXmlTest] = []
    framework = UNKNOWN_FRAMEWORK

    for index, document in enumerate(documents):
        try:
            report = parse_report(document)
        except ParseError as exc:
            log.warning("Skipping report document %d: %s", index, exc)
            continue
        if framework == UNKNOWN_FRAMEWORK:
            framework = report.framework
        tests.extend(report.tests)

    return JUnitReport(tests=tests, framework=framework)


def detect_framework(xml_text: str, testsuite: ET.Element) -> str:
    """Guess the producing framework from suite attributes and document text."""
    attributes = " ".join(
        (testsuite.get("name", ""), testsuite.get("generator", ""))
    ).lower()
    content = xml_text.lower()

    for token, framework in FRAMEWORK_TOKENS:
        if token in attributes or token in content:
            return framework
    return UNKNOWN_FRAMEWORK


def _parse_testcase(testcase: ET.Element) -> ParsedXmlTest:
    name = testcase.get("name", "")
    try:
        time = max(0.0, float(testcase.get("time") or 0))
    except ValueError:
        time = 0.0

    failure = testcase.find("failure")
    error = testcase.find("error")

    status: Literal["Passed", "Failed", "Skipped"] = "Passed"
    raw_failure: RawFailure | None = None
    if failure is not None:
        status = "Failed"
        raw_failure = _parse_failure(failure, default_type="TestFailure")
    elif error is not None:
        status = "Failed"
        raw_failure = _parse_failure(error, default_type="TestError")
    elif testcase.find("skipped") is not None:
        status = "Skipped"

    return ParsedXmlTest(
        name=name,
        classname=testcase.get("classname", ""),
        time=time,
        status=status,
        failure=raw_failure,
        system_out=_element_text(testcase.find("system-out")),
        system_err=_element_text(testcase.find("system-err")),
    )


def _parse_failure(element: ET.Element, default_type: str) -> RawFailure:
    text = _element_text(element)
    return RawFailure(
        type=element.get("type") or default_type,
        message=element.get("message") or text.strip(),
        stack_trace=text,
    )


def _element_text(element: ET.Element | None) -> str:
    if element is None:
        return ""
    return "".join(element.itertext())
