"""Heuristic classification of test failures.

Every heuristic here is best effort: classification never raises, and a
failure with no recognizable signal still gets a ``general`` category and
``low`` parsing confidence.

Location and assertion extraction are ordered strategy lists. Supporting
another framework's stack trace format means appending a strategy, nothing
else changes.
"""

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from execution_tracker.junit.parser import RawFailure
from execution_tracker.models.result import (
    AssertionDetail,
    FailureCategory,
    FailureDetail,
    SourceLocation,
)

log = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Test execution failed"

GENERIC_FAILURE_TYPES = frozenset(["", "TestFailure", "TestError", "Error"])

KNOWN_EXCEPTIONS: Mapping[str, FailureCategory] = {
    "AssertionError": "assertion",
    "AssertionFailedError": "assertion",
    "ComparisonFailure": "assertion",
    "ElementNotInteractableException": "element",
    "NoSuchElementException": "element",
    "StaleElementReferenceException": "element",
    "ElementClickInterceptedException": "element",
    "TimeoutException": "timeout",
    "TimeoutError": "timeout",
    "SessionNotCreatedException": "webdriver",
    "WebDriverException": "webdriver",
    "JavascriptException": "script",
    "ConnectionError": "network",
    "ConnectionRefusedError": "network",
}

# Checked in order against type and message, case-insensitively.
CATEGORY_KEYWORDS: Sequence[tuple[FailureCategory, Sequence[str]]] = (
    ("timeout", ("timeout", "timed out")),
    ("element", ("element",)),
    ("network", ("network", "api", "connection")),
    ("assertion", ("assert",)),
    ("script", ("script",)),
)

CATEGORY_MESSAGES: Mapping[FailureCategory, str] = {
    "assertion": "Assertion failed - value mismatch detected",
    "timeout": "Operation timed out",
    "element": "Element interaction failed",
    "network": "Network or API connection failed",
    "script": "Script execution failed",
    "webdriver": "Browser session or driver failure",
}


@dataclass(frozen=True, kw_only=True)
class LocationStrategy:
    """Regex locating ``file`` and ``line`` groups in a stack trace."""

    name: str
    pattern: re.Pattern[str]

    def extract(self, text: str) -> SourceLocation | None:
        """Return the first location the pattern finds."""
        if match := self.pattern.search(text):
            return SourceLocation(file=match["file"], line=int(match["line"]))
        return None


@dataclass(frozen=True, kw_only=True)
class AssertionStrategy:
    """Regex plus extractor turning a match into an assertion."""

    name: str
    pattern: re.Pattern[str]
    extractor: Callable[[re.Match[str]], AssertionDetail]

    def extract(self, text: str) -> AssertionDetail | None:
        """Return the assertion for the first match, if any."""
        if match := self.pattern.search(text):
            return self.extractor(match)
        return None


def _comparison(match: re.Match[str]) -> AssertionDetail:
    return AssertionDetail(
        actual=_strip_quotes(match["actual"]),
        operator=match["operator"],
        expected=_strip_quotes(match["expected"]),
        expression=match.group(0).strip(),
    )


def _expected_actual(match: re.Match[str]) -> AssertionDetail:
    expected = _strip_quotes(match["expected"])
    actual = _strip_quotes(match["actual"])
    return AssertionDetail(
        expected=expected,
        actual=actual,
        operator="==",
        expression=f"{actual} == {expected}",
    )


def _expression(match: re.Match[str]) -> AssertionDetail:
    return AssertionDetail(expression=match["expression"].strip())


def _strip_quotes(value: str) -> str:
    return value.strip().strip("'\"")


_OPERATOR = r"(?P<operator>==|!=|<=|>=|<|>)"

LOCATION_STRATEGIES: Sequence[LocationStrategy] = (
    LocationStrategy(
        name="python",
        pattern=re.compile(r"(?P<file>[^/\\\s]+\.py):(?P<line>\d+):"),
    ),
    LocationStrategy(
        name="javascript",
        pattern=re.compile(
            r"at [^(\n]*\((?P<file>[^)\n]+\.(?:js|ts|jsx|tsx)):(?P<line>\d+):\d+\)"
        ),
    ),
    LocationStrategy(
        name="java",
        pattern=re.compile(r"at [^(\n]+\((?P<file>[^)\n]+\.java):(?P<line>\d+)\)"),
    ),
)

ASSERTION_STRATEGIES: Sequence[AssertionStrategy] = (
    AssertionStrategy(
        name="assert-comparison",
        pattern=re.compile(
            rf"assert\s+(?P<actual>.+?)\s*{_OPERATOR}\s*(?P<expected>.+?)\s*$",
            re.MULTILINE,
        ),
        extractor=_comparison,
    ),
    AssertionStrategy(
        name="quoted-comparison",
        pattern=re.compile(
            rf"['\"](?P<actual>[^'\"\n]*)['\"]\s*{_OPERATOR}\s*"
            r"['\"](?P<expected>[^'\"\n]*)['\"]"
        ),
        extractor=_comparison,
    ),
    AssertionStrategy(
        name="numeric-comparison",
        pattern=re.compile(
            rf"(?P<actual>\d+(?:\.\d+)?)\s*{_OPERATOR}\s*(?P<expected>\d+(?:\.\d+)?)"
        ),
        extractor=_comparison,
    ),
    AssertionStrategy(
        name="expected-actual",
        pattern=re.compile(
            r"Expected:\s*(?P<expected>.+?)\s*$.*?^\s*Actual:\s*(?P<actual>.+?)\s*$",
            re.MULTILINE | re.DOTALL | re.IGNORECASE,
        ),
        extractor=_expected_actual,
    ),
    AssertionStrategy(
        name="bare-assert",
        pattern=re.compile(r"\bassert\s+(?P<expression>.+?)\s*$", re.MULTILINE),
        extractor=_expression,
    ),
)


def classify(
    failure: RawFailure,
    *,
    classname: str | None = None,
    method: str | None = None,
    structured: bool = True,
) -> FailureDetail:
    """Derive a structured failure description from a raw failure block.

    Args:
        failure: Failure as read from a report or webhook
        classname: Class of the failing test, when known
        method: Name of the failing test, when known
        structured: Whether the failure came from a structured report

    """
    stack_trace = failure.stack_trace or ""
    failure_type = failure.type or "TestFailure"

    category = category_for_type(failure_type)
    if category is None and failure_type in GENERIC_FAILURE_TYPES:
        category = category_from_trace(stack_trace)
    if category is None:
        category = category_from_keywords(failure_type, failure.message)

    location = find_location(stack_trace)
    assertion = find_assertion(stack_trace)

    has_signal = (
        failure_type not in GENERIC_FAILURE_TYPES
        or location is not None
        or assertion is not None
    )

    return FailureDetail(
        type=failure_type,
        category=category,
        message=failure.message or DEFAULT_FAILURE_MESSAGE,
        stack_trace=stack_trace,
        assertion=assertion,
        location=location,
        classname=classname or None,
        method=method or None,
        parsing_confidence="high" if structured and has_signal else "low",
    )


def placeholder_failure(
    raw_output: str = "",
    *,
    message: str | None = None,
    failure_type: str = "TestFailure",
) -> FailureDetail:
    """Low-confidence failure used when a failure carries no structured data."""
    return classify(
        RawFailure(
            type=failure_type,
            message=message or DEFAULT_FAILURE_MESSAGE,
            stack_trace=raw_output,
        ),
        structured=False,
    )


def category_for_type(failure_type: str) -> FailureCategory | None:
    """Look up a known exception name, ignoring any module or package prefix."""
    short_name = failure_type.rsplit(".", 1)[-1].strip()
    return KNOWN_EXCEPTIONS.get(short_name)


def category_from_trace(stack_trace: str) -> FailureCategory | None:
    """Find the first known exception name mentioned in a stack trace."""
    for name, category in KNOWN_EXCEPTIONS.items():
        if name in stack_trace:
            return category
    return None


def category_from_keywords(failure_type: str, message: str) -> FailureCategory:
    """Classify by keywords in the type and message, defaulting to general."""
    haystack = f"{failure_type} {message}".lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in haystack for keyword in keywords):
            return category
    return "general"


def find_location(stack_trace: str) -> SourceLocation | None:
    """Return the first source location any strategy finds."""
    for strategy in LOCATION_STRATEGIES:
        if (location := strategy.extract(stack_trace)) is not None:
            log.debug("Location found by %s strategy: %s", strategy.name, location)
            return location
    return None


def find_assertion(stack_trace: str) -> AssertionDetail | None:
    """Return the assertion from the first strategy that matches."""
    for strategy in ASSERTION_STRATEGIES:
        if (assertion := strategy.extract(stack_trace)) is not None:
            log.debug("Assertion found by %s strategy", strategy.name)
            return assertion
    return None


def describe_failure(detail: FailureDetail | None) -> str:
    """Human-readable one-line insight into a failure."""
    if detail is None:
        return DEFAULT_FAILURE_MESSAGE

    assertion = detail.assertion
    if assertion is not None and assertion.available:
        if assertion.expected and assertion.actual:
            return f"Expected {assertion.expected}, got {assertion.actual}"
        if assertion.expression:
            return f"Assertion failed: {assertion.expression}"

    if category_message := CATEGORY_MESSAGES.get(detail.category):
        return category_message

    if detail.type and detail.type not in GENERIC_FAILURE_TYPES:
        return detail.type
    return DEFAULT_FAILURE_MESSAGE
