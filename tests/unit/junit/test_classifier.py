"""Tests for the failure classifier."""

from collections.abc import Sequence

import pytest

from execution_tracker.junit.classifier import (
    ASSERTION_STRATEGIES,
    LOCATION_STRATEGIES,
    AssertionStrategy,
    LocationStrategy,
    classify,
    describe_failure,
    placeholder_failure,
)
from execution_tracker.junit.parser import RawFailure
from execution_tracker.models.result import AssertionDetail, SourceLocation
from execution_tracker.testing.factories import FailureDetailFactory


def _strategy[S: (LocationStrategy, AssertionStrategy)](
    strategies: Sequence[S], name: str
) -> S:
    return next(strategy for strategy in strategies if strategy.name == name)


class TestCategory:
    """Tests for failure categorization."""

    @pytest.mark.parametrize(
        ("failure_type", "expected"),
        [
            ("AssertionError", "assertion"),
            ("selenium.common.exceptions.NoSuchElementException", "element"),
            ("ElementNotInteractableException", "element"),
            ("StaleElementReferenceException", "element"),
            ("TimeoutException", "timeout"),
            ("SessionNotCreatedException", "webdriver"),
            ("WebDriverException", "webdriver"),
            ("JavascriptException", "script"),
            ("requests.exceptions.ConnectionError", "network"),
        ],
    )
    def test_known_exception_types(self, failure_type: str, expected: str) -> None:
        """Classifies known exception names, with or without a module prefix."""
        detail = classify(RawFailure(type=failure_type, message="boom"))

        assert detail.category == expected

    def test_generic_type_scans_stack_trace(self) -> None:
        """Finds a known exception in the trace when the type is generic."""
        detail = classify(
            RawFailure(
                type="TestFailure",
                message="failed",
                stack_trace="E   selenium.TimeoutException: waited 30s",
            )
        )

        assert detail.category == "timeout"

    @pytest.mark.parametrize(
        ("failure_type", "message", "expected"),
        [
            ("CustomError", "Request timed out", "timeout"),
            ("CustomError", "Element hidden", "element"),
            ("ApiError", "bad gateway", "network"),
            ("CustomError", "assertion mismatch", "assertion"),
            ("ScriptError", "bad", "script"),
            ("CustomError", "something else", "general"),
        ],
    )
    def test_keyword_fallback(
        self, failure_type: str, message: str, expected: str
    ) -> None:
        """Falls back to keywords in the type and message."""
        detail = classify(RawFailure(type=failure_type, message=message))

        assert detail.category == expected


class TestLocationStrategies:
    """Tests for each stack trace location strategy."""

    def test_python(self) -> None:
        """Extracts pytest-style file:line locations."""
        strategy = _strategy(LOCATION_STRATEGIES, "python")

        location = strategy.extract(
            "tests/test_login.py:42: in test_login\n    assert 1 == 2"
        )

        assert location == SourceLocation(file="test_login.py", line=42)

    def test_javascript(self) -> None:
        """Extracts locations from JavaScript stack frames."""
        strategy = _strategy(LOCATION_STRATEGIES, "javascript")

        location = strategy.extract("    at clickElement (selenium-utils.js:45:12)")

        assert location == SourceLocation(file="selenium-utils.js", line=45)

    def test_java(self) -> None:
        """Extracts locations from Java stack frames."""
        strategy = _strategy(LOCATION_STRATEGIES, "java")

        location = strategy.extract(
            "\tat com.example.LoginTest.testLogin(LoginTest.java:57)"
        )

        assert location == SourceLocation(file="LoginTest.java", line=57)

    def test_no_location(self) -> None:
        """Returns None when no strategy matches."""
        detail = classify(RawFailure(type="AssertionError", message="x"))

        assert detail.location is None


class TestAssertionStrategies:
    """Tests for each assertion extraction strategy."""

    def test_assert_comparison(self) -> None:
        """Splits an assert statement into actual, operator and expected."""
        strategy = _strategy(ASSERTION_STRATEGIES, "assert-comparison")

        assertion = strategy.extract("E       assert 'Error' == 'Success'")

        assert assertion == AssertionDetail(
            actual="Error",
            operator="==",
            expected="Success",
            expression="assert 'Error' == 'Success'",
        )

    def test_quoted_comparison(self) -> None:
        """Extracts a comparison between quoted strings."""
        strategy = _strategy(ASSERTION_STRATEGIES, "quoted-comparison")

        assertion = strategy.extract("Expected 'Dashboard' != 'Login' to hold")

        assert assertion is not None
        assert (assertion.actual, assertion.operator, assertion.expected) == (
            "Dashboard",
            "!=",
            "Login",
        )

    def test_numeric_comparison(self) -> None:
        """Extracts a comparison between numbers."""
        strategy = _strategy(ASSERTION_STRATEGIES, "numeric-comparison")

        assertion = strategy.extract("count check failed: 3 >= 5")

        assert assertion is not None
        assert (assertion.actual, assertion.operator, assertion.expected) == (
            "3",
            ">=",
            "5",
        )

    def test_expected_actual(self) -> None:
        """Pairs Expected: and Actual: lines."""
        strategy = _strategy(ASSERTION_STRATEGIES, "expected-actual")

        assertion = strategy.extract(
            "Mismatch\nExpected: 'Welcome'\nActual: 'Error: Invalid input'"
        )

        assert assertion is not None
        assert assertion.expected == "Welcome"
        assert assertion.actual == "Error: Invalid input"

    def test_bare_assert(self) -> None:
        """Keeps the expression of an assert without a comparison."""
        strategy = _strategy(ASSERTION_STRATEGIES, "bare-assert")

        assertion = strategy.extract("E   assert page.is_logged_in()")

        assert assertion == AssertionDetail(expression="page.is_logged_in()")

    def test_first_matching_strategy_wins(self) -> None:
        """Prefers the assert comparison over later strategies."""
        detail = classify(
            RawFailure(
                type="AssertionError",
                message="x",
                stack_trace="assert 1 == 2\nExpected: 2\nActual: 1",
            )
        )

        assert detail.assertion is not None
        assert detail.assertion.operator == "=="
        assert detail.assertion.expression == "assert 1 == 2"


class TestConfidence:
    """Tests for parsing confidence."""

    def test_structured_with_signal_is_high(self) -> None:
        """Marks structured failures with a known type as high confidence."""
        detail = classify(
            RawFailure(type="AssertionError", message="x", stack_trace="assert 1 == 2"),
            classname="tests.test_math",
            method="test_add",
        )

        assert detail.parsing_confidence == "high"
        assert detail.classname == "tests.test_math"
        assert detail.method == "test_add"

    def test_structured_without_signal_is_low(self) -> None:
        """Marks a generic failure with no extractable detail as low confidence."""
        detail = classify(RawFailure(type="TestFailure", message="it broke"))

        assert detail.parsing_confidence == "low"
        assert detail.category == "general"

    def test_placeholder_is_low(self) -> None:
        """Builds a low-confidence placeholder from raw output."""
        detail = placeholder_failure("AssertionError: assert 1 == 2")

        assert detail.parsing_confidence == "low"
        assert detail.type == "TestFailure"
        assert detail.message == "Test execution failed"
        assert detail.category == "assertion"
        assert detail.stack_trace == "AssertionError: assert 1 == 2"


class TestDescribeFailure:
    """Tests for describe_failure."""

    def test_expected_and_actual(self) -> None:
        """Describes a comparison by its expected and actual values."""
        detail = FailureDetailFactory.build(
            assertion=AssertionDetail(expected="Success", actual="Error")
        )

        assert describe_failure(detail) == "Expected Success, got Error"

    def test_expression_only(self) -> None:
        """Describes a bare assertion by its expression."""
        detail = FailureDetailFactory.build(
            assertion=AssertionDetail(expression="page.ok")
        )

        assert describe_failure(detail) == "Assertion failed: page.ok"

    def test_category_message(self) -> None:
        """Describes a failure without assertion by its category."""
        detail = FailureDetailFactory.build(category="timeout")

        assert describe_failure(detail) == "Operation timed out"

    def test_falls_back_to_type(self) -> None:
        """Uses the exception type for uncategorized failures."""
        detail = FailureDetailFactory.build(category="general", type="KeyError")

        assert describe_failure(detail) == "KeyError"

    @pytest.mark.parametrize("failure_type", ["TestFailure", ""])
    def test_default(self, failure_type: str) -> None:
        """Falls back to a generic message."""
        detail = FailureDetailFactory.build(category="general", type=failure_type)

        assert describe_failure(detail) == "Test execution failed"
        assert describe_failure(None) == "Test execution failed"
