"""Simulated execution used when there is no real pipeline to observe."""

import asyncio
import logging
import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace

from execution_tracker.models.request import TestCaseRef
from execution_tracker.models.result import (
    AssertionDetail,
    FailureCategory,
    FailureDetail,
    SourceLocation,
    TestResultRecord,
    utc_now,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class FailureArchetype:
    """Template of a plausible browser-test failure."""

    type: str
    category: FailureCategory
    output: str
    assertion: AssertionDetail | None = None


FAILURE_ARCHETYPES: Sequence[FailureArchetype] = (
    FailureArchetype(
        type="ElementNotInteractableException",
        category="element",
        output=(
            "ElementNotInteractableException: element click intercepted: "
            'Element <button id="submit-btn"> is not clickable at point '
            '(123, 456). Other element would receive the click: <div class="overlay">\n'
            "    at clickElement (selenium-utils.js:45:12)\n"
            "    at TestRunner.executeStep (test-runner.js:234:8)"
        ),
    ),
    FailureArchetype(
        type="TimeoutException",
        category="timeout",
        output=(
            "TimeoutException: Timed out after 30 seconds waiting for element "
            "to be clickable\n"
            "Expected: element to be clickable within 30 seconds\n"
            "Actual: element remained disabled\n"
            "    at waitForClickable (selenium-utils.js:78:12)\n"
            "    at TestRunner.waitAndClick (test-runner.js:156:8)"
        ),
    ),
    FailureArchetype(
        type="AssertionError",
        category="assertion",
        output=(
            "AssertionError: Expected element text to contain 'Success'\n"
            "Expected: text containing 'Success'\n"
            "Actual: 'Error: Invalid input provided'\n"
            "    at assertElementText (test-assertions.js:23:8)\n"
            "    at TestRunner.verifyResult (test-runner.js:289:12)"
        ),
        assertion=AssertionDetail(
            expected="Success",
            actual="Error: Invalid input provided",
            operator="contains",
        ),
    ),
    FailureArchetype(
        type="NoSuchElementException",
        category="element",
        output=(
            "NoSuchElementException: Unable to locate element: "
            '{"method":"css selector","selector":"#user-profile"}\n'
            "    at findElement (selenium-utils.js:12:8)\n"
            "    at TestRunner.clickElement (test-runner.js:145:8)"
        ),
    ),
    FailureArchetype(
        type="JavascriptException",
        category="script",
        output=(
            "JavascriptException: javascript error: Cannot read property "
            "'click' of null\n"
            "    at executeScript (selenium-utils.js:91:12)\n"
            "    at TestRunner.executeCustomScript (test-runner.js:367:8)"
        ),
    ),
)


@dataclass(frozen=True, kw_only=True)
class SimulatedStep:
    """A record to emit ``at`` seconds after the simulation starts."""

    at: float
    record: TestResultRecord


def simulated_failure(
    test_case: TestCaseRef, archetype: FailureArchetype, rng: random.Random
) -> FailureDetail:
    """Build high-confidence failure detail from an archetype."""
    return FailureDetail(
        type=archetype.type,
        category=archetype.category,
        message=f"Simulated {archetype.type} failure",
        stack_trace=archetype.output,
        assertion=archetype.assertion,
        location=SourceLocation(
            file=f"test-{test_case.id}.spec.js", line=rng.randint(10, 109)
        ),
        classname=f"TestClass_{test_case.id}",
        method=f"test_{test_case.id.replace('-', '_')}",
        parsing_confidence="high",
    )


def build_timeline(
    test_cases: Sequence[TestCaseRef],
    *,
    stagger: float = 1.0,
    running_time: float = 2.0,
    failure_rate: float = 0.3,
    rng: random.Random | None = None,
) -> Sequence[SimulatedStep]:
    """Plan a Running then terminal record for every test case.

    Test case ``i`` starts running ``i * stagger`` seconds in and finishes
    ``running_time`` seconds later.

    Args:
        test_cases: Test cases to simulate
        stagger: Seconds between the starts of consecutive test cases
        running_time: Seconds each test case stays Running
        failure_rate: Probability that a test case fails
        rng: Random source, seeded in tests for reproducible outcomes

    Returns:
        Steps ordered by emission time

    """
    rng = rng or random.Random()
    steps: list[SimulatedStep] = []

    for index, test_case in enumerate(test_cases):
        name = test_case.display_name
        started = index * stagger
        steps.append(
            SimulatedStep(
                at=started,
                record=TestResultRecord(
                    id=test_case.id,
                    name=name,
                    status="Running",
                    logs=f"Test {test_case.id} is running...",
                    source="simulated",
                ),
            )
        )

        if rng.random() < failure_rate:
            archetype = rng.choice(FAILURE_ARCHETYPES)
            final = TestResultRecord(
                id=test_case.id,
                name=name,
                status="Failed",
                duration_ms=rng.randint(1000, 5999),
                logs=f"FAILED: {name}\nTest execution encountered an error",
                failure=simulated_failure(test_case, archetype, rng),
                source="simulated",
            )
        else:
            final = TestResultRecord(
                id=test_case.id,
                name=name,
                status="Passed",
                duration_ms=rng.randint(1000, 5999),
                logs=f"PASSED: {name}\nTest executed successfully",
                source="simulated",
            )
        steps.append(SimulatedStep(at=started + running_time, record=final))

    return sorted(steps, key=lambda step: step.at)


async def run_simulation(
    steps: Sequence[SimulatedStep],
    emit: Callable[[TestResultRecord], None],
) -> None:
    """Emit each planned record at its time, stamped with the emission time."""
    log.info("Starting simulated execution of %d step(s)", len(steps))
    elapsed = 0.0
    for step in steps:
        if step.at > elapsed:
            await asyncio.sleep(step.at - elapsed)
            elapsed = step.at
        emit(replace(step.record, received_at=utc_now()))
