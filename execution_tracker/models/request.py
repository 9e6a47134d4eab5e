"""Models for execution requests and their lifecycle."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from execution_tracker.models.result import TestResultRecord
from execution_tracker.providers.base import TriggeredRun

type RunState = Literal[
    "Idle",
    "Starting",
    "Waiting",
    "Running",
    "Completed",
    "Cancelled",
    "TimedOut",
    "Error",
]

TERMINAL_STATES: frozenset[RunState] = frozenset(
    ["Completed", "Cancelled", "TimedOut", "Error"]
)


@dataclass(frozen=True, kw_only=True)
class TestCaseRef:
    """A test case the caller wants executed."""

    __test__ = False

    id: str
    name: str | None = None

    @property
    def display_name(self) -> str:
        """Name to show for the test case before any result arrives."""
        return self.name or f"Test {self.id}"


@dataclass(kw_only=True)
class ExecutionRequest:
    """One triggered run and its live result table.

    Owned and mutated by a single orchestrator; callers should treat it as
    read-only and use ``snapshot`` for a stable view.
    """

    request_id: str
    expected_test_ids: frozenset[str]
    results_by_id: dict[str, TestResultRecord] = field(default_factory=dict)
    state: RunState = "Idle"
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    run: TriggeredRun | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the request reached a final state."""
        return self.state in TERMINAL_STATES

    @property
    def completed_count(self) -> int:
        """Number of expected ids with a terminal result."""
        return sum(
            1
            for test_id in self.expected_test_ids
            if (record := self.results_by_id.get(test_id)) is not None
            and record.is_terminal
        )

    def snapshot(self) -> Mapping[str, TestResultRecord]:
        """Return a copy of the current result table."""
        return dict(self.results_by_id)
