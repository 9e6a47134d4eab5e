"""Models for normalized test execution results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

type TestStatus = Literal[
    "Not Started",
    "Running",
    "Passed",
    "Failed",
    "Skipped",
    "Cancelled",
    "Not Found",
]

type ResultSource = Literal["push", "xml", "simulated", "fallback"]

type FailureCategory = Literal[
    "assertion",
    "timeout",
    "element",
    "network",
    "script",
    "webdriver",
    "general",
]

type ParsingConfidence = Literal["high", "low"]

# "Not Run" is accepted as a terminal vocabulary word even though it is
# normalized to "Not Found" before it reaches a record.
TERMINAL_STATUSES: frozenset[str] = frozenset(
    ["Passed", "Failed", "Cancelled", "Skipped", "Not Run", "Not Found"]
)

SOURCE_PRECEDENCE: dict[ResultSource, int] = {
    "xml": 3,
    "push": 2,
    "simulated": 2,
    "fallback": 1,
}


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class SourceLocation:
    """File and line a failure points at."""

    file: str
    line: int

    @property
    def display(self) -> str:
        """Location formatted as ``file:line``."""
        return f"{self.file}:{self.line}"


@dataclass(frozen=True, kw_only=True)
class AssertionDetail:
    """Assertion extracted from a failure's stack trace.

    Comparisons populate ``expected``, ``actual`` and ``operator``; a bare
    ``assert <expr>`` only populates ``expression``.
    """

    available: bool = True
    expected: str | None = None
    actual: str | None = None
    operator: str | None = None
    expression: str | None = None


@dataclass(frozen=True, kw_only=True)
class FailureDetail:
    """Structured description of why a test failed."""

    type: str
    category: FailureCategory
    message: str
    stack_trace: str = ""
    assertion: AssertionDetail | None = None
    location: SourceLocation | None = None
    classname: str | None = None
    method: str | None = None
    parsing_confidence: ParsingConfidence = "low"


@dataclass(frozen=True, kw_only=True)
class TestResultRecord:
    """Canonical result of one test case within one run."""

    __test__ = False

    id: str
    name: str
    status: TestStatus
    duration_ms: int = 0
    logs: str = ""
    failure: FailureDetail | None = None
    received_at: datetime = field(default_factory=utc_now)
    source: ResultSource = "fallback"

    def __post_init__(self) -> None:
        """Reject records that break the failure/status pairing."""
        if self.status == "Failed" and self.failure is None:
            raise ValueError(f"Failed record {self.id!r} requires failure detail")
        if self.status != "Failed" and self.failure is not None:
            raise ValueError(
                f"Record {self.id!r} with status {self.status!r} cannot carry "
                "failure detail"
            )
        if self.duration_ms < 0:
            raise ValueError(f"Record {self.id!r} has negative duration")

    @property
    def is_terminal(self) -> bool:
        """Whether the status counts towards run completion."""
        return self.status in TERMINAL_STATUSES

    @property
    def precedence(self) -> int:
        """Merge precedence of the record's provenance."""
        return SOURCE_PRECEDENCE[self.source]
