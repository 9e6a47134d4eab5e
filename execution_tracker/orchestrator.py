"""Run orchestrator coordinating a triggered run and its result channels."""

import asyncio
import logging
import random
import time
import uuid
from collections.abc import (
    Awaitable,
    Callable,
    Coroutine,
    Iterable,
    Mapping,
    Sequence,
)
from dataclasses import dataclass, field, replace
from typing import Any

from pydantic import BaseModel

from execution_tracker.channels.poller import ArtifactPoller
from execution_tracker.channels.push import PushChannel, TestCaseEvent
from execution_tracker.models.request import (
    ExecutionRequest,
    RunState,
    TestCaseRef,
)
from execution_tracker.models.result import TestResultRecord, utc_now
from execution_tracker.normalizer import (
    merge_record,
    not_found_record,
    record_from_push,
)
from execution_tracker.providers.base import (
    PipelineProvider,
    TriggeredRun,
    TriggerPayload,
)
from execution_tracker.simulation import build_timeline, run_simulation

log = logging.getLogger(__name__)

CANCELLED_NOTE = "Test execution was cancelled"


class OrchestratorSettings(BaseModel):
    """Timing and fallback behaviour of a run."""

    webhook_timeout: float = 120.0
    offline_webhook_timeout: float = 30.0
    simulation_delay: float = 2.0
    poll_interval: float = 2.0
    poll_max_attempts: int = 90
    artifact_download_attempts: int = 3
    simulation_stagger: float = 1.0
    simulation_running_time: float = 2.0
    simulation_failure_rate: float = 0.3
    callback_url: str | None = None


@dataclass(frozen=True, kw_only=True)
class PushEventReceived:
    request_id: str
    event: TestCaseEvent


@dataclass(frozen=True, kw_only=True)
class ResultsReceived:
    request_id: str
    records: Sequence[TestResultRecord]


@dataclass(frozen=True, kw_only=True)
class WebhookTimeoutExpired:
    request_id: str


@dataclass(frozen=True, kw_only=True)
class TriggerSucceeded:
    request_id: str
    run: TriggeredRun


@dataclass(frozen=True, kw_only=True)
class TriggerFailed:
    request_id: str
    error: str


@dataclass(frozen=True, kw_only=True)
class PollCompleted:
    request_id: str
    records: Mapping[str, TestResultRecord]


@dataclass(frozen=True, kw_only=True)
class PollFailed:
    request_id: str
    error: str


@dataclass(frozen=True, kw_only=True)
class CancelRequested:
    request_id: str


type Message = (
    PushEventReceived
    | ResultsReceived
    | WebhookTimeoutExpired
    | TriggerSucceeded
    | TriggerFailed
    | PollCompleted
    | PollFailed
    | CancelRequested
)


def new_request_id() -> str:
    """Generate a request id of the form ``req_<epoch ms>_<6 hex chars>``."""
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


@dataclass(kw_only=True)
class RunOrchestrator:
    """Drives one execution request at a time from trigger to final state.

    Every input (push events, timer expiry, trigger and poll outcomes,
    cancellation) is a message handled by a single worker task, so the
    result table is only ever mutated by one synchronous handler at a time.
    Messages for another request id, or arriving after the request reached
    a final state, are dropped.

    Without a provider the run cannot be observed through CI artifacts: if
    the push backend is also unreachable, results are simulated.
    """

    provider: PipelineProvider | None = None
    push_channel: PushChannel | None = None
    health_check: Callable[[], Awaitable[bool]] | None = None
    settings: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    on_update: Callable[[ExecutionRequest], None] | None = None
    rng: random.Random | None = None

    request: ExecutionRequest | None = field(default=None, init=False)
    _test_cases: Sequence[TestCaseRef] = field(default=(), init=False)
    _queue: asyncio.Queue[Message] = field(default_factory=asyncio.Queue, init=False)
    _worker: asyncio.Task[None] | None = field(default=None, init=False)
    _tasks: set[asyncio.Task[Any]] = field(default_factory=set, init=False)
    _cleanup: set[asyncio.Task[Any]] = field(default_factory=set, init=False)
    _finished: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _backend_reachable: bool = field(default=False, init=False)
    _webhook_expired: bool = field(default=False, init=False)

    async def start(
        self,
        test_cases: Sequence[TestCaseRef],
        *,
        requirement_id: str | None = None,
        requirement_name: str | None = None,
    ) -> str:
        """Start a run for the given test cases.

        A start while another request is still active is ignored and returns
        the active request id.

        Args:
            test_cases: Test cases the run is expected to execute
            requirement_id: Requirement the run is executed for, if any
            requirement_name: Display name of the requirement, if any

        Returns:
            Id of the request tracking the run

        """
        if self.request is not None and not self.request.is_terminal:
            log.warning(
                "Request %s is still active, ignoring start", self.request.request_id
            )
            return self.request.request_id

        unique = list({test_case.id: test_case for test_case in test_cases}.values())
        request_id = new_request_id()
        self._test_cases = unique
        self._finished = asyncio.Event()
        self._webhook_expired = False
        self._backend_reachable = False
        self.request = request = ExecutionRequest(
            request_id=request_id,
            expected_test_ids=frozenset(test_case.id for test_case in unique),
            results_by_id={
                test_case.id: TestResultRecord(
                    id=test_case.id,
                    name=test_case.display_name,
                    status="Not Started",
                )
                for test_case in unique
            },
            state="Starting",
            started_at=utc_now(),
        )
        log.info("Starting request %s for %d test case(s)", request_id, len(unique))
        self._ensure_worker()

        if not unique:
            self._finish(request, "Completed")
            return request_id

        self._backend_reachable = await self._check_backend()
        if request.is_terminal:
            return request_id

        if self._backend_reachable and self.push_channel is not None:
            await self._subscribe(self.push_channel, request_id)
            if request.is_terminal:
                return request_id

        request.state = "Waiting"
        self._schedule(
            self._webhook_timeout(), WebhookTimeoutExpired(request_id=request_id)
        )

        if self.provider is not None:
            payload = TriggerPayload(
                request_id=request_id,
                test_case_ids=[test_case.id for test_case in unique],
                requirement_id=requirement_id,
                requirement_name=requirement_name,
                callback_url=self.settings.callback_url,
            )
            self._spawn(self._trigger(self.provider, payload))

        self._notify(request)
        return request_id

    def cancel(self) -> None:
        """Cancel the active request immediately."""
        if self.request is None:
            return
        self._handle(CancelRequested(request_id=self.request.request_id))

    def snapshot(self) -> Mapping[str, TestResultRecord]:
        """Current result table of the request, keyed by test id."""
        if self.request is None:
            return {}
        return self.request.snapshot()

    async def wait_finished(self) -> ExecutionRequest:
        """Wait until the current request reaches a final state."""
        if self.request is None:
            raise RuntimeError("No request has been started")
        await self._finished.wait()
        return self.request

    async def close(self) -> None:
        """Cancel any active request and stop the worker."""
        if self.request is not None and not self.request.is_terminal:
            self.cancel()

        for task in self._tasks:
            task.cancel()
        if self._worker is not None:
            self._worker.cancel()

        pending = [*self._tasks, *self._cleanup]
        if self._worker is not None:
            pending.append(self._worker)
        await asyncio.gather(*pending, return_exceptions=True)
        self._worker = None

    def post(self, message: Message) -> None:
        """Queue a message for the worker."""
        self._queue.put_nowait(message)

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work())

    async def _work(self) -> None:
        while True:
            message = await self._queue.get()
            self._handle(message)

    def _handle(self, message: Message) -> None:
        request = self.request
        if request is None or message.request_id != request.request_id:
            log.debug(
                "Dropping %s for stale request %s",
                type(message).__name__,
                message.request_id,
            )
            return
        if request.is_terminal:
            log.debug(
                "Dropping %s for finished request %s",
                type(message).__name__,
                message.request_id,
            )
            return

        match message:
            case PushEventReceived(event=event):
                self._on_push_event(request, event)
            case ResultsReceived(records=records):
                self._merge(request, records)
            case WebhookTimeoutExpired():
                self._on_webhook_timeout(request)
            case TriggerSucceeded(run=run):
                self._on_triggered(request, run)
            case TriggerFailed(error=error):
                self._finish(request, "Error", error=f"Failed to trigger run: {error}")
            case PollCompleted(records=records):
                self._merge(request, records.values())
                if not request.is_terminal:
                    self._finish(request, "Completed")
            case PollFailed(error=error):
                self._finish(request, "Error", error=error)
            case CancelRequested():
                self._finish(request, "Cancelled")

    def _on_push_event(self, request: ExecutionRequest, event: TestCaseEvent) -> None:
        current = request.results_by_id.get(event.test_case_id)
        if current is None:
            log.warning(
                "Dropping push result for unexpected test case %s", event.test_case_id
            )
            return

        record = record_from_push(
            event.test_case_id,
            event.payload,
            name=current.name,
            received_at=event.received_at,
        )
        self._merge(request, [record])

    def _on_triggered(self, request: ExecutionRequest, run: TriggeredRun) -> None:
        log.info(
            "Request %s running as run %s (%s)",
            request.request_id,
            run.run_id,
            run.html_url or run.status_url,
        )
        request.run = run
        if request.state == "Waiting":
            request.state = "Running"
        if self._webhook_expired and self.provider is not None:
            self._start_polling(request, self.provider, run)
        self._notify(request)

    def _on_webhook_timeout(self, request: ExecutionRequest) -> None:
        self._webhook_expired = True
        log.info(
            "No complete push results for request %s before timeout (%d/%d done)",
            request.request_id,
            request.completed_count,
            len(request.expected_test_ids),
        )

        if self.provider is not None:
            if request.run is not None:
                self._start_polling(request, self.provider, request.run)
            else:
                log.info("Waiting for the trigger to finish before polling")
        elif not self._backend_reachable:
            self._start_simulation(request)
        else:
            self._finish(
                request,
                "TimedOut",
                error="Timed out waiting for results from the push channel",
            )

    def _start_polling(
        self,
        request: ExecutionRequest,
        provider: PipelineProvider,
        run: TriggeredRun,
    ) -> None:
        request.state = "Running"
        poller = ArtifactPoller(
            provider=provider,
            poll_interval=self.settings.poll_interval,
            max_attempts=self.settings.poll_max_attempts,
            download_attempts=self.settings.artifact_download_attempts,
        )
        self._spawn(self._poll(request.request_id, poller, run))

    def _start_simulation(self, request: ExecutionRequest) -> None:
        request.state = "Running"
        steps = build_timeline(
            self._test_cases,
            stagger=self.settings.simulation_stagger,
            running_time=self.settings.simulation_running_time,
            failure_rate=self.settings.simulation_failure_rate,
            rng=self.rng,
        )
        request_id = request.request_id

        def emit(record: TestResultRecord) -> None:
            self.post(ResultsReceived(request_id=request_id, records=(record,)))

        self._spawn(run_simulation(steps, emit))

    def _merge(
        self, request: ExecutionRequest, records: Iterable[TestResultRecord]
    ) -> None:
        changed = False
        for record in records:
            existing = request.results_by_id.get(record.id)
            if existing is None:
                log.warning("Dropping result for unexpected test case %s", record.id)
                continue
            merged = merge_record(existing, record)
            if merged is not existing:
                request.results_by_id[record.id] = merged
                changed = True

        if not changed:
            return
        if request.state == "Waiting":
            request.state = "Running"
        self._notify(request)

        if request.completed_count == len(request.expected_test_ids):
            self._finish(request, "Completed")

    def _finish(
        self,
        request: ExecutionRequest,
        state: RunState,
        *,
        error: str | None = None,
    ) -> None:
        for test_id, record in request.results_by_id.items():
            if record.is_terminal:
                continue
            if state == "Cancelled":
                logs = CANCELLED_NOTE
                if record.logs:
                    logs = f"{record.logs}\n{CANCELLED_NOTE}"
                request.results_by_id[test_id] = replace(
                    record, status="Cancelled", logs=logs, received_at=utc_now()
                )
            else:
                request.results_by_id[test_id] = not_found_record(
                    test_id, record.name, logs=error or "No result received"
                )

        request.state = state
        request.error = error
        request.ended_at = utc_now()
        self._disarm()
        self._release_subscription(request.request_id)

        if error:
            log.error("Request %s finished as %s: %s", request.request_id, state, error)
        else:
            log.info("Request %s finished as %s", request.request_id, state)
        self._notify(request)
        self._finished.set()

    def _disarm(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()

    def _release_subscription(self, request_id: str) -> None:
        if self.push_channel is None or not self._backend_reachable:
            return
        task = asyncio.create_task(self.push_channel.unsubscribe(request_id))
        self._cleanup.add(task)
        task.add_done_callback(self._cleanup.discard)

    def _notify(self, request: ExecutionRequest) -> None:
        if self.on_update is not None:
            self.on_update(request)

    def _webhook_timeout(self) -> float:
        if self._backend_reachable:
            return self.settings.webhook_timeout
        if self.provider is not None:
            return self.settings.offline_webhook_timeout
        return self.settings.simulation_delay

    def _schedule(self, delay: float, message: Message) -> None:
        async def fire() -> None:
            await asyncio.sleep(delay)
            self.post(message)

        self._spawn(fire())

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _check_backend(self) -> bool:
        if self.push_channel is None:
            return False
        if self.health_check is None:
            return True
        return await self.health_check()

    async def _subscribe(self, push_channel: PushChannel, request_id: str) -> None:

        def listener(event: TestCaseEvent) -> None:
            self.post(PushEventReceived(request_id=event.request_id, event=event))

        if not await push_channel.subscribe(request_id, listener):
            for event in push_channel.observe(request_id):
                listener(event)

    async def _trigger(
        self, provider: PipelineProvider, payload: TriggerPayload
    ) -> None:
        try:
            run = await provider.trigger_run(payload)
        except Exception as exc:
            log.error("Failed to trigger run: %s", exc, exc_info=exc)
            self.post(TriggerFailed(request_id=payload.request_id, error=str(exc)))
        else:
            self.post(TriggerSucceeded(request_id=payload.request_id, run=run))

    async def _poll(
        self, request_id: str, poller: ArtifactPoller, run: TriggeredRun
    ) -> None:
        try:
            records = await poller.poll(run, self._test_cases)
        except Exception as exc:
            log.error(
                "Failed to collect results for run %s: %s",
                run.run_id,
                exc,
                exc_info=exc,
            )
            self.post(PollFailed(request_id=request_id, error=str(exc)))
        else:
            self.post(PollCompleted(request_id=request_id, records=records))
