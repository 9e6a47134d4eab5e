"""CLI entry point for tracking a triggered test run."""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from contextlib import AsyncExitStack
from typing import Any

import aiohttp

from execution_tracker.channels.push import PushChannel, PushChannelConfig
from execution_tracker.health import check_backend_health
from execution_tracker.junit.classifier import describe_failure
from execution_tracker.models.request import ExecutionRequest, TestCaseRef
from execution_tracker.orchestrator import OrchestratorSettings, RunOrchestrator
from execution_tracker.providers.base import PipelineProvider
from execution_tracker.providers.loading import (
    ProviderNotFoundError,
    load_provider_manifest,
)

STATUS_SYMBOLS = {
    "Passed": "✅",
    "Failed": "❌",
    "Skipped": "⏭️",
    "Cancelled": "⛔",
    "Not Found": "❓",
    "Not Started": "⏸️",
    "Running": "⏳",
}

FAILING_STATUSES = frozenset(["Failed", "Cancelled", "Not Found"])


def log_results_summary(
    log: logging.Logger, request: ExecutionRequest, test_ids: Sequence[str]
) -> None:
    """Log a formatted summary of the run's results."""
    log.info("=" * 80)
    log.info("Test Results Summary (%s: %s):", request.request_id, request.state)
    log.info("=" * 80)

    if request.run is not None and request.run.html_url:
        log.info("Run URL: %s", request.run.html_url)
    if request.error:
        log.info("Error: %s", request.error)

    for test_id in test_ids:
        record = request.results_by_id[test_id]
        symbol = STATUS_SYMBOLS.get(record.status, "?")
        log.info(
            "%s %s: %s (%.2fs)",
            symbol,
            record.id,
            record.status,
            record.duration_ms / 1000,
        )
        if record.failure is not None:
            log.info("  Failure: %s", describe_failure(record.failure))
            if record.failure.location is not None:
                log.info("  Location: %s", record.failure.location.display)


def parse_test_ids(test_ids: str) -> Sequence[str]:
    """Parse comma-separated test case IDs, dropping duplicates."""
    if not test_ids.strip():
        return ()
    return tuple(dict.fromkeys(s.strip() for s in test_ids.split(",") if s.strip()))


async def connect_push_channel(
    stack: AsyncExitStack, push_url: str
) -> PushChannel | None:
    """Open the push channel when the backend is healthy.

    Returns:
        The connected channel, or None to run without push delivery

    """
    log = logging.getLogger("execution_tracker")
    config = PushChannelConfig(base_url=push_url)
    async with aiohttp.ClientSession(base_url=push_url) as session:
        healthy = await check_backend_health(
            session, config.health_path, config.health_timeout
        )
    if not healthy:
        log.warning("Push backend at %s is unhealthy, continuing without it", push_url)
        return None

    try:
        return await stack.enter_async_context(PushChannel.connect(config))
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        log.warning("Could not connect to push backend at %s: %s", push_url, exc)
        return None


async def run(
    test_ids: Sequence[str],
    provider_key: str | None = None,
    provider_config_json: str | None = None,
    push_url: str | None = None,
    requirement_id: str | None = None,
    requirement_name: str | None = None,
    callback_url: str | None = None,
    settings: OrchestratorSettings | None = None,
) -> int:
    """Trigger a run, track it to a final state and return the exit code."""
    log = logging.getLogger("execution_tracker")

    if not test_ids:
        log.info("No test cases requested")
        print(json.dumps({"total": 0, "results": []}))
        return 0

    settings = settings or OrchestratorSettings()
    if callback_url:
        settings = settings.model_copy(update={"callback_url": callback_url})

    async with AsyncExitStack() as stack:
        provider: PipelineProvider | None = None
        if provider_key:
            log.info("Loading provider: %s", provider_key)
            try:
                manifest = load_provider_manifest(provider_key)
            except ProviderNotFoundError as exc:
                log.error("%s", exc)
                return 1

            config_dict = json.loads(provider_config_json or "{}")
            config = manifest.config_cls(**config_dict)
            provider = await stack.enter_async_context(
                manifest.provider_factory(config)
            )
        else:
            log.info("No provider configured, results come from push or simulation")

        push_channel: PushChannel | None = None
        if push_url:
            push_channel = await connect_push_channel(stack, push_url)

        orchestrator = RunOrchestrator(
            provider=provider,
            push_channel=push_channel,
            settings=settings,
        )
        try:
            await orchestrator.start(
                [TestCaseRef(id=test_id) for test_id in test_ids],
                requirement_id=requirement_id,
                requirement_name=requirement_name,
            )
            request = await orchestrator.wait_finished()
        finally:
            await orchestrator.close()

    log_results_summary(log, request, test_ids)

    output = format_output(request, test_ids)
    print(json.dumps(output, indent=2))

    has_failures = request.state != "Completed" or any(
        request.results_by_id[test_id].status in FAILING_STATUSES
        for test_id in test_ids
    )

    return 1 if has_failures else 0


def format_output(
    request: ExecutionRequest, test_ids: Sequence[str]
) -> dict[str, Any]:
    """Format a finished request for JSON output."""
    all_results: list[dict[str, Any]] = []
    for test_id in test_ids:
        record = request.results_by_id[test_id]
        failure = record.failure
        all_results.append(
            {
                "id": record.id,
                "name": record.name,
                "status": record.status,
                "duration_ms": record.duration_ms,
                "source": record.source,
                "message": describe_failure(failure) if failure else None,
                "category": failure.category if failure else None,
                "location": (
                    failure.location.display
                    if failure and failure.location
                    else None
                ),
            }
        )

    return {
        "request_id": request.request_id,
        "state": request.state,
        "error": request.error,
        "run_url": request.run.html_url if request.run else None,
        "total": len(all_results),
        "passed": sum(1 for r in all_results if r["status"] == "Passed"),
        "failed": sum(1 for r in all_results if r["status"] == "Failed"),
        "skipped": sum(1 for r in all_results if r["status"] == "Skipped"),
        "cancelled": sum(1 for r in all_results if r["status"] == "Cancelled"),
        "not_found": sum(1 for r in all_results if r["status"] == "Not Found"),
        "results": all_results,
    }


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Trigger a test run and track its results"
    )
    parser.add_argument(
        "--test-ids",
        required=True,
        help="Comma-separated test case IDs expected in the run",
    )
    parser.add_argument(
        "--provider",
        help="Provider key (github-actions); results are simulated without one",
    )
    parser.add_argument(
        "--provider-config",
        help="JSON configuration for the provider",
    )
    parser.add_argument(
        "--push-url",
        help="Base URL of the push backend delivering per-test results",
    )
    parser.add_argument(
        "--requirement-id",
        help="Requirement the run is executed for",
    )
    parser.add_argument(
        "--requirement-name",
        help="Display name of the requirement",
    )
    parser.add_argument(
        "--callback-url",
        help="URL the test workflow posts its results to",
    )

    args = parser.parse_args()
    if args.provider and not args.provider_config:
        parser.error("--provider-config is required with --provider")

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    exit_code = asyncio.run(
        run(
            test_ids=parse_test_ids(args.test_ids),
            provider_key=args.provider,
            provider_config_json=args.provider_config,
            push_url=args.push_url,
            requirement_id=args.requirement_id,
            requirement_name=args.requirement_name,
            callback_url=args.callback_url,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
