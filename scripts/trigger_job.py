from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta
import json
import sys

from beacon.core.errors import BeaconError
from beacon.core.logging import configure_logging
from beacon.domain.jobs import JobPriority, JobType
from beacon.services.container import build_container


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Enqueue a one-off background job")
    parser.add_argument("job_type", choices=[item.value for item in JobType], help="Job type to run")
    parser.add_argument(
        "--priority",
        default="HIGH",
        choices=[item.name for item in JobPriority],
        help="Queue priority for the job",
    )
    parser.add_argument("--delay-s", type=int, default=0, help="Seconds before the job becomes eligible")
    parser.add_argument("--data", default="{}", help="JSON object passed as job data")
    parser.add_argument("--job-id", default=None, help="Explicit job id for deduplication")
    parser.add_argument(
        "--run-now",
        action="store_true",
        help="Run the processor in this process instead of enqueueing",
    )
    return parser


async def _trigger(args: argparse.Namespace) -> int:
    data = json.loads(args.data)
    if not isinstance(data, dict):
        raise ValueError("--data must be a JSON object")
    container = build_container(register_schedules=False)
    try:
        scheduler = container.monitoring_scheduler
        if args.job_type == JobType.SLACK_CLEANUP_DND.value:
            if container.cleanup_scheduler is None:
                raise BeaconError("focus cleanup is disabled")
            scheduler = container.cleanup_scheduler
        if args.run_now:
            result = await scheduler.run_job(args.job_type, data, 1)
            print(json.dumps(result.as_dict(), indent=2, default=str))
            return 0 if result.success else 1
        handle = await scheduler.trigger_once(
            args.job_type,
            data,
            priority=JobPriority[args.priority],
            delay=timedelta(seconds=args.delay_s) if args.delay_s else None,
            job_id=args.job_id,
        )
        print(f"job_id={handle.job_id} queue={handle.queue_name} enqueued={str(handle.enqueued).lower()}")
        return 0
    finally:
        await container.aclose()


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_trigger(args))
    except Exception as exc:  # noqa: BLE001 - surface trigger failures clearly
        print(f"trigger_job failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
