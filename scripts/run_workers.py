"""Run the master, media-prep and per-platform publish workers."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from src.publisher.config import load_config
from src.publisher.logging import configure_logging
from src.publisher.services.publish import PublishService
from src.publisher.workers.runner import build_worker_pool


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start publish pipeline workers.")
    parser.add_argument("--env-file", default=None, help="Optional .env file to load before settings.")
    parser.add_argument("--log-level", default=None, help="Override PUBLISHER_LOG_LEVEL.")
    parser.add_argument(
        "--submit",
        nargs=2,
        action="append",
        default=[],
        metavar=("PROJECT_ID", "MEDIA_URL"),
        help="Enqueue a publish request on startup (repeatable).",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> None:
    config = load_config(env_file=args.env_file)
    configure_logging(args.log_level or config.settings.log_level)
    pool = build_worker_pool(config)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    service = PublishService(tracer=pool.tracer, queue=pool.queue, projects=config.projects)
    for project_id, media_url in args.submit:
        trace_id = await service.submit(project_id, media_url)
        print(f"queued {media_url} for {project_id}: trace {trace_id}")

    await pool.run(shutdown_event)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    asyncio.run(run(args))
    return 0


if __name__ == "__main__":
    sys.exit(main())
