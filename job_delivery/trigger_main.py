"""CLI entrypoint for the sweep, drain and bridge triggers."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from job_delivery.aws import open_aws_clients
from job_delivery.config import JobDeliveryConfig
from job_delivery.runtime import Services, build_services, create_db_pool


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def run_trigger(
    services: Services,
    command: str,
    limit: Optional[int] = None,
    queue_name: Optional[str] = None,
) -> int:
    """
    Run one trigger cycle.

    Args:
        services: Job service and bridge
        command: "sweep", "drain" or "bridge"
        limit: Batch size (per-command default when omitted)
        queue_name: Source queue name for "bridge"

    Returns:
        int: Number of jobs or messages processed
    """
    if command == "sweep":
        return await services.job_service.run_due_store_jobs(limit or 100)
    if command == "drain":
        return await services.job_service.drain_primary_queue(limit or 10)
    if command == "bridge":
        return await services.bridge.poll_queue(queue_name, limit)
    raise ValueError(f"Unknown command: {command}")


async def run_triggers(
    command: str,
    config: JobDeliveryConfig,
    logger: logging.Logger,
    limit: Optional[int] = None,
    queue_name: Optional[str] = None,
    interval_seconds: Optional[float] = None,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Run a trigger once, or repeatedly every ``interval_seconds`` until shutdown.
    """
    db_pool = await create_db_pool(config)

    try:
        async with open_aws_clients(config) as clients:
            services = build_services(config, db_pool, clients, logger=logger)
            await _trigger_loop(
                services, command, logger, limit, queue_name, interval_seconds, shutdown_event
            )
    finally:
        await db_pool.close()


async def _trigger_loop(
    services: Services,
    command: str,
    logger: logging.Logger,
    limit: Optional[int],
    queue_name: Optional[str],
    interval_seconds: Optional[float],
    shutdown_event: Optional[asyncio.Event],
) -> None:
    while True:
        try:
            processed = await run_trigger(services, command, limit, queue_name)
            logger.info(f"{command} processed {processed}")
        except Exception as e:
            if interval_seconds is None:
                raise
            logger.error(f"Error in {command} cycle: {str(e)}", exc_info=True)

        if interval_seconds is None:
            break
        if shutdown_event is not None:
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
                logger.info("Shutdown signal received, exiting trigger loop")
                break
            except asyncio.TimeoutError:
                continue
        await asyncio.sleep(interval_seconds)


def main():
    """Main entrypoint for triggers."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Job Delivery Triggers")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep = subparsers.add_parser("sweep", help="Dispatch due jobs from the store")
    sweep.add_argument("--limit", type=int, default=100, help="Max jobs (default: 100)")

    drain = subparsers.add_parser("drain", help="Drain the primary queue")
    drain.add_argument("--limit", type=int, default=10, help="Max messages (default: 10)")

    bridge = subparsers.add_parser("bridge", help="Forward a source queue")
    bridge.add_argument("--queue", required=True, help="Source queue name (e.g. 'crypto')")
    bridge.add_argument("--limit", type=int, default=None, help="Max messages (max 10)")

    for sub in (sweep, drain, bridge):
        sub.add_argument(
            "--interval-seconds",
            type=float,
            default=None,
            help="Repeat every N seconds instead of running once",
        )

    args = parser.parse_args()

    try:
        config = JobDeliveryConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(
            run_triggers(
                args.command,
                config,
                logger,
                limit=args.limit,
                queue_name=getattr(args, "queue", None),
                interval_seconds=args.interval_seconds,
                shutdown_event=shutdown_event,
            )
        )
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
