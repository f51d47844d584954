"""Wiring shared by the HTTP app and the trigger CLI."""

import logging
from typing import Optional

import asyncpg

from job_delivery.aws import AwsClients
from job_delivery.bridge import QueueBridge
from job_delivery.config import JobDeliveryConfig
from job_delivery.dispatcher import ExecutionDispatcher
from job_delivery.service import JobService


async def create_db_pool(config: JobDeliveryConfig) -> asyncpg.Pool:
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


class Services:
    """The job service and queue bridge built over one pool and client set."""

    def __init__(self, job_service: JobService, bridge: QueueBridge):
        self.job_service = job_service
        self.bridge = bridge


def build_services(
    config: JobDeliveryConfig,
    db_pool: asyncpg.Pool,
    clients: AwsClients,
    logger: Optional[logging.Logger] = None,
) -> Services:
    """
    Construct the dispatcher, job service and bridge.

    Args:
        config: Engine configuration
        db_pool: Database connection pool
        clients: Open AWS clients
        logger: Logger passed to every component
    """
    dispatcher = ExecutionDispatcher(
        config,
        clients.lambda_client,
        clients.scheduler,
        credentials=clients.credentials,
        logger=logger,
    )
    job_service = JobService(config, db_pool, dispatcher, clients.sqs, logger=logger)
    bridge = QueueBridge(config, clients.sqs, job_service, logger=logger)
    return Services(job_service, bridge)
