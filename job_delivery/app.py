"""FastAPI application exposing the job delivery triggers and admin API."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from job_delivery.aws import open_aws_clients
from job_delivery.config import JobDeliveryConfig
from job_delivery.fastapi_router import create_jobs_router
from job_delivery.runtime import build_services, create_db_pool

logger = logging.getLogger(__name__)


def create_app(config: Optional[JobDeliveryConfig] = None) -> FastAPI:
    """
    Create the FastAPI application.

    The database pool and AWS clients are opened on startup and closed on
    shutdown.
    """
    if config is None:
        config = JobDeliveryConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Connecting to database...")
        db_pool = await create_db_pool(config)

        try:
            async with open_aws_clients(config) as clients:
                services = build_services(config, db_pool, clients)
                app.state.job_service = services.job_service
                app.state.bridge = services.bridge
                logger.info("Job delivery engine started")
                yield
        finally:
            logger.info("Closing database connection...")
            await db_pool.close()

    app = FastAPI(
        title="Job Delivery Engine",
        description="Unified job delivery over queues, a job store and schedules",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(
        create_jobs_router(
            job_service_factory=lambda: app.state.job_service,
            bridge_factory=lambda: app.state.bridge,
            auth_token=config.auth_token,
        ),
        tags=["jobs"],
    )
    return app
