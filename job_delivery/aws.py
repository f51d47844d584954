"""AWS client construction.

Clients come from an aioboto3 session and live inside ``open_aws_clients``;
everything else receives them explicitly, which lets tests substitute fakes.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import aioboto3

from job_delivery.config import JobDeliveryConfig

logger = logging.getLogger(__name__)


class AwsClients:
    """Bundle of the AWS handles the engine needs."""

    def __init__(
        self,
        sqs: Any,
        lambda_client: Any,
        scheduler: Any,
        credentials: Any = None,
    ):
        self.sqs = sqs
        self.lambda_client = lambda_client
        self.scheduler = scheduler
        # Refreshable; freeze per signed request
        self.credentials = credentials


@asynccontextmanager
async def open_aws_clients(
    config: JobDeliveryConfig, session: Optional[aioboto3.Session] = None
) -> AsyncIterator[AwsClients]:
    """
    Open SQS, Lambda and EventBridge Scheduler clients for the configured region.

    The clients are closed when the context exits.
    """
    if session is None:
        session = aioboto3.Session(region_name=config.aws_region)

    client_kwargs = {}
    if config.aws_endpoint_url:
        client_kwargs["endpoint_url"] = config.aws_endpoint_url
        logger.info(f"Using AWS endpoint: {config.aws_endpoint_url}")

    async with session.client("sqs", **client_kwargs) as sqs, session.client(
        "lambda", **client_kwargs
    ) as lambda_client, session.client("scheduler", **client_kwargs) as scheduler:
        yield AwsClients(
            sqs=sqs,
            lambda_client=lambda_client,
            scheduler=scheduler,
            credentials=await session.get_credentials(),
        )
