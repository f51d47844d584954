"""Unit tests for AWS client construction."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from job_delivery.aws import open_aws_clients


class FakeClientContext:
    """Stands in for an aioboto3 client context manager."""

    def __init__(self, service_name, log):
        self.client = MagicMock(name=service_name)
        self.service_name = service_name
        self.log = log

    async def __aenter__(self):
        self.log.append(("open", self.service_name))
        return self.client

    async def __aexit__(self, *exc_info):
        self.log.append(("close", self.service_name))
        return False


@pytest.fixture
def session():
    session = MagicMock()
    session.log = []
    session.contexts = {}

    def client(service_name, **kwargs):
        context = FakeClientContext(service_name, session.log)
        session.contexts[service_name] = (context, kwargs)
        return context

    session.client.side_effect = client
    session.get_credentials = AsyncMock(return_value="credentials")
    return session


@pytest.mark.asyncio
async def test_open_aws_clients_yields_open_clients(config, session):
    async with open_aws_clients(config, session=session) as clients:
        assert clients.sqs is session.contexts["sqs"][0].client
        assert clients.lambda_client is session.contexts["lambda"][0].client
        assert clients.scheduler is session.contexts["scheduler"][0].client
        assert clients.credentials == "credentials"
        assert ("close", "sqs") not in session.log

    assert [entry for entry in session.log if entry[0] == "close"] == [
        ("close", "scheduler"),
        ("close", "lambda"),
        ("close", "sqs"),
    ]


@pytest.mark.asyncio
async def test_open_aws_clients_passes_endpoint_url(config, session):
    config.aws_endpoint_url = "http://localhost:4566"

    async with open_aws_clients(config, session=session):
        pass

    for _, kwargs in session.contexts.values():
        assert kwargs == {"endpoint_url": "http://localhost:4566"}


@pytest.mark.asyncio
async def test_open_aws_clients_closes_clients_on_error(config, session):
    with pytest.raises(RuntimeError):
        async with open_aws_clients(config, session=session):
            raise RuntimeError("boom")

    assert ("close", "sqs") in session.log
