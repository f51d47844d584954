"""Execution dispatcher: performs one attempt of a job.

The dispatcher is stateless. It never reads or writes job state; it either
returns a ``DispatchResult`` or raises ``DispatchError`` (the attempt failed
and may be retried) or ``ConfigurationError`` (the message can never succeed
as written).
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, NamedTuple, Optional, Union
from urllib.parse import quote, urlencode
from uuid import uuid4

import aiohttp
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.exceptions import BotoCoreError, ClientError

from job_delivery.config import JobDeliveryConfig
from job_delivery.errors import ConfigurationError, DispatchError
from job_delivery.messages import (
    FunctionUrlExecution,
    InvokeFunctionExecution,
    LambdaProxyMessage,
    RestEndpointExecution,
    ScheduledTriggerExecution,
    UnifiedJobMessage,
)

ACCEPTED_INVOKE_STATUSES = (200, 202, 204)


class DispatchResult(NamedTuple):
    """Outcome of a successful attempt."""

    # Resource created by the attempt (schedule name), kept for cleanup
    external_ref: Optional[str] = None


class ExecutionDispatcher:
    """Dispatches unified job messages by execution type."""

    def __init__(
        self,
        config: JobDeliveryConfig,
        lambda_client: Any,
        scheduler_client: Any,
        credentials: Any = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            config: Engine configuration (region, scheduler ARNs, HTTP timeout)
            lambda_client: Awaitable Lambda client
            scheduler_client: Awaitable EventBridge Scheduler client
            credentials: Refreshable session credentials for function URL signing
            logger: Logger instance
        """
        self.config = config
        self.lambda_client = lambda_client
        self.scheduler_client = scheduler_client
        self.credentials = credentials
        self.logger = logger or logging.getLogger(__name__)

    async def dispatch(self, message: UnifiedJobMessage) -> DispatchResult:
        """
        Perform one attempt of the job described by ``message``.

        Raises:
            ConfigurationError: A required execution field or setting is missing
            DispatchError: The attempt did not succeed
        """
        execution = message.execution
        self.logger.info(
            f"Dispatching job {message.metadata.job_id} (type={execution.type})"
        )
        message.ensure_complete()

        if isinstance(execution, InvokeFunctionExecution):
            await self._invoke_function(execution, message.lambda_proxy_message)
            return DispatchResult()
        if isinstance(execution, FunctionUrlExecution):
            await self._invoke_function_url(execution, message.lambda_proxy_message)
            return DispatchResult()
        if isinstance(execution, RestEndpointExecution):
            await self._call_rest_endpoint(execution, message.lambda_proxy_message)
            return DispatchResult()
        if isinstance(execution, ScheduledTriggerExecution):
            schedule_name = await self._create_scheduled_trigger(execution, message)
            return DispatchResult(external_ref=schedule_name)

        raise ConfigurationError(f"Unknown execution type: {execution.type}")

    async def delete_scheduled_trigger(self, schedule_name: str) -> bool:
        """
        Delete a schedule created by an earlier attempt.

        Returns:
            False if the schedule no longer exists (already fired), True otherwise
        """
        try:
            await self.scheduler_client.delete_schedule(Name=schedule_name)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                return False
            raise DispatchError(f"Failed to delete schedule {schedule_name}: {e}") from e
        except BotoCoreError as e:
            raise DispatchError(f"Failed to delete schedule {schedule_name}: {e}") from e

        self.logger.info(f"Schedule deleted: {schedule_name}")
        return True

    async def _invoke_function(
        self, execution: InvokeFunctionExecution, envelope: LambdaProxyMessage
    ) -> None:
        payload = envelope.model_dump(mode="json", by_alias=True)

        try:
            response = await self.lambda_client.invoke(
                FunctionName=execution.function_name,
                InvocationType=execution.invocation_type,
                Payload=json.dumps(payload).encode("utf-8"),
            )
        except (BotoCoreError, ClientError) as e:
            raise DispatchError(
                f"Function invoke failed for {execution.function_name}: {e}"
            ) from e

        status_code = response.get("StatusCode")
        function_error = response.get("FunctionError")
        if status_code not in ACCEPTED_INVOKE_STATUSES or function_error:
            raise DispatchError(
                f"Function invoke failed: StatusCode={status_code}, "
                f"FunctionError={function_error}",
                status_code=status_code,
            )

        self.logger.info(f"Function invoked successfully: {execution.function_name}")

    async def _invoke_function_url(
        self, execution: FunctionUrlExecution, envelope: LambdaProxyMessage
    ) -> None:
        if self.credentials is None:
            raise ConfigurationError(
                "AWS credentials are required for invoke-function-url",
                field="credentials",
            )

        url = _join_url(execution.function_url, envelope)
        body = envelope.decoded_body()
        headers = _request_headers(envelope, body)

        request = AWSRequest(
            method=envelope.http_method.upper(), url=url, data=body, headers=headers
        )
        try:
            frozen = await self.credentials.get_frozen_credentials()
            SigV4Auth(frozen, "lambda", self.config.aws_region).add_auth(request)
        except BotoCoreError as e:
            raise DispatchError(f"Failed to sign request for {url}: {e}") from e

        await self._send_http(
            envelope.http_method,
            url,
            dict(request.headers.items()),
            body,
            lambda status: 200 <= status < 300,
        )
        self.logger.info(f"Function URL invoked successfully: {execution.function_url}")

    async def _call_rest_endpoint(
        self, execution: RestEndpointExecution, envelope: LambdaProxyMessage
    ) -> None:
        url = _join_url(execution.base_url, envelope)
        body = envelope.decoded_body()

        await self._send_http(
            envelope.http_method,
            url,
            _request_headers(envelope, body),
            body,
            execution.accepts_status,
        )
        self.logger.info(f"REST endpoint called successfully: {url}")

    async def _create_scheduled_trigger(
        self, execution: ScheduledTriggerExecution, message: UnifiedJobMessage
    ) -> str:
        if not self.config.scheduler_role_arn:
            raise ConfigurationError(
                "Scheduler role ARN not configured", field="scheduler_role_arn"
            )
        if not self.config.scheduler_target_arn:
            raise ConfigurationError(
                "Scheduler target ARN not configured", field="scheduler_target_arn"
            )

        job_id = message.metadata.job_id or str(uuid4())
        schedule_name = f"job-{job_id}-{int(time.time() * 1000)}"

        try:
            response = await self.scheduler_client.create_schedule(
                Name=schedule_name,
                ScheduleExpression=execution.resolved_expression(),
                Target={
                    "Arn": self.config.scheduler_target_arn,
                    "RoleArn": self.config.scheduler_role_arn,
                    "Input": execution.target_job.to_json(),
                },
                FlexibleTimeWindow={"Mode": "OFF"},
                ActionAfterCompletion="DELETE",
                Description=f"Scheduled job: {job_id}",
            )
        except (BotoCoreError, ClientError) as e:
            raise DispatchError(f"Failed to create schedule {schedule_name}: {e}") from e

        self.logger.info(
            f"Schedule created: {schedule_name}, ARN: {response.get('ScheduleArn')}"
        )
        return schedule_name

    async def _send_http(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[Union[str, bytes]],
        accepts: Callable[[int], bool],
    ) -> None:
        timeout = aiohttp.ClientTimeout(total=self.config.http_timeout_seconds)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method.upper(), url, headers=headers, data=body
                ) as resp:
                    response_body = await resp.text()

                    if not accepts(resp.status):
                        raise DispatchError(
                            f"HTTP {resp.status} from {method.upper()} {url}",
                            status_code=resp.status,
                            response_body=response_body,
                        )
        except aiohttp.ClientError as e:
            raise DispatchError(f"Network error calling {url}: {e}") from e
        except asyncio.TimeoutError as e:
            raise DispatchError(
                f"Timed out after {self.config.http_timeout_seconds}s calling {url}"
            ) from e


def _join_url(base_url: str, envelope: LambdaProxyMessage) -> str:
    url = base_url.rstrip("/") + envelope.normalized_path
    if envelope.query_string_parameters:
        url += "?" + urlencode(envelope.query_string_parameters, quote_via=quote)
    return url


def _request_headers(
    envelope: LambdaProxyMessage, body: Optional[Union[str, bytes]]
) -> Dict[str, str]:
    # Host is derived from the target URL, never from the original request
    headers = {k: v for k, v in envelope.headers.items() if k.lower() != "host"}
    if body is not None and not any(k.lower() == "content-type" for k in headers):
        headers["Content-Type"] = "application/json"
    return headers
