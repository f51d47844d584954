"""High-level service layer for job operations."""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import UUID, uuid4

import asyncpg

from job_delivery.config import JobDeliveryConfig
from job_delivery.dispatcher import ExecutionDispatcher
from job_delivery.errors import (
    ConfigurationError,
    DispatchError,
    JobNotFoundError,
    MessageValidationError,
    TenantNotFoundError,
)
from job_delivery.messages import (
    JobMetadata,
    LambdaProxyMessage,
    RestEndpointExecution,
    ScheduledTriggerExecution,
    UnifiedJobMessage,
)
from job_delivery.models import Job, JobCreationMode, JobStatus
from job_delivery.retry import decide_retry
from job_delivery.signing import build_canonical_string, serialize_body, sign_request
from job_delivery.store import JobStore

DEFAULT_CALLBACK_STATUSES = [200, 201]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobService:
    """High-level API for job operations."""

    def __init__(
        self,
        config: JobDeliveryConfig,
        db_pool: asyncpg.Pool,
        dispatcher: ExecutionDispatcher,
        sqs_client: Any,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.store = JobStore(db_pool)
        self.dispatcher = dispatcher
        self.sqs_client = sqs_client
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    async def create_job(
        self,
        tenant_id: Optional[str],
        message: Union[UnifiedJobMessage, Dict[str, Any]],
        mode: Union[JobCreationMode, str] = JobCreationMode.BOTH,
        validate: bool = True,
    ) -> Optional[Job]:
        """
        Create a new job.

        Args:
            tenant_id: Tenant identifier, used when the message carries none
            message: Unified job message (model or wire dict)
            mode: Where to write the job: "db", "sqs" or "both"
            validate: Check required execution fields before writing

        Returns:
            Job: The stored row, or None in queue-only mode

        Raises:
            ConfigurationError: If a required field or the primary queue URL is missing
            MessageValidationError: If the message does not parse
        """
        mode = JobCreationMode(mode)
        if not isinstance(message, UnifiedJobMessage):
            message = UnifiedJobMessage.from_wire(message)
        else:
            message = message.model_copy(deep=True)

        if validate:
            message.ensure_complete()

        if mode.writes_queue and not self.config.primary_queue_url:
            raise ConfigurationError(
                "Primary queue URL not configured", field="primary_queue_url"
            )

        now = self.now()
        metadata = message.metadata
        metadata.job_id = metadata.job_id or str(uuid4())
        metadata.created_at = now.isoformat()
        metadata.retry_count = 0
        metadata.message_group_id = metadata.message_group_id or message.execution.type
        if metadata.tenant_id is None:
            metadata.tenant_id = tenant_id

        if metadata.idempotency_key:
            existing = await self.store.find_in_flight_job(
                metadata.tenant_id, metadata.idempotency_key
            )
            if existing:
                self.logger.info(
                    f"Job with idempotency key {metadata.idempotency_key} already "
                    f"in flight as {existing.id}, skipping create"
                )
                return existing

        job = None
        if mode.writes_store:
            job = await self.store.insert_job(
                id=_row_id(metadata.job_id),
                tenant_id=metadata.tenant_id,
                execution_type=message.execution.type,
                message=message.to_wire(),
                message_group_id=metadata.message_group_id,
                status=JobStatus.PENDING,
                max_retries=self.config.max_retries,
                next_retry_at=now,
                idempotency_key=metadata.idempotency_key,
            )
            self.logger.info(
                f"Stored job {job.id} for tenant {metadata.tenant_id} "
                f"(type={job.execution_type})"
            )

        if mode.writes_queue:
            try:
                await self._publish(message)
            except Exception as e:
                if job is None:
                    raise
                # The stored row still reaches the sweep
                self.logger.error(
                    f"Failed to publish job {job.id} to primary queue: {str(e)}",
                    exc_info=True,
                )

        return job

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        return await self.store.get_job(job_id)

    async def list_jobs(
        self,
        *,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[Job]:
        """
        List jobs with optional filters.

        Raises:
            MessageValidationError: If status is not a known job status
        """
        if status:
            try:
                status = JobStatus(status.upper()).value
            except ValueError as e:
                raise MessageValidationError(f"Invalid status: {status}") from e
        return await self.store.list_jobs(tenant_id=tenant_id, status=status, limit=limit)

    async def run_due_store_jobs(self, limit: int = 100) -> int:
        """
        Claim due jobs from the store and dispatch them.

        Claimed rows stay locked for the whole sweep, so concurrent sweeps
        split the due set between them without overlap.

        Returns the number of jobs processed.
        """
        now = self.now()
        processed = 0

        async with self.store.transaction() as conn:
            jobs = await self.store.claim_due_jobs(conn, limit, now)
            if jobs:
                self.logger.info(f"Claimed {len(jobs)} due jobs")

            for job in jobs:
                try:
                    # Savepoint per job so one failure does not abort the sweep
                    async with conn.transaction():
                        await self._process_store_job(conn, job, now)
                    processed += 1
                except Exception as e:
                    self.logger.error(
                        f"Error processing job {job.id}: {str(e)}", exc_info=True
                    )

        return processed

    async def drain_primary_queue(self, limit: int = 10) -> int:
        """
        Receive and dispatch messages from the primary queue.

        Returns the number of messages processed.
        """
        queue_url = self.config.primary_queue_url
        if not queue_url:
            raise ConfigurationError(
                "Primary queue URL not configured", field="primary_queue_url"
            )

        response = await self.sqs_client.receive_message(
            QueueUrl=queue_url,
            MaxNumberOfMessages=max(1, min(limit, 10)),
            AttributeNames=["All"],
        )
        messages = response.get("Messages", [])
        if not messages:
            self.logger.debug("No messages received from primary queue")
            return 0

        self.logger.info(f"Received {len(messages)} messages from primary queue")

        processed = 0
        for sqs_message in messages:
            try:
                if await self._process_queue_message(queue_url, sqs_message):
                    processed += 1
            except Exception as e:
                self.logger.error(
                    f"Error processing message {sqs_message.get('MessageId')}: {str(e)}",
                    exc_info=True,
                )

        return processed

    async def retry_job(self, job_id: UUID) -> Job:
        """
        Reopen a job for immediate processing.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        job = await self.store.reset_job_for_retry(job_id, self.now())
        self.logger.info(f"Job {job_id} reset for retry")
        return job

    async def deadletter_job(self, job_id: UUID) -> Job:
        """
        Mark a job as dead, deleting any schedule it created.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        job = await self.store.update_job_dead(job_id)
        self.logger.warning(f"Job {job_id} marked as dead")

        if job.external_ref:
            try:
                await self.dispatcher.delete_scheduled_trigger(job.external_ref)
            except DispatchError as e:
                self.logger.error(
                    f"Failed to delete schedule {job.external_ref} for job {job_id}: {str(e)}"
                )

        return job

    async def process_scheduled_message(
        self, message: Union[UnifiedJobMessage, Dict[str, Any]]
    ) -> bool:
        """
        Dispatch a job delivered by a fired schedule.

        Schedules fire once, so a failed attempt is persisted to the store
        as a retrying row instead of being retried here.

        Returns:
            bool: True if the attempt succeeded
        """
        if not isinstance(message, UnifiedJobMessage):
            message = UnifiedJobMessage.from_wire(message)

        if (
            isinstance(message.execution, ScheduledTriggerExecution)
            and message.execution.target_job is not None
        ):
            message = message.execution.target_job

        try:
            await self.dispatcher.dispatch(message)
        except Exception as e:
            self.logger.error(
                f"Scheduled job {message.metadata.job_id} failed: {str(e)}",
                exc_info=not isinstance(e, (DispatchError, ConfigurationError)),
            )
            await self._persist_failure(message, e)
            return False

        self.logger.info(f"Scheduled job {message.metadata.job_id} completed")
        return True

    async def create_callback_job(
        self,
        tenant_id: str,
        method: str,
        path: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        expected_statuses: Optional[List[int]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Job:
        """
        Create a signed HTTP callback to a tenant's own server.

        The request is signed with the tenant's shared secret over
        ``METHOD\\npath\\nbody\\ntimestamp`` and stored for the sweep.

        Raises:
            TenantNotFoundError: If the tenant has no callback settings
            ConfigurationError: If the callback base URL or secret is missing
        """
        callback = self.config.get_tenant_callback(tenant_id)
        if callback is None:
            raise TenantNotFoundError(tenant_id)
        if not callback.get("base_url"):
            raise ConfigurationError(
                f"Callback base URL not configured for tenant {tenant_id}",
                field="base_url",
            )
        if not callback.get("secret"):
            raise ConfigurationError(
                f"Callback secret not configured for tenant {tenant_id}",
                field="secret",
            )

        timestamp = int(time.time())
        body_string = serialize_body(body if body is not None else {})
        signature = sign_request(
            callback["secret"], build_canonical_string(method, path, body_string, timestamp)
        )

        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})
        request_headers["X-HMAC-Signature"] = signature
        request_headers["X-HMAC-Timestamp"] = str(timestamp)

        message = UnifiedJobMessage(
            lambda_proxy_message=LambdaProxyMessage(
                body=body_string,
                path=path,
                http_method=method.upper(),
                headers=request_headers,
            ),
            execution=RestEndpointExecution(
                base_url=callback["base_url"],
                expected_statuses=expected_statuses or list(DEFAULT_CALLBACK_STATUSES),
            ),
        )
        message.metadata.tenant_id = tenant_id
        message.metadata.idempotency_key = idempotency_key

        return await self.create_job(tenant_id, message, mode=JobCreationMode.DB)

    async def _process_store_job(
        self, conn: asyncpg.Connection, job: Job, now: datetime
    ) -> None:
        try:
            message = UnifiedJobMessage.from_wire(job.message)
        except MessageValidationError as e:
            self.logger.error(f"Job {job.id} has an unreadable message: {str(e)}")
            await self.store.update_job_failed(job.id, job.retry_count, str(e), conn=conn)
            return

        if job.idempotency_key and await self.store.has_succeeded_job(
            job.tenant_id, job.idempotency_key, exclude_id=job.id, conn=conn
        ):
            self.logger.info(
                f"Job {job.id} duplicates a succeeded job "
                f"(idempotency key {job.idempotency_key}), skipping dispatch"
            )
            await self.store.update_job_success(job.id, conn=conn)
            return

        message.metadata.retry_count = job.retry_count
        self.logger.info(
            f"Executing job {job.id} (type={job.execution_type}, "
            f"attempt={job.retry_count + 1})"
        )

        try:
            result = await self.dispatcher.dispatch(message)
        except ConfigurationError as e:
            self.logger.error(f"Job {job.id} cannot be dispatched: {str(e)}")
            await self.store.update_job_failed(job.id, job.retry_count, str(e), conn=conn)
            return
        except Exception as e:
            # Any other failure counts as a failed attempt so the row always advances
            self.logger.error(
                f"Job {job.id} failed: {str(e)}", exc_info=not isinstance(e, DispatchError)
            )
            decision = decide_retry(job.retry_count, job.max_retries, now)
            if decision.is_terminal:
                await self.store.update_job_failed(
                    job.id, decision.retry_count, str(e), conn=conn
                )
                self.logger.error(
                    f"Job {job.id} marked as failed after {decision.retry_count} retries"
                )
            else:
                await self.store.update_job_retry(
                    job.id, decision.retry_count, decision.next_retry_at, str(e), conn=conn
                )
                self.logger.info(
                    f"Job {job.id} will retry ({decision.retry_count}/{job.max_retries}) "
                    f"at {decision.next_retry_at.isoformat()}"
                )
            return

        await self.store.update_job_success(job.id, external_ref=result.external_ref, conn=conn)
        self.logger.info(f"Job {job.id} completed successfully")

    async def _process_queue_message(self, queue_url: str, sqs_message: Dict[str, Any]) -> bool:
        receipt_handle = sqs_message["ReceiptHandle"]

        try:
            message = UnifiedJobMessage.from_json(sqs_message.get("Body"))
        except MessageValidationError as e:
            # Left for the queue's redrive policy
            self.logger.error(
                f"Invalid message {sqs_message.get('MessageId')} on primary queue: {str(e)}"
            )
            return False

        metadata = message.metadata
        if metadata.idempotency_key and await self.store.has_succeeded_job(
            metadata.tenant_id, metadata.idempotency_key
        ):
            self.logger.info(
                f"Message for idempotency key {metadata.idempotency_key} already "
                f"succeeded, deleting duplicate"
            )
            await self._delete_message(queue_url, receipt_handle)
            return True

        try:
            await self.dispatcher.dispatch(message)
        except ConfigurationError as e:
            self.logger.error(f"Job {metadata.job_id} cannot be dispatched: {str(e)}")
            if await self._persist_failure(message, e):
                await self._delete_message(queue_url, receipt_handle)
            return True
        except Exception as e:
            self.logger.error(
                f"Job {metadata.job_id} failed: {str(e)}",
                exc_info=not isinstance(e, DispatchError),
            )
            persisted = await self._persist_failure(message, e)
            if persisted and self.config.delete_on_persist:
                await self._delete_message(queue_url, receipt_handle)
            return True

        await self._delete_message(queue_url, receipt_handle)
        self.logger.info(f"Job {metadata.job_id} completed successfully")

        if metadata.idempotency_key:
            completed = await self.store.complete_in_flight_jobs(
                metadata.tenant_id, metadata.idempotency_key
            )
            if completed:
                self.logger.info(
                    f"Completed {completed} stored copies of job {metadata.job_id}"
                )

        return True

    async def _persist_failure(
        self, message: UnifiedJobMessage, error: Exception
    ) -> Optional[Job]:
        """
        Save a failed message to the store.

        A ConfigurationError is stored as FAILED; any other failure counts as
        the first failed attempt and is stored as RETRYING. When the store
        already holds a pending or retrying copy of the job (same idempotency
        key, or same row id), only its last error is refreshed, so a
        redelivered message never adds a second row.

        Returns the stored job, or None if the store write failed.
        """
        metadata = message.metadata
        now = self.now()

        if isinstance(error, ConfigurationError):
            status, retry_count, next_retry_at = JobStatus.FAILED, 0, None
        else:
            status, retry_count, next_retry_at = decide_retry(
                0, self.config.max_retries, now
            )

        try:
            existing, row_id = await self._find_in_flight_copy(metadata)
            if existing is not None:
                await self.store.update_job_error(existing.id, str(error))
                self.logger.info(
                    f"Job {metadata.job_id} already stored as {existing.id}, "
                    f"recorded latest error"
                )
                return existing

            job = await self.store.insert_job(
                id=row_id,
                tenant_id=metadata.tenant_id,
                execution_type=message.execution.type,
                message=message.to_wire(),
                message_group_id=metadata.message_group_id or message.execution.type,
                status=status,
                retry_count=retry_count,
                max_retries=self.config.max_retries,
                next_retry_at=next_retry_at,
                last_error=str(error),
                idempotency_key=metadata.idempotency_key,
            )
        except Exception as e:
            self.logger.error(
                f"Failed to persist failed job {metadata.job_id}: {str(e)}", exc_info=True
            )
            return None

        self.logger.info(f"Persisted failed job {metadata.job_id} as {job.id} ({status.value})")
        return job

    async def _find_in_flight_copy(
        self, metadata: JobMetadata
    ) -> Tuple[Optional[Job], UUID]:
        """
        Look up a pending or retrying row for a message.

        Returns the row (or None) and the id to use for a new row.
        """
        if metadata.idempotency_key:
            existing = await self.store.find_in_flight_job(
                metadata.tenant_id, metadata.idempotency_key
            )
            return existing, uuid4()

        try:
            row_id = UUID(metadata.job_id)
        except (TypeError, ValueError):
            return None, uuid4()

        try:
            job = await self.store.get_job(row_id)
        except JobNotFoundError:
            return None, row_id

        if job.status in (JobStatus.PENDING, JobStatus.RETRYING):
            return job, row_id
        # A finished row already owns this id
        return None, uuid4()

    async def _publish(self, message: UnifiedJobMessage) -> None:
        metadata = message.metadata
        await self.sqs_client.send_message(
            QueueUrl=self.config.primary_queue_url,
            MessageBody=message.to_json(),
            MessageGroupId=metadata.message_group_id,
            MessageDeduplicationId=metadata.idempotency_key or metadata.job_id,
        )
        self.logger.info(f"Published job {metadata.job_id} to primary queue")

    async def _delete_message(self, queue_url: str, receipt_handle: str) -> None:
        await self.sqs_client.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)


def _row_id(job_id: str) -> UUID:
    """Use the message's job id as the row id when it is a UUID."""
    try:
        return UUID(job_id)
    except (TypeError, ValueError):
        return uuid4()
