"""FastAPI router for the job delivery HTTP API."""

import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from job_delivery.bridge import QueueBridge
from job_delivery.errors import (
    AuthTokenError,
    ConfigurationError,
    JobNotFoundError,
    MessageValidationError,
    SourceQueueNotFoundError,
    TenantNotFoundError,
)
from job_delivery.messages import UnifiedJobMessage
from job_delivery.service import JobService

logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateJobRequest(CamelModel):
    """Request model for creating a job."""

    tenant_id: Optional[str] = None
    message: UnifiedJobMessage
    mode: Literal["db", "sqs", "both"] = "both"


class CallbackHttpRequest(BaseModel):
    """Request model for the legacy signed HTTP callback job."""

    method: str
    path: str
    body: Optional[Any] = None
    expected_statuses: Optional[List[int]] = None


class LimitRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=1000)


class PollSourceQueueRequest(CamelModel):
    queue_name: str
    limit: Optional[int] = Field(None, ge=1, le=10)


class ProcessedResponse(BaseModel):
    processed: int


class SuccessResponse(BaseModel):
    success: bool


class PollSourceQueueResponse(CamelModel):
    queue_name: str
    processed: int
    timestamp: str


class JobResponse(BaseModel):
    """Response model for job details."""

    id: str
    tenant_id: Optional[str] = None
    execution_type: str
    status: str
    message: Dict[str, Any]
    retry_count: int
    max_retries: int
    next_retry_at: Optional[str] = None
    last_error: Optional[str] = None
    idempotency_key: Optional[str] = None
    message_group_id: str
    external_ref: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _to_http_exception(e: Exception, action: str) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, AuthTokenError):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (JobNotFoundError, TenantNotFoundError, SourceQueueNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, MessageValidationError):
        return HTTPException(status_code=422, detail=str(e))
    logger.exception(f"Error {action}")
    return HTTPException(status_code=500, detail="Internal server error")


def check_auth_token(expected: Optional[str], provided: Optional[str]) -> None:
    """
    Check a request token against the configured one.

    Raises:
        AuthTokenError: If a token is configured and the request does not match it
    """
    if not expected:
        return
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise AuthTokenError("Invalid or missing auth token")


def _parse_job_id(job_id: str) -> UUID:
    try:
        return UUID(job_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid job ID format") from e


def create_jobs_router(
    job_service_factory: Callable[[], JobService],
    bridge_factory: Callable[[], QueueBridge],
    auth_token: Optional[str] = None,
) -> APIRouter:
    """
    Create FastAPI router for the job delivery API.

    Args:
        job_service_factory: Callable that returns a JobService instance
        bridge_factory: Callable that returns a QueueBridge instance
        auth_token: Optional token required in X-Job-Delivery-Token

    Returns:
        APIRouter instance
    """

    async def verify_auth_token(
        x_job_delivery_token: Optional[str] = Header(None, alias="X-Job-Delivery-Token")
    ) -> None:
        """Verify auth token if configured."""
        try:
            check_auth_token(auth_token, x_job_delivery_token)
        except AuthTokenError as e:
            raise _to_http_exception(e, "verifying auth token") from e

    router = APIRouter(dependencies=[Depends(verify_auth_token)])

    async def get_job_service() -> JobService:
        """Dependency to get JobService instance."""
        return job_service_factory()

    async def get_bridge() -> QueueBridge:
        return bridge_factory()

    @router.post("/v1/jobs/create", status_code=201, response_model=Optional[JobResponse])
    async def create_job(
        request: CreateJobRequest,
        job_service: JobService = Depends(get_job_service),
    ):
        """Create a job in the store, the primary queue, or both."""
        try:
            job = await job_service.create_job(
                request.tenant_id, request.message, mode=request.mode
            )
        except Exception as e:
            raise _to_http_exception(e, "creating job") from e

        return JobResponse(**job.to_dict()) if job else None

    @router.post("/v1/jobs/callback-http", status_code=201, response_model=JobResponse)
    async def create_callback_job(
        request: CallbackHttpRequest,
        x_tenant_id: str = Header(..., alias="X-Tenant-Id"),
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        job_service: JobService = Depends(get_job_service),
    ):
        """Create a signed HTTP callback job to the tenant's own server."""
        try:
            job = await job_service.create_callback_job(
                tenant_id=x_tenant_id,
                method=request.method,
                path=request.path,
                body=request.body,
                expected_statuses=request.expected_statuses,
                idempotency_key=idempotency_key,
            )
        except Exception as e:
            raise _to_http_exception(e, "creating callback job") from e

        return JobResponse(**job.to_dict())

    @router.post("/internal/v1/run-db-jobs", response_model=ProcessedResponse)
    async def run_db_jobs(
        request: Optional[LimitRequest] = None,
        job_service: JobService = Depends(get_job_service),
    ):
        """Sweep due jobs from the store."""
        limit = request.limit if request and request.limit else 100
        try:
            processed = await job_service.run_due_store_jobs(limit)
        except Exception as e:
            raise _to_http_exception(e, "running due jobs") from e

        return ProcessedResponse(processed=processed)

    @router.post("/internal/v1/poll-sqs", response_model=ProcessedResponse)
    async def poll_sqs(
        request: Optional[LimitRequest] = None,
        job_service: JobService = Depends(get_job_service),
    ):
        """Drain the primary queue."""
        limit = request.limit if request and request.limit else 10
        try:
            processed = await job_service.drain_primary_queue(limit)
        except Exception as e:
            raise _to_http_exception(e, "draining primary queue") from e

        return ProcessedResponse(processed=processed)

    @router.post("/internal/v1/process-scheduled-message", response_model=SuccessResponse)
    async def process_scheduled_message(
        message: UnifiedJobMessage,
        job_service: JobService = Depends(get_job_service),
    ):
        """Dispatch a job delivered by a fired schedule."""
        try:
            success = await job_service.process_scheduled_message(message)
        except Exception as e:
            raise _to_http_exception(e, "processing scheduled message") from e

        return SuccessResponse(success=success)

    @router.post(
        "/internal/v1/poll-source-queue",
        response_model=PollSourceQueueResponse,
        response_model_by_alias=True,
    )
    async def poll_source_queue(
        request: PollSourceQueueRequest,
        bridge: QueueBridge = Depends(get_bridge),
    ):
        """Forward messages from a source queue to the primary queue."""
        try:
            processed = await bridge.poll_queue(request.queue_name, request.limit)
        except Exception as e:
            raise _to_http_exception(e, f"polling source queue {request.queue_name}") from e

        return PollSourceQueueResponse(
            queue_name=request.queue_name,
            processed=processed,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job(
        job_id: str,
        job_service: JobService = Depends(get_job_service),
    ):
        """Get job details by ID."""
        job_uuid = _parse_job_id(job_id)
        try:
            job = await job_service.get_job(job_uuid)
        except Exception as e:
            raise _to_http_exception(e, "getting job") from e

        return JobResponse(**job.to_dict())

    @router.get("/jobs", response_model=List[JobResponse])
    async def list_jobs(
        tenant_id: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
        job_service: JobService = Depends(get_job_service),
    ):
        """List jobs with optional filters."""
        try:
            jobs = await job_service.list_jobs(
                tenant_id=tenant_id, status=status, limit=limit
            )
        except Exception as e:
            raise _to_http_exception(e, "listing jobs") from e

        return [JobResponse(**job.to_dict()) for job in jobs]

    @router.post("/jobs/{job_id}/retry", response_model=JobResponse)
    async def retry_job(
        job_id: str,
        job_service: JobService = Depends(get_job_service),
    ):
        """Reopen a job for immediate processing."""
        job_uuid = _parse_job_id(job_id)
        try:
            job = await job_service.retry_job(job_uuid)
        except Exception as e:
            raise _to_http_exception(e, "retrying job") from e

        return JobResponse(**job.to_dict())

    @router.post("/jobs/{job_id}/deadletter", response_model=JobResponse)
    async def deadletter_job(
        job_id: str,
        job_service: JobService = Depends(get_job_service),
    ):
        """Mark a job as dead."""
        job_uuid = _parse_job_id(job_id)
        try:
            job = await job_service.deadletter_job(job_uuid)
        except Exception as e:
            raise _to_http_exception(e, "dead-lettering job") from e

        return JobResponse(**job.to_dict())

    return router
