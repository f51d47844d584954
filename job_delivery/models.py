"""Data models for jobs."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID


class JobStatus(str, Enum):
    """Job status values."""

    PENDING = "PENDING"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DEAD = "DEAD"

    @property
    def is_due_state(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RETRYING)


class ExecutionType(str, Enum):
    """How a job is carried out."""

    INVOKE_FUNCTION = "invoke-function"
    INVOKE_FUNCTION_URL = "invoke-function-url"
    CALL_REST_ENDPOINT = "call-rest-endpoint"
    CREATE_SCHEDULED_TRIGGER = "create-scheduled-trigger"


# Older producers still publish these names.
EXECUTION_TYPE_ALIASES: Dict[str, ExecutionType] = {
    "lambda-invoke": ExecutionType.INVOKE_FUNCTION,
    "lambda-url": ExecutionType.INVOKE_FUNCTION_URL,
    "rest-api": ExecutionType.CALL_REST_ENDPOINT,
    "schedule": ExecutionType.CREATE_SCHEDULED_TRIGGER,
}


def resolve_execution_type(value: Any) -> Optional[ExecutionType]:
    """Map an execution type name or legacy alias, or None if unknown."""
    if isinstance(value, ExecutionType):
        return value
    if not isinstance(value, str):
        return None
    if value in EXECUTION_TYPE_ALIASES:
        return EXECUTION_TYPE_ALIASES[value]
    try:
        return ExecutionType(value)
    except ValueError:
        return None


class JobCreationMode(str, Enum):
    """Where a new job is written."""

    DB = "db"
    SQS = "sqs"
    BOTH = "both"

    @property
    def writes_store(self) -> bool:
        return self in (JobCreationMode.DB, JobCreationMode.BOTH)

    @property
    def writes_queue(self) -> bool:
        return self in (JobCreationMode.SQS, JobCreationMode.BOTH)


class Job:
    """Represents a job record."""

    def __init__(
        self,
        id: UUID,
        execution_type: str,
        status: JobStatus,
        message: Dict[str, Any],
        message_group_id: str,
        tenant_id: Optional[str] = None,
        retry_count: int = 0,
        max_retries: int = 10,
        next_retry_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        external_ref: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.tenant_id = tenant_id
        self.execution_type = execution_type
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.message = message
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.next_retry_at = next_retry_at
        self.last_error = last_error
        self.idempotency_key = idempotency_key
        self.message_group_id = message_group_id
        self.external_ref = external_ref
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "execution_type": self.execution_type,
            "status": self.status.value,
            "message": self.message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_retry_at": (
                self.next_retry_at.isoformat() if self.next_retry_at else None
            ),
            "last_error": self.last_error,
            "idempotency_key": self.idempotency_key,
            "message_group_id": self.message_group_id,
            "external_ref": self.external_ref,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.execution_type}, "
            f"status={self.status.value}, retry_count={self.retry_count})"
        )
