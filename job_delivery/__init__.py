"""Unified job delivery engine: queue, store and scheduled-trigger delivery for jobs."""

from job_delivery.bridge import QueueBridge
from job_delivery.config import JobDeliveryConfig, SourceQueueConfig
from job_delivery.ddl import JOBS_TABLE_DDL
from job_delivery.dispatcher import DispatchResult, ExecutionDispatcher
from job_delivery.errors import (
    AuthTokenError,
    ConfigurationError,
    DispatchError,
    JobDeliveryError,
    JobNotFoundError,
    MessageValidationError,
    SourceQueueNotFoundError,
    TenantNotFoundError,
)
from job_delivery.messages import UnifiedJobMessage
from job_delivery.models import ExecutionType, Job, JobCreationMode, JobStatus
from job_delivery.service import JobService
from job_delivery.store import JobStore

__version__ = "0.1.0"

__all__ = [
    "QueueBridge",
    "JobDeliveryConfig",
    "SourceQueueConfig",
    "JOBS_TABLE_DDL",
    "DispatchResult",
    "ExecutionDispatcher",
    "AuthTokenError",
    "ConfigurationError",
    "DispatchError",
    "JobDeliveryError",
    "JobNotFoundError",
    "MessageValidationError",
    "SourceQueueNotFoundError",
    "TenantNotFoundError",
    "UnifiedJobMessage",
    "ExecutionType",
    "Job",
    "JobCreationMode",
    "JobStatus",
    "JobService",
    "JobStore",
]
