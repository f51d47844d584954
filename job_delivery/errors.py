"""Exception types for the job delivery engine."""

from typing import Optional


class JobDeliveryError(Exception):
    """Base exception for all job delivery errors."""

    pass


class ConfigurationError(JobDeliveryError):
    """Raised when a required execution field or engine setting is missing."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    @classmethod
    def missing_field(cls, execution_type: str, field: str) -> "ConfigurationError":
        return cls(f"{field} is required for {execution_type}", field=field)


class JobNotFoundError(JobDeliveryError):
    """Raised when a job is not found."""

    def __init__(self, job_id: str, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class TenantNotFoundError(JobDeliveryError):
    """Raised when no callback settings exist for a tenant."""

    def __init__(self, tenant_id: str, message: str = None):
        self.tenant_id = tenant_id
        if message is None:
            message = f"Tenant {tenant_id} not found"
        super().__init__(message)


class SourceQueueNotFoundError(JobDeliveryError):
    """Raised when a source queue name is not configured."""

    def __init__(self, queue_name: str, message: str = None):
        self.queue_name = queue_name
        if message is None:
            message = f'Queue "{queue_name}" not found in configuration'
        super().__init__(message)


class DispatchError(JobDeliveryError):
    """Raised when a single execution attempt did not succeed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class MessageValidationError(JobDeliveryError):
    """Raised when an inbound message cannot be parsed as a unified job message."""

    pass


class AuthTokenError(JobDeliveryError):
    """Raised when authentication token is missing or invalid."""

    pass
