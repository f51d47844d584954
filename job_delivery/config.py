"""Configuration for the job delivery engine."""

import json
import os
from typing import Any, Dict, Optional

from job_delivery.errors import SourceQueueNotFoundError

DEFAULT_REGION = "ap-northeast-2"

# Built-in source queues; URLs come from JOB_DELIVERY_SOURCE_QUEUE_<NAME>_URL.
DEFAULT_SOURCE_QUEUES: Dict[str, Dict[str, Any]] = {
    "crypto": {"max_messages": 4, "visibility_timeout": 120, "enabled": True},
    "ox": {"max_messages": 9, "visibility_timeout": 120, "enabled": True},
}


class SourceQueueConfig:
    """Settings for one upstream source queue."""

    def __init__(
        self,
        name: str,
        queue_url: str,
        max_messages: int = 10,
        visibility_timeout: int = 120,
        enabled: bool = True,
    ):
        self.name = name
        self.queue_url = queue_url
        # SQS never returns more than 10 messages per receive
        self.max_messages = max(1, min(int(max_messages), 10))
        self.visibility_timeout = int(visibility_timeout)
        self.enabled = enabled

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "SourceQueueConfig":
        return cls(
            name=name,
            queue_url=data.get("queue_url", ""),
            max_messages=data.get("max_messages", 10),
            visibility_timeout=data.get("visibility_timeout", 120),
            enabled=_as_bool(data.get("enabled", True)),
        )


class JobDeliveryConfig:
    """Configuration object for the job delivery engine."""

    def __init__(
        self,
        db_dsn: str,
        primary_queue_url: Optional[str] = None,
        source_queues: Optional[Dict[str, SourceQueueConfig]] = None,
        aws_region: str = DEFAULT_REGION,
        aws_endpoint_url: Optional[str] = None,
        scheduler_role_arn: Optional[str] = None,
        scheduler_target_arn: Optional[str] = None,
        http_timeout_seconds: float = 30.0,
        max_retries: int = 10,
        delete_on_persist: bool = False,
        auth_token: Optional[str] = None,
        tenant_callbacks: Optional[Dict[str, Dict[str, str]]] = None,
    ):
        self.db_dsn = db_dsn
        self.primary_queue_url = primary_queue_url
        self.source_queues = source_queues or {}
        self.aws_region = aws_region
        self.aws_endpoint_url = aws_endpoint_url
        self.scheduler_role_arn = scheduler_role_arn
        self.scheduler_target_arn = scheduler_target_arn
        self.http_timeout_seconds = http_timeout_seconds
        self.max_retries = max_retries
        self.delete_on_persist = delete_on_persist
        self.auth_token = auth_token
        self.tenant_callbacks = tenant_callbacks or {}

    @classmethod
    def from_env(cls) -> "JobDeliveryConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("JOB_DELIVERY_DB_DSN")
        if not db_dsn:
            raise ValueError("JOB_DELIVERY_DB_DSN environment variable is required")

        source_queues: Dict[str, SourceQueueConfig] = {}
        for name, defaults in DEFAULT_SOURCE_QUEUES.items():
            env_prefix = f"JOB_DELIVERY_SOURCE_QUEUE_{name.upper()}"
            source_queues[name] = SourceQueueConfig(
                name=name,
                queue_url=os.getenv(f"{env_prefix}_URL", ""),
                max_messages=defaults["max_messages"],
                visibility_timeout=defaults["visibility_timeout"],
                enabled=_as_bool(
                    os.getenv(f"{env_prefix}_ENABLED", str(defaults["enabled"]))
                ),
            )

        source_queues_str = os.getenv("JOB_DELIVERY_SOURCE_QUEUES")
        if source_queues_str:
            raw_queues = _load_json_env("JOB_DELIVERY_SOURCE_QUEUES", source_queues_str)
            for name, data in raw_queues.items():
                source_queues[name] = SourceQueueConfig.from_dict(name, data)

        tenant_callbacks = None
        tenant_callbacks_str = os.getenv("JOB_DELIVERY_TENANT_CALLBACKS")
        if tenant_callbacks_str:
            tenant_callbacks = _load_json_env(
                "JOB_DELIVERY_TENANT_CALLBACKS", tenant_callbacks_str
            )

        aws_region = (
            os.getenv("JOB_DELIVERY_AWS_REGION")
            or os.getenv("AWS_DEFAULT_REGION")
            or DEFAULT_REGION
        )

        return cls(
            db_dsn=db_dsn,
            primary_queue_url=os.getenv("JOB_DELIVERY_PRIMARY_QUEUE_URL"),
            source_queues=source_queues,
            aws_region=aws_region,
            # Localstack and similar
            aws_endpoint_url=os.getenv("AWS_ENDPOINT_URL"),
            scheduler_role_arn=os.getenv("JOB_DELIVERY_SCHEDULER_ROLE_ARN"),
            scheduler_target_arn=os.getenv("JOB_DELIVERY_SCHEDULER_TARGET_ARN"),
            http_timeout_seconds=float(
                os.getenv("JOB_DELIVERY_HTTP_TIMEOUT_SECONDS", "30")
            ),
            max_retries=int(os.getenv("JOB_DELIVERY_MAX_RETRIES", "10")),
            delete_on_persist=_as_bool(
                os.getenv("JOB_DELIVERY_DELETE_ON_PERSIST", "false")
            ),
            auth_token=os.getenv("JOB_DELIVERY_AUTH_TOKEN"),
            tenant_callbacks=tenant_callbacks,
        )

    def get_source_queue(self, queue_name: str) -> SourceQueueConfig:
        """Get settings for a source queue, raising if it is not configured."""
        queue_config = self.source_queues.get(queue_name)
        if queue_config is None:
            raise SourceQueueNotFoundError(queue_name)
        return queue_config

    def get_tenant_callback(self, tenant_id: str) -> Optional[Dict[str, str]]:
        """Get callback base URL and shared secret for a tenant."""
        return self.tenant_callbacks.get(tenant_id)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _load_json_env(name: str, value: str) -> Dict[str, Any]:
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {name}: {e}") from e
