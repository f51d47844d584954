"""Unified job message shared by the primary queue, the job store and schedules.

Every job travels as the same envelope regardless of transport:

    {
        "lambdaProxyMessage": {...},   # HTTP-shaped request
        "execution": {"type": ..., ...},
        "metadata": {"jobId": ..., "messageGroupId": ..., ...}
    }

The execution block is a closed union keyed on ``type``. Each kind only
carries its own fields, and those fields are optional at parse time so that
incomplete messages can still be stored; ``ensure_complete()`` reports the
first missing field as a ``ConfigurationError``.
"""

import base64
import binascii
import json
from datetime import timezone
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

from dateutil import parser as date_parser
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from job_delivery.errors import ConfigurationError, MessageValidationError
from job_delivery.models import ExecutionType


class WireModel(BaseModel):
    """Base model using camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestContext(WireModel):
    path: str = "/"
    resource_path: str = "/{proxy+}"
    http_method: str = "POST"


class LambdaProxyMessage(WireModel):
    """Proxy-style request envelope able to describe any HTTP call."""

    body: Optional[str] = None
    resource: str = "/{proxy+}"
    path: str = "/"
    http_method: str = "POST"
    is_base64_encoded: bool = False
    path_parameters: Dict[str, str] = Field(default_factory=dict)
    query_string_parameters: Optional[Dict[str, str]] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    request_context: Optional[RequestContext] = None

    @property
    def normalized_path(self) -> str:
        return self.path if self.path.startswith("/") else f"/{self.path}"

    def decoded_body(self) -> Optional[Union[str, bytes]]:
        """Request body as sent on the wire, base64-decoded when flagged."""
        if self.body is None or not self.is_base64_encoded:
            return self.body
        try:
            return base64.b64decode(self.body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigurationError(
                f"body is not valid base64: {e}", field="body"
            ) from e


class _ExecutionBase(WireModel):
    required_fields: ClassVar[Tuple[str, ...]] = ()

    @property
    def execution_type(self) -> ExecutionType:
        return ExecutionType(self.type)

    def missing_fields(self) -> List[str]:
        """Wire names of required fields that are absent."""
        return [
            to_camel(name)
            for name in self.required_fields
            if getattr(self, name) in (None, "")
        ]

    def ensure_complete(self) -> None:
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError.missing_field(self.type, missing[0])


class InvokeFunctionExecution(_ExecutionBase):
    required_fields: ClassVar[Tuple[str, ...]] = ("function_name",)

    type: Literal["invoke-function"] = "invoke-function"
    function_name: Optional[str] = None
    invocation_type: Literal["Event", "RequestResponse", "DryRun"] = "Event"


class FunctionUrlExecution(_ExecutionBase):
    required_fields: ClassVar[Tuple[str, ...]] = ("function_url",)

    type: Literal["invoke-function-url"] = "invoke-function-url"
    function_url: Optional[str] = None


class RestEndpointExecution(_ExecutionBase):
    required_fields: ClassVar[Tuple[str, ...]] = ("base_url",)

    type: Literal["call-rest-endpoint"] = "call-rest-endpoint"
    base_url: Optional[str] = None
    expected_statuses: Optional[List[int]] = None

    def accepts_status(self, status: int) -> bool:
        if self.expected_statuses:
            return status in self.expected_statuses
        return 200 <= status < 300


class ScheduledTriggerExecution(_ExecutionBase):
    required_fields: ClassVar[Tuple[str, ...]] = ("schedule_expression", "target_job")

    type: Literal["create-scheduled-trigger"] = "create-scheduled-trigger"
    schedule_expression: Optional[str] = None
    scheduled_at: Optional[str] = None
    target_job: Optional["UnifiedJobMessage"] = None

    def missing_fields(self) -> List[str]:
        missing = super().missing_fields()
        if self.scheduled_at and "scheduleExpression" in missing:
            missing.remove("scheduleExpression")
        return missing

    def ensure_complete(self) -> None:
        super().ensure_complete()
        self.resolved_expression()

    def resolved_expression(self) -> Optional[str]:
        """
        Schedule expression, derived as a one-shot at() from scheduled_at if needed.

        Raises:
            ConfigurationError: If scheduled_at is not an ISO timestamp
        """
        if self.schedule_expression:
            return self.schedule_expression
        if not self.scheduled_at:
            return None
        try:
            when = date_parser.isoparse(self.scheduled_at)
        except (ValueError, OverflowError) as e:
            raise ConfigurationError(
                f"scheduledAt is not an ISO timestamp: {self.scheduled_at}",
                field="scheduledAt",
            ) from e
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc)
        return f"at({when.strftime('%Y-%m-%dT%H:%M:%S')})"


ExecutionConfig = Annotated[
    Union[
        InvokeFunctionExecution,
        FunctionUrlExecution,
        RestEndpointExecution,
        ScheduledTriggerExecution,
    ],
    Field(discriminator="type"),
]


class JobMetadata(WireModel):
    job_id: Optional[str] = None
    tenant_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("tenantId", "appId", "tenant_id"),
        serialization_alias="tenantId",
    )
    idempotency_key: Optional[str] = None
    message_group_id: Optional[str] = None
    created_at: Optional[str] = None
    retry_count: int = 0


class UnifiedJobMessage(WireModel):
    lambda_proxy_message: LambdaProxyMessage = Field(
        default_factory=LambdaProxyMessage,
        validation_alias=AliasChoices(
            "lambdaProxyMessage", "requestEnvelope", "lambda_proxy_message"
        ),
        serialization_alias="lambdaProxyMessage",
    )
    execution: ExecutionConfig
    metadata: JobMetadata = Field(default_factory=JobMetadata)

    @classmethod
    def from_wire(cls, data: Any) -> "UnifiedJobMessage":
        """Validate a decoded message, raising MessageValidationError."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise MessageValidationError(f"Invalid job message: {e}") from e

    @classmethod
    def from_json(cls, body: str) -> "UnifiedJobMessage":
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as e:
            raise MessageValidationError(f"Message body is not JSON: {e}") from e
        return cls.from_wire(data)

    def ensure_complete(self) -> None:
        """Raise ConfigurationError if the message cannot be dispatched as written."""
        self.execution.ensure_complete()
        self.lambda_proxy_message.decoded_body()

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_wire())


ScheduledTriggerExecution.model_rebuild()
UnifiedJobMessage.model_rebuild()
