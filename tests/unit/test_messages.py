"""Unit tests for the unified job message."""

import json

import pytest

from job_delivery.errors import ConfigurationError, MessageValidationError
from job_delivery.messages import (
    FunctionUrlExecution,
    InvokeFunctionExecution,
    RestEndpointExecution,
    ScheduledTriggerExecution,
    UnifiedJobMessage,
)


def test_parse_rest_message(rest_message):
    """Test parsing a wire message into typed fields."""
    message = UnifiedJobMessage.from_wire(rest_message)

    assert isinstance(message.execution, RestEndpointExecution)
    assert message.execution.base_url == "https://x.test"
    assert message.lambda_proxy_message.path == "/hook"
    assert message.lambda_proxy_message.http_method == "POST"
    assert message.metadata.tenant_id == "tenant-123"
    assert message.metadata.idempotency_key == "order-123"


def test_envelope_defaults():
    """Test that an empty envelope gets proxy-style defaults."""
    message = UnifiedJobMessage.from_wire(
        {"execution": {"type": "invoke-function", "functionName": "fn"}}
    )

    envelope = message.lambda_proxy_message
    assert envelope.body is None
    assert envelope.path == "/"
    assert envelope.resource == "/{proxy+}"
    assert envelope.http_method == "POST"
    assert envelope.is_base64_encoded is False
    assert isinstance(message.execution, InvokeFunctionExecution)
    assert message.execution.invocation_type == "Event"


def test_request_envelope_and_app_id_aliases():
    """Test that older field names are accepted on input."""
    message = UnifiedJobMessage.from_wire(
        {
            "requestEnvelope": {"path": "/legacy"},
            "execution": {"type": "invoke-function-url", "functionUrl": "https://fn.url"},
            "metadata": {"appId": "app-123"},
        }
    )

    assert message.lambda_proxy_message.path == "/legacy"
    assert message.metadata.tenant_id == "app-123"
    assert isinstance(message.execution, FunctionUrlExecution)


def test_to_wire_uses_camel_case(rest_message):
    """Test that serialization uses wire names and drops nulls."""
    wire = UnifiedJobMessage.from_wire(rest_message).to_wire()

    assert wire["lambdaProxyMessage"]["httpMethod"] == "POST"
    assert wire["execution"] == {"type": "call-rest-endpoint", "baseUrl": "https://x.test"}
    assert wire["metadata"]["tenantId"] == "tenant-123"
    assert wire["metadata"]["idempotencyKey"] == "order-123"
    assert "jobId" not in wire["metadata"]


def test_from_json_rejects_invalid_body():
    """Test that non-JSON bodies raise MessageValidationError."""
    with pytest.raises(MessageValidationError):
        UnifiedJobMessage.from_json("not json{")


def test_from_wire_rejects_unknown_execution_type():
    """Test that the execution union is closed."""
    with pytest.raises(MessageValidationError):
        UnifiedJobMessage.from_wire({"execution": {"type": "carrier-pigeon"}})


def test_from_wire_requires_execution():
    with pytest.raises(MessageValidationError):
        UnifiedJobMessage.from_wire({"metadata": {}})


@pytest.mark.parametrize(
    "execution,field",
    [
        ({"type": "invoke-function"}, "functionName"),
        ({"type": "invoke-function-url"}, "functionUrl"),
        ({"type": "call-rest-endpoint"}, "baseUrl"),
        ({"type": "create-scheduled-trigger", "targetJob": None}, "scheduleExpression"),
    ],
)
def test_ensure_complete_names_missing_field(execution, field):
    """Test that incomplete messages parse but fail completeness checks."""
    message = UnifiedJobMessage.from_wire({"execution": execution})

    with pytest.raises(ConfigurationError) as exc_info:
        message.execution.ensure_complete()

    assert exc_info.value.field == field


def test_scheduled_trigger_needs_target_job():
    """Test that a schedule without a target job is incomplete."""
    message = UnifiedJobMessage.from_wire(
        {"execution": {"type": "create-scheduled-trigger", "scheduleExpression": "rate(5 minutes)"}}
    )

    assert message.execution.missing_fields() == ["targetJob"]


def test_scheduled_at_derives_expression(rest_message):
    """Test that scheduledAt alone yields a one-shot at() expression in UTC."""
    message = UnifiedJobMessage.from_wire(
        {
            "execution": {
                "type": "create-scheduled-trigger",
                "scheduledAt": "2025-03-01T18:30:00+09:00",
                "targetJob": rest_message,
            }
        }
    )

    execution = message.execution
    assert isinstance(execution, ScheduledTriggerExecution)
    assert execution.missing_fields() == []
    assert execution.resolved_expression() == "at(2025-03-01T09:30:00)"
    assert isinstance(execution.target_job.execution, RestEndpointExecution)


def test_explicit_expression_wins_over_scheduled_at(rest_message):
    message = UnifiedJobMessage.from_wire(
        {
            "execution": {
                "type": "create-scheduled-trigger",
                "scheduleExpression": "cron(0 12 * * ? *)",
                "scheduledAt": "2025-03-01T18:30:00Z",
                "targetJob": rest_message,
            }
        }
    )

    assert message.execution.resolved_expression() == "cron(0 12 * * ? *)"


def test_unparseable_scheduled_at_fails_completeness(rest_message):
    message = UnifiedJobMessage.from_wire(
        {
            "execution": {
                "type": "create-scheduled-trigger",
                "scheduledAt": "next tuesday",
                "targetJob": rest_message,
            }
        }
    )

    with pytest.raises(ConfigurationError) as exc_info:
        message.ensure_complete()

    assert exc_info.value.field == "scheduledAt"


def test_decoded_body_rejects_invalid_base64(rest_message):
    """Test that a flagged body that is not base64 is a configuration error."""
    rest_message["lambdaProxyMessage"].update({"body": "not base64!", "isBase64Encoded": True})
    message = UnifiedJobMessage.from_wire(rest_message)

    with pytest.raises(ConfigurationError) as exc_info:
        message.ensure_complete()

    assert exc_info.value.field == "body"


def test_decoded_body_passes_plain_body_through(rest_message):
    message = UnifiedJobMessage.from_wire(rest_message)

    assert message.lambda_proxy_message.decoded_body() == '{"orderNo":123}'


def test_rest_expected_statuses():
    """Test REST success rules with and without expected statuses."""
    default = RestEndpointExecution(base_url="https://x.test")
    assert default.accepts_status(200)
    assert default.accepts_status(204)
    assert not default.accepts_status(302)
    assert not default.accepts_status(500)

    explicit = RestEndpointExecution(base_url="https://x.test", expected_statuses=[200, 201])
    assert explicit.accepts_status(201)
    assert not explicit.accepts_status(204)


def test_target_job_round_trips_as_json(rest_message):
    """Test that a nested target job serializes into the schedule input."""
    message = UnifiedJobMessage.from_wire(
        {
            "execution": {
                "type": "create-scheduled-trigger",
                "scheduleExpression": "at(2025-03-01T09:30:00)",
                "targetJob": rest_message,
            }
        }
    )

    target = json.loads(message.execution.target_job.to_json())
    assert target["execution"]["baseUrl"] == "https://x.test"
    assert target["lambdaProxyMessage"]["path"] == "/hook"
