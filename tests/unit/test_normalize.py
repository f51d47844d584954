"""Unit tests for source message normalization."""

import json

from job_delivery.messages import (
    FunctionUrlExecution,
    InvokeFunctionExecution,
    RestEndpointExecution,
)
from job_delivery.normalize import normalize_source_message, parse_source_body

NOW_MS = 1735732800000


def test_parse_source_body_falls_back_to_raw():
    """Test that unparseable bodies are kept as rawBody."""
    assert parse_source_body("not json{") == {"rawBody": "not json{"}
    assert parse_source_body("[1, 2]") == {"rawBody": "[1, 2]"}
    assert parse_source_body("") == {}
    assert parse_source_body('{"a": 1}') == {"a": 1}


def test_flat_legacy_message():
    """Test mapping of a flat legacy payload."""
    body = json.dumps(
        {
            "body": {"orderNo": 123},
            "path": "/orders/callback",
            "method": "POST",
            "executionType": "rest-api",
            "baseUrl": "https://api.example.com",
            "appId": "app-123",
            "messageGroupId": "order-callbacks",
        }
    )

    message = normalize_source_message(body, "crypto", now_ms=NOW_MS)

    envelope = message.lambda_proxy_message
    assert envelope.body == '{"orderNo":123}'
    assert envelope.path == "/orders/callback"
    assert envelope.http_method == "POST"
    assert envelope.resource == "/{proxy+}"
    assert envelope.path_parameters == {"proxy": "orders/callback"}
    assert envelope.headers == {"Content-Type": "application/json"}
    assert envelope.request_context.path == "/orders/callback"
    assert isinstance(message.execution, RestEndpointExecution)
    assert message.execution.base_url == "https://api.example.com"
    assert message.metadata.tenant_id == "app-123"
    assert message.metadata.message_group_id == "order-callbacks"


def test_proxy_shaped_payload_not_double_encoded():
    """Test that a proxy-style payload keeps its string body and headers."""
    payload = {
        "body": "{}",
        "resource": "/{proxy+}",
        "path": "/news/summary",
        "httpMethod": "GET",
        "isBase64Encoded": False,
        "pathParameters": {"proxy": "/news/summary"},
        "queryStringParameters": {},
        "headers": {"Content-Type": "application/json", "Authorization": "Bearer token"},
        "requestContext": {
            "path": "/news/summary",
            "resourcePath": "/{proxy+}",
            "httpMethod": "GET",
        },
    }

    message = normalize_source_message(json.dumps(payload), "crypto", now_ms=NOW_MS)

    envelope = message.lambda_proxy_message
    assert envelope.body == "{}"
    assert envelope.path == "/news/summary"
    assert envelope.http_method == "GET"
    assert envelope.headers == payload["headers"]
    assert envelope.query_string_parameters == {}
    assert message.metadata.message_group_id == "crypto"


def test_provided_lambda_proxy_message_takes_precedence():
    """Test that an embedded envelope wins over flat fields."""
    body = json.dumps(
        {
            "path": "/flat",
            "lambdaProxyMessage": {"path": "/embedded", "httpMethod": "PUT", "body": "x"},
            "execution": {"type": "invoke-function", "functionName": "worker"},
            "metadata": {"jobId": "job-1", "idempotencyKey": "key-1", "retryCount": 2},
        }
    )

    message = normalize_source_message(body, "ox", now_ms=NOW_MS)

    assert message.lambda_proxy_message.path == "/embedded"
    assert message.lambda_proxy_message.http_method == "PUT"
    assert message.lambda_proxy_message.body == "x"
    assert isinstance(message.execution, InvokeFunctionExecution)
    assert message.execution.function_name == "worker"
    assert message.metadata.job_id == "job-1"
    assert message.metadata.idempotency_key == "key-1"
    assert message.metadata.retry_count == 2


def test_provided_empty_maps_are_kept():
    """Test that an explicitly empty envelope map is not replaced by defaults."""
    body = json.dumps(
        {
            "path": "/flat",
            "headers": {"X-Flat": "1"},
            "lambdaProxyMessage": {
                "path": "/embedded",
                "headers": {},
                "pathParameters": {},
            },
        }
    )

    message = normalize_source_message(body, "ox", now_ms=NOW_MS)

    assert message.lambda_proxy_message.headers == {}
    assert message.lambda_proxy_message.path_parameters == {}


def test_flat_headers_used_when_envelope_has_none():
    body = json.dumps({"headers": {"X-Flat": "1"}, "lambdaProxyMessage": {"path": "/a"}})

    message = normalize_source_message(body, "ox", now_ms=NOW_MS)

    assert message.lambda_proxy_message.headers == {"X-Flat": "1"}
    assert message.lambda_proxy_message.path_parameters == {"proxy": "a"}


def test_scalar_bodies_become_json_text():
    """Test that number and boolean bodies are kept as their JSON text."""
    assert normalize_source_message('{"body": 5}', "ox", now_ms=NOW_MS).lambda_proxy_message.body == "5"
    assert (
        normalize_source_message('{"body": false}', "ox", now_ms=NOW_MS).lambda_proxy_message.body
        == "false"
    )
    assert (
        normalize_source_message(
            '{"lambdaProxyMessage": {"body": 1.5}}', "ox", now_ms=NOW_MS
        ).lambda_proxy_message.body
        == "1.5"
    )


def test_top_level_fields_win_over_nested():
    body = json.dumps(
        {
            "functionUrl": "https://top.url",
            "executionType": "lambda-url",
            "execution": {"functionUrl": "https://nested.url"},
            "idempotencyKey": "top-key",
            "metadata": {"idempotencyKey": "nested-key"},
        }
    )

    message = normalize_source_message(body, "ox", now_ms=NOW_MS)

    assert isinstance(message.execution, FunctionUrlExecution)
    assert message.execution.function_url == "https://top.url"
    assert message.metadata.idempotency_key == "top-key"


def test_malformed_body_uses_raw_string():
    """Test the minimal fallback for a body that is not JSON."""
    message = normalize_source_message("not json{", "crypto", now_ms=NOW_MS)

    assert message.lambda_proxy_message.body == "not json{"
    assert message.lambda_proxy_message.path == "/"
    assert message.lambda_proxy_message.http_method == "POST"
    assert isinstance(message.execution, RestEndpointExecution)
    assert message.execution.base_url is None
    assert message.metadata.message_group_id == "crypto"
    assert message.metadata.idempotency_key.startswith(f"crypto-{NOW_MS}-")
    assert message.metadata.job_id


def test_unknown_execution_type_defaults_to_rest():
    body = json.dumps({"executionType": "carrier-pigeon", "baseUrl": "https://x.test"})

    message = normalize_source_message(body, "crypto", now_ms=NOW_MS)

    assert isinstance(message.execution, RestEndpointExecution)
    assert message.execution.base_url == "https://x.test"


def test_invalid_execution_fields_keep_type_only():
    """Test that rejected execution fields do not prevent normalization."""
    body = json.dumps(
        {"executionType": "rest-api", "baseUrl": "https://x.test", "expectedStatuses": "ok"}
    )

    message = normalize_source_message(body, "crypto", now_ms=NOW_MS)

    assert isinstance(message.execution, RestEndpointExecution)
    assert message.execution.base_url is None
    assert message.metadata.message_group_id == "crypto"


def test_generated_idempotency_keys_are_unique():
    first = normalize_source_message("{}", "crypto", now_ms=NOW_MS)
    second = normalize_source_message("{}", "crypto", now_ms=NOW_MS)

    assert first.metadata.idempotency_key != second.metadata.idempotency_key
    assert first.metadata.job_id != second.metadata.job_id
