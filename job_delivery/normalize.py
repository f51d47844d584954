"""Tolerant mapping of source-queue payloads onto the unified job message.

Upstream producers publish several shapes: already-unified messages, flat
legacy payloads (``path``, ``method``, ``body``, ``executionType`` ...) and
bare proxy-style requests. Anything that cannot be parsed still yields a
message carrying the raw body, so the bridge never has to drop input.
"""

import json
import logging
import time
from typing import Any, Dict, Optional
from uuid import uuid4

from job_delivery.errors import MessageValidationError
from job_delivery.messages import UnifiedJobMessage
from job_delivery.models import ExecutionType, resolve_execution_type

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {"Content-Type": "application/json"}

EXECUTION_FIELDS = (
    "baseUrl",
    "expectedStatuses",
    "functionName",
    "functionUrl",
    "invocationType",
    "scheduleExpression",
    "scheduledAt",
    "targetJob",
)


def parse_source_body(raw_body: Optional[str]) -> Dict[str, Any]:
    """
    Decode a source message body.

    Returns the decoded object, or ``{"rawBody": raw_body}`` when the body is
    not a JSON object.
    """
    if not raw_body:
        return {}
    try:
        data = json.loads(raw_body)
    except ValueError as e:
        logger.warning(f"Source message body is not JSON, using raw body: {str(e)}")
        return {"rawBody": raw_body}
    if not isinstance(data, dict):
        logger.warning("Source message body is not a JSON object, using raw body")
        return {"rawBody": raw_body}
    return data


def normalize_source_message(
    raw_body: Optional[str], queue_name: str, now_ms: Optional[int] = None
) -> UnifiedJobMessage:
    """
    Build a unified job message from a source-queue body.

    Args:
        raw_body: The SQS message body as received
        queue_name: Source queue name, used for default group and idempotency key
        now_ms: Epoch milliseconds for generated keys (defaults to now)

    Returns:
        UnifiedJobMessage: Never raises for malformed input
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    source = parse_source_body(raw_body)
    proxy = build_proxy_message(source)
    execution = build_execution(source)
    metadata = build_metadata(source, queue_name, now_ms)

    try:
        return UnifiedJobMessage.from_wire(
            {"lambdaProxyMessage": proxy, "execution": execution, "metadata": metadata}
        )
    except MessageValidationError as e:
        logger.warning(f"Source execution fields rejected, keeping type only: {str(e)}")
        return UnifiedJobMessage.from_wire(
            {
                "lambdaProxyMessage": proxy,
                "execution": {"type": execution["type"]},
                "metadata": metadata,
            }
        )


def build_proxy_message(source: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve the request envelope field by field: provided envelope, flat fields, defaults."""
    provided = _as_dict(source.get("lambdaProxyMessage") or source.get("requestEnvelope"))
    request_context = _as_dict(source.get("requestContext"))

    path = (
        provided.get("path")
        or source.get("path")
        or request_context.get("path")
        or "/"
    )
    http_method = (
        provided.get("httpMethod")
        or source.get("httpMethod")
        or source.get("method")
        or "POST"
    )
    resource = (
        provided.get("resource")
        or source.get("resource")
        or request_context.get("resourcePath")
        or "/{proxy+}"
    )

    path_parameters = _first_present("pathParameters", provided, source)
    if not isinstance(path_parameters, dict):
        path_parameters = {"proxy": str(path).lstrip("/")}

    body = provided["body"] if provided.get("body") is not None else source.get("body")

    query = provided.get("queryStringParameters")
    if query is None:
        query = source.get("queryStringParameters")

    is_base64 = provided.get("isBase64Encoded")
    if is_base64 is None:
        is_base64 = source.get("isBase64Encoded", False)

    return {
        "body": _resolve_body(body, source.get("rawBody")),
        "resource": str(resource),
        "path": str(path),
        "httpMethod": str(http_method).upper(),
        "isBase64Encoded": bool(is_base64),
        "pathParameters": _str_map(path_parameters),
        "queryStringParameters": _str_map(query) if isinstance(query, dict) else None,
        "headers": _resolve_headers(_first_present("headers", provided, source)),
        "requestContext": _str_map(_as_dict(provided.get("requestContext")))
        or {
            "path": str(path),
            "resourcePath": str(resource),
            "httpMethod": str(http_method).upper(),
        },
    }


def build_execution(source: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve the execution block; unknown or missing kinds become REST calls."""
    nested = _as_dict(source.get("execution"))

    execution_type = resolve_execution_type(
        source.get("executionType") or nested.get("type")
    ) or ExecutionType.CALL_REST_ENDPOINT

    execution: Dict[str, Any] = {"type": execution_type.value}
    for field in EXECUTION_FIELDS:
        value = source.get(field)
        if value is None:
            value = nested.get(field)
        if value is not None:
            execution[field] = value

    return execution


def build_metadata(source: Dict[str, Any], queue_name: str, now_ms: int) -> Dict[str, Any]:
    """Resolve metadata: top-level field, then nested metadata, then generated default."""
    nested = _as_dict(source.get("metadata"))

    def pick(*names: str) -> Any:
        for container in (source, nested):
            for name in names:
                if container.get(name) not in (None, ""):
                    return container[name]
        return None

    retry_count = pick("retryCount")
    try:
        retry_count = int(retry_count or 0)
    except (TypeError, ValueError):
        retry_count = 0

    tenant_id = pick("tenantId", "appId")

    return {
        "jobId": str(pick("jobId") or uuid4()),
        "tenantId": str(tenant_id) if tenant_id is not None else None,
        "messageGroupId": str(pick("messageGroupId") or queue_name),
        "idempotencyKey": str(
            pick("idempotencyKey") or f"{queue_name}-{now_ms}-{uuid4()}"
        ),
        "createdAt": str(pick("createdAt") or _iso_from_ms(now_ms)),
        "retryCount": retry_count,
    }


def _first_present(key: str, *containers: Dict[str, Any]) -> Any:
    """First non-null value for ``key``; an empty map still counts as present."""
    for container in containers:
        if container.get(key) is not None:
            return container[key]
    return None


def _resolve_body(body: Any, raw_body: Optional[str]) -> Optional[str]:
    if isinstance(body, str):
        return body
    if body is not None:
        # Objects, arrays and scalars travel as their JSON text
        return json.dumps(body, separators=(",", ":"))
    if raw_body:
        return raw_body
    return None


def _resolve_headers(headers: Any) -> Dict[str, str]:
    if isinstance(headers, dict):
        return _str_map(headers)
    return dict(DEFAULT_HEADERS)


def _str_map(values: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in values.items() if v is not None}


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _iso_from_ms(now_ms: int) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now_ms / 1000)) + (
        f".{now_ms % 1000:03d}Z"
    )
