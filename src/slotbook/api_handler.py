from __future__ import annotations

import os
from typing import Any

from aws_lambda_powertools import Logger
from mangum import Mangum
from mangum.types import LambdaContext

from slotbook.api import app

logger = Logger()
handler = Mangum(
    app,
    lifespan="off",
    api_gateway_base_path=os.environ.get("API_BASE_PATH", "/"),
)


def _normalize_http_v2_event(event: dict[str, Any]) -> dict[str, Any]:
    # Minimal API Gateway HTTP API v2.0 events (local runs, tests) lack these
    request_context = event.setdefault("requestContext", {})
    http_ctx = request_context.setdefault("http", {})
    http_ctx.setdefault("sourceIp", "127.0.0.1")
    http_ctx.setdefault("userAgent", "pytest")
    request_context.setdefault("stage", "$default")
    return event


def lambda_handler(event: dict[str, Any], context: LambdaContext) -> Any:
    if isinstance(event, dict) and event.get("version") == "2.0":
        event = _normalize_http_v2_event(event)
        request_id = event["requestContext"].get("requestId")
        if request_id:
            logger.set_correlation_id(request_id)

    return handler(event, context)
