from __future__ import annotations

import time
import uuid
from collections.abc import Callable

import sentry_sdk
import structlog
from fastapi import Request, Response

REQUEST_ID_HEADER = "X-Request-ID"
USER_ID_HEADER = "X-User-Id"


def _access_fields(request: Request, rid: str, status_code: int, start_ns: int) -> dict:
    return {
        "request_id": rid,
        "path": request.url.path,
        "method": request.method,
        "status": status_code,
        "duration_ms": round((time.perf_counter_ns() - start_ns) / 1_000_000.0, 3),
        "client_ip": (request.client.host if request.client else None) or "-",
    }


async def request_id_middleware(request: Request, call_next: Callable) -> Response:
    """Propagate X-Request-ID and emit one ``http_request`` access event.

    request_id, path, method and (when sent) user_id are bound to structlog
    contextvars for the duration of the request, so approval and execution
    events logged by the services carry them too.
    """
    logger = structlog.get_logger(__name__)

    rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    user_id = request.headers.get(USER_ID_HEADER)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=rid, path=request.url.path, method=request.method
    )
    if user_id:
        structlog.contextvars.bind_contextvars(user_id=user_id)

    sentry_sdk.set_tag("request_id", rid)
    sentry_sdk.set_tag("path", request.url.path)
    if user_id:
        sentry_sdk.set_user({"id": user_id})

    start_ns = time.perf_counter_ns()
    try:
        response = await call_next(request)
    except Exception:
        logger.error("http_request", **_access_fields(request, rid, 500, start_ns), exc_info=True)
        structlog.contextvars.clear_contextvars()
        raise

    logger.info("http_request", **_access_fields(request, rid, response.status_code, start_ns))
    response.headers[REQUEST_ID_HEADER] = rid
    structlog.contextvars.clear_contextvars()
    return response
