import json
import logging
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


logger = logging.getLogger("shiftcare.request")

_request_id: ContextVar[str] = ContextVar("shiftcare_request_id", default="-")


def current_request_id() -> str:
    """Id of the request being served on this task/thread, or "-" outside one."""
    return _request_id.get()


def request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", None) or current_request_id()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns every request an id, echoes it as X-Request-ID and logs one JSON line.

    The id is exposed through ``request.state`` for exception handlers and
    through a context variable for code that never sees the request (the
    OTP flow's log lines); threadpool endpoints inherit the context.
    """

    async def dispatch(self, request: Request, call_next):
        req_id = (request.headers.get("X-Request-ID") or "").strip()[:64] or uuid.uuid4().hex
        request.state.request_id = req_id
        token = _request_id.set(req_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            _request_id.reset(token)
        response.headers["X-Request-ID"] = req_id
        route = getattr(request.scope.get("route"), "path", None)
        logger.info(
            json.dumps(
                {
                    "request_id": req_id,
                    "method": request.method,
                    "route": route,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": int((time.perf_counter() - start) * 1000),
                },
                separators=(",", ":"),
            )
        )
        return response
