import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from tightship.core.logging import latency_bucket_ms, request_id_ctx_var

MAX_REQUEST_ID_LENGTH = 128


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Attach a request_id to each request and log completion.

    The completion line also carries the caller and organization once a
    subscription guard has resolved them, so denials and usage can be traced
    back per organization.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        incoming = (request.headers.get(self.header_name) or "").strip()
        rid = incoming[:MAX_REQUEST_ID_LENGTH] or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid

        logging.getLogger("tightship.http").info(
            "request.complete",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "status": response.status_code,
                "user_id": getattr(request.state, "user_id", None),
                "organization_id": getattr(request.state, "organization_id", None),
                "latency_bucket": latency_bucket_ms(duration_ms),
            },
        )
        return response
