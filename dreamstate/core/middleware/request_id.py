import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from dreamstate.core.logging import request_id_ctx_var, latency_bucket_ms

# Client-supplied ids are echoed into logs and headers; accept only tame ones
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request_id to each request and log completion."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        incoming = request.headers.get(self.header_name)
        rid = incoming if incoming and _REQUEST_ID_RE.match(incoming) else str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid

        logging.getLogger("dreamstate").info(
            "request.complete",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "status": getattr(response, "status_code", None),
                "latency_bucket": latency_bucket_ms(duration_ms),
            },
        )
        return response
