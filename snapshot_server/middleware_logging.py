import logging
import time
from typing import Callable
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from snapshot_server.config import get_settings
from snapshot_server.core.models import new_job_id

# Configure root logger once (simple, readable format)
logging.basicConfig(
    level=getattr(logging, get_settings().LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger("snapshot_server.request")

REQUEST_ID_HEADER = "Request-ID"


def request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", "") or ""


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        start = time.perf_counter()
        # echo the caller's id when given so polls log under the job's id
        request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip() or new_job_id()
        request.state.request_id = request_id
        client = request.client.host if request.client else "-"
        method = request.method
        path = request.url.path

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            duration_ms = (time.perf_counter() - start) * 1000.0
            logger.info(
                "request_id=%s client=%s method=%s path=%s status=%s duration_ms=%.2f",
                request_id, client, method, path, response.status_code, duration_ms
            )
            return response
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000.0
            logger.exception(
                "request_id=%s client=%s method=%s path=%s status=%s duration_ms=%.2f UNHANDLED",
                request_id, client, method, path, 500, duration_ms
            )
            raise


def register_request_logging(app):
    app.add_middleware(RequestLogMiddleware)
