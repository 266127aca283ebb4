import time
import uuid
from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from framework.logging.logger import _current_request

TRACE_HEADER = "X-Trace-ID"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a trace id per request and logs start, finish and failure with timings."""

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get(TRACE_HEADER) or uuid.uuid4().hex
        request.state.trace_id = trace_id
        token = _current_request.set(request)
        started = time.perf_counter()

        with logger.contextualize(trace_id=trace_id):
            client = request.client.host if request.client else "unknown"
            logger.info(f"Request Started | {request.method} {request.url.path} | Client: {client}")
            try:
                response = await call_next(request)
            except Exception as e:
                elapsed = (time.perf_counter() - started) * 1000
                logger.error(f"Request Failed | {type(e).__name__}: {e} | Duration: {elapsed:.2f}ms")
                raise
            finally:
                _current_request.reset(token)

            elapsed = (time.perf_counter() - started) * 1000
            level = "WARNING" if response.status_code >= 500 else "INFO"
            logger.log(level, f"Request Finished | Status: {response.status_code} | Duration: {elapsed:.2f}ms")
            response.headers[TRACE_HEADER] = trace_id
            response.headers["X-Process-Time-Ms"] = f"{elapsed:.2f}"
            return response
