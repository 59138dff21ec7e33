"""
Logging setup and request observability.

Adds correlation IDs to requests and a context-aware formatter so ledger log lines
can be tied back to the request that produced them.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.config import settings

logger = logging.getLogger("fee_ledger")

correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or "-"
        return True


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a stream handler to the service logger. Safe to call more than once."""
    root = logging.getLogger("fee_ledger")
    root.setLevel((level or settings.log_level).upper())
    if any(getattr(h, "_fee_ledger", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s")
    )
    handler.addFilter(CorrelationIdFilter())
    handler._fee_ledger = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.propagate = False


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        token = correlation_id.set(cid)
        start_time = time.time()
        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000

            response.headers["X-Correlation-ID"] = cid
            response.headers["X-Process-Time"] = str(round(process_time, 2))

            log_data = {
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(process_time, 2),
            }
            summary = "%s %s -> %s (%.2f ms)" % (
                request.method, request.url.path, response.status_code, process_time,
            )
            if response.status_code >= 500:
                logger.error(summary, extra=log_data)
            elif response.status_code >= 400:
                logger.warning(summary, extra=log_data)
            else:
                logger.info(summary, extra=log_data)
            return response
        finally:
            correlation_id.reset(token)
