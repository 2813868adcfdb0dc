"""
Health endpoints.

/healthz is a dependency-free liveness check; /readyz probes the document
store without exposing connection details.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from dreamstate.core.database import check_connection, get_database_url
from dreamstate.core.logging import get_request_id

logger = logging.getLogger("dreamstate")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: SQL store connectivity when one is configured."""
    if not get_database_url():
        return {"status": "ok", "store": "memory"}

    if not check_connection():
        logger.error("readyz.failed", extra={"request_id": get_request_id()})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    return {"status": "ok", "store": "sql"}
