"""
Health endpoints.

Lightweight probes for orchestration; no secrets in responses.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from persona.core.database import REQUIRED_TABLES, check_connection, missing_tables

logger = logging.getLogger("persona")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    missing = missing_tables(REQUIRED_TABLES)
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
    return {"status": "ok"}
