"""
Health endpoints.

Lightweight liveness and readiness checks that expose no secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from cloudmedia.core.database import get_engine, metadata

logger = logging.getLogger("cloudmedia")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [name for name in metadata.tables if not inspector.has_table(name)]
        if missing:
            detail = f"missing tables: {', '.join(sorted(missing))}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except SQLAlchemyError as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
