"""
Health Check Endpoints.

Provides health status for the API and its database.
"""
import os
import time
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ..models import HealthStatus
from ..deps import get_db
from ...database.auth_db import AuthDB

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

# Version from environment or default
VERSION = os.getenv("APP_VERSION", "1.0.0")


@router.get("", response_model=HealthStatus)
def health_check(db: AuthDB = Depends(get_db)):
    """
    Basic health check endpoint.

    Returns overall system status.
    """
    services = {}
    overall_healthy = True

    try:
        start = time.time()
        db.ping()
        latency = (time.time() - start) * 1000
        services["database"] = f"healthy ({latency:.1f}ms)"
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        services["database"] = "unhealthy"
        overall_healthy = False

    return HealthStatus(
        status="healthy" if overall_healthy else "unhealthy",
        version=VERSION,
        services=services,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/live")
def liveness():
    """
    Kubernetes liveness probe.

    Returns 200 if the service is running.
    """
    return {"status": "alive"}


@router.get("/ready")
def readiness(db: AuthDB = Depends(get_db)):
    """
    Kubernetes readiness probe.

    Returns 200 once the database answers, 503 otherwise.
    """
    try:
        db.ping()
        return {"status": "ready"}
    except SQLAlchemyError as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not ready"})
