"""Liveness and readiness endpoints."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from guardian.errors import GuardianError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Health"])

SERVICE_NAME = "Stripe Guardian"


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Health check endpoint.

    Returns a simple status indicator for load balancers
    and monitoring systems. It never touches Stripe or Supabase.
    """
    return {
        "ok": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
        "status": "healthy",
    }


@router.get("/ready")
async def readiness_check(request: Request) -> JSONResponse:
    """
    Readiness check endpoint.

    Reports which required variables are present and checks Stripe, the
    profiles datastore and the plans datastore.

    Returns:
        200 when everything answers, 503 otherwise.
    """
    settings = request.app.state.settings
    services = getattr(request.app.state, "services", None)
    errors: List[str] = []

    checks: Dict[str, Any] = {
        "env": {name: present for name, present in settings.required_env()},
        "adminKey": settings.admin_key_type(),
        "stripe": False,
        "profiles": False,
        "plans": False,
    }
    if services is None:
        errors.append(f"Service not initialized: {getattr(request.app.state, 'init_error', None) or 'unknown'}")
    else:
        try:
            await services.stripe.ping()
            checks["stripe"] = True
        except GuardianError as e:
            errors.append(f"Stripe: {e}")
        try:
            await services.profiles.ping()
            checks["profiles"] = True
        except GuardianError as e:
            errors.append(f"Profiles datastore: {e}")
        try:
            await services.plans.ping()
            checks["plans"] = True
        except GuardianError as e:
            errors.append(f"Plans datastore: {e}")

    ok = not errors and all(checks["env"].values())
    body: Dict[str, Any] = {
        "ok": ok,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
    if errors:
        body["errors"] = errors
        logger.warning(f"Readiness check failed: {'; '.join(errors)}")
    return JSONResponse(
        status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body,
    )
