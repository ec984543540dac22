from datetime import datetime

from fastapi import APIRouter, Request

from tunnelfleet.core.config import settings
from tunnelfleet.schemas.client import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request):
    """
    Liveness of the control plane itself.
    Reports the registry as degraded when it was not loaded at startup.
    """
    now = datetime.utcnow()
    started_at = request.app.state.started_at
    loaded = getattr(request.app.state, "registry_loaded", False)

    return HealthResponse(
        status="ok" if loaded else "degraded",
        timestamp=now,
        version=settings.VERSION,
        uptime=round((now - started_at).total_seconds(), 1),
    )
