"""Health check.

Durable store and shared store connectivity are reported as independent
booleans. Losing the shared store only degrades the service; losing the
durable store makes it unhealthy.
"""

import time
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from sheetgate import __version__
from sheetgate.app.dependencies import Services, get_services

router = APIRouter(tags=["health"])

_started_at = time.monotonic()


@router.get("/health")
async def health(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(status_code=503, content={"status": "shutting_down"})

    database_ok = await services.store.ping()
    backend = services.cache_backend
    cache_ok = await backend.ping() if backend is not None else False

    if not database_ok:
        status, status_code = "unhealthy", 503
    elif not cache_ok:
        status, status_code = "degraded", 200
    else:
        status, status_code = "ok", 200

    body: Dict[str, Any] = {
        "status": status,
        "version": __version__,
        "uptime": round(time.monotonic() - _started_at, 1),
        "services": {
            "database": database_ok,
            "cache": cache_ok,
        },
        "cache_backend": backend.name if backend is not None else "none",
        "rate_limiter": services.rate_limiter.mode,
        "pending_invalidations": services.account_cache.pending_count,
    }
    return JSONResponse(status_code=status_code, content=body)
