"""Liveness endpoint."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from formai.api.response import ok
from formai.services.job_runner import get_job_runner

router = APIRouter(tags=["System"])


@router.get("/health")
async def health_check() -> JSONResponse:
    """Report whether the runner is ticking.

    ``last_tick_at`` stays null until the first tick; a stale value means
    the heartbeat has stopped.
    """
    runner = get_job_runner()
    return ok({
        "status": "ok",
        "background_enabled": runner.background_enabled,
        "last_tick_at": runner.last_tick_at,
    })
