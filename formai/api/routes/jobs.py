"""Background job endpoints.

Enqueue form-processing jobs, inspect the queue and apply operator
actions (retry, cancel, cleanup). ``POST /api/jobs/tick`` is the loopback
target the runner hits when it cannot arm an in-process timer.
"""

import logging

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from formai.api.exceptions import (
    DuplicateJobError,
    InvalidJobTransitionError,
    JobNotFoundError,
    ValidationError,
)
from formai.api.response import ok
from formai.models import EnqueueJobRequest, Job
from formai.services.job_runner import get_job_runner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"])


async def _parse_enqueue(request: Request) -> EnqueueJobRequest:
    # pydantic's ValidationError and JSON decode errors are both ValueErrors
    try:
        return EnqueueJobRequest.model_validate(await request.json())
    except ValueError as e:
        raise ValidationError(str(e)) from e


async def _require_transition(job: Job | None, job_id: str, action: str) -> Job:
    """Explain why a conditional store update matched nothing."""
    if job is not None:
        return job
    existing = await get_job_runner().store.get(job_id)
    if existing is None:
        raise JobNotFoundError(job_id)
    raise InvalidJobTransitionError(job_id, action, existing.status.value)


@router.post("", status_code=202)
async def enqueue_job(request: Request) -> JSONResponse:
    """Queue a job, or run it inline when background processing is disabled."""
    body = await _parse_enqueue(request)
    runner = get_job_runner()

    if body.entry_id and runner.background_enabled:
        if await runner.store.exists_active(body.target_id, body.entry_id):
            raise DuplicateJobError(body.entry_id)

    result = await runner.enqueue(
        target_id=body.target_id,
        form_id=body.form_id,
        entry_id=body.entry_id,
        payload=body.payload,
        delay_seconds=body.delay_seconds,
        priority=body.priority,
        job_type=body.job_type,
    )

    if result.immediate:
        return ok({"immediate": True, "result": result.result})
    return ok({"immediate": False, "job_id": result.job_id}, status_code=202)


@router.get("/stats")
async def job_statistics(window_hours: float = Query(default=24, gt=0)) -> JSONResponse:
    """Per-status counts for jobs created within the window."""
    return ok(await get_job_runner().store.statistics(window_hours=window_hours))


@router.get("/recent")
async def recent_jobs(limit: int = Query(default=50, ge=1, le=500)) -> JSONResponse:
    """Most recently created jobs, newest first, without payloads."""
    jobs = await get_job_runner().store.recent(limit=limit)
    return ok([job.to_summary() for job in jobs])


@router.post("/cleanup")
async def cleanup_jobs() -> JSONResponse:
    deleted = await get_job_runner().store.cleanup_old_jobs()
    return ok({"deleted": deleted})


@router.post("/tick", status_code=202)
async def trigger_tick() -> JSONResponse:
    """Schedule an immediate runner tick."""
    get_job_runner().wake(0)
    return ok({"scheduled": True}, status_code=202)


@router.get("/{job_id}")
async def get_job(job_id: str) -> JSONResponse:
    job = await get_job_runner().store.get(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return ok(job)


@router.post("/{job_id}/retry")
async def retry_job(job_id: str) -> JSONResponse:
    """Send a failed or retry-waiting job back to pending with a fresh budget."""
    runner = get_job_runner()
    job = await _require_transition(await runner.store.retry(job_id), job_id, "retry")

    logger.info(f"Operator retried job {job_id}")
    runner.wake(0)
    return ok(job)


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str) -> JSONResponse:
    """Fail a job that has not started yet."""
    runner = get_job_runner()
    job = await _require_transition(await runner.store.cancel(job_id), job_id, "cancel")

    logger.info(f"Operator cancelled job {job_id}")
    return ok(job)
