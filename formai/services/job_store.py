"""Queue of background AI form-processing jobs.

``MongoJobStore`` is the durable backend; ``InMemoryJobStore`` serves tests
and deployments without MongoDB (``JOB_STORE_BACKEND=memory``).

Every mutation is a single-document conditional update guarded on the
current status, so overlapping runner ticks cannot claim or finish the same
job twice. The store assumes one logical consumer; it does not provide
cross-machine locking.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import uuid4

from pymongo import ReturnDocument

from formai.models import (
    ACTIVE_STATUSES,
    CANCELLABLE_BY_OPERATOR,
    CLAIMABLE_STATUSES,
    DEFAULT_MAX_RETRIES,
    RETRYABLE_BY_OPERATOR,
    Job,
    JobStatistics,
    JobStatus,
    JobType,
)
from formai.models.job import _ensure_tz_aware

logger = logging.getLogger(__name__)

# Pending jobs older than this get scheduled_at re-stamped to now
STALE_PENDING_SECONDS = 3600

# Retention for cleanup_old_jobs
COMPLETED_RETENTION_DAYS = 7
FAILED_RETENTION_DAYS = 30

CANCELLED_MESSAGE = "Cancelled by admin"
STUCK_NOTE = "Reset after exceeding processing timeout"

# MongoDB collection holding one document per job
JOBS_COLLECTION = "background_jobs"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _append_note(existing: Optional[str], note: str) -> str:
    """Append to the error history instead of overwriting it."""
    if not existing:
        return note
    return f"{existing} | {note}"


class BaseJobStore(ABC):
    """Abstract base class for job stores.

    Lifecycle hooks (start/stop) are called by the FastAPI lifespan and may
    be no-ops.
    """

    async def start(self) -> None:
        """Called on application startup."""
        pass

    async def stop(self) -> None:
        """Called on application shutdown."""
        pass

    @abstractmethod
    async def enqueue(
        self,
        target_id: str,
        form_id: Optional[str] = None,
        entry_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        delay_seconds: float = 0,
        priority: int = 0,
        job_type: JobType = JobType.ai_form_processing,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> str:
        """Insert a pending job and return its ID. No deduplication."""
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        """Look up one job, or None."""
        pass

    @abstractmethod
    async def claim_next(self, now: Optional[datetime] = None) -> Optional[Job]:
        """Atomically move the best due job to processing.

        Highest priority first, then oldest created_at.
        """
        pass

    @abstractmethod
    async def mark_completed(self, job_id: str) -> bool:
        """processing -> completed."""
        pass

    @abstractmethod
    async def mark_retry(self, job_id: str, error: str, next_attempt_at: datetime) -> bool:
        """processing -> retry, incrementing retry_count.

        Refused once retry_count has reached max_retries.
        """
        pass

    @abstractmethod
    async def mark_failed(self, job_id: str, error: str) -> bool:
        """processing -> failed.

        Jobs the stuck-job sweep already moved back to pending are left alone.
        """
        pass

    @abstractmethod
    async def reset_stuck(self, timeout_seconds: float, now: Optional[datetime] = None) -> int:
        """Recover jobs stuck in processing and re-stamp stale pending jobs.

        Returns:
            Number of processing jobs reset to pending.
        """
        pass

    @abstractmethod
    async def count_processing(self) -> int:
        """Number of jobs currently in processing."""
        pass

    @abstractmethod
    async def has_pending(self) -> bool:
        """Whether any pending or retry job exists, due or not."""
        pass

    @abstractmethod
    async def recent(self, limit: int = 50) -> list[Job]:
        """Newest jobs first."""
        pass

    @abstractmethod
    async def statistics(self, window_hours: float = 24) -> JobStatistics:
        """Per-status counts for jobs created within the window."""
        pass

    @abstractmethod
    async def exists_active(self, target_id: str, entry_id: str) -> bool:
        """Whether a pending/processing/retry job exists for this submission."""
        pass

    @abstractmethod
    async def retry(self, job_id: str) -> Optional[Job]:
        """Operator retry: failed/retry -> pending with a fresh budget.

        Returns:
            The updated job, or None if missing or not in a retryable status.
        """
        pass

    @abstractmethod
    async def cancel(self, job_id: str) -> Optional[Job]:
        """Operator cancel: pending/retry -> failed.

        Returns:
            The updated job, or None if missing or not cancellable.
        """
        pass

    @abstractmethod
    async def cleanup_old_jobs(self, now: Optional[datetime] = None) -> int:
        """Delete old completed and failed jobs. Returns number deleted."""
        pass

    def _new_job(
        self,
        target_id: str,
        form_id: Optional[str],
        entry_id: Optional[str],
        payload: Optional[dict[str, Any]],
        delay_seconds: float,
        priority: int,
        job_type: JobType,
        max_retries: int,
    ) -> Job:
        now = _utcnow()
        return Job(
            job_id=str(uuid4()),
            job_type=job_type,
            target_id=target_id,
            form_id=form_id,
            entry_id=entry_id,
            payload=payload or {},
            status=JobStatus.pending,
            priority=priority,
            max_retries=max_retries,
            scheduled_at=now + timedelta(seconds=max(delay_seconds, 0)),
            created_at=now,
            updated_at=now,
        )


class InMemoryJobStore(BaseJobStore):
    """Process-local store. Mutations hold one asyncio lock; nothing survives a restart."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        target_id: str,
        form_id: Optional[str] = None,
        entry_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        delay_seconds: float = 0,
        priority: int = 0,
        job_type: JobType = JobType.ai_form_processing,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> str:
        job = self._new_job(
            target_id, form_id, entry_id, payload, delay_seconds, priority, job_type, max_retries
        )
        async with self._lock:
            self._jobs[job.job_id] = job

        logger.debug(f"Enqueued job {job.job_id} for target {target_id}")
        return job.job_id

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[Job]:
        now = now or _utcnow()
        async with self._lock:
            due = [
                job for job in self._jobs.values()
                if job.status in CLAIMABLE_STATUSES and job.scheduled_at <= now
            ]
            if not due:
                return None
            due.sort(key=lambda j: (-j.priority, j.created_at))
            job = due[0]
            job.status = JobStatus.processing
            job.started_at = now
            job.updated_at = now
            return job.model_copy(deep=True)

    async def mark_completed(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status != JobStatus.processing:
                return False
            now = _utcnow()
            job.status = JobStatus.completed
            job.completed_at = now
            job.updated_at = now
            return True

    async def mark_retry(self, job_id: str, error: str, next_attempt_at: datetime) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status != JobStatus.processing or not job.can_retry():
                return False
            job.status = JobStatus.retry
            job.retry_count += 1
            job.error_message = error
            job.scheduled_at = max(job.scheduled_at, next_attempt_at)
            job.updated_at = _utcnow()
            return True

    async def mark_failed(self, job_id: str, error: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status != JobStatus.processing:
                return False
            now = _utcnow()
            job.status = JobStatus.failed
            job.error_message = error
            job.completed_at = now
            job.updated_at = now
            return True

    async def reset_stuck(self, timeout_seconds: float, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        cutoff = now - timedelta(seconds=timeout_seconds)
        stale_cutoff = now - timedelta(seconds=STALE_PENDING_SECONDS)
        reset = 0
        restamped = 0

        async with self._lock:
            for job in self._jobs.values():
                if job.status == JobStatus.processing and (
                    job.started_at is None or job.started_at < cutoff
                ):
                    job.status = JobStatus.pending
                    job.error_message = _append_note(job.error_message, STUCK_NOTE)
                    job.updated_at = now
                    reset += 1
                elif (
                    job.status == JobStatus.pending
                    and job.created_at < stale_cutoff
                    and job.scheduled_at < now
                ):
                    job.scheduled_at = now
                    job.updated_at = now
                    restamped += 1

        if reset:
            logger.warning(f"Reset {reset} stuck jobs to pending")
        if restamped:
            logger.info(f"Re-stamped {restamped} stale pending jobs")
        return reset

    async def count_processing(self) -> int:
        async with self._lock:
            return sum(1 for job in self._jobs.values() if job.status == JobStatus.processing)

    async def has_pending(self) -> bool:
        async with self._lock:
            return any(job.status in CLAIMABLE_STATUSES for job in self._jobs.values())

    async def recent(self, limit: int = 50) -> list[Job]:
        async with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
            return [job.model_copy(deep=True) for job in jobs[:limit]]

    async def statistics(self, window_hours: float = 24) -> JobStatistics:
        since = _utcnow() - timedelta(hours=window_hours)
        stats = JobStatistics(window_hours=window_hours)
        async with self._lock:
            for job in self._jobs.values():
                if job.created_at < since:
                    continue
                stats.total += 1
                setattr(stats, job.status.value, getattr(stats, job.status.value) + 1)
        return stats

    async def exists_active(self, target_id: str, entry_id: str) -> bool:
        async with self._lock:
            return any(
                job.target_id == target_id
                and job.entry_id == entry_id
                and job.status in ACTIVE_STATUSES
                for job in self._jobs.values()
            )

    async def retry(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status not in RETRYABLE_BY_OPERATOR:
                return None
            now = _utcnow()
            job.status = JobStatus.pending
            job.retry_count = 0
            job.error_message = None
            job.completed_at = None
            job.scheduled_at = max(job.scheduled_at, now)
            job.updated_at = now
            return job.model_copy(deep=True)

    async def cancel(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status not in CANCELLABLE_BY_OPERATOR:
                return None
            now = _utcnow()
            job.status = JobStatus.failed
            job.error_message = CANCELLED_MESSAGE
            job.completed_at = now
            job.updated_at = now
            return job.model_copy(deep=True)

    async def cleanup_old_jobs(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        completed_cutoff = now - timedelta(days=COMPLETED_RETENTION_DAYS)
        failed_cutoff = now - timedelta(days=FAILED_RETENTION_DAYS)

        async with self._lock:
            expired_ids = [
                job.job_id for job in self._jobs.values()
                if (job.status == JobStatus.completed and job.updated_at < completed_cutoff)
                or (job.status == JobStatus.failed and job.updated_at < failed_cutoff)
            ]
            for job_id in expired_ids:
                del self._jobs[job_id]

        if expired_ids:
            logger.info(f"Cleaned up {len(expired_ids)} old jobs")
        return len(expired_ids)

    def __len__(self) -> int:
        """Jobs held, whatever their status."""
        return len(self._jobs)


class MongoJobStore(BaseJobStore):
    """MongoDB-backed job store.

    Jobs persist across server restarts. claim_next is a single
    find_one_and_update so overlapping ticks never receive the same job.
    """

    _DATETIME_FIELDS = ("scheduled_at", "started_at", "completed_at", "created_at", "updated_at")

    def __init__(self):
        """Initialize MongoDB job store."""
        self._index_created = False

    async def start(self) -> None:
        await self.ensure_indexes()

    async def _get_collection(self):
        """The background_jobs collection."""
        from formai.db.mongo import get_database
        db = await get_database()
        return db[JOBS_COLLECTION]

    async def ensure_indexes(self) -> None:
        """Create indexes used by claim_next and reporting."""
        if self._index_created:
            return

        try:
            collection = await self._get_collection()
            await collection.create_index("job_id", unique=True)
            await collection.create_index("status")
            await collection.create_index("scheduled_at")
            await collection.create_index("priority")
            await collection.create_index("job_type")
            await collection.create_index(
                [("status", 1), ("scheduled_at", 1), ("priority", -1), ("created_at", 1)]
            )
            await collection.create_index([("target_id", 1), ("entry_id", 1)])
            self._index_created = True
            logger.info("MongoDB job store indexes created")
        except Exception as e:
            logger.warning(f"Failed to create MongoDB job indexes: {e}")

    def _job_to_doc(self, job: Job) -> dict:
        """Convert Job to MongoDB document."""
        doc = job.model_dump()
        doc["job_type"] = job.job_type.value
        doc["status"] = job.status.value
        return doc

    def _doc_to_job(self, doc: dict) -> Job:
        """Convert MongoDB document to Job."""
        data = {key: value for key, value in doc.items() if key != "_id"}
        for key in self._DATETIME_FIELDS:
            data[key] = _ensure_tz_aware(data.get(key))
        return Job.model_validate(data)

    async def enqueue(
        self,
        target_id: str,
        form_id: Optional[str] = None,
        entry_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        delay_seconds: float = 0,
        priority: int = 0,
        job_type: JobType = JobType.ai_form_processing,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> str:
        await self.ensure_indexes()

        job = self._new_job(
            target_id, form_id, entry_id, payload, delay_seconds, priority, job_type, max_retries
        )
        collection = await self._get_collection()
        await collection.insert_one(self._job_to_doc(job))

        logger.debug(f"Enqueued job {job.job_id} in MongoDB")
        return job.job_id

    async def get(self, job_id: str) -> Optional[Job]:
        collection = await self._get_collection()
        doc = await collection.find_one({"job_id": job_id})
        return self._doc_to_job(doc) if doc else None

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[Job]:
        now = now or _utcnow()
        collection = await self._get_collection()
        doc = await collection.find_one_and_update(
            {
                "status": {"$in": [s.value for s in CLAIMABLE_STATUSES]},
                "scheduled_at": {"$lte": now},
            },
            {"$set": {"status": JobStatus.processing.value, "started_at": now, "updated_at": now}},
            sort=[("priority", -1), ("created_at", 1)],
            return_document=ReturnDocument.AFTER,
        )
        return self._doc_to_job(doc) if doc else None

    async def mark_completed(self, job_id: str) -> bool:
        now = _utcnow()
        collection = await self._get_collection()
        result = await collection.update_one(
            {"job_id": job_id, "status": JobStatus.processing.value},
            {"$set": {"status": JobStatus.completed.value, "completed_at": now, "updated_at": now}},
        )
        return result.modified_count > 0

    async def mark_retry(self, job_id: str, error: str, next_attempt_at: datetime) -> bool:
        collection = await self._get_collection()
        doc = await collection.find_one({"job_id": job_id, "status": JobStatus.processing.value})
        if not doc or doc.get("retry_count", 0) >= doc.get("max_retries", DEFAULT_MAX_RETRIES):
            return False

        # Guard on the observed retry_count so a concurrent writer cannot double-increment
        result = await collection.update_one(
            {
                "job_id": job_id,
                "status": JobStatus.processing.value,
                "retry_count": doc.get("retry_count", 0),
            },
            {
                "$set": {
                    "status": JobStatus.retry.value,
                    "error_message": error,
                    "updated_at": _utcnow(),
                },
                "$inc": {"retry_count": 1},
                "$max": {"scheduled_at": next_attempt_at},
            },
        )
        return result.modified_count > 0

    async def mark_failed(self, job_id: str, error: str) -> bool:
        now = _utcnow()
        collection = await self._get_collection()
        result = await collection.update_one(
            {"job_id": job_id, "status": JobStatus.processing.value},
            {
                "$set": {
                    "status": JobStatus.failed.value,
                    "error_message": error,
                    "completed_at": now,
                    "updated_at": now,
                }
            },
        )
        return result.modified_count > 0

    async def reset_stuck(self, timeout_seconds: float, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        cutoff = now - timedelta(seconds=timeout_seconds)
        collection = await self._get_collection()

        stuck_query = {
            "status": JobStatus.processing.value,
            "$or": [{"started_at": {"$lt": cutoff}}, {"started_at": None}],
        }
        reset = 0
        stuck_docs = await collection.find(stuck_query).to_list(length=None)
        for doc in stuck_docs:
            result = await collection.update_one(
                {"job_id": doc["job_id"], "status": JobStatus.processing.value},
                {
                    "$set": {
                        "status": JobStatus.pending.value,
                        "error_message": _append_note(doc.get("error_message"), STUCK_NOTE),
                        "updated_at": now,
                    }
                },
            )
            reset += result.modified_count

        stale = await collection.update_many(
            {
                "status": JobStatus.pending.value,
                "created_at": {"$lt": now - timedelta(seconds=STALE_PENDING_SECONDS)},
                "scheduled_at": {"$lt": now},
            },
            {"$set": {"scheduled_at": now, "updated_at": now}},
        )

        if reset:
            logger.warning(f"Reset {reset} stuck jobs to pending")
        if stale.modified_count:
            logger.info(f"Re-stamped {stale.modified_count} stale pending jobs")
        return reset

    async def count_processing(self) -> int:
        collection = await self._get_collection()
        return await collection.count_documents({"status": JobStatus.processing.value})

    async def has_pending(self) -> bool:
        collection = await self._get_collection()
        count = await collection.count_documents(
            {"status": {"$in": [s.value for s in CLAIMABLE_STATUSES]}}
        )
        return count > 0

    async def recent(self, limit: int = 50) -> list[Job]:
        collection = await self._get_collection()
        cursor = collection.find({}).sort("created_at", -1).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [self._doc_to_job(doc) for doc in docs]

    async def statistics(self, window_hours: float = 24) -> JobStatistics:
        since = _utcnow() - timedelta(hours=window_hours)
        collection = await self._get_collection()
        stats = JobStatistics(window_hours=window_hours)
        for status in JobStatus:
            count = await collection.count_documents(
                {"status": status.value, "created_at": {"$gte": since}}
            )
            setattr(stats, status.value, count)
            stats.total += count
        return stats

    async def exists_active(self, target_id: str, entry_id: str) -> bool:
        collection = await self._get_collection()
        count = await collection.count_documents(
            {
                "target_id": target_id,
                "entry_id": entry_id,
                "status": {"$in": [s.value for s in ACTIVE_STATUSES]},
            }
        )
        return count > 0

    async def retry(self, job_id: str) -> Optional[Job]:
        now = _utcnow()
        collection = await self._get_collection()
        doc = await collection.find_one_and_update(
            {"job_id": job_id, "status": {"$in": [s.value for s in RETRYABLE_BY_OPERATOR]}},
            {
                "$set": {
                    "status": JobStatus.pending.value,
                    "retry_count": 0,
                    "error_message": None,
                    "completed_at": None,
                    "updated_at": now,
                },
                "$max": {"scheduled_at": now},
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._doc_to_job(doc) if doc else None

    async def cancel(self, job_id: str) -> Optional[Job]:
        now = _utcnow()
        collection = await self._get_collection()
        doc = await collection.find_one_and_update(
            {"job_id": job_id, "status": {"$in": [s.value for s in CANCELLABLE_BY_OPERATOR]}},
            {
                "$set": {
                    "status": JobStatus.failed.value,
                    "error_message": CANCELLED_MESSAGE,
                    "completed_at": now,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._doc_to_job(doc) if doc else None

    async def cleanup_old_jobs(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        collection = await self._get_collection()
        result = await collection.delete_many(
            {
                "$or": [
                    {
                        "status": JobStatus.completed.value,
                        "updated_at": {"$lt": now - timedelta(days=COMPLETED_RETENTION_DAYS)},
                    },
                    {
                        "status": JobStatus.failed.value,
                        "updated_at": {"$lt": now - timedelta(days=FAILED_RETENTION_DAYS)},
                    },
                ]
            }
        )
        if result.deleted_count:
            logger.info(f"Cleaned up {result.deleted_count} old jobs from MongoDB")
        return result.deleted_count


# Process-wide store, see get_job_store()
_default_store: Optional[BaseJobStore] = None


def get_job_store() -> BaseJobStore:
    """Process-wide job store, created on first use.

    Uses MongoDB unless JOB_STORE_BACKEND=memory.
    """
    global _default_store
    if _default_store is None:
        use_mongo = os.getenv("JOB_STORE_BACKEND", "mongo").lower() == "mongo"
        if use_mongo:
            _default_store = MongoJobStore()
            logger.info("Using MongoDB job store")
        else:
            _default_store = InMemoryJobStore()
            logger.info("Using in-memory job store")
    return _default_store


def set_job_store(store: Optional[BaseJobStore]) -> None:
    """Set the job store instance (for testing)."""
    global _default_store
    _default_store = store
