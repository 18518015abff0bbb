"""Integration tests for job endpoints.

Tests the /api/jobs/* and /health endpoints against the in-memory job
store. Runner wake-ups are stubbed so no background tick races the
assertions.
"""

from unittest.mock import patch

import pytest

from formai.models import JobStatus, JobType
from formai.services.form_processing import FormProcessingHandler
from formai.services.job_runner import JobRunner, set_job_runner


@pytest.fixture(autouse=True)
def quiet_runner(runner):
    """Stub out wake-ups on the shared runner."""
    with patch.object(runner, "wake") as wake:
        yield wake


def enqueue_body(**overrides):
    body = {
        "target_id": "cfg-1",
        "form_id": "form-7",
        "entry_id": "entry-1",
        "payload": {"form_data": {"name": "Sam", "feedback": "Great"}},
    }
    body.update(overrides)
    return body


class TestEnqueueEndpoint:
    """Tests for POST /api/jobs."""

    @pytest.mark.asyncio
    async def test_enqueue_accepted(self, client, job_store, quiet_runner):
        """Test that a valid request queues a job."""
        response = await client.post("/api/jobs", json=enqueue_body())

        assert response.status_code == 202
        data = response.json()["data"]
        assert data["immediate"] is False
        job = await job_store.get(data["job_id"])
        assert job.status == JobStatus.pending
        assert job.form_id == "form-7"
        quiet_runner.assert_called_once_with(300)

    @pytest.mark.asyncio
    async def test_duplicate_entry_rejected(self, client, job_store):
        """Test that a second job for an active entry is refused."""
        first = await client.post("/api/jobs", json=enqueue_body())
        second = await client.post("/api/jobs", json=enqueue_body())

        assert first.status_code == 202
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "DUPLICATE_JOB"
        assert len(job_store) == 1

    @pytest.mark.asyncio
    async def test_same_entry_after_cancel(self, client, job_store):
        """Test that a cancelled entry can be queued again."""
        first = await client.post("/api/jobs", json=enqueue_body())
        await client.post(f"/api/jobs/{first.json()['data']['job_id']}/cancel")

        again = await client.post("/api/jobs", json=enqueue_body())

        assert again.status_code == 202

    @pytest.mark.asyncio
    async def test_missing_target(self, client):
        """Test that a request without target_id is a validation error."""
        response = await client.post("/api/jobs", json={"payload": {}})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_field(self, client):
        """Test that unexpected fields are rejected."""
        response = await client.post("/api/jobs", json=enqueue_body(colour="blue"))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_immediate_mode(self, client, job_store, config_store, sample_config, fake_llm_client):
        """Test that disabling background processing returns the result inline."""
        await config_store.save_config(sample_config)
        inline_runner = JobRunner(store=job_store, background_enabled=False)
        inline_runner.register_handler(
            JobType.ai_form_processing,
            FormProcessingHandler(client=fake_llm_client(["Thanks Sam."]), config_store=config_store),
        )
        set_job_runner(inline_runner)

        response = await client.post("/api/jobs", json=enqueue_body())

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["immediate"] is True
        assert data["result"]["text"] == "Thanks Sam."
        assert data["result"]["provider"] == "openai"
        assert len(job_store) == 0

    @pytest.mark.asyncio
    async def test_immediate_mode_permanent_error(self, client, job_store, config_store, fake_llm_client):
        """Test that an inline job with no configuration is rejected."""
        inline_runner = JobRunner(store=job_store, background_enabled=False)
        inline_runner.register_handler(
            JobType.ai_form_processing,
            FormProcessingHandler(client=fake_llm_client(["unused"]), config_store=config_store),
        )
        set_job_runner(inline_runner)

        response = await client.post("/api/jobs", json=enqueue_body(target_id="cfg-404"))

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "JOB_REJECTED"


class TestJobQueries:
    """Tests for job inspection endpoints."""

    @pytest.mark.asyncio
    async def test_get_job(self, client, job_store):
        """Test fetching a job by ID."""
        job_id = await job_store.enqueue(target_id="cfg-1", entry_id="e-1")

        response = await client.get(f"/api/jobs/{job_id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["job_id"] == job_id
        assert data["status"] == "pending"

    @pytest.mark.asyncio
    async def test_get_job_not_found(self, client):
        """Test that an unknown job returns 404."""
        response = await client.get("/api/jobs/nope")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "JOB_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_recent(self, client, job_store):
        """Test the recent-jobs listing omits payloads and honours the limit."""
        for n in range(3):
            await job_store.enqueue(target_id=f"cfg-{n}", payload={"form_data": {"n": n}})

        response = await client.get("/api/jobs/recent", params={"limit": 2})

        assert response.status_code == 200
        jobs = response.json()["data"]
        assert len(jobs) == 2
        assert "payload" not in jobs[0]

    @pytest.mark.asyncio
    async def test_recent_limit_validated(self, client):
        """Test that an out-of-range limit is rejected."""
        response = await client.get("/api/jobs/recent", params={"limit": 0})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_stats(self, client, job_store):
        """Test per-status statistics."""
        await job_store.enqueue(target_id="cfg-1")
        cancelled = await job_store.enqueue(target_id="cfg-2")
        await job_store.cancel(cancelled)

        response = await client.get("/api/jobs/stats", params={"window_hours": 1})

        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["total"] == 2
        assert stats["pending"] == 1
        assert stats["failed"] == 1
        assert stats["window_hours"] == 1


class TestOperatorActions:
    """Tests for retry, cancel, cleanup and tick."""

    @pytest.mark.asyncio
    async def test_retry_failed_job(self, client, job_store, quiet_runner):
        """Test that retrying a failed job re-queues it and wakes the runner."""
        job_id = await job_store.enqueue(target_id="cfg-1")
        await job_store.claim_next()
        await job_store.mark_failed(job_id, "provider down")

        response = await client.post(f"/api/jobs/{job_id}/retry")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "pending"
        assert data["retry_count"] == 0
        assert data["error_message"] is None
        quiet_runner.assert_called_once_with(0)

    @pytest.mark.asyncio
    async def test_retry_pending_job_conflict(self, client, job_store):
        """Test that a pending job cannot be retried."""
        job_id = await job_store.enqueue(target_id="cfg-1")

        response = await client.post(f"/api/jobs/{job_id}/retry")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_JOB_STATUS"

    @pytest.mark.asyncio
    async def test_retry_not_found(self, client):
        """Test that retrying an unknown job returns 404."""
        response = await client.post("/api/jobs/nope/retry")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, client, job_store):
        """Test that cancelling a pending job fails it."""
        job_id = await job_store.enqueue(target_id="cfg-1")

        response = await client.post(f"/api/jobs/{job_id}/cancel")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "failed"
        assert data["error_message"] == "Cancelled by admin"

    @pytest.mark.asyncio
    async def test_cancel_processing_conflict(self, client, job_store):
        """Test that a running job cannot be cancelled."""
        job_id = await job_store.enqueue(target_id="cfg-1")
        await job_store.claim_next()

        response = await client.post(f"/api/jobs/{job_id}/cancel")

        assert response.status_code == 409
        assert "processing" in response.json()["error"]["message"]

    @pytest.mark.asyncio
    async def test_cleanup(self, client, job_store):
        """Test that cleanup keeps recent jobs."""
        await job_store.enqueue(target_id="cfg-1")

        response = await client.post("/api/jobs/cleanup")

        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": 0}
        assert len(job_store) == 1

    @pytest.mark.asyncio
    async def test_tick(self, client, quiet_runner):
        """Test that the loopback endpoint schedules an immediate tick."""
        response = await client.post("/api/jobs/tick")

        assert response.status_code == 202
        assert response.json()["data"] == {"scheduled": True}
        quiet_runner.assert_called_once_with(0)


class TestHealth:
    """Tests for GET /health."""

    @pytest.mark.asyncio
    async def test_health_reports_last_tick(self, client, runner):
        """Test that health exposes runner liveness."""
        before = (await client.get("/health")).json()["data"]
        await runner.tick()
        after = (await client.get("/health")).json()["data"]

        assert before["status"] == "ok"
        assert before["background_enabled"] is True
        assert before["last_tick_at"] is None
        assert after["last_tick_at"] is not None
