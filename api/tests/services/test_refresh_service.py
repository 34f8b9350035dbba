"""
Tests for RefreshService with an in-memory queue standing in for Celery.
"""
import logging
import random
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.models.account import Transaction
from app.models.refresh_job import (
    JOB_TYPE_MANUAL,
    JOB_TYPE_SCHEDULED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    RefreshJob,
)
from app.services import refresh_jobs
from app.services.refresh import IN_PROGRESS_MESSAGE, RefreshService
from conftest import (
    FakeResponse,
    InMemoryRefreshQueue,
    make_item,
    make_user,
    plaid_account,
    plaid_txn,
    sync_page,
)

HOUR = 60 * 60


def all_jobs(session_factory) -> list[RefreshJob]:
    with session_factory() as db:
        return list(db.execute(select(RefreshJob).order_by(RefreshJob.id)).scalars().all())


# ── Manual refresh ───────────────────────────────────────────────────────────

class TestManualRefresh:
    def test_queues_job_and_records_pending_row(self, db, service, queue, session_factory):
        make_user(db, 1)
        result = service.request_manual_refresh(1)

        assert result["success"] is True
        assert result["message"] == "Refresh has been queued"
        assert len(queue.jobs) == 1
        queued = queue.jobs[0]
        assert queued.delay == 0
        assert queued.job_id == result["jobId"]

        (job,) = all_jobs(session_factory)
        assert queued.data == {"user_id": 1, "job_type": JOB_TYPE_MANUAL, "job_db_id": job.id}
        assert job.status == STATUS_PENDING
        assert job.job_id == result["jobId"]

    def test_second_request_is_rejected(self, db, service, queue, session_factory):
        make_user(db, 1)
        assert service.request_manual_refresh(1)["success"] is True

        second = service.request_manual_refresh(1)
        assert second == {"success": False, "message": IN_PROGRESS_MESSAGE}
        assert len(queue.jobs) == 1
        assert len(all_jobs(session_factory)) == 1

    def test_allowed_again_after_completion(self, db, service, queue):
        make_user(db, 1)
        service.request_manual_refresh(1)
        queue.run_next(service)
        assert service.request_manual_refresh(1)["success"] is True

    def test_manual_job_runs_sync(self, db, service, queue, plaid_client, session_factory):
        make_user(db, 1)
        make_item(db, 1, "item-1")
        plaid_client.pages = [sync_page(added=[plaid_txn("t1"), plaid_txn("t2")], next_cursor="c1")]

        service.request_manual_refresh(1)
        result = queue.run_next(service)

        assert result["success"] is True
        assert result["userId"] == 1
        assert result["jobType"] == JOB_TYPE_MANUAL
        assert result["addedCount"] == 2
        (job,) = all_jobs(session_factory)
        assert job.status == STATUS_COMPLETED
        assert job.last_refresh_time is not None
        assert len(db.execute(select(Transaction)).scalars().all()) == 2

    def test_manual_completion_does_not_chain(self, db, service, queue):
        make_user(db, 1)
        service.request_manual_refresh(1)
        queue.run_next(service)
        assert queue.jobs == []

    def test_user_without_items_completes(self, db, service, queue, session_factory):
        make_user(db, 1)
        service.request_manual_refresh(1)
        result = queue.run_next(service)
        assert result["addedCount"] == 0
        assert all_jobs(session_factory)[0].status == STATUS_COMPLETED

    def test_job_picked_up_before_enqueue_returns(self, db, session_factory, plaid_client):
        class EagerQueue(InMemoryRefreshQueue):
            """Runs each job inside add(), like a worker winning the race."""

            def add(self, data, *, job_id, delay=0):
                super().add(data, job_id=job_id, delay=delay)
                self.results.append(self.run_next(service))
                return job_id

        queue = EagerQueue()
        queue.results = []
        service = RefreshService(
            queue, session_factory, client_factory=lambda: plaid_client, settle_seconds=0,
        )
        make_user(db, 1)

        request = service.request_manual_refresh(1)

        assert request["success"] is True
        assert queue.results[0]["success"] is True
        assert queue.results[0]["jobType"] == JOB_TYPE_MANUAL
        (job,) = all_jobs(session_factory)
        assert job.status == STATUS_COMPLETED
        assert job.job_id == request["jobId"]
        assert service.request_manual_refresh(1)["success"] is True

    def test_manual_job_without_row_still_runs(self, db, service, session_factory):
        make_user(db, 1)
        result = service.process_job(1, JOB_TYPE_MANUAL, "manual-1-orphan")
        assert result["success"] is True
        (job,) = all_jobs(session_factory)
        assert job.job_type == JOB_TYPE_MANUAL
        assert job.status == STATUS_COMPLETED

    def test_lost_lease_log_names_job_type(self, db, service, caplog):
        make_user(db, 1)
        holder = refresh_jobs.create_refresh_job(db, 1, JOB_TYPE_MANUAL)
        refresh_jobs.update_job_id(db, holder.id, "holder")
        refresh_jobs.update_job_status(db, 1, "holder", STATUS_PROCESSING)
        loser = refresh_jobs.create_refresh_job(db, 1, JOB_TYPE_MANUAL)
        refresh_jobs.update_job_id(db, loser.id, "loser")

        with caplog.at_level(logging.INFO, logger="app.services.refresh"):
            service.process_job(1, JOB_TYPE_MANUAL, "loser", loser.id)

        assert "Skipping manual refresh job loser for user 1" in caplog.text


# ── Failures and retries ─────────────────────────────────────────────────────

class TestJobFailure:
    def test_failure_marks_job_failed_and_reraises(self, db, service, queue, plaid_client, session_factory):
        make_user(db, 1)
        make_item(db, 1, "item-1")
        plaid_client.pages = [sync_page(next_cursor="c1")]
        plaid_client.accounts = RuntimeError("accounts unavailable")

        service.request_manual_refresh(1)
        job_id = queue.jobs[0].job_id
        with pytest.raises(RuntimeError):
            service.process_job(1, JOB_TYPE_MANUAL, job_id)

        (job,) = all_jobs(session_factory)
        assert job.status == STATUS_FAILED
        assert job.error_message == "accounts unavailable"

    def test_retry_reopens_the_same_row(self, db, service, queue, plaid_client, session_factory):
        make_user(db, 1)
        make_item(db, 1, "item-1")
        plaid_client.pages = [
            sync_page(next_cursor="c1"),
            sync_page(next_cursor="c1"),
            sync_page(added=[plaid_txn("t1")], next_cursor="c1"),
        ]
        calls = []

        def flaky_accounts(request):
            calls.append(request)
            if len(calls) < 3:
                raise RuntimeError("flaky")
            return FakeResponse({"accounts": [plaid_account()]})

        plaid_client.accounts_get = flaky_accounts
        service.request_manual_refresh(1)
        result = queue.run_next(service)

        assert result["success"] is True
        (job,) = all_jobs(session_factory)
        assert job.status == STATUS_COMPLETED
        assert job.error_message is None

    def test_exhausted_retries(self, db, service, queue, plaid_client, session_factory):
        make_user(db, 1)
        make_item(db, 1, "item-1")
        plaid_client.pages = [sync_page(next_cursor="c1") for _ in range(3)]
        plaid_client.accounts = RuntimeError("down")

        service.request_manual_refresh(1)
        job = queue.run_next(service)

        assert job.attempts == queue.max_attempts
        assert len(job.errors) == 3
        assert all_jobs(session_factory)[0].status == STATUS_FAILED
        assert queue.jobs == []

    def test_lost_lease_fails_job_without_running(self, db, service, queue, plaid_client, session_factory):
        make_user(db, 1)
        holder = refresh_jobs.create_refresh_job(db, 1, JOB_TYPE_MANUAL)
        refresh_jobs.update_job_id(db, holder.id, "holder")
        refresh_jobs.update_job_status(db, 1, "holder", STATUS_PROCESSING)

        loser = refresh_jobs.create_refresh_job(db, 1, JOB_TYPE_MANUAL)
        refresh_jobs.update_job_id(db, loser.id, "loser")
        result = service.process_job(1, JOB_TYPE_MANUAL, "loser")

        assert result["success"] is False
        assert result["skipped"] is True
        with session_factory() as check:
            assert refresh_jobs.get_job_by_job_id(check, "loser").status == STATUS_FAILED
            assert refresh_jobs.get_job_by_job_id(check, "holder").status == STATUS_PROCESSING
        assert plaid_client.sync_requests == []


# ── Scheduled refresh ────────────────────────────────────────────────────────

class TestScheduledRefresh:
    def test_initialize_spreads_users_over_jitter_window(self, db, queue, session_factory, plaid_client):
        for user_id in (1, 2, 3):
            make_user(db, user_id)
        service = RefreshService(
            queue,
            session_factory,
            client_factory=lambda: plaid_client,
            interval_hours=12,
            jitter_minutes=60,
            settle_seconds=0,
            rng=random.Random(7),
        )

        assert service.initialize_scheduled_refreshes() == 3
        assert sorted(job.data["user_id"] for job in queue.jobs) == [1, 2, 3]
        for job in queue.jobs:
            assert job.data["job_type"] == JOB_TYPE_SCHEDULED
            assert 12 * HOUR <= job.delay < 13 * HOUR

    def test_initialize_without_jitter(self, db, queue, session_factory):
        make_user(db, 1)
        service = RefreshService(queue, session_factory, interval_hours=6, jitter_minutes=0, settle_seconds=0)
        service.initialize_scheduled_refreshes()
        assert queue.jobs[0].delay == 6 * HOUR

    def test_tick_creates_row_and_chains_exactly_once(self, db, service, queue, session_factory):
        make_user(db, 1)
        service.schedule_next_refresh(1)
        assert queue.jobs[0].delay == 12 * HOUR
        # No row until the tick fires
        assert all_jobs(session_factory) == []

        result = queue.run_next(service)

        assert result["success"] is True
        (job,) = all_jobs(session_factory)
        assert job.job_type == JOB_TYPE_SCHEDULED
        assert job.status == STATUS_COMPLETED
        assert job.next_scheduled_time is not None
        assert len(queue.jobs) == 1
        assert queue.jobs[0].data == {"user_id": 1, "job_type": JOB_TYPE_SCHEDULED}
        assert queue.jobs[0].delay == 12 * HOUR

    def test_chain_waits_for_settle_delay(self, db, queue, session_factory):
        make_user(db, 1)
        sleeps = []
        service = RefreshService(
            queue, session_factory, interval_hours=12, jitter_minutes=0,
            settle_seconds=1.0, sleep=sleeps.append,
        )
        service.on_completed({"user_id": 1, "job_type": JOB_TYPE_SCHEDULED})
        assert sleeps == [1.0]
        assert len(queue.jobs) == 1

    def test_tick_skipped_while_refresh_in_flight(self, db, service, queue, session_factory):
        make_user(db, 1)
        service.request_manual_refresh(1)
        service.schedule_next_refresh(1)
        manual, scheduled = queue.jobs
        queue.jobs = [scheduled, manual]

        result = queue.run_next(service)

        assert result["skipped"] is True
        assert [job.job_type for job in all_jobs(session_factory)] == [JOB_TYPE_MANUAL]
        # The chain continues
        assert queue.jobs[-1].data["job_type"] == JOB_TYPE_SCHEDULED

    def test_failed_tick_keeps_chain_alive(self, db, service, queue, plaid_client):
        make_user(db, 1)
        make_item(db, 1, "item-1")
        plaid_client.pages = [sync_page(next_cursor="c1") for _ in range(3)]
        plaid_client.accounts = RuntimeError("down")

        service.schedule_next_refresh(1)
        queue.run_next(service)

        assert len(queue.jobs) == 1
        assert queue.jobs[0].data["job_type"] == JOB_TYPE_SCHEDULED

    def test_chaining_error_is_logged_not_raised(self, db, session_factory):
        class BrokenQueue(InMemoryRefreshQueue):
            def add(self, data, *, job_id, delay=0):
                raise ConnectionError("redis down")

        make_user(db, 1)
        service = RefreshService(BrokenQueue(), session_factory, settle_seconds=0)
        service.on_completed({"user_id": 1, "job_type": JOB_TYPE_SCHEDULED})

    def test_duplicate_chains_collapse_into_one(self, db, service, queue, session_factory):
        make_user(db, 1)
        # Two worker nodes each started a chain for the same user
        service.schedule_next_refresh(1)
        service.schedule_next_refresh(1)

        first = queue.run_next(service)
        second = queue.run_next(service)

        assert first["success"] is True
        assert second["skipped"] is True
        assert second["rechain"] is False
        assert len(queue.jobs) == 1
        assert queue.jobs[0].data["job_type"] == JOB_TYPE_SCHEDULED
        assert [job.job_type for job in all_jobs(session_factory)] == [JOB_TYPE_SCHEDULED]

    def test_tick_behind_running_scheduled_job_ends_its_chain(self, db, service, queue):
        make_user(db, 1)
        running = refresh_jobs.create_refresh_job(db, 1, JOB_TYPE_SCHEDULED)
        refresh_jobs.update_job_id(db, running.id, "scheduled-running")
        refresh_jobs.update_job_status(db, 1, "scheduled-running", STATUS_PROCESSING)

        service.schedule_next_refresh(1)
        result = queue.run_next(service)

        assert result["skipped"] is True
        assert result["rechain"] is False
        assert queue.jobs == []

    def test_next_cycle_tick_is_not_a_duplicate(self, db, service, queue, session_factory):
        make_user(db, 1)
        earlier = refresh_jobs.create_refresh_job(db, 1, JOB_TYPE_SCHEDULED)
        earlier.created_at = earlier.created_at - timedelta(hours=12)
        db.commit()
        refresh_jobs.update_job_id(db, earlier.id, "scheduled-earlier")
        refresh_jobs.update_job_status(db, 1, "scheduled-earlier", STATUS_COMPLETED)

        service.schedule_next_refresh(1)
        result = queue.run_next(service)

        assert result["success"] is True
        assert len(queue.jobs) == 1


# ── Bulk refresh ─────────────────────────────────────────────────────────────

class TestRefreshAllUsers:
    def test_no_users(self, service):
        assert service.request_manual_refresh_all_users() == {
            "success": False,
            "message": "No users found for refresh",
        }
        assert service.refresh_all_users() == 0

    def test_fan_out_isolates_failures(self, db, session_factory):
        class FailingForUserOne(InMemoryRefreshQueue):
            def add(self, data, *, job_id, delay=0):
                if data["user_id"] == 1:
                    raise ConnectionError("redis down")
                return super().add(data, job_id=job_id, delay=delay)

        make_user(db, 1)
        make_user(db, 2)
        queue = FailingForUserOne()
        service = RefreshService(queue, session_factory, settle_seconds=0)

        summary = service.request_manual_refresh_all_users()

        assert summary["success"] is True
        assert summary["totalUsers"] == 2
        assert summary["successfulJobs"] == 1
        assert summary["message"] == "Refresh has been queued for 1 out of 2 users"
        results = {r["userId"]: r for r in summary["jobResults"]}
        assert results[1]["success"] is False
        assert results[2]["success"] is True
        assert [job.data["user_id"] for job in queue.jobs] == [2]
        failed = [job for job in all_jobs(session_factory) if job.user_id == 1]
        assert [job.status for job in failed] == [STATUS_FAILED]
        assert failed[0].error_message == "Failed to queue: redis down"

    def test_fan_out_reports_in_progress_users(self, db, service):
        make_user(db, 1)
        make_user(db, 2)
        service.request_manual_refresh(1)

        summary = service.request_manual_refresh_all_users()

        results = {r["userId"]: r for r in summary["jobResults"]}
        assert results[1]["message"] == IN_PROGRESS_MESSAGE
        assert summary["successfulJobs"] == 1

    def test_batches_pause_between_groups(self, db, queue, session_factory):
        for user_id in range(1, 6):
            make_user(db, user_id)
        sleeps = []
        service = RefreshService(queue, session_factory, settle_seconds=0, sleep=sleeps.append)

        assert service.refresh_all_users(batch_size=2) == 5
        assert sleeps == [1, 1]
        assert len(queue.jobs) == 5


# ── Status and startup ───────────────────────────────────────────────────────

class TestStatusAndStartup:
    def test_never_run(self, db, service):
        make_user(db, 1)
        assert service.get_refresh_status(1) == {
            "status": "never_run",
            "lastRefreshTime": None,
            "nextScheduledTime": None,
        }

    def test_status_after_completion(self, db, service, queue):
        make_user(db, 1)
        service.request_manual_refresh(1)
        assert service.get_refresh_status(1)["status"] == STATUS_PENDING
        queue.run_next(service)

        status = service.get_refresh_status(1)
        assert status["status"] == STATUS_COMPLETED
        assert status["jobType"] == JOB_TYPE_MANUAL
        assert status["lastRefreshTime"] is not None
        assert status["errorMessage"] is None

    def test_startup_clears_queue_and_fails_unfinished_rows(self, db, service, queue, session_factory):
        make_user(db, 1)
        make_user(db, 2)
        service.request_manual_refresh(1)
        service.schedule_next_refresh(2)

        assert service.startup() == 2
        assert queue.jobs == []
        (job,) = all_jobs(session_factory)
        assert job.status == STATUS_FAILED
        assert job.error_message == "Interrupted by worker restart"
