import threading
from datetime import datetime, timedelta, timezone

import pytest
from psycopg2 import extras

from db_doubles import DummyConnection, DummyPool
from listing_discovery.core import db
from listing_discovery.core.job_queue import JobNotFoundError, JobQueue, JobStateError, MemoryJobQueue
from listing_discovery.core.models import JobStatus


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(milliseconds=1)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return MemoryJobQueue(clock=clock)


def enqueue(queue, **kwargs):
    return queue.enqueue_job("city-1", "industry-1", "dataset-1", **kwargs)


def test_claim_orders_by_priority_then_fifo(queue):
    low = enqueue(queue, priority=0)
    high_first = enqueue(queue, priority=5)
    high_second = enqueue(queue, priority=5)

    claimed = [queue.claim_next_job().id for _ in range(3)]

    assert claimed == [high_first.id, high_second.id, low.id]
    assert queue.claim_next_job() is None


def test_claim_skips_future_scheduled_jobs(queue, clock):
    later = enqueue(queue, priority=10, scheduled_at=clock.now + timedelta(hours=1))
    now = enqueue(queue)

    assert queue.claim_next_job().id == now.id
    assert queue.claim_next_job() is None

    clock.now += timedelta(hours=2)
    assert queue.claim_next_job().id == later.id


def test_claim_sets_running_and_started_at(queue):
    enqueue(queue)

    job = queue.claim_next_job()

    assert job.status is JobStatus.RUNNING
    assert job.started_at is not None


def test_two_claimers_one_job(queue):
    job = enqueue(queue)
    barrier = threading.Barrier(2)
    outcomes = []

    def claim():
        barrier.wait()
        outcomes.append(queue.claim_next_job())

    threads = [threading.Thread(target=claim) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    claimed = [outcome for outcome in outcomes if outcome is not None]
    assert len(outcomes) == 2
    assert [outcome.id for outcome in claimed] == [job.id]


def test_concurrent_claims_are_exclusive(queue):
    for _ in range(5):
        enqueue(queue)
    barrier = threading.Barrier(20)
    claimed = []

    def claim():
        barrier.wait()
        job = queue.claim_next_job()
        if job is not None:
            claimed.append(job.id)

    threads = [threading.Thread(target=claim) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(claimed) == [1, 2, 3, 4, 5]


def test_retryable_failures_exhaust_retry_budget(queue):
    job = enqueue(queue, max_retries=3)

    statuses = []
    for _ in range(3):
        assert queue.claim_next_job().id == job.id
        statuses.append(queue.fail_job(job.id, "timeout", retryable=True).status)

    assert statuses == [JobStatus.PENDING, JobStatus.PENDING, JobStatus.FAILED]
    final = queue.get_job(job.id)
    assert final.retry_count == 3
    assert final.error_message == "timeout"
    assert final.completed_at is not None
    assert queue.claim_next_job() is None


def test_non_retryable_failure_is_terminal(queue):
    job = enqueue(queue)
    queue.claim_next_job()

    failed = queue.fail_job(job.id, "quota exceeded", retryable=False)

    assert failed.status is JobStatus.FAILED
    assert failed.retry_count == 1


def test_complete_requires_running(queue):
    job = enqueue(queue)

    with pytest.raises(JobStateError):
        queue.complete_job(job.id)

    queue.claim_next_job()
    completed = queue.complete_job(job.id, {"businesses_found": 12, "businesses_created": 12})

    assert completed.status is JobStatus.COMPLETED
    assert completed.businesses_found == 12
    with pytest.raises(JobStateError):
        queue.complete_job(job.id)
    with pytest.raises(JobStateError):
        queue.fail_job(job.id, "late", retryable=True)


def test_cancel_pending_and_running_only(queue):
    pending = enqueue(queue)
    running = enqueue(queue)
    queue.claim_next_job()

    assert queue.cancel_job(pending.id).status is JobStatus.CANCELLED
    assert queue.cancel_job(running.id).status is JobStatus.CANCELLED
    with pytest.raises(JobStateError):
        queue.cancel_job(pending.id)
    with pytest.raises(JobStateError):
        queue.complete_job(running.id)


def test_unknown_job_raises_not_found(queue):
    with pytest.raises(JobNotFoundError):
        queue.cancel_job(404)
    with pytest.raises(JobNotFoundError):
        queue.report_progress(404, {"pages_processed": 1})
    assert queue.get_job(404) is None


def test_report_progress_increments_counters(queue):
    job = enqueue(queue)
    queue.claim_next_job()

    queue.report_progress(job.id, {"keywords_processed": 1, "pages_processed": 3})
    queue.report_progress(job.id, {"keywords_processed": 1, "pages_processed": 2})

    stored = queue.get_job(job.id)
    assert stored.keywords_processed == 2
    assert stored.pages_processed == 5


def test_report_progress_rejects_unknown_counter(queue):
    job = enqueue(queue)

    with pytest.raises(ValueError):
        queue.report_progress(job.id, {"emails_sent": 1})


def test_returned_jobs_are_copies(queue):
    job = enqueue(queue)
    job.status = JobStatus.COMPLETED

    assert queue.get_job(job.id).status is JobStatus.PENDING


def test_job_stats(queue):
    first = enqueue(queue)
    enqueue(queue)
    enqueue(queue)
    queue.claim_next_job()
    queue.complete_job(first.id)
    queue.claim_next_job()

    stats = queue.job_stats()

    assert stats == {
        "pending": 1,
        "running": 1,
        "completed": 1,
        "failed": 0,
        "cancelled": 0,
        "total": 3,
    }


# PostgreSQL queue, exercised through the psycopg2 doubles.


@pytest.fixture
def connection():
    conn = DummyConnection()
    db._connection_pool = DummyPool(conn)
    yield conn
    db._connection_pool = None


def job_row(**overrides):
    row = {
        "id": "job-1",
        "city_id": "city-1",
        "industry_id": "industry-1",
        "dataset_id": "dataset-1",
        "status": "pending",
        "priority": 0,
        "retry_count": 0,
        "max_retries": 3,
        "metadata": {"keywords": ["bakery"]},
    }
    row.update(overrides)
    return row


def test_enqueue_wraps_metadata_as_json(connection):
    connection.results = [job_row()]

    job = JobQueue().enqueue_job("city-1", "industry-1", "dataset-1", priority=2, metadata={"keywords": ["bakery"]})

    sql, params = connection.statements[0]
    assert sql.startswith("INSERT INTO discovery_jobs")
    assert isinstance(params["metadata"], extras.Json)
    assert params["priority"] == 2
    assert job.metadata == {"keywords": ["bakery"]}
    assert connection.commits == 1


def test_claim_uses_skip_locked(connection):
    connection.results = [job_row(status="running")]

    job = JobQueue().claim_next_job()

    sql, _ = connection.statements[0]
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "ORDER BY priority DESC, created_at ASC" in sql
    assert "(scheduled_at IS NULL OR scheduled_at <= NOW())" in sql
    assert job.status is JobStatus.RUNNING


def test_claim_returns_none_when_queue_empty(connection):
    assert JobQueue().claim_next_job() is None


def test_fail_job_sql_decides_retry(connection):
    connection.results = [job_row(status="pending", retry_count=1, error_message="boom")]

    job = JobQueue().fail_job("job-1", "boom", retryable=True)

    sql, params = connection.statements[0]
    assert "WHEN %(retryable)s AND retry_count + 1 < max_retries THEN 'pending'" in sql
    assert "WHERE id = %(id)s AND status = 'running'" in sql
    assert params == {"id": "job-1", "reason": "boom", "retryable": True}
    assert job.status is JobStatus.PENDING


def test_complete_job_reports_wrong_status(connection):
    connection.results = [None, job_row(status="cancelled")]

    with pytest.raises(JobStateError) as excinfo:
        JobQueue().complete_job("job-1", {"businesses_found": 3})

    assert not isinstance(excinfo.value, JobNotFoundError)
    assert "cancelled" in str(excinfo.value)
    assert connection.statements[0][1]["businesses_found"] == 3
    assert connection.statements[0][1]["pages_processed"] is None


def test_cancel_missing_job_raises_not_found(connection):
    connection.results = [None, None]

    with pytest.raises(JobNotFoundError):
        JobQueue().cancel_job("missing")


def test_report_progress_builds_increment_sql(connection):
    JobQueue().report_progress("job-1", {"pages_processed": 4, "businesses_found": 2})

    sql, params = connection.statements[0]
    assert sql == (
        "UPDATE discovery_jobs SET pages_processed = pages_processed + %(pages_processed)s, "
        "businesses_found = businesses_found + %(businesses_found)s, updated_at = NOW() WHERE id = %(id)s;"
    )
    assert params == {"pages_processed": 4, "businesses_found": 2, "id": "job-1"}


def test_report_progress_missing_job():
    conn = DummyConnection(rowcount=0)
    db._connection_pool = DummyPool(conn)
    try:
        with pytest.raises(JobNotFoundError):
            JobQueue().report_progress("missing", {"pages_processed": 1})
    finally:
        db._connection_pool = None


def test_report_progress_rejects_unknown_counter_before_sql(connection):
    with pytest.raises(ValueError):
        JobQueue().report_progress("job-1", {"status": 1})

    assert connection.statements == []


def test_postgres_job_stats(connection):
    connection.results = [[{"status": "pending", "count": 2}, {"status": "failed", "count": 1}]]

    stats = JobQueue().job_stats()

    assert stats["pending"] == 2
    assert stats["failed"] == 1
    assert stats["running"] == 0
    assert stats["total"] == 3
