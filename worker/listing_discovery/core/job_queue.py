"""Persistent discovery job queue.

Jobs move strictly forward through ``pending -> running -> completed | failed |
cancelled``; a retryable failure is the only way back to ``pending`` and only
while the retry budget lasts. Claiming is a single compare-and-swap on
``status`` so two workers can never own the same job.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from psycopg2 import extras

from listing_discovery.core.db import get_connection
from listing_discovery.core.models import PROGRESS_COUNTERS, DiscoveryJob, JobStatus, utcnow

logger = logging.getLogger(__name__)


class JobStateError(RuntimeError):
    """Raised when a transition is not allowed from the job's current status."""


class JobNotFoundError(JobStateError):
    """Raised when the referenced job does not exist."""


def _validate_deltas(deltas: Mapping[str, int]) -> Dict[str, int]:
    unknown = sorted(set(deltas) - set(PROGRESS_COUNTERS))
    if unknown:
        raise ValueError(f"Unknown progress counters: {', '.join(unknown)}")
    return {key: int(value) for key, value in deltas.items()}


def _empty_stats() -> Dict[str, int]:
    stats = {status.value: 0 for status in JobStatus}
    stats["total"] = 0
    return stats


_CLAIM_NEXT_JOB = """
UPDATE discovery_jobs SET
    status = 'running',
    started_at = COALESCE(started_at, NOW()),
    updated_at = NOW()
WHERE id = (
    SELECT id FROM discovery_jobs
    WHERE status = 'pending'
      AND (scheduled_at IS NULL OR scheduled_at <= NOW())
    ORDER BY priority DESC, created_at ASC
    LIMIT 1
    FOR UPDATE SKIP LOCKED
)
AND status = 'pending'
RETURNING *;
"""

_COMPLETE_JOB = """
UPDATE discovery_jobs SET
    status = 'completed',
    completed_at = NOW(),
    keywords_processed = COALESCE(%(keywords_processed)s, keywords_processed),
    pages_processed = COALESCE(%(pages_processed)s, pages_processed),
    businesses_found = COALESCE(%(businesses_found)s, businesses_found),
    businesses_created = COALESCE(%(businesses_created)s, businesses_created),
    businesses_updated = COALESCE(%(businesses_updated)s, businesses_updated),
    updated_at = NOW()
WHERE id = %(id)s AND status = 'running'
RETURNING *;
"""

_FAIL_JOB = """
UPDATE discovery_jobs SET
    retry_count = retry_count + 1,
    error_message = %(reason)s,
    status = CASE
        WHEN %(retryable)s AND retry_count + 1 < max_retries THEN 'pending'
        ELSE 'failed'
    END,
    completed_at = CASE
        WHEN %(retryable)s AND retry_count + 1 < max_retries THEN NULL
        ELSE NOW()
    END,
    updated_at = NOW()
WHERE id = %(id)s AND status = 'running'
RETURNING *;
"""

_CANCEL_JOB = """
UPDATE discovery_jobs SET
    status = 'cancelled',
    completed_at = NOW(),
    updated_at = NOW()
WHERE id = %(id)s AND status IN ('pending', 'running')
RETURNING *;
"""

_ENQUEUE_JOB = """
INSERT INTO discovery_jobs (
    city_id,
    industry_id,
    dataset_id,
    status,
    priority,
    max_retries,
    scheduled_at,
    metadata,
    created_at,
    updated_at
) VALUES (
    %(city_id)s,
    %(industry_id)s,
    %(dataset_id)s,
    'pending',
    %(priority)s,
    %(max_retries)s,
    %(scheduled_at)s,
    %(metadata)s,
    NOW(),
    NOW()
)
RETURNING *;
"""

_SELECT_JOB = """
SELECT * FROM discovery_jobs WHERE id = %(id)s;
"""

_JOB_STATS = """
SELECT status, COUNT(*) AS count FROM discovery_jobs GROUP BY status;
"""


class JobQueue:
    """PostgreSQL-backed queue over the ``discovery_jobs`` table."""

    def _fetch_one(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params or {})
                row = cur.fetchone()
            conn.commit()
        return dict(row) if row else None

    def _raise_transition_error(self, job_id: Any, action: str) -> None:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} does not exist")
        raise JobStateError(f"Cannot {action} job {job_id} in status {job.status.value}")

    def enqueue_job(
        self,
        city_id: Any,
        industry_id: Any,
        dataset_id: Any,
        *,
        priority: int = 0,
        scheduled_at: Optional[datetime] = None,
        max_retries: int = 3,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DiscoveryJob:
        row = self._fetch_one(
            _ENQUEUE_JOB,
            {
                "city_id": str(city_id),
                "industry_id": str(industry_id),
                "dataset_id": str(dataset_id),
                "priority": priority,
                "max_retries": max_retries,
                "scheduled_at": scheduled_at,
                "metadata": extras.Json(metadata or {}),
            },
        )
        job = DiscoveryJob.from_row(row)
        logger.info("Enqueued discovery job %s (priority=%s)", job.id, priority)
        return job

    def claim_next_job(self) -> Optional[DiscoveryJob]:
        row = self._fetch_one(_CLAIM_NEXT_JOB)
        if row is None:
            return None
        job = DiscoveryJob.from_row(row)
        logger.info("Claimed discovery job %s", job.id)
        return job

    def get_job(self, job_id: Any) -> Optional[DiscoveryJob]:
        row = self._fetch_one(_SELECT_JOB, {"id": job_id})
        return DiscoveryJob.from_row(row) if row else None

    def report_progress(self, job_id: Any, deltas: Mapping[str, int]) -> None:
        increments = _validate_deltas(deltas)
        if not increments:
            return
        # Column names come from PROGRESS_COUNTERS only.
        assignments = ", ".join(f"{key} = {key} + %({key})s" for key in increments)
        sql = f"UPDATE discovery_jobs SET {assignments}, updated_at = NOW() WHERE id = %(id)s;"
        params: Dict[str, Any] = dict(increments)
        params["id"] = job_id
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                updated = cur.rowcount
            conn.commit()
        if not updated:
            raise JobNotFoundError(f"Job {job_id} does not exist")

    def complete_job(self, job_id: Any, final_stats: Optional[Mapping[str, int]] = None) -> DiscoveryJob:
        stats = _validate_deltas(final_stats or {})
        params: Dict[str, Any] = {key: stats.get(key) for key in PROGRESS_COUNTERS}
        params["id"] = job_id
        row = self._fetch_one(_COMPLETE_JOB, params)
        if row is None:
            self._raise_transition_error(job_id, "complete")
        logger.info("Completed discovery job %s", job_id)
        return DiscoveryJob.from_row(row)

    def fail_job(self, job_id: Any, reason: str, retryable: bool) -> DiscoveryJob:
        row = self._fetch_one(_FAIL_JOB, {"id": job_id, "reason": reason, "retryable": bool(retryable)})
        if row is None:
            self._raise_transition_error(job_id, "fail")
        job = DiscoveryJob.from_row(row)
        logger.warning(
            "Discovery job %s failed (retry %s/%s, status=%s): %s",
            job_id,
            job.retry_count,
            job.max_retries,
            job.status.value,
            reason,
        )
        return job

    def cancel_job(self, job_id: Any) -> DiscoveryJob:
        row = self._fetch_one(_CANCEL_JOB, {"id": job_id})
        if row is None:
            self._raise_transition_error(job_id, "cancel")
        logger.info("Cancelled discovery job %s", job_id)
        return DiscoveryJob.from_row(row)

    def job_stats(self) -> Dict[str, int]:
        stats = _empty_stats()
        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_JOB_STATS, {})
                rows = cur.fetchall()
        for row in rows:
            stats[row["status"]] = int(row["count"])
            stats["total"] += int(row["count"])
        return stats


class MemoryJobQueue:
    """In-process queue with the same semantics as :class:`JobQueue`.

    A single lock makes every transition a compare-and-swap on ``status``.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._jobs: Dict[Any, DiscoveryJob] = {}
        self._order: Dict[Any, int] = {}

    def _require(self, job_id: Any) -> DiscoveryJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} does not exist")
        return job

    def enqueue_job(
        self,
        city_id: Any,
        industry_id: Any,
        dataset_id: Any,
        *,
        priority: int = 0,
        scheduled_at: Optional[datetime] = None,
        max_retries: int = 3,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DiscoveryJob:
        with self._lock:
            job_id = next(self._ids)
            job = DiscoveryJob(
                id=job_id,
                city_id=str(city_id),
                industry_id=str(industry_id),
                dataset_id=str(dataset_id),
                priority=priority,
                max_retries=max_retries,
                scheduled_at=scheduled_at,
                created_at=self._clock(),
                metadata=dict(metadata or {}),
            )
            self._jobs[job_id] = job
            self._order[job_id] = job_id
            logger.info("Enqueued discovery job %s (priority=%s)", job_id, priority)
            return dataclasses.replace(job)

    def claim_next_job(self) -> Optional[DiscoveryJob]:
        with self._lock:
            now = self._clock()
            eligible = [
                job
                for job in self._jobs.values()
                if job.status is JobStatus.PENDING and (job.scheduled_at is None or job.scheduled_at <= now)
            ]
            if not eligible:
                return None
            eligible.sort(key=lambda job: (-job.priority, job.created_at, self._order[job.id]))
            job = eligible[0]
            job.status = JobStatus.RUNNING
            job.started_at = job.started_at or now
            logger.info("Claimed discovery job %s", job.id)
            return dataclasses.replace(job)

    def get_job(self, job_id: Any) -> Optional[DiscoveryJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return dataclasses.replace(job) if job else None

    def report_progress(self, job_id: Any, deltas: Mapping[str, int]) -> None:
        increments = _validate_deltas(deltas)
        with self._lock:
            job = self._require(job_id)
            for key, value in increments.items():
                setattr(job, key, getattr(job, key) + value)

    def complete_job(self, job_id: Any, final_stats: Optional[Mapping[str, int]] = None) -> DiscoveryJob:
        stats = _validate_deltas(final_stats or {})
        with self._lock:
            job = self._require(job_id)
            if job.status is not JobStatus.RUNNING:
                raise JobStateError(f"Cannot complete job {job_id} in status {job.status.value}")
            for key, value in stats.items():
                setattr(job, key, value)
            job.status = JobStatus.COMPLETED
            job.completed_at = self._clock()
            logger.info("Completed discovery job %s", job_id)
            return dataclasses.replace(job)

    def fail_job(self, job_id: Any, reason: str, retryable: bool) -> DiscoveryJob:
        with self._lock:
            job = self._require(job_id)
            if job.status is not JobStatus.RUNNING:
                raise JobStateError(f"Cannot fail job {job_id} in status {job.status.value}")
            job.retry_count += 1
            job.error_message = reason
            if retryable and job.retry_count < job.max_retries:
                job.status = JobStatus.PENDING
            else:
                job.status = JobStatus.FAILED
                job.completed_at = self._clock()
            logger.warning(
                "Discovery job %s failed (retry %s/%s, status=%s): %s",
                job_id,
                job.retry_count,
                job.max_retries,
                job.status.value,
                reason,
            )
            return dataclasses.replace(job)

    def cancel_job(self, job_id: Any) -> DiscoveryJob:
        with self._lock:
            job = self._require(job_id)
            if job.status.is_terminal:
                raise JobStateError(f"Cannot cancel job {job_id} in status {job.status.value}")
            job.status = JobStatus.CANCELLED
            job.completed_at = self._clock()
            logger.info("Cancelled discovery job %s", job_id)
            return dataclasses.replace(job)

    def job_stats(self) -> Dict[str, int]:
        stats = _empty_stats()
        with self._lock:
            for job in self._jobs.values():
                stats[job.status.value] += 1
                stats["total"] += 1
        return stats
