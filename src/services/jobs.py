from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any
from uuid import uuid4


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BulkJob:
    job_id: str
    tenant_id: str
    campaign_name: str
    total: int
    status: str = "queued"  # queued | running | completed | failed
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    duplicates: int = 0
    credits_deducted: float = 0.0
    error: str | None = None
    billing_error: str | None = None
    results: list[Any] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: datetime = field(default_factory=_now_utc)

    @property
    def finished(self) -> bool:
        return self.status in {"completed", "failed"}


class BulkJobRegistry:
    """In-process registry of bulk jobs; finished jobs beyond `max_jobs` are evicted oldest first."""

    def __init__(self, *, max_jobs: int = 500) -> None:
        self.max_jobs = max_jobs
        self._lock = Lock()
        self._jobs: dict[str, BulkJob] = {}

    def create(self, tenant_id: str, campaign_name: str, total: int) -> BulkJob:
        job = BulkJob(job_id=str(uuid4()), tenant_id=tenant_id, campaign_name=campaign_name, total=total)
        with self._lock:
            self._jobs[job.job_id] = job
            self._evict_locked()
            return replace(job, results=list(job.results))

    def _evict_locked(self) -> None:
        if len(self._jobs) <= self.max_jobs:
            return
        finished = sorted((j for j in self._jobs.values() if j.finished), key=lambda j: j.updated_at)
        for job in finished[: len(self._jobs) - self.max_jobs]:
            self._jobs.pop(job.job_id, None)

    def get(self, tenant_id: str, job_id: str) -> BulkJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.tenant_id != tenant_id:
                return None
            return replace(job, results=list(job.results))

    def mark_running(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            job.status = "running"
            job.updated_at = _now_utc()

    def record_batch(
        self,
        job_id: str,
        *,
        succeeded: int,
        failed: int,
        duplicates: int,
        credits_deducted: float,
        results: list[Any],
        billing_error: str | None = None,
    ) -> BulkJob:
        with self._lock:
            job = self._jobs[job_id]
            job.processed += succeeded + failed + duplicates
            job.succeeded += succeeded
            job.failed += failed
            job.duplicates += duplicates
            job.credits_deducted = round(job.credits_deducted + credits_deducted, 2)
            job.results.extend(results)
            if billing_error:
                job.billing_error = f"{job.billing_error}; {billing_error}" if job.billing_error else billing_error
            job.updated_at = _now_utc()
            return replace(job, results=list(job.results))

    def finish(self, job_id: str, *, error: str | None = None) -> BulkJob:
        with self._lock:
            job = self._jobs[job_id]
            if error is not None:
                job.status = "failed"
                job.error = error
            elif job.succeeded == 0 and job.failed > 0:
                job.status = "failed"
                job.error = "every send in the job failed"
            else:
                job.status = "completed"
            job.updated_at = _now_utc()
            return replace(job, results=list(job.results))
