"""File-backed storage for job definitions and run history.

Layout under ``storage_dir``:

    jobs.json   {"version": 1, "jobs": [...]}
    runs.json   {"version": 1, "runs": [...]}   newest first, capped

Every mutation rewrites the file atomically. Methods are synchronous
and never await, so callers on one event loop cannot interleave.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

from ...engine.errors import JobNotFoundError, ValidationError
from ...engine.models import (
    ADHOC_JOB_ID,
    Job,
    JobRequest,
    JobRun,
    JobStatus,
    JobTrigger,
    RunRecord,
    generate_id,
    utcnow_iso,
)
from .durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

CURRENT_VERSION = 1
JOBS_FILE = "jobs.json"
RUNS_FILE = "runs.json"


class JobStore:
    def __init__(self, storage_dir: str | Path, max_run_history: int = 50) -> None:
        self._dir = Path(storage_dir)
        self._max_runs = max_run_history

    @property
    def storage_dir(self) -> Path:
        return self._dir

    # ── Jobs ──

    def _load_jobs(self) -> list[Job]:
        data = read_json(self._dir / JOBS_FILE, {"jobs": [], "version": CURRENT_VERSION})
        jobs: list[Job] = []
        for raw in data.get("jobs", []):
            try:
                jobs.append(Job.from_dict(raw))
            except (KeyError, ValueError, ValidationError) as exc:
                logger.warning("Skipping malformed job entry %r: %s", raw.get("id"), exc)
        return jobs

    def _save_jobs(self, jobs: list[Job]) -> None:
        atomic_write_json(
            self._dir / JOBS_FILE,
            {"jobs": [j.to_dict() for j in jobs], "version": CURRENT_VERSION},
        )

    def list_jobs(
        self,
        trigger: JobTrigger | str | None = None,
        status: JobStatus | str | None = None,
    ) -> list[Job]:
        wanted_trigger = JobTrigger(trigger) if trigger else None
        wanted_status = JobStatus(status) if status else None
        jobs = self._load_jobs()
        if wanted_trigger is not None:
            jobs = [j for j in jobs if j.trigger == wanted_trigger]
        if wanted_status is not None:
            jobs = [j for j in jobs if j.status == wanted_status]
        return jobs

    def get_job(self, job_id: str) -> Job | None:
        for job in self._load_jobs():
            if job.id == job_id:
                return job
        return None

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def save_job(self, request: JobRequest) -> tuple[Job, bool]:
        """Create a job, or replace the definition with the same id.

        Replacing keeps createdAt and the last-run bookkeeping.
        Returns the stored job and whether it was newly created.
        """
        jobs = self._load_jobs()
        now = utcnow_iso()
        job = Job(
            id=request.id or generate_id("job"),
            name=request.name,
            prompt=request.prompt,
            target_paths=list(request.target_paths),
            trigger=request.trigger,
            backend=request.backend,
            pre_check=request.pre_check,
            max_parallel=request.max_parallel,
            status=JobStatus.IDLE,
            created_at=now,
            updated_at=now,
        )
        for index, existing in enumerate(jobs):
            if existing.id == job.id:
                job = replace(
                    job,
                    created_at=existing.created_at,
                    last_run=existing.last_run,
                    last_skipped=existing.last_skipped,
                )
                jobs[index] = job
                self._save_jobs(jobs)
                logger.info("Updated job %s (%s)", job.id, job.name)
                return job, False
        jobs.append(job)
        self._save_jobs(jobs)
        logger.info("Created job %s (%s)", job.id, job.name)
        return job, True

    def update_job(self, job_id: str, **updates: Any) -> Job | None:
        """Apply field updates; id and created_at are fixed."""
        updates.pop("id", None)
        updates.pop("created_at", None)
        jobs = self._load_jobs()
        for index, existing in enumerate(jobs):
            if existing.id == job_id:
                job = replace(existing, updated_at=utcnow_iso(), **updates)
                jobs[index] = job
                self._save_jobs(jobs)
                return job
        return None

    def delete_job(self, job_id: str) -> bool:
        jobs = self._load_jobs()
        remaining = [j for j in jobs if j.id != job_id]
        if len(remaining) == len(jobs):
            return False
        self._save_jobs(remaining)
        logger.info("Deleted job %s", job_id)
        return True

    def update_job_run_status(self, job_id: str, status: JobStatus) -> Job | None:
        job = self.update_job(job_id, status=status, last_run=utcnow_iso())
        if job is not None:
            logger.info("Job %s status -> %s", job_id, status.value)
        return job

    def mark_job_skipped(self, job_id: str) -> Job | None:
        return self.update_job(job_id, last_skipped=utcnow_iso())

    def jobs_by_trigger(self, trigger: JobTrigger | str) -> list[Job]:
        return self.list_jobs(trigger=trigger)

    def jobs_needing_human(self) -> list[Job]:
        return self.list_jobs(status=JobStatus.NEEDS_HUMAN)

    # ── Run history ──

    def _load_runs(self) -> list[RunRecord]:
        data = read_json(self._dir / RUNS_FILE, {"runs": [], "version": CURRENT_VERSION})
        records: list[RunRecord] = []
        for raw in data.get("runs", []):
            try:
                records.append(RunRecord.from_dict(raw))
            except (KeyError, ValueError, ValidationError) as exc:
                logger.warning("Skipping malformed run entry %r: %s", raw.get("id"), exc)
        return records

    def _save_runs(self, records: list[RunRecord]) -> None:
        atomic_write_json(
            self._dir / RUNS_FILE,
            {"runs": [r.to_dict() for r in records], "version": CURRENT_VERSION},
        )

    def add_run(self, run: JobRun) -> RunRecord:
        """Record a finished run, dropping the oldest beyond the cap."""
        records = [r for r in self._load_runs() if r.run.id != run.id]
        record = RunRecord(run=run)
        records.insert(0, record)
        del records[self._max_runs:]
        self._save_runs(records)
        return record

    def record_run(self, run: JobRun) -> RunRecord:
        """Apply a finished run to its job, then add it to the history."""
        if run.job_id != ADHOC_JOB_ID:
            self.update_job_run_status(run.job_id, run.status)
            if run.projects and all(p.skipped for p in run.projects):
                self.mark_job_skipped(run.job_id)
        return self.add_run(run)

    def list_runs(self, job_id: str | None = None) -> list[RunRecord]:
        records = self._load_runs()
        if job_id:
            records = [r for r in records if r.run.job_id == job_id]
        return records

    def get_run(self, run_id: str) -> RunRecord | None:
        for record in self._load_runs():
            if record.run.id == run_id:
                return record
        return None

    def mark_run_read(self, run_id: str) -> bool:
        records = self._load_runs()
        for record in records:
            if record.run.id == run_id:
                record.is_read = True
                self._save_runs(records)
                return True
        return False

    def mark_all_runs_read(self) -> int:
        records = self._load_runs()
        changed = 0
        for record in records:
            if not record.is_read:
                record.is_read = True
                changed += 1
        if changed:
            self._save_runs(records)
        return changed

    def delete_run(self, run_id: str) -> bool:
        records = self._load_runs()
        remaining = [r for r in records if r.run.id != run_id]
        if len(remaining) == len(records):
            return False
        self._save_runs(remaining)
        return True

    def unread_count(self) -> int:
        return sum(1 for r in self._load_runs() if not r.is_read)
