"""Tests for the file-backed job store and run history."""
from __future__ import annotations

import json

import pytest

from agentjobs.engine.errors import JobNotFoundError, ValidationError
from agentjobs.engine.models import (
    ADHOC_JOB_ID,
    JobRequest,
    JobRun,
    JobStatus,
    JobTrigger,
    ProjectRunResult,
)
from agentjobs.shared.services.job_store import JobStore


def _request(**overrides) -> JobRequest:
    data = {
        "name": "Dependency audit",
        "prompt": "Run npm audit and fix what you can",
        "targetPaths": ["/repos/a", "/repos/b"],
        "trigger": "manual",
    }
    data.update(overrides)
    return JobRequest.from_dict(data)


def _run(run_id: str, job_id: str = ADHOC_JOB_ID, *results: ProjectRunResult) -> JobRun:
    return JobRun(
        id=run_id,
        job_id=job_id,
        job_name="Dependency audit",
        started_at="2026-01-01T00:00:00+00:00",
        completed_at="2026-01-01T00:01:00+00:00",
        projects=list(results),
    )


@pytest.fixture
def store(tmp_path):
    return JobStore(tmp_path / "data", max_run_history=3)


def test_create_and_get(store):
    job, created = store.save_job(_request())
    assert created is True
    assert job.id.startswith("job_")
    assert job.status == JobStatus.IDLE
    assert store.get_job(job.id) == job
    assert [j.id for j in store.list_jobs()] == [job.id]


def test_update_preserves_created_at_and_history(store):
    job, _ = store.save_job(_request())
    store.update_job_run_status(job.id, JobStatus.NEEDS_HUMAN)
    stored = store.get_job(job.id)

    updated, created = store.save_job(_request(id=job.id, name="Renamed"))

    assert created is False
    assert updated.name == "Renamed"
    assert updated.created_at == job.created_at
    assert updated.last_run == stored.last_run
    assert len(store.list_jobs()) == 1


def test_require_job_raises(store):
    with pytest.raises(JobNotFoundError):
        store.require_job("job_missing")


def test_delete_job(store):
    job, _ = store.save_job(_request())
    assert store.delete_job(job.id) is True
    assert store.delete_job(job.id) is False
    assert store.get_job(job.id) is None


def test_filters(store):
    manual, _ = store.save_job(_request())
    login, _ = store.save_job(_request(name="Morning sync", trigger="on-login"))
    store.update_job_run_status(login.id, JobStatus.NEEDS_HUMAN)

    assert [j.id for j in store.jobs_by_trigger(JobTrigger.ON_LOGIN)] == [login.id]
    assert [j.id for j in store.list_jobs(trigger="manual")] == [manual.id]
    assert [j.id for j in store.jobs_needing_human()] == [login.id]
    with pytest.raises(ValueError):
        store.list_jobs(status="sleepy")


def test_persisted_format(store):
    job, _ = store.save_job(_request(preCheck={"command": "git status --porcelain", "skipIf": "empty"}))
    raw = json.loads((store.storage_dir / "jobs.json").read_text())
    assert raw["version"] == 1
    entry = raw["jobs"][0]
    assert entry["id"] == job.id
    assert entry["targetPaths"] == ["/repos/a", "/repos/b"]
    assert entry["preCheck"] == {"command": "git status --porcelain", "skipIf": "empty"}
    assert entry["status"] == "idle"


def test_legacy_project_paths_key_accepted(store):
    job, _ = store.save_job(JobRequest.from_dict({
        "name": "Legacy",
        "prompt": "p",
        "projectPaths": ["/old"],
        "trigger": "manual",
    }))
    assert job.target_paths == ["/old"]


def test_malformed_entries_are_skipped(store):
    job, _ = store.save_job(_request())
    path = store.storage_dir / "jobs.json"
    raw = json.loads(path.read_text())
    raw["jobs"].append({"name": "no id"})
    raw["jobs"].append({"id": "job_bad", "trigger": "hourly"})
    path.write_text(json.dumps(raw))
    assert [j.id for j in store.list_jobs()] == [job.id]


def test_corrupt_file_is_moved_aside(store):
    store.storage_dir.mkdir(parents=True)
    path = store.storage_dir / "jobs.json"
    path.write_text("{not json")
    assert store.list_jobs() == []
    assert (store.storage_dir / "jobs.json.corrupt").exists()


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"name": ""}, "name, prompt, and targetPaths are required"),
        ({"trigger": None}, "trigger is required"),
        ({"trigger": "hourly"}, "Invalid trigger"),
        ({"backend": "cursor"}, "Unknown backend"),
        ({"maxParallel": 0}, "maxParallel"),
        ({"preCheck": {"command": "x", "skipIf": "matches"}}, "pattern is required"),
    ],
)
def test_request_validation(overrides, message):
    with pytest.raises(ValidationError, match=message):
        _request(**overrides)


# ── Run history ──


def test_history_newest_first_and_capped(store):
    for i in range(5):
        store.add_run(_run(f"run_{i}"))
    assert [r.run.id for r in store.list_runs()] == ["run_4", "run_3", "run_2"]


def test_record_run_updates_job(store):
    job, _ = store.save_job(_request())
    run = _run(
        "run_1", job.id,
        ProjectRunResult(project_path="/repos/a", output="ok"),
        ProjectRunResult(project_path="/repos/b", error="exited with code 1"),
    )
    store.record_run(run)

    stored = store.get_job(job.id)
    assert stored.status == JobStatus.ERROR
    assert stored.last_run is not None
    assert stored.last_skipped is None
    assert store.get_run("run_1").run.status == JobStatus.ERROR


def test_record_run_all_skipped_marks_job(store):
    job, _ = store.save_job(_request())
    store.record_run(_run(
        "run_1", job.id,
        ProjectRunResult(project_path="/repos/a", skipped=True),
        ProjectRunResult(project_path="/repos/b", skipped=True),
    ))
    stored = store.get_job(job.id)
    assert stored.status == JobStatus.IDLE
    assert stored.last_skipped is not None


def test_record_adhoc_run_touches_no_job(store):
    job, _ = store.save_job(_request())
    store.record_run(_run("run_1", ADHOC_JOB_ID, ProjectRunResult(project_path="/x", error="boom")))
    assert store.get_job(job.id).status == JobStatus.IDLE
    assert store.get_run("run_1") is not None


def test_run_level_error_is_persisted(store):
    run = _run("run_1")
    run.error = "Run cancelled"
    store.record_run(run)
    record = store.get_run("run_1")
    assert record.run.error == "Run cancelled"
    assert record.run.status == JobStatus.ERROR


def test_read_flags(store):
    store.add_run(_run("run_1"))
    store.add_run(_run("run_2"))
    assert store.unread_count() == 2
    assert store.mark_run_read("run_1") is True
    assert store.mark_run_read("run_missing") is False
    assert store.unread_count() == 1
    assert store.mark_all_runs_read() == 1
    assert store.mark_all_runs_read() == 0
    assert store.unread_count() == 0


def test_list_runs_by_job_and_delete(store):
    store.add_run(_run("run_1", "job_a"))
    store.add_run(_run("run_2", "job_b"))
    assert [r.run.id for r in store.list_runs("job_a")] == ["run_1"]
    assert store.delete_run("run_1") is True
    assert store.delete_run("run_1") is False
    assert [r.run.id for r in store.list_runs()] == ["run_2"]


def test_run_record_wire_form(store):
    store.add_run(_run("run_1", ADHOC_JOB_ID, ProjectRunResult(project_path="/repos/web", skipped=True)))
    raw = json.loads((store.storage_dir / "runs.json").read_text())
    entry = raw["runs"][0]
    assert entry["id"] == "run_1"
    assert entry["jobId"] == "adhoc"
    assert entry["isRead"] is False
    assert entry["status"] == "idle"
    assert entry["summary"] == "0 ran, 1 skipped"
    assert entry["projects"][0]["projectName"] == "web"
