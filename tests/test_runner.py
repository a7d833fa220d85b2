"""Tests for JobRunner: bounded concurrency, pre-check skips, isolation."""
from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from agentjobs.adapters.events import (
    ProjectDone,
    ProjectOutput,
    ProjectSkipped,
    ProjectStarted,
)
from agentjobs.engine.errors import AgentProcessError, ValidationError
from agentjobs.engine.models import JobStatus, PreCheckSpec, ProjectRunResult, SkipIf
from agentjobs.engine.precheck import PreCheckEvaluator
from agentjobs.engine.providers.registry import InvocationResult
from agentjobs.engine.runner import JobRunner, derive_job_status, generate_run_id


class FakeInvoker:
    """Counts concurrent invocations instead of running a CLI."""

    def __init__(
        self,
        delay: float = 0.02,
        delays: dict[str, float] | None = None,
        failures: set[str] | None = None,
        flagged: set[str] | None = None,
        crashes: set[str] | None = None,
    ) -> None:
        self.delay = delay
        self.delays = delays or {}
        self.failures = failures or set()
        self.flagged = flagged or set()
        self.crashes = crashes or set()
        self.active = 0
        self.max_active = 0
        self.started: list[str] = []

    def check_backend(self, backend: str) -> None:
        if backend not in ("claude", "codex", "gemini"):
            raise ValidationError(f"Unknown backend '{backend}'")

    async def run(self, backend, prompt, cwd, on_output=None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.append(cwd)
        try:
            if on_output is not None:
                await on_output(f"working in {cwd}\n")
            await asyncio.sleep(self.delays.get(cwd, self.delay))
            if cwd in self.failures:
                raise AgentProcessError(backend, "exited with code 1", exit_code=1, output="partial")
            if cwd in self.crashes:
                raise RuntimeError("invoker blew up")
            return InvocationResult(
                output=f"done {cwd}", exit_code=0, needs_human=cwd in self.flagged,
            )
        finally:
            self.active -= 1


class EventLog:
    def __init__(self) -> None:
        self.events = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    def of_type(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


def _targets(n: int) -> list[str]:
    return [f"/repos/project-{i}" for i in range(n)]


@pytest.mark.asyncio
@pytest.mark.parametrize("max_parallel,count", [(1, 4), (2, 6), (3, 3), (4, 10)])
async def test_concurrency_never_exceeds_limit(max_parallel, count):
    invoker = FakeInvoker()
    runner = JobRunner(invoker)
    targets = _targets(count)

    results = await runner.run_job_on_projects("p", targets, max_parallel=max_parallel)

    assert invoker.max_active <= max_parallel
    assert invoker.max_active == min(max_parallel, count)
    assert [r.project_path for r in results] == targets


@pytest.mark.asyncio
async def test_results_in_input_order_despite_completion_order():
    targets = _targets(3)
    invoker = FakeInvoker(delays={targets[0]: 0.1, targets[1]: 0.01, targets[2]: 0.05})
    log = EventLog()

    results = await JobRunner(invoker).run_job_on_projects(
        "p", targets, max_parallel=3, on_event=log,
    )

    assert [r.project_path for r in results] == targets
    done_order = [e.project for e in log.of_type(ProjectDone)]
    assert done_order == [targets[1], targets[2], targets[0]]


@pytest.mark.asyncio
async def test_slots_granted_in_target_order():
    targets = _targets(5)
    invoker = FakeInvoker()
    await JobRunner(invoker).run_job_on_projects("p", targets, max_parallel=1)
    assert invoker.started == targets


@pytest.mark.asyncio
async def test_three_targets_two_slots_one_skipped(tmp_path):
    targets = []
    for i in range(3):
        target = tmp_path / f"project-{i}"
        target.mkdir()
        if i != 1:
            (target / "pending.txt").write_text("work to do")
        targets.append(str(target))

    pre_check = PreCheckSpec(command="cat pending.txt 2>/dev/null || true", skip_if=SkipIf.EMPTY)
    invoker = FakeInvoker()
    log = EventLog()

    results = await JobRunner(invoker, PreCheckEvaluator()).run_job_on_projects(
        "update deps", targets, pre_check, max_parallel=2, on_event=log,
    )

    assert len(invoker.started) == 2
    assert sorted(invoker.started) == sorted([targets[0], targets[2]])
    skipped_events = log.of_type(ProjectSkipped)
    assert len(skipped_events) == 1
    assert skipped_events[0].project == targets[1]
    assert len(results) == 3
    assert [r.project_path for r in results] == targets
    assert [r.skipped for r in results] == [False, True, False]
    assert results[0].pre_check_output == "work to do"
    assert results[1].pre_check_output == ""
    assert derive_job_status(results) == JobStatus.IDLE


@pytest.mark.asyncio
async def test_skipped_target_gets_no_started_event(tmp_path):
    pre_check = PreCheckSpec(command="true", skip_if=SkipIf.EMPTY)
    log = EventLog()
    invoker = FakeInvoker()

    results = await JobRunner(invoker).run_job_on_projects(
        "p", [str(tmp_path)], pre_check, on_event=log,
    )

    assert invoker.started == []
    assert results[0].skipped is True
    assert log.of_type(ProjectStarted) == []
    assert log.of_type(ProjectDone) == []


@pytest.mark.asyncio
async def test_failure_is_isolated():
    targets = _targets(3)
    invoker = FakeInvoker(failures={targets[1]})

    results = await JobRunner(invoker).run_job_on_projects("p", targets, max_parallel=3)

    assert results[0].error is None
    assert results[1].error == "exited with code 1"
    assert results[1].output == "partial"
    assert results[2].error is None
    assert results[2].output == f"done {targets[2]}"
    assert derive_job_status(results) == JobStatus.ERROR


@pytest.mark.asyncio
async def test_unexpected_exception_captured_per_target():
    targets = _targets(2)
    invoker = FakeInvoker(crashes={targets[0]})

    results = await JobRunner(invoker).run_job_on_projects("p", targets)

    assert results[0].error == "RuntimeError: invoker blew up"
    assert results[1].error is None


@pytest.mark.asyncio
async def test_precheck_failure_fails_open(tmp_path):
    pre_check = PreCheckSpec(command="exit 4", skip_if=SkipIf.NON_EMPTY)
    invoker = FakeInvoker()

    results = await JobRunner(invoker).run_job_on_projects("p", [str(tmp_path)], pre_check)

    assert invoker.started == [str(tmp_path)]
    assert results[0].skipped is False
    assert "exited with code 4" in results[0].error


@pytest.mark.asyncio
async def test_unspawnable_precheck_fails_open_for_every_target(tmp_path):
    targets = []
    for name in ("a", "b"):
        (tmp_path / name).mkdir()
        targets.append(str(tmp_path / name))
    pre_check = PreCheckSpec(command="echo pending", skip_if=SkipIf.EMPTY)
    invoker = FakeInvoker()

    with patch("asyncio.create_subprocess_shell", side_effect=ValueError("embedded null byte")):
        results = await JobRunner(invoker, PreCheckEvaluator()).run_job_on_projects(
            "do it", targets, pre_check, 2, "claude",
        )

    assert [r.project_path for r in results] == targets
    assert sorted(invoker.started) == targets
    for result in results:
        assert result.skipped is False
        assert "embedded null byte" in result.error


class _CrashingEvaluator(PreCheckEvaluator):
    async def evaluate(self, spec, target):
        raise RuntimeError("evaluator bug")


@pytest.mark.asyncio
async def test_crashing_evaluator_does_not_abort_siblings():
    pre_check = PreCheckSpec(command="true", skip_if=SkipIf.EMPTY)
    invoker = FakeInvoker()

    results = await JobRunner(invoker, _CrashingEvaluator()).run_job_on_projects(
        "p", _targets(3), pre_check, 2, "claude",
    )

    assert len(results) == 3
    assert all("RuntimeError: evaluator bug" in r.error for r in results)
    assert sorted(invoker.started) == sorted(_targets(3))


@pytest.mark.asyncio
async def test_needs_human_status():
    targets = _targets(3)
    invoker = FakeInvoker(flagged={targets[2]})
    results = await JobRunner(invoker).run_job_on_projects("p", targets)
    assert [r.needs_human for r in results] == [False, False, True]
    assert derive_job_status(results) == JobStatus.NEEDS_HUMAN


@pytest.mark.asyncio
async def test_per_target_event_order():
    targets = _targets(3)
    log = EventLog()
    run_id = generate_run_id()

    await JobRunner(FakeInvoker()).run_job_on_projects(
        "p", targets, max_parallel=2, on_event=log, run_id=run_id,
    )

    assert all(e.run_id == run_id for e in log.events)
    for target in targets:
        kinds = [type(e) for e in log.events if e.project == target]
        assert kinds == [ProjectStarted, ProjectOutput, ProjectDone]
    done = log.of_type(ProjectDone)
    assert all(isinstance(e.result, ProjectRunResult) for e in done)


@pytest.mark.asyncio
async def test_broken_event_callback_does_not_fail_run():
    async def explode(event):
        raise RuntimeError("observer down")

    results = await JobRunner(FakeInvoker()).run_job_on_projects(
        "p", _targets(2), on_event=explode,
    )
    assert all(r.error is None for r in results)


@pytest.mark.asyncio
async def test_cancellation_stops_all_targets():
    invoker = FakeInvoker(delay=5)
    task = asyncio.ensure_future(
        JobRunner(invoker).run_job_on_projects("p", _targets(3), max_parallel=3)
    )
    await asyncio.sleep(0.05)
    assert invoker.active == 3
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert invoker.active == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs,message",
    [
        ({"prompt": ""}, "prompt is required"),
        ({"target_paths": []}, "targetPaths must be a non-empty list"),
        ({"target_paths": ["ok", ""]}, "non-empty strings"),
        ({"max_parallel": 0}, "maxParallel must be an integer >= 1"),
        ({"backend": "cursor"}, "Unknown backend"),
        ({"pre_check": PreCheckSpec(command="x", skip_if=SkipIf.MATCHES)}, "pattern is required"),
        ({"pre_check": PreCheckSpec(command="echo x\x00y", skip_if=SkipIf.EMPTY)}, "NUL"),
    ],
)
async def test_validation_happens_before_any_invocation(kwargs, message):
    invoker = FakeInvoker()
    args = {
        "prompt": "p",
        "target_paths": _targets(2),
        "pre_check": None,
        "max_parallel": 2,
        "backend": "claude",
    }
    args.update(kwargs)
    with pytest.raises(ValidationError, match=message):
        await JobRunner(invoker).run_job_on_projects(**args)
    assert invoker.started == []


def _r(error=None, needs_human=False, skipped=False) -> ProjectRunResult:
    return ProjectRunResult(
        project_path="/x", error=error, needs_human=needs_human, skipped=skipped,
    )


@pytest.mark.parametrize(
    "results,expected",
    [
        ([_r(), _r(), _r()], JobStatus.IDLE),
        ([_r(), _r(error="boom"), _r()], JobStatus.ERROR),
        ([_r(), _r(needs_human=True), _r()], JobStatus.NEEDS_HUMAN),
        ([_r(needs_human=True), _r(error="boom"), _r()], JobStatus.ERROR),
        ([_r(skipped=True), _r(skipped=True), _r(skipped=True)], JobStatus.IDLE),
        ([], JobStatus.IDLE),
    ],
)
def test_derive_job_status(results, expected):
    assert derive_job_status(results) == expected


def test_run_id_format():
    run_id = generate_run_id()
    prefix, millis, suffix = run_id.split("_")
    assert prefix == "run"
    assert millis.isdigit()
    assert len(suffix) == 7
    assert generate_run_id() != run_id
