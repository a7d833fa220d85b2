"""Batch runner: one agent invocation per target, bounded concurrency.

Pre-checks start immediately for every target. Targets that are not
skipped queue for one of ``max_parallel`` slots, strictly in
target-list order; completion order is whatever the agents produce.
Failures are captured per target and never abort siblings.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence

from ..adapters.events import (
    ProjectDone,
    ProjectOutput,
    ProjectSkipped,
    ProjectStarted,
)
from .config import EventCallback, fire_event
from .errors import AgentProcessError, ValidationError
from .models import (
    JobStatus,
    PreCheckSpec,
    ProjectRunResult,
    derive_run_status,
    generate_id,
    utcnow_iso,
    validate_max_parallel,
    validate_target_paths,
)
from .precheck import PreCheckEvaluator, PreCheckOutcome
from .providers.registry import BackendInvoker

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 3


def generate_run_id() -> str:
    return generate_id("run")


def derive_job_status(results: Sequence[ProjectRunResult]) -> JobStatus:
    """Job status after a run: error > needs-human > idle."""
    return derive_run_status(results)


def _join_errors(*errors: str | None) -> str | None:
    present = [e for e in errors if e]
    return "; ".join(present) if present else None


class JobRunner:
    """Fans a prompt out over target directories."""

    def __init__(
        self,
        invoker: BackendInvoker,
        pre_check_evaluator: PreCheckEvaluator | None = None,
    ) -> None:
        self._invoker = invoker
        self._pre_check = pre_check_evaluator or PreCheckEvaluator()

    def validate(
        self,
        prompt: str,
        target_paths: Sequence[str],
        pre_check: PreCheckSpec | None,
        max_parallel: int,
        backend: str,
    ) -> None:
        """Raise ValidationError for a request that must not start."""
        if not prompt or not str(prompt).strip():
            raise ValidationError("prompt is required")
        validate_target_paths(list(target_paths) if target_paths else [])
        validate_max_parallel(max_parallel)
        if pre_check is not None:
            pre_check.validate()
        self._invoker.check_backend(backend)

    async def run_job_on_projects(
        self,
        prompt: str,
        target_paths: Sequence[str],
        pre_check: PreCheckSpec | None = None,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        backend: str = "claude",
        on_event: EventCallback | None = None,
        *,
        run_id: str | None = None,
    ) -> list[ProjectRunResult]:
        """Run *prompt* on every target and return results in input order."""
        self.validate(prompt, target_paths, pre_check, max_parallel, backend)
        run_id = run_id or generate_run_id()
        targets = list(target_paths)

        slots = asyncio.Semaphore(max_parallel)
        # gates[i] opens once target i has taken its place in the slot queue
        # (acquired a slot, or been skipped). Target i+1 queues only after it.
        gates = [asyncio.Event() for _ in targets]

        logger.info(
            "Run %s: %d target(s) backend=%s max_parallel=%d pre_check=%s",
            run_id, len(targets), backend, max_parallel,
            pre_check.command if pre_check else None,
        )

        tasks = [
            asyncio.ensure_future(self._run_target(
                run_id, index, target, prompt, pre_check, backend,
                slots, gates, on_event,
            ))
            for index, target in enumerate(targets)
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        logger.info(
            "Run %s finished: status=%s (%d skipped, %d errors)",
            run_id, derive_job_status(results).value,
            sum(1 for r in results if r.skipped),
            sum(1 for r in results if r.error),
        )
        return list(results)

    async def _run_target(
        self,
        run_id: str,
        index: int,
        target: str,
        prompt: str,
        pre_check: PreCheckSpec | None,
        backend: str,
        slots: asyncio.Semaphore,
        gates: list[asyncio.Event],
        on_event: EventCallback | None,
    ) -> ProjectRunResult:
        previous = gates[index - 1] if index > 0 else None
        gate = gates[index]
        started_at = utcnow_iso()
        acquired = False
        try:
            outcome = PreCheckOutcome(skip=False)
            if pre_check is not None:
                try:
                    outcome = await self._pre_check.evaluate(pre_check, target)
                except Exception as exc:
                    logger.exception("Run %s: pre-check crashed on %s", run_id, target)
                    outcome = PreCheckOutcome(
                        skip=False, error=f"pre-check failed: {type(exc).__name__}: {exc}",
                    )

            if outcome.skip:
                result = ProjectRunResult(
                    project_path=target,
                    skipped=True,
                    pre_check_output=outcome.output,
                    started_at=started_at,
                    completed_at=utcnow_iso(),
                )
                logger.info("Run %s: skipped %s", run_id, target)
                await fire_event(on_event, ProjectSkipped(
                    run_id=run_id, project=target, pre_check_output=outcome.output,
                ))
                if previous is not None:
                    await previous.wait()
                gate.set()
                return result

            if previous is not None:
                await previous.wait()
            await slots.acquire()
            acquired = True
            gate.set()

            await fire_event(on_event, ProjectStarted(run_id=run_id, project=target))
            t0 = time.monotonic()
            started_at = utcnow_iso()

            async def on_output(text: str) -> None:
                await fire_event(on_event, ProjectOutput(
                    run_id=run_id, project=target, text=text,
                ))

            output = ""
            needs_human = False
            agent_error: str | None = None
            try:
                invocation = await self._invoker.run(backend, prompt, target, on_output)
                output = invocation.output
                needs_human = invocation.needs_human
            except AgentProcessError as exc:
                output = exc.output
                agent_error = exc.reason
            except Exception as exc:
                logger.exception("Run %s: unexpected failure on %s", run_id, target)
                agent_error = f"{type(exc).__name__}: {exc}"

            slots.release()
            acquired = False

            result = ProjectRunResult(
                project_path=target,
                output=output,
                error=_join_errors(outcome.error, agent_error),
                needs_human=needs_human,
                pre_check_output=outcome.output if pre_check is not None else None,
                duration_ms=int((time.monotonic() - t0) * 1000),
                started_at=started_at,
                completed_at=utcnow_iso(),
            )
            logger.info(
                "Run %s: %s done in %dms error=%s needs_human=%s",
                run_id, target, result.duration_ms, bool(result.error), result.needs_human,
            )
            await fire_event(on_event, ProjectDone(run_id=run_id, project=target, result=result))
            return result
        finally:
            if acquired:
                slots.release()
            gate.set()
