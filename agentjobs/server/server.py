"""HTTP + SSE server for agentjobs.

Job definitions (CRUD), batch runs streamed as Server-Sent Events,
run history, and persistent session windows.

Usage:
    agentjobs --server [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from ..adapters.events import RunDone, RunError, RunStream, format_sse
from ..engine.config import EventCallback, JobsConfig
from ..engine.errors import (
    ConfigurationError,
    JobNotFoundError,
    SessionSpawnError,
    ValidationError,
)
from ..engine.models import (
    ADHOC_JOB_ID,
    JobRequest,
    JobRun,
    JobStatus,
    PreCheckSpec,
    ProjectRunResult,
    utcnow_iso,
    validate_max_parallel,
    validate_target_paths,
)
from ..engine.precheck import PreCheckEvaluator
from ..engine.providers.registry import (
    BackendInvoker,
    NeedsHumanDetector,
    build_provider_registry,
)
from ..engine.runner import JobRunner, generate_run_id
from ..engine.session_manager import SessionManager
from ..shared.services.job_store import JobStore

logger = logging.getLogger(__name__)

ADHOC_JOB_NAME = "Ad-hoc Job"


# ── Run bookkeeping ──


@dataclass
class RunPlan:
    """A fully resolved run request."""
    job_id: str | None
    job_name: str
    prompt: str
    target_paths: list[str]
    backend: str
    pre_check: PreCheckSpec | None
    max_parallel: int


class RunRegistry:
    """Background run tasks keyed by run id.

    Runs are owned here rather than by the HTTP handler, so a client
    that disconnects does not cancel the run.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def start(self, run_id: str, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))
        return task

    def get(self, run_id: str) -> asyncio.Task | None:
        return self._tasks.get(run_id)

    def active_ids(self) -> list[str]:
        return list(self._tasks.keys())

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait_all(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d in-flight run(s)", len(tasks))


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


class JobsServer:
    """aiohttp application wiring the job runner, store and sessions."""

    def __init__(
        self,
        config: JobsConfig | None = None,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
        job_store: JobStore | None = None,
        runner: JobRunner | None = None,
        session_manager: SessionManager | None = None,
        run_registry: RunRegistry | None = None,
    ) -> None:
        self._config = config or JobsConfig.from_env()
        self._host = host
        self._port = port
        self._store = job_store or JobStore(
            self._config.storage_dir, self._config.max_run_history,
        )
        if runner is None:
            invoker = BackendInvoker(
                build_provider_registry(self._config),
                NeedsHumanDetector(self._config.needs_human_patterns),
            )
            runner = JobRunner(
                invoker, PreCheckEvaluator(self._config.precheck_timeout_seconds),
            )
        self._runner = runner
        self._sessions = session_manager or SessionManager.from_config(self._config)
        self._runs = run_registry or RunRegistry()
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        self._app.on_shutdown.append(self._on_shutdown)

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def runs(self) -> RunRegistry:
        return self._runs

    @property
    def store(self) -> JobStore:
        return self._store

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except web.HTTPException:
            raise
        except Exception as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            return _error(str(exc) or type(exc).__name__, 500)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)

        r.add_get("/jobs", self._handle_list_jobs)
        r.add_post("/jobs", self._handle_save_job)
        r.add_delete("/jobs", self._handle_delete_job)
        r.add_post("/jobs/run", self._handle_run)

        r.add_get("/runs", self._handle_list_runs)
        r.add_post("/runs/read-all", self._handle_mark_all_read)
        r.add_post("/runs/{id}/read", self._handle_mark_read)
        r.add_delete("/runs/{id}", self._handle_delete_run)

        r.add_get("/process", self._handle_process_status)
        r.add_post("/process", self._handle_process_spawn)
        r.add_delete("/process", self._handle_process_kill)
        r.add_get("/process/output", self._handle_process_output)
        r.add_delete("/process/output", self._handle_process_output_cleanup)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("agentjobs server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("agentjobs server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    async def _on_shutdown(self, app: web.Application) -> None:
        await self._runs.cancel_all()
        await self._sessions.shutdown()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Health ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "active_runs": self._runs.active_ids(),
            "session_backend": self._config.session_backend,
            "unread_runs": self._store.unread_count(),
        })

    # ── Jobs ──

    async def _handle_list_jobs(self, request: web.Request) -> web.Response:
        job_id = request.query.get("id")
        if job_id:
            job = self._store.get_job(job_id)
            if job is None:
                return _error("Job not found", 404)
            return web.json_response(job.to_dict())

        trigger = request.query.get("trigger") or None
        status = request.query.get("status") or None
        try:
            jobs = self._store.list_jobs(trigger=trigger, status=status)
        except ValueError:
            return _error(f"Invalid filter: trigger={trigger!r} status={status!r}", 400)
        return web.json_response({"jobs": [j.to_dict() for j in jobs]})

    async def _handle_save_job(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        try:
            job_request = JobRequest.from_dict(body)
        except ValidationError as exc:
            return _error(str(exc), 400)
        job, created = self._store.save_job(job_request)
        return web.json_response(job.to_dict(), status=201 if created else 200)

    async def _handle_delete_job(self, request: web.Request) -> web.Response:
        job_id = request.query.get("id")
        if not job_id:
            return _error("id query parameter is required", 400)
        if not self._store.delete_job(job_id):
            return _error("Job not found", 404)
        return web.json_response({"success": True})

    # ── Runs ──

    def _resolve_run(self, body: dict[str, Any]) -> RunPlan:
        """Build a RunPlan from a saved job or an ad-hoc request."""
        job_id = body.get("jobId")
        if job_id:
            job = self._store.require_job(job_id)
            return RunPlan(
                job_id=job.id,
                job_name=job.name,
                prompt=job.prompt,
                target_paths=list(job.target_paths),
                backend=job.backend,
                pre_check=job.pre_check,
                max_parallel=job.max_parallel or self._config.default_max_parallel,
            )

        prompt = body.get("prompt")
        target_paths = body.get("targetPaths") or body.get("projectPaths")
        if not prompt or not target_paths:
            raise ValidationError("prompt and targetPaths required for ad-hoc jobs")
        pre_check_raw = body.get("preCheck")
        max_parallel = body.get("maxParallel")
        return RunPlan(
            job_id=None,
            job_name=ADHOC_JOB_NAME,
            prompt=str(prompt),
            target_paths=validate_target_paths(target_paths),
            backend=body.get("backend") or self._config.default_backend,
            pre_check=PreCheckSpec.from_dict(pre_check_raw) if pre_check_raw else None,
            max_parallel=(
                validate_max_parallel(max_parallel)
                if max_parallel is not None
                else self._config.default_max_parallel
            ),
        )

    async def _handle_run(self, request: web.Request) -> web.StreamResponse:
        body, err = await self._read_json(request)
        if err:
            return err
        try:
            plan = self._resolve_run(body)
            self._runner.validate(
                plan.prompt, plan.target_paths, plan.pre_check,
                plan.max_parallel, plan.backend,
            )
        except JobNotFoundError:
            return _error("Job not found", 404)
        except ValidationError as exc:
            return _error(str(exc), 400)

        run_id = generate_run_id()
        if plan.job_id:
            self._store.update_job_run_status(plan.job_id, JobStatus.RUNNING)

        stream = RunStream(run_id)
        self._runs.start(run_id, self._execute_run(plan, run_id, stream.publish))
        logger.info(
            "Run %s started job=%s targets=%d req=%s",
            run_id, plan.job_id or ADHOC_JOB_ID, len(plan.target_paths),
            request.get("req_id", "unknown"),
        )

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Run-Id": run_id,
            },
        )
        try:
            await response.prepare(request)
            async for event in stream:
                await response.write(format_sse(event))
        except ConnectionResetError:
            # The run keeps going; only this listener is gone.
            stream.detach()
            logger.info("Client left run %s; continuing in background", run_id)
        except asyncio.CancelledError:
            stream.detach()
            logger.info("Stream for run %s cancelled; continuing in background", run_id)
            raise
        return response

    async def _execute_run(
        self,
        plan: RunPlan,
        run_id: str,
        publish: EventCallback,
    ) -> None:
        """Run the batch, then finalize exactly once and emit the terminal event."""
        started_at = utcnow_iso()
        try:
            results = await self._runner.run_job_on_projects(
                plan.prompt,
                plan.target_paths,
                plan.pre_check,
                plan.max_parallel,
                plan.backend,
                publish,
                run_id=run_id,
            )
        except asyncio.CancelledError:
            self._finalize(plan, run_id, started_at, [], error="Run cancelled")
            await publish(RunError(run_id=run_id, error="Run cancelled"))
            raise
        except Exception as exc:
            logger.exception("Run %s failed", run_id)
            error = str(exc) or type(exc).__name__
            self._finalize(plan, run_id, started_at, [], error=error)
            await publish(RunError(run_id=run_id, error=error))
            return

        run = self._finalize(plan, run_id, started_at, results)
        await publish(RunDone(run_id=run_id, status=run.status.value, results=results))

    def _finalize(
        self,
        plan: RunPlan,
        run_id: str,
        started_at: str,
        results: list[ProjectRunResult],
        error: str | None = None,
    ) -> JobRun:
        run = JobRun(
            id=run_id,
            job_id=plan.job_id or ADHOC_JOB_ID,
            job_name=plan.job_name,
            started_at=started_at,
            completed_at=utcnow_iso(),
            projects=list(results),
            error=error,
        )
        try:
            self._store.record_run(run)
        except OSError:
            logger.exception("Run %s: failed to persist run outcome", run_id)
        logger.info("Run %s finalized status=%s", run_id, run.status.value)
        return run

    async def _handle_list_runs(self, request: web.Request) -> web.Response:
        records = self._store.list_runs(job_id=request.query.get("jobId") or None)
        return web.json_response({
            "runs": [r.to_dict() for r in records],
            "unread": sum(1 for r in records if not r.is_read),
        })

    async def _handle_mark_read(self, request: web.Request) -> web.Response:
        if not self._store.mark_run_read(request.match_info["id"]):
            return _error("Run not found", 404)
        return web.json_response({"success": True})

    async def _handle_mark_all_read(self, request: web.Request) -> web.Response:
        return web.json_response({"success": True, "updated": self._store.mark_all_runs_read()})

    async def _handle_delete_run(self, request: web.Request) -> web.Response:
        if not self._store.delete_run(request.match_info["id"]):
            return _error("Run not found", 404)
        return web.json_response({"success": True})

    # ── Session windows ──

    async def _handle_process_status(self, request: web.Request) -> web.Response:
        conversation_id = request.query.get("conversationId")
        try:
            if not conversation_id:
                return web.json_response({"processes": await self._sessions.list_windows()})
            status = await self._sessions.get_window_status(conversation_id)
        except ValidationError as exc:
            return _error(str(exc), 400)
        return web.json_response({
            "conversationId": conversation_id,
            "hasProcess": status.exists,
            "running": status.running,
        })

    async def _handle_process_spawn(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        conversation_id = body.get("conversationId")
        command = body.get("command")
        cwd = body.get("cwd")
        if not conversation_id or not command or not cwd:
            return web.json_response(
                {"success": False, "error": "conversationId, command and cwd are required"},
                status=400,
            )
        if not isinstance(command, (str, list)):
            return _error("command must be a string or a list of arguments", 400)
        try:
            status = await self._sessions.get_window_status(conversation_id)
            if status.running:
                return web.json_response(
                    {"success": False, "error": "Process already running"}, status=409,
                )
            await self._sessions.spawn_in_window(conversation_id, command, cwd)
        except ValidationError as exc:
            return _error(str(exc), 400)
        except (SessionSpawnError, ConfigurationError) as exc:
            return web.json_response({"success": False, "error": str(exc)}, status=500)
        return web.json_response(
            {"success": True, "conversationId": conversation_id}, status=201,
        )

    async def _handle_process_kill(self, request: web.Request) -> web.Response:
        conversation_id = request.query.get("conversationId")
        if not conversation_id:
            return web.json_response(
                {"success": False, "error": "conversationId required"}, status=400,
            )
        try:
            killed = await self._sessions.kill_window(conversation_id)
        except ValidationError as exc:
            return _error(str(exc), 400)
        return web.json_response({
            "success": killed,
            "message": "Process killed" if killed else "No active process found",
        })

    async def _handle_process_output(self, request: web.Request) -> web.Response:
        conversation_id = request.query.get("conversationId")
        if not conversation_id:
            return web.json_response(
                {"success": False, "error": "conversationId required"}, status=400,
            )
        try:
            output = await self._sessions.read_output(conversation_id)
        except ValidationError as exc:
            return _error(str(exc), 400)
        if output is None:
            return web.json_response(
                {"success": False, "error": "No output file found"}, status=404,
            )
        return web.json_response({"success": True, "output": output})

    async def _handle_process_output_cleanup(self, request: web.Request) -> web.Response:
        conversation_id = request.query.get("conversationId")
        if not conversation_id:
            return web.json_response(
                {"success": False, "error": "conversationId required"}, status=400,
            )
        try:
            await self._sessions.cleanup_output(conversation_id)
        except ValidationError as exc:
            return _error(str(exc), 400)
        return web.json_response({"success": True})

    # ── Helpers ──

    @staticmethod
    async def _read_json(request: web.Request) -> tuple[dict[str, Any], web.Response | None]:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return {}, _error("Invalid JSON body", 400)
        if not isinstance(body, dict):
            return {}, _error("Request body must be a JSON object", 400)
        return body, None
