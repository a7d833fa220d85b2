"""agentjobs command-line entry point.

    agentjobs --server [--host H] [--port P]     HTTP + SSE server
    agentjobs --list-jobs                        saved job definitions
    agentjobs --run-job JOB_ID                   run a saved job
    agentjobs --prompt TEXT --target DIR ...     ad-hoc run
    agentjobs --list-windows                     session windows
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from agentjobs.adapters.events import (
    ProjectDone,
    ProjectOutput,
    ProjectSkipped,
    ProjectStarted,
    RunEvent,
)
from agentjobs.engine.config import JobsConfig
from agentjobs.engine.errors import ConfigurationError, JobsError, ValidationError
from agentjobs.engine.models import (
    ADHOC_JOB_ID,
    JobRun,
    JobStatus,
    PreCheckSpec,
    ProjectRunResult,
    SkipIf,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "agentjobs.yaml"

_STATUS_STYLE = {
    JobStatus.IDLE: "green",
    JobStatus.RUNNING: "cyan",
    JobStatus.NEEDS_HUMAN: "yellow",
    JobStatus.ERROR: "red",
}


def _configure_server_logging(level_name: str) -> Path:
    """Rotating file log plus stderr, as the long-running server needs."""
    log_dir = Path.home() / ".agentjobs" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentjobs-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _configure_cli_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _load_config(config_path: str | None) -> JobsConfig:
    """Env config, overlaid with --config or ./agentjobs.yaml when present."""
    from agentjobs.engine.yaml_config import load_yaml_config

    if config_path:
        return load_yaml_config(config_path)
    auto = Path.cwd() / DEFAULT_CONFIG_NAME
    if auto.exists():
        logger.info("Auto-discovered config: %s", auto)
        return load_yaml_config(auto)
    config = JobsConfig.from_env()
    config.validate()
    return config


def _build_runner(config: JobsConfig):
    from agentjobs.engine.precheck import PreCheckEvaluator
    from agentjobs.engine.providers.registry import (
        BackendInvoker,
        NeedsHumanDetector,
        build_provider_registry,
    )
    from agentjobs.engine.runner import JobRunner

    invoker = BackendInvoker(
        build_provider_registry(config),
        NeedsHumanDetector(config.needs_human_patterns),
    )
    return JobRunner(invoker, PreCheckEvaluator(config.precheck_timeout_seconds))


# ── Rendering ──


class RunView:
    """Prints run events as they arrive."""

    def __init__(self, console: Console, stream_output: bool = False) -> None:
        self._console = console
        self._stream_output = stream_output

    async def __call__(self, event: RunEvent) -> None:
        if isinstance(event, ProjectStarted):
            self._console.print(f"[cyan]▶[/] {event.project_name} [dim]{event.project}[/]")
        elif isinstance(event, ProjectSkipped):
            detail = f" [dim]({event.pre_check_output[:60]})[/]" if event.pre_check_output else ""
            self._console.print(f"[dim]⏭ {event.project_name} skipped by pre-check[/]{detail}")
        elif isinstance(event, ProjectOutput) and self._stream_output:
            self._console.print(event.text, end="", markup=False, highlight=False)
        elif isinstance(event, ProjectDone) and event.result is not None:
            self._console.print(_result_line(event.result))


def _result_line(result: ProjectRunResult) -> str:
    seconds = result.duration_ms / 1000
    if result.error:
        return f"[red]✗[/] {result.project_name} [dim]{seconds:.1f}s[/] [red]{result.error[:200]}[/]"
    if result.needs_human:
        return f"[yellow]⚠[/] {result.project_name} [dim]{seconds:.1f}s[/] needs review"
    return f"[green]✓[/] {result.project_name} [dim]{seconds:.1f}s[/]"


def _render_summary(console: Console, run: JobRun, show_output: bool) -> None:
    table = Table(title=f"{run.job_name} · {run.id}")
    table.add_column("Project")
    table.add_column("Outcome")
    table.add_column("Time", justify="right")
    for result in run.projects:
        if result.skipped:
            outcome = "[dim]skipped[/]"
        elif result.error:
            outcome = "[red]error[/]"
        elif result.needs_human:
            outcome = "[yellow]needs human[/]"
        else:
            outcome = "[green]ok[/]"
        table.add_row(result.project_name, outcome, f"{result.duration_ms / 1000:.1f}s")
    console.print(table)
    style = _STATUS_STYLE[run.status]
    console.print(f"Status: [{style}]{run.status.value}[/] ({run.summary()})")

    if show_output:
        for result in run.projects:
            if result.output:
                console.print(Panel(result.output, title=result.project_name, expand=False))


# ── Commands ──


async def _run_once(
    config: JobsConfig,
    *,
    job_id: str | None,
    prompt: str | None,
    targets: list[str],
    backend: str | None,
    max_parallel: int | None,
    pre_check: PreCheckSpec | None,
    console: Console,
    stream_output: bool,
    show_output: bool,
) -> int:
    from agentjobs.engine.runner import generate_run_id
    from agentjobs.shared.services.job_store import JobStore

    store = JobStore(config.storage_dir, config.max_run_history)
    job_name = "Ad-hoc Job"
    if job_id:
        job = store.require_job(job_id)
        prompt = job.prompt
        targets = list(job.target_paths)
        backend = backend or job.backend
        pre_check = job.pre_check
        max_parallel = max_parallel or job.max_parallel
        job_name = job.name

    runner = _build_runner(config)
    backend = backend or config.default_backend
    max_parallel = max_parallel or config.default_max_parallel
    runner.validate(prompt or "", targets, pre_check, max_parallel, backend)

    run_id = generate_run_id()
    if job_id:
        store.update_job_run_status(job_id, JobStatus.RUNNING)
    started_at = utcnow_iso()
    results: list[ProjectRunResult] = []
    error: str | None = None
    try:
        results = await runner.run_job_on_projects(
            prompt, targets, pre_check, max_parallel, backend,
            RunView(console, stream_output), run_id=run_id,
        )
    except asyncio.CancelledError:
        error = "Run cancelled"
        raise
    except Exception as exc:
        error = str(exc) or type(exc).__name__
        raise
    finally:
        run = JobRun(
            id=run_id,
            job_id=job_id or ADHOC_JOB_ID,
            job_name=job_name,
            started_at=started_at,
            completed_at=utcnow_iso(),
            projects=results,
            error=error,
        )
        store.record_run(run)

    _render_summary(console, run, show_output)
    return 0 if run.status != JobStatus.ERROR else 1


def _list_jobs(config: JobsConfig, console: Console) -> None:
    from agentjobs.shared.services.job_store import JobStore

    jobs = JobStore(config.storage_dir).list_jobs()
    if not jobs:
        console.print("No saved jobs.")
        return
    table = Table()
    for column in ("ID", "Name", "Trigger", "Backend", "Targets", "Status", "Last run"):
        table.add_column(column)
    for job in jobs:
        table.add_row(
            job.id, job.name, job.trigger.value, job.backend,
            str(len(job.target_paths)),
            f"[{_STATUS_STYLE[job.status]}]{job.status.value}[/]",
            job.last_run or "-",
        )
    console.print(table)


async def _list_windows(config: JobsConfig, console: Console) -> None:
    from agentjobs.engine.session_manager import SessionManager

    sessions = SessionManager.from_config(config)
    names = await sessions.list_windows()
    if not names:
        console.print("No active windows.")
        return
    for name in names:
        status = await sessions.get_window_status(name)
        state = "[green]running[/]" if status.running else "[dim]exited[/]"
        console.print(f"  {name}  {state}")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentjobs",
        description="Run AI coding-agent CLIs across many projects",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start HTTP+SSE server mode",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Server bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help=f"YAML config file (default: ./{DEFAULT_CONFIG_NAME} if present)",
    )
    parser.add_argument(
        "--list-jobs", action="store_true",
        help="List saved jobs and exit",
    )
    parser.add_argument(
        "--run-job", metavar="JOB_ID",
        help="Run a saved job",
    )
    parser.add_argument(
        "--prompt",
        help="Prompt for an ad-hoc run",
    )
    parser.add_argument(
        "--target", metavar="DIR", action="append", default=[],
        help="Target project directory (repeatable)",
    )
    parser.add_argument(
        "--backend", choices=("claude", "codex", "gemini"),
        help="Agent CLI to run (default from config)",
    )
    parser.add_argument(
        "--max-parallel", type=int, metavar="N",
        help="Maximum concurrent agent runs",
    )
    parser.add_argument(
        "--pre-check", metavar="CMD",
        help="Shell command run in each target before the agent",
    )
    parser.add_argument(
        "--skip-if", choices=[s.value for s in SkipIf], default=SkipIf.EMPTY.value,
        help="Skip rule applied to the pre-check output (default: empty)",
    )
    parser.add_argument(
        "--skip-pattern", metavar="REGEX",
        help="Pattern for --skip-if matches",
    )
    parser.add_argument(
        "--stream", action="store_true",
        help="Print agent output as it arrives",
    )
    parser.add_argument(
        "--show-output", action="store_true",
        help="Print each project's full output after the run",
    )
    parser.add_argument(
        "--list-windows", action="store_true",
        help="List session windows and exit",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging",
    )
    args = parser.parse_args()

    if args.server:
        log_level = os.getenv("JOBS_LOG_LEVEL", "INFO")
        log_file = _configure_server_logging(log_level)
        logger.info(
            "Starting agentjobs server cwd=%s host=%s port=%s config=%s log=%s",
            Path.cwd(), args.host, args.port, args.config or "<auto>", log_file,
        )
    else:
        _configure_cli_logging(args.verbose)

    console = Console()
    try:
        config = _load_config(args.config)
    except (FileNotFoundError, ConfigurationError) as exc:
        console.print(f"[red]Configuration error:[/] {exc}")
        sys.exit(2)

    if args.server:
        from agentjobs.server.server import JobsServer

        logging.getLogger().setLevel(
            getattr(logging, config.log_level.upper(), logging.INFO)
        )
        from agentjobs.shared.services.process_cleanup import cleanup_stale_agent_processes

        reaped = cleanup_stale_agent_processes()
        if reaped:
            logger.warning("Reaped %d stale agent process(es) at startup", reaped)
        server = JobsServer(config, host=args.host, port=args.port)
        asyncio.run(server.start())
        sys.exit(0)

    if args.list_jobs:
        _list_jobs(config, console)
        sys.exit(0)

    if args.list_windows:
        asyncio.run(_list_windows(config, console))
        sys.exit(0)

    if not args.run_job and not args.prompt:
        parser.print_help()
        sys.exit(2)

    try:
        pre_check = None
        if args.pre_check:
            pre_check = PreCheckSpec.from_dict({
                "command": args.pre_check,
                "skipIf": args.skip_if,
                "pattern": args.skip_pattern,
            })
        code = asyncio.run(_run_once(
            config,
            job_id=args.run_job,
            prompt=args.prompt,
            targets=[os.path.abspath(t) for t in args.target],
            backend=args.backend,
            max_parallel=args.max_parallel,
            pre_check=pre_check,
            console=console,
            stream_output=args.stream,
            show_output=args.show_output,
        ))
    except ValidationError as exc:
        console.print(f"[red]Invalid request:[/] {exc}")
        sys.exit(2)
    except JobsError as exc:
        console.print(f"[red]Error:[/] {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/]")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
