import logging
from pathlib import Path
from typing import NoReturn, Optional

import typer

from devstack.config import COMPONENTS, StackConfig, load_config
from devstack.controller import StackController, TeardownReport
from devstack.errors import DevstackError, StageFailed
from devstack.readiness import Prober
from devstack.status import LOG_CHOICES, StatusReport, follow, log_paths, tail_lines

app = typer.Typer(help="Local development stack orchestrator.", no_args_is_help=True)

logger = logging.getLogger("devstack.cli")

EXIT_FAILURE = 1
EXIT_DEGRADED = 3
LOG_FORMAT = "[%(levelname)s] %(message)s"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    # httpx logs every request at INFO; readiness loops would flood the output.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _progress(attempt: int, max_attempts: int, ok: bool) -> None:
    """One dot per readiness attempt; the line ends with the probe."""
    typer.echo(".", nl=False, err=True)
    if ok or attempt == max_attempts:
        typer.echo("", err=True)


@app.callback()
def main(
    ctx: typer.Context,
    root: Optional[Path] = typer.Option(
        None,
        "--root",
        envvar="DEVSTACK_ROOT",
        help="Repository root holding the component directories",
        file_okay=False,
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", envvar="DEVSTACK_CONFIG", help="Path to devstack.json"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Start, stop and inspect the local development stack."""
    _configure_logging(verbose)
    ctx.obj = {"root": root, "config_path": config_path}


def _load(ctx: typer.Context) -> StackConfig:
    options = ctx.obj or {}
    root = options.get("root") or Path.cwd()
    try:
        return load_config(Path(root), options.get("config_path"))
    except DevstackError as exc:
        logger.error("%s", exc)
        raise typer.Exit(code=EXIT_FAILURE)


def _controller(ctx: typer.Context) -> StackController:
    return StackController(_load(ctx), prober=Prober(progress=_progress))


def _fail(controller: StackController, exc: DevstackError) -> NoReturn:
    logger.error("%s", exc)
    if isinstance(exc, StageFailed):
        if exc.stage in COMPONENTS:
            logger.error("Check the %s log: %s", exc.stage, controller.config.log_path(exc.stage))
        logger.error("Earlier stages were left running; run `devstack stop` to tear down")
    raise typer.Exit(code=EXIT_FAILURE)


def _print_start_summary(config: StackConfig) -> None:
    typer.echo("")
    typer.echo("Service URLs:")
    urls = config.frontend.readiness.urls
    typer.echo(f"  Frontend:     {urls[0]}" + "".join(f" (or {url})" for url in urls[1:]))
    typer.echo(f"  Backend API:  {config.backend.readiness.urls[0]}")
    typer.echo("Logs:")
    typer.echo(f"  Backend:      {config.log_path('backend')}")
    typer.echo(f"  Frontend:     {config.log_path('frontend')}")
    typer.echo("Commands:")
    typer.echo("  View logs:    devstack logs [backend|frontend|all]")
    typer.echo("  Stop all:     devstack stop")
    typer.echo("  Restart:      devstack restart")


def _finish_teardown(report: TeardownReport) -> None:
    if report.ok:
        return
    for error in report.errors:
        logger.warning("  - %s", error)
    raise typer.Exit(code=EXIT_FAILURE)


@app.command()
def start(ctx: typer.Context):
    """Start infrastructure, run migrations, then backend and frontend."""
    controller = _controller(ctx)
    try:
        controller.start()
    except DevstackError as exc:
        _fail(controller, exc)
    _print_start_summary(controller.config)


@app.command()
def stop(
    ctx: typer.Context,
    volumes: bool = typer.Option(False, "--volumes", help="Also remove infrastructure volumes"),
    keep_logs: bool = typer.Option(False, "--keep-logs", help="Keep component logs after a clean stop"),
):
    """Stop frontend, backend and infrastructure; safe to run repeatedly."""
    controller = _controller(ctx)
    report = controller.stop(volumes=volumes, keep_logs=keep_logs or None)
    _finish_teardown(report)


@app.command()
def restart(ctx: typer.Context):
    """Stop everything, then start again."""
    controller = _controller(ctx)
    try:
        controller.restart()
    except DevstackError as exc:
        _fail(controller, exc)
    _print_start_summary(controller.config)


def _render_status(report: StatusReport) -> None:
    if not report.registry_present:
        typer.echo(f"No registry file found at {report.registry_path}. Services may not be running.")
    for process in report.processes:
        label = f"{process.name.capitalize()}:".ljust(13)
        if process.running:
            typer.echo(f"{label}{typer.style('●', fg=typer.colors.GREEN)} Running (PID: {process.pid})")
        else:
            typer.echo(f"{label}{typer.style('●', fg=typer.colors.RED)} Not running")
    label = "Database:".ljust(13)
    if report.datastore_running:
        typer.echo(f"{label}{typer.style('●', fg=typer.colors.GREEN)} Running ({report.datastore})")
    else:
        typer.echo(f"{label}{typer.style('●', fg=typer.colors.RED)} Not running")
    typer.echo("")
    typer.echo("Connectivity:")
    for endpoint in report.endpoints:
        label = f"{endpoint.name.capitalize()}:".ljust(13)
        if endpoint.responding:
            typer.echo(f"{label}{typer.style('✓', fg=typer.colors.GREEN)} Responding at {endpoint.url}")
        else:
            typer.echo(f"{label}{typer.style('✗', fg=typer.colors.RED)} Not responding")


@app.command()
def status(ctx: typer.Context):
    """Show tracked process liveness and live connectivity."""
    controller = StackController(_load(ctx))
    report = controller.status()
    _render_status(report)
    if not report.healthy:
        raise typer.Exit(code=EXIT_DEGRADED)


@app.command()
def logs(
    ctx: typer.Context,
    component: str = typer.Argument("all", help=f"One of: {', '.join(LOG_CHOICES)}"),
    lines: int = typer.Option(50, "--lines", "-n", help="Lines of history to print"),
    follow_output: bool = typer.Option(False, "--follow", "-f", help="Keep streaming new output"),
):
    """Print the raw output of backend, frontend or both."""
    config = _load(ctx)
    if not config.log_dir.is_dir():
        logger.error("No logs directory found at %s. Are services running?", config.log_dir)
        raise typer.Exit(code=EXIT_FAILURE)
    try:
        paths = log_paths(config, component)
    except ValueError as exc:
        logger.error("%s", exc)
        raise typer.Exit(code=EXIT_FAILURE)
    missing = [path for path in paths if not path.exists()]
    if missing:
        logger.error("Log file not found: %s", ", ".join(str(path) for path in missing))
        raise typer.Exit(code=EXIT_FAILURE)

    for path in paths:
        if len(paths) > 1:
            typer.echo(f"==> {path} <==")
        for line in tail_lines(path, lines):
            typer.echo(line)
    if not follow_output:
        return
    try:
        for path, line in follow(paths):
            prefix = f"[{path.stem}] " if len(paths) > 1 else ""
            typer.echo(f"{prefix}{line}")
    except KeyboardInterrupt:
        return


@app.command("db:migrate")
def db_migrate(ctx: typer.Context):
    """Apply database migrations (up)."""
    controller = _controller(ctx)
    try:
        controller.migrate("up")
    except DevstackError as exc:
        _fail(controller, exc)


@app.command("db:rollback")
def db_rollback(ctx: typer.Context):
    """Roll back database migrations (down)."""
    controller = _controller(ctx)
    try:
        controller.migrate("down")
    except DevstackError as exc:
        _fail(controller, exc)


@app.command("db:reset")
def db_reset(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Destroy database volumes, restart infrastructure and migrate."""
    if not yes:
        logger.warning("This will DESTROY ALL DATA in the database!")
        if not typer.confirm("Are you sure?", default=False):
            typer.echo("Database reset cancelled")
            return
    controller = _controller(ctx)
    try:
        controller.reset_database()
    except DevstackError as exc:
        _fail(controller, exc)


@app.command("infra:start")
def infra_start(ctx: typer.Context):
    """Start only the containerized infrastructure."""
    controller = _controller(ctx)
    try:
        controller.start_infra()
    except DevstackError as exc:
        _fail(controller, exc)


@app.command("infra:stop")
def infra_stop(
    ctx: typer.Context,
    volumes: bool = typer.Option(False, "--volumes", help="Also remove infrastructure volumes"),
):
    """Stop the containerized infrastructure."""
    controller = _controller(ctx)
    try:
        controller.stop_infra(volumes=volumes)
    except DevstackError as exc:
        _fail(controller, exc)


def _start_component(ctx: typer.Context, name: str) -> None:
    controller = _controller(ctx)
    try:
        controller.start_process(name)
    except DevstackError as exc:
        _fail(controller, exc)


def _stop_component(ctx: typer.Context, name: str) -> None:
    controller = _controller(ctx)
    outcomes = controller.stop_process(name)
    failed = [outcome for outcome in outcomes if not outcome.ok]
    for outcome in failed:
        logger.warning("%s (PID %s): %s", outcome.name, outcome.pid, outcome.result.value)
    if failed:
        raise typer.Exit(code=EXIT_FAILURE)
    logger.info("%s stopped", name.capitalize())


@app.command("backend:start")
def backend_start(ctx: typer.Context):
    """Start only the backend server process."""
    _start_component(ctx, "backend")


@app.command("backend:stop")
def backend_stop(ctx: typer.Context):
    """Stop the backend server process."""
    _stop_component(ctx, "backend")


@app.command("frontend:start")
def frontend_start(ctx: typer.Context):
    """Start only the frontend dev server."""
    _start_component(ctx, "frontend")


@app.command("frontend:stop")
def frontend_stop(ctx: typer.Context):
    """Stop the frontend dev server."""
    _stop_component(ctx, "frontend")


if __name__ == "__main__":
    app()
