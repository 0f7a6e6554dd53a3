"""Stack lifecycle: ordered start, symmetric best-effort teardown."""

from __future__ import annotations

import enum
import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from devstack.compose import ContainerRuntime, run_command
from devstack.config import COMPONENTS, ProcessSpec, StackConfig
from devstack.errors import (
    AlreadyRunning,
    CommandFailed,
    DevstackError,
    EnvironmentProblem,
    MigrationFailed,
    RegistryExists,
)
from devstack.gate import DependencyGate, Stage
from devstack.readiness import AllOf, CommandCheck, HttpCheck, Prober, ReadinessTarget
from devstack.registry import ProcessRegistry
from devstack.status import StatusReport, collect_status
from devstack.supervisor import ProcessSupervisor, StopOutcome

logger = logging.getLogger("devstack.controller")

# Frontend depends on backend, so it goes first.
STOP_ORDER = tuple(reversed(COMPONENTS))


class StackState(str, enum.Enum):
    IDLE = "idle"
    STARTING_INFRA = "starting_infra"
    MIGRATING_SCHEMA = "migrating_schema"
    STARTING_PROCESSES = "starting_processes"
    RUNNING = "running"
    STOPPING_PROCESSES = "stopping_processes"
    STOPPING_INFRA = "stopping_infra"


@dataclass
class TeardownReport:
    outcomes: list[StopOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    registry_cleared: bool = False
    runtime_dir_removed: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def record(self, outcome: StopOutcome) -> None:
        self.outcomes.append(outcome)
        if not outcome.ok:
            self.errors.append(f"{outcome.name} (PID {outcome.pid}): {outcome.result.value}")


def _noop() -> None:
    return None


class StackController:
    """Sequences infra, migrations and processes for one invocation."""

    def __init__(
        self,
        config: StackConfig,
        *,
        registry: ProcessRegistry | None = None,
        supervisor: ProcessSupervisor | None = None,
        runtime: ContainerRuntime | None = None,
        prober: Prober | None = None,
        which: Callable[[str], str | None] = shutil.which,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.registry = registry or ProcessRegistry(config.registry_path)
        self.supervisor = supervisor or ProcessSupervisor(
            grace_seconds=config.grace_seconds,
            poll_interval=config.poll_interval,
        )
        self.runtime = runtime or ContainerRuntime(
            config.container_runtime,
            config.infra.directory,
            config.compose_command,
            timeout=None,
        )
        self.prober = prober or Prober()
        self.gate = DependencyGate(self.prober)
        self.which = which
        self.sleep = sleep
        self.state = StackState.IDLE
        self.history: list[StackState] = [StackState.IDLE]

    def _transition(self, state: StackState) -> None:
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    # Environment checks

    def check_dependencies(self) -> None:
        missing = [tool for tool in self.config.required_tools if self.which(tool) is None]
        try:
            self.runtime.compose_command
        except EnvironmentProblem:
            missing.append("docker-compose")
        if missing:
            raise EnvironmentProblem(
                f"Missing required dependencies: {' '.join(missing)}. "
                "Please install them before continuing."
            )

    def _require_dir(self, directory: Path) -> None:
        if not directory.is_dir():
            raise EnvironmentProblem(f"Required directory not found: {directory}")

    def check_directories(self) -> None:
        for directory in (
            self.config.backend.directory,
            self.config.frontend.directory,
            self.config.infra.directory,
        ):
            self._require_dir(directory)

    def _ensure_env_file(self, directory: Path, env_file: str | None) -> None:
        if env_file is None:
            return
        target = directory / env_file
        if target.exists():
            return
        example = directory / f"{env_file}.example"
        if not example.exists():
            raise EnvironmentProblem(
                f"Missing required environment file: {target} (no {example.name} to copy)"
            )
        shutil.copyfile(example, target)
        logger.warning("Missing %s, created from %s", target, example.name)
        logger.warning("Please review and update %s with your settings", target)

    def ensure_env_files(self) -> None:
        self._ensure_env_file(self.config.infra.directory, self.config.infra.env_file)
        self._ensure_env_file(self.config.backend.directory, self.config.backend.env_file)
        self._ensure_env_file(self.config.frontend.directory, self.config.frontend.env_file)

    # Start path

    def start(self) -> None:
        """Bring the whole stack up; refuses while a registry file exists."""
        if self.registry.exists():
            raise RegistryExists(self.registry.path)
        logger.info("Starting complete %s stack...", self.config.project_name)
        self.check_dependencies()
        self.check_directories()
        self.ensure_env_files()

        self.config.log_dir.mkdir(parents=True, exist_ok=True)
        self.registry.create()

        self.start_infra()
        try:
            self.migrate("up")
        except MigrationFailed as exc:
            if self.config.migrations.halt_on_failure:
                raise
            logger.warning("%s; continuing because migrations.halt_on_failure is false", exc)

        self._transition(StackState.STARTING_PROCESSES)
        self.gate.bring_up([
            self._process_stage(self.config.backend),
            self._process_stage(self.config.frontend),
        ])
        self._transition(StackState.RUNNING)
        logger.info("All services started successfully")

    def _datastore_target(self) -> ReadinessTarget:
        store = self.config.infra.datastore
        timeout = self.config.command_timeout
        checks = [CommandCheck(self.runtime.ps_argv(), timeout=timeout, expect_stdout=store.container)]
        checks.extend(
            CommandCheck(self.runtime.exec_argv(store.container, command), timeout=timeout)
            for command in store.health_commands
        )
        return ReadinessTarget(
            name=f"database ({store.container})",
            check=AllOf(checks),
            max_attempts=store.max_attempts,
            delay=store.delay,
        )

    def _infra_stages(self) -> list[Stage]:
        store = self.config.infra.datastore
        stages = [Stage(f"datastore {store.service}", lambda: self.runtime.up(store.service), self._datastore_target())]

        http_targets = list(self.config.infra.services)
        if self.config.infra.gateway is not None:
            http_targets.append(self.config.infra.gateway)
        if not http_targets:
            stages.append(Stage("services", self.runtime.up))
            return stages
        for index, spec in enumerate(http_targets):
            target = ReadinessTarget(
                name=spec.name,
                check=HttpCheck(spec.urls, expect_status=spec.expect_status),
                max_attempts=spec.max_attempts,
                delay=spec.delay,
            )
            # One `compose up -d` starts the whole group; later stages only wait.
            stages.append(Stage(spec.name, self.runtime.up if index == 0 else _noop, target))
        return stages

    def start_infra(self) -> None:
        self._transition(StackState.STARTING_INFRA)
        self._require_dir(self.config.infra.directory)
        self._ensure_env_file(self.config.infra.directory, self.config.infra.env_file)
        logger.info("Starting infrastructure...")
        self.gate.bring_up(self._infra_stages())
        logger.info("Infrastructure services started successfully")

    def migrate(self, verb: str = "up") -> bool:
        """Run the migration runner; False when no runner is present."""
        self._transition(StackState.MIGRATING_SCHEMA)
        spec = self.config.migrations
        migrations_dir = spec.directory / spec.migrations_dir
        if not migrations_dir.is_dir():
            raise EnvironmentProblem(f"Migrations directory not found at {migrations_dir}")
        candidate = next((c for c in spec.candidates if (spec.directory / c.marker).exists()), None)
        if candidate is None:
            logger.warning("No migration tool found. Please run migrations manually.")
            return False

        env = dict(os.environ)
        if spec.database_url:
            env["DATABASE_URL"] = spec.database_url
        argv = [*candidate.command, verb]
        logger.info("Running database migrations: %s", " ".join(argv))
        try:
            result = subprocess.run(argv, cwd=str(spec.directory), env=env)
        except FileNotFoundError as exc:
            raise EnvironmentProblem(f"Migration runner not found: {argv[0]}") from exc
        if result.returncode != 0:
            raise MigrationFailed(verb, result.returncode)
        logger.info("Migrations completed (%s)", verb)
        return True

    def reset_database(self) -> None:
        """Drop infra volumes, bring infra back and re-run migrations."""
        self.stop_infra(volumes=True)
        self.start_infra()
        self.migrate("up")
        logger.info("Database reset complete")

    def _launch_process(self, spec: ProcessSpec) -> None:
        tracked = self.registry.load_all()
        previous = tracked.get(spec.name)
        if previous is not None:
            if self.supervisor.is_alive(previous):
                raise AlreadyRunning(spec.name, previous)
            logger.info("Stale registry entry for %s (PID %s) has no live process", spec.name, previous)

        self._require_dir(spec.directory)
        if spec.required_file and not (spec.directory / spec.required_file).exists():
            raise EnvironmentProblem(f"{spec.required_file} not found in {spec.directory}")
        self._ensure_env_file(spec.directory, spec.env_file)
        if spec.install_command and spec.install_marker and not (spec.directory / spec.install_marker).exists():
            logger.info("Installing %s dependencies...", spec.name)
            result = run_command(spec.install_command, cwd=spec.directory)
            if result.returncode != 0:
                raise CommandFailed(list(spec.install_command), result.returncode, result.stderr)
        for pattern in spec.sweep_patterns:
            for outcome in self.supervisor.stop_by_pattern(pattern):
                logger.info("Stopped leftover %s process (PID %s)", spec.name, outcome.pid)

        process = self.supervisor.launch(
            spec.name,
            spec.command,
            self.config.log_path(spec.name),
            cwd=spec.directory,
        )
        self.registry.save(process.name, process.pid)

    def _process_stage(self, spec: ProcessSpec) -> Stage:
        target = ReadinessTarget(
            name=spec.name,
            check=HttpCheck(spec.readiness.urls, expect_status=spec.readiness.expect_status),
            max_attempts=spec.readiness.max_attempts,
            delay=spec.readiness.delay,
        )
        return Stage(spec.name, lambda: self._launch_process(spec), target)

    def start_process(self, name: str) -> None:
        """Start one tracked component; a readiness failure leaves it running."""
        spec = self.config.process(name)
        self.config.log_dir.mkdir(parents=True, exist_ok=True)
        self._transition(StackState.STARTING_PROCESSES)
        self.gate.bring_up([self._process_stage(spec)])

    # Stop path

    def _sweep_patterns(self) -> list[str]:
        patterns = list(self.config.sweep_patterns)
        for name in STOP_ORDER:
            for pattern in self.config.process(name).sweep_patterns:
                if pattern not in patterns:
                    patterns.append(pattern)
        return patterns

    def stop(self, *, volumes: bool = False, keep_logs: bool | None = None) -> TeardownReport:
        """Best-effort teardown; every step runs and failures are aggregated."""
        report = TeardownReport()
        keep_logs = self.config.keep_logs if keep_logs is None else keep_logs
        logger.info("Stopping all %s services...", self.config.project_name)

        self._transition(StackState.STOPPING_PROCESSES)
        tracked = self.registry.load_all()
        if not self.registry.exists():
            logger.info("No registry file found at %s; no tracked processes", self.registry.path)
        names = [name for name in STOP_ORDER if name in tracked]
        names.extend(name for name in tracked if name not in names)
        for name in names:
            report.record(self.supervisor.stop(name, tracked[name], process_group=True))

        try:
            self.stop_infra(volumes=volumes)
        except DevstackError as exc:
            logger.error("Infrastructure stop had issues: %s", exc)
            report.errors.append(f"infrastructure: {exc}")

        swept = 0
        for pattern in self._sweep_patterns():
            for outcome in self.supervisor.stop_by_pattern(pattern):
                report.record(outcome)
                swept += 1
        if swept == 0:
            logger.info("No additional %s processes found", self.config.project_name)

        if all(outcome.ok for outcome in report.outcomes):
            self.registry.clear()
            report.registry_cleared = True
        else:
            logger.warning("Keeping %s; some tracked processes could not be stopped", self.registry.path)

        if report.ok and not keep_logs:
            self._remove_logs()
        report.runtime_dir_removed = self._remove_runtime_dir_if_empty()

        self._transition(StackState.IDLE)
        if report.ok:
            logger.info("All services stopped successfully")
        else:
            logger.warning("Some services may need manual cleanup")
        return report

    def _remove_logs(self) -> None:
        for name in COMPONENTS:
            self.config.log_path(name).unlink(missing_ok=True)
        log_dir = self.config.log_dir
        if log_dir.is_dir() and not any(log_dir.iterdir()):
            log_dir.rmdir()

    def _remove_runtime_dir_if_empty(self) -> bool:
        runtime_dir = self.config.runtime_dir
        if not runtime_dir.is_dir():
            return False
        if any(runtime_dir.iterdir()):
            logger.info("Runtime directory not empty, leaving in place: %s", runtime_dir)
            return False
        runtime_dir.rmdir()
        logger.info("Removed empty runtime directory")
        return True

    def stop_infra(self, *, volumes: bool = False) -> None:
        self._transition(StackState.STOPPING_INFRA)
        self._require_dir(self.config.infra.directory)
        logger.info("Stopping infrastructure services...")
        self.runtime.down(volumes=volumes)
        logger.info("Infrastructure stopped")

    def stop_process(self, name: str) -> list[StopOutcome]:
        """Stop one component by registry pid, then by its sweep patterns."""
        spec = self.config.process(name)
        self._transition(StackState.STOPPING_PROCESSES)
        outcomes = []
        pid = self.registry.load_all().get(name)
        if pid is None:
            logger.info("%s is not tracked in %s", name, self.registry.path)
        else:
            outcomes.append(self.supervisor.stop(name, pid, process_group=True))
        for pattern in spec.sweep_patterns:
            outcomes.extend(self.supervisor.stop_by_pattern(pattern))
        return outcomes

    def restart(self) -> None:
        logger.info("Restarting all services...")
        report = self.stop()
        if not report.ok:
            raise DevstackError("stop reported errors; not restarting: " + "; ".join(report.errors))
        self.sleep(self.config.restart_delay)
        self.start()

    def status(self, *, http_timeout: float = 2.0) -> StatusReport:
        return collect_status(self.config, self.registry, self.runtime, http_timeout=http_timeout)
