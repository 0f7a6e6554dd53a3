"""Container runtime CLI adapter (compose up/down, exec, ps)."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Sequence

from devstack.errors import CommandFailed, EnvironmentProblem

logger = logging.getLogger("devstack.compose")


def run_command(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess:
    """Run a subprocess command and capture stdout/stderr."""
    logger.debug("Running command: %s", " ".join(args))
    try:
        return subprocess.run(
            list(args),
            cwd=str(cwd) if cwd is not None else None,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        return subprocess.CompletedProcess(list(args), 127, "", f"command not found: {args[0]}")
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(list(args), 124, "", f"timed out after {timeout}s")


def detect_compose_command(runtime: str = "docker") -> list[str]:
    """Return ``<runtime> compose`` or ``docker-compose``, whichever works."""
    if shutil.which(runtime) is not None:
        if run_command([runtime, "compose", "version"], timeout=15).returncode == 0:
            return [runtime, "compose"]
    if shutil.which("docker-compose") is not None:
        if run_command(["docker-compose", "version"], timeout=15).returncode == 0:
            return ["docker-compose"]
    raise EnvironmentProblem(
        f"Neither '{runtime} compose' nor 'docker-compose' was found in PATH"
    )


class ContainerRuntime:
    """Opaque wrapper over the container CLI; only exit status and stdout matter."""

    def __init__(
        self,
        runtime: str,
        project_dir: Path,
        compose_command: Sequence[str] | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        self.runtime = runtime
        self.project_dir = project_dir
        self._compose_command = list(compose_command) if compose_command else None
        self.timeout = timeout

    @property
    def compose_command(self) -> list[str]:
        if self._compose_command is None:
            self._compose_command = detect_compose_command(self.runtime)
        return list(self._compose_command)

    def _compose(self, *args: str) -> subprocess.CompletedProcess:
        argv = self.compose_command + list(args)
        logger.info("Running %s (in %s)", " ".join(argv), self.project_dir)
        result = run_command(argv, cwd=self.project_dir, timeout=self.timeout)
        if result.returncode != 0:
            raise CommandFailed(argv, result.returncode, result.stderr or result.stdout)
        return result

    def up(self, service: str | None = None) -> None:
        if service:
            self._compose("up", "-d", service)
        else:
            self._compose("up", "-d")

    def down(self, *, volumes: bool = False) -> None:
        if volumes:
            logger.warning("Removing database volumes (ALL DATA WILL BE LOST)")
            self._compose("down", "--volumes", "--remove-orphans")
        else:
            self._compose("down", "--remove-orphans")

    def exec_argv(self, container: str, command: Sequence[str]) -> list[str]:
        return [self.runtime, "exec", container, *command]

    def ps_argv(self) -> list[str]:
        return [self.runtime, "ps", "--format", "{{.Names}}"]

    def is_container_running(self, container: str) -> bool:
        """Return True if the runtime lists the container among running ones."""
        result = run_command(self.ps_argv(), timeout=self.timeout)
        if result.returncode != 0:
            logger.debug("Container listing failed: %s", result.stderr.strip())
            return False
        return container in {line.strip() for line in result.stdout.splitlines()}
