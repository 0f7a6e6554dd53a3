"""Orchestrator exception hierarchy."""

from __future__ import annotations

from pathlib import Path


class DevstackError(Exception):
    """Base error type for all orchestrator failures."""


class ConfigError(DevstackError):
    """Configuration file is unreadable or has an invalid shape."""


class EnvironmentProblem(DevstackError):
    """Required tool, directory or file is missing; nothing was started."""


class CommandFailed(DevstackError):
    """External command exited nonzero."""

    def __init__(self, argv: list[str], returncode: int, output: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        detail = f": {output.strip()}" if output and output.strip() else ""
        super().__init__(f"`{' '.join(self.argv)}` exited with {returncode}{detail}")


class LaunchError(DevstackError):
    """Process could not be spawned."""

    def __init__(self, name: str, message: str, log_path: Path | None = None):
        self.name = name
        self.log_path = log_path
        super().__init__(f"failed to launch {name}: {message}")


class NotReady(DevstackError):
    """Readiness target did not report ready within its attempt budget."""

    def __init__(self, target: str, attempts: int, hint: str = ""):
        self.target = target
        self.attempts = attempts
        self.hint = hint
        message = f"{target} did not become ready after {attempts} attempts"
        if hint:
            message = f"{message} ({hint})"
        super().__init__(message)


class StageFailed(DevstackError):
    """Dependency gate aborted at a stage."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"stage '{stage}' failed: {cause}")


class MigrationFailed(DevstackError):
    """Migration runner exited nonzero."""

    def __init__(self, verb: str, returncode: int):
        self.verb = verb
        self.returncode = returncode
        super().__init__(f"migration '{verb}' exited with {returncode}")


class RegistryExists(DevstackError):
    """A start was attempted while a previous start was never stopped."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(
            f"registry file already exists at {path}; run `devstack stop` first, "
            "or `devstack restart`"
        )


class AlreadyRunning(DevstackError):
    """A component already has a live tracked process."""

    def __init__(self, name: str, pid: int):
        self.name = name
        self.pid = pid
        super().__init__(f"{name} is already running (PID: {pid})")
