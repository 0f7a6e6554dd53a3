"""Detached process launch and graceful-then-forceful termination."""

from __future__ import annotations

import enum
import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Sequence

import psutil

from devstack.errors import LaunchError

logger = logging.getLogger("devstack.supervisor")

DEFAULT_GRACE_SECONDS = 10.0
DEFAULT_POLL_INTERVAL = 0.5
KILL_CONFIRM_SECONDS = 2.0


@dataclass(frozen=True)
class TrackedProcess:
    name: str
    pid: int
    log_path: Path


class StopResult(str, enum.Enum):
    ALREADY_STOPPED = "already_stopped"
    TERMINATED = "terminated"
    KILLED = "killed"
    SURVIVED = "survived"
    DENIED = "denied"


@dataclass(frozen=True)
class StopOutcome:
    name: str
    pid: int
    result: StopResult

    @property
    def ok(self) -> bool:
        return self.result in {StopResult.ALREADY_STOPPED, StopResult.TERMINATED, StopResult.KILLED}


def pid_alive(pid: int) -> bool:
    """Check whether pid exists in the process table; zombies count as dead."""
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


class ProcessSupervisor:
    """Launches tracked processes and stops tracked or pattern-matched ones."""

    def __init__(
        self,
        *,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.grace_seconds = grace_seconds
        self.poll_interval = poll_interval
        self.sleep = sleep
        # Popen handles for children of this invocation, so exits get reaped.
        self._children: dict[int, subprocess.Popen] = {}

    def launch(
        self,
        name: str,
        command: Sequence[str],
        log_path: Path,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> TrackedProcess:
        """Start ``command`` detached from this session, output to ``log_path``."""
        log_path.parent.mkdir(parents=True, exist_ok=True)
        kwargs = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        process_env = None
        if env:
            process_env = {**os.environ, **env}

        logger.debug("Launching %s: %s (cwd=%s)", name, " ".join(command), cwd)
        with open(log_path, "wb") as log_file:
            try:
                process = subprocess.Popen(
                    list(command),
                    cwd=str(cwd) if cwd is not None else None,
                    env=process_env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    **kwargs,
                )
            except OSError as exc:
                raise LaunchError(name, str(exc), log_path) from exc
        self._children[process.pid] = process
        logger.info("%s started (PID: %s)", name, process.pid)
        logger.info("%s log: %s", name, log_path)
        return TrackedProcess(name=name, pid=process.pid, log_path=log_path)

    def is_alive(self, pid: int) -> bool:
        child = self._children.get(pid)
        if child is not None and child.poll() is not None:
            return False
        return pid_alive(pid)

    def _is_group_leader(self, pid: int) -> bool:
        if os.name != "posix":
            return False
        try:
            return os.getpgid(pid) == pid
        except ProcessLookupError:
            return False

    def _group_members(self, pid: int) -> list[int]:
        """Leader plus its current descendants, captured before any signal."""
        try:
            children = psutil.Process(pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        return [pid, *(child.pid for child in children)]

    def _signal(self, pid: int, members: Sequence[int], *, force: bool, group: bool) -> None:
        if not group:
            proc = psutil.Process(pid)
            if force:
                proc.kill()
            else:
                proc.terminate()
            return
        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            pass
        # Descendants that moved to their own group are signalled one by one.
        for member in members:
            if member == pid:
                continue
            try:
                if os.getpgid(member) != pid:
                    os.kill(member, sig)
            except ProcessLookupError:
                continue

    def _wait_gone(self, pids: Sequence[int], timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            if not any(self.is_alive(pid) for pid in pids):
                return True
            if time.monotonic() >= deadline:
                return False
            self.sleep(self.poll_interval)

    def stop(self, name: str, pid: int, *, process_group: bool = False) -> StopOutcome:
        """Terminate, wait up to ``grace_seconds``, then kill. Never raises.

        With ``process_group`` the whole group led by ``pid`` must be gone
        before the stop counts as done; a leader exiting early is not enough.
        """
        if not self.is_alive(pid):
            logger.info("%s (PID %s) is not running", name, pid)
            return StopOutcome(name, pid, StopResult.ALREADY_STOPPED)

        group = process_group and self._is_group_leader(pid)
        members = self._group_members(pid) if group else [pid]
        logger.info("Stopping %s (PID %s)...", name, pid)
        if len(members) > 1:
            logger.debug("%s group members: %s", name, members)
        try:
            self._signal(pid, members, force=False, group=group)
        except psutil.NoSuchProcess:
            return StopOutcome(name, pid, StopResult.TERMINATED)
        except (psutil.AccessDenied, PermissionError) as exc:
            logger.warning("Cannot signal %s (PID %s): %s", name, pid, exc)
            return StopOutcome(name, pid, StopResult.DENIED)

        if self._wait_gone(members, self.grace_seconds):
            logger.info("%s stopped gracefully", name)
            return StopOutcome(name, pid, StopResult.TERMINATED)

        survivors = [member for member in members if self.is_alive(member)]
        logger.warning(
            "%s: PID(s) %s did not exit within %ss; sending SIGKILL",
            name,
            ", ".join(str(member) for member in survivors),
            self.grace_seconds,
        )
        try:
            self._signal(pid, survivors, force=True, group=group)
        except psutil.NoSuchProcess:
            return StopOutcome(name, pid, StopResult.KILLED)
        except (psutil.AccessDenied, PermissionError) as exc:
            logger.warning("Cannot kill %s (PID %s): %s", name, pid, exc)
            return StopOutcome(name, pid, StopResult.DENIED)

        if self._wait_gone(survivors, KILL_CONFIRM_SECONDS):
            return StopOutcome(name, pid, StopResult.KILLED)
        logger.warning("%s (PID %s) is still alive after SIGKILL", name, pid)
        return StopOutcome(name, pid, StopResult.SURVIVED)

    def find_by_pattern(self, pattern: str) -> list[int]:
        """PIDs whose command line contains ``pattern``, minus this process and its parent."""
        if not pattern.strip():
            raise ValueError("pattern must not be empty")
        excluded = {os.getpid(), os.getppid()}
        matches = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            pid = proc.info["pid"]
            if pid in excluded:
                continue
            cmdline = proc.info.get("cmdline") or []
            if pattern in " ".join(cmdline):
                matches.append(pid)
        return sorted(matches)

    def describe(self, pid: int) -> str:
        try:
            cmdline = psutil.Process(pid).cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            cmdline = []
        return " ".join(cmdline)[:120] or f"process {pid}"

    def stop_by_pattern(self, pattern: str) -> list[StopOutcome]:
        outcomes = []
        for pid in self.find_by_pattern(pattern):
            if not self.is_alive(pid):
                continue
            outcomes.append(self.stop(self.describe(pid), pid))
        return outcomes
