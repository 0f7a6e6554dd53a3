"""Status snapshot and log access for the operator."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator

import httpx

from devstack.compose import ContainerRuntime
from devstack.config import COMPONENTS, StackConfig
from devstack.readiness import HttpCheck
from devstack.registry import ProcessRegistry
from devstack.supervisor import pid_alive

LOG_CHOICES = (*COMPONENTS, "all")


@dataclass(frozen=True)
class ProcessStatus:
    name: str
    pid: int | None
    running: bool


@dataclass(frozen=True)
class EndpointStatus:
    name: str
    urls: tuple[str, ...]
    responding: bool
    url: str | None = None


@dataclass(frozen=True)
class StatusReport:
    registry_path: Path
    registry_present: bool
    datastore: str
    datastore_running: bool
    processes: list[ProcessStatus] = field(default_factory=list)
    endpoints: list[EndpointStatus] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return (
            self.datastore_running
            and all(process.running for process in self.processes)
            and all(endpoint.responding for endpoint in self.endpoints)
        )


def collect_status(
    config: StackConfig,
    registry: ProcessRegistry,
    runtime: ContainerRuntime,
    *,
    http_timeout: float = 2.0,
    transport: httpx.BaseTransport | None = None,
) -> StatusReport:
    """Process liveness from the registry plus live checks independent of it."""
    tracked = registry.load_all()
    processes = []
    for name in COMPONENTS:
        pid = tracked.get(name)
        processes.append(ProcessStatus(name=name, pid=pid, running=pid is not None and pid_alive(pid)))

    endpoints = []
    for spec in (config.backend, config.frontend):
        check = HttpCheck(
            spec.readiness.urls,
            expect_status=spec.readiness.expect_status,
            timeout=http_timeout,
            transport=transport,
        )
        responding = check()
        endpoints.append(
            EndpointStatus(
                name=spec.name,
                urls=spec.readiness.urls,
                responding=responding,
                url=check.last_url if responding else None,
            )
        )

    container = config.infra.datastore.container
    return StatusReport(
        registry_path=registry.path,
        registry_present=registry.exists(),
        datastore=container,
        datastore_running=runtime.is_container_running(container),
        processes=processes,
        endpoints=endpoints,
    )


def log_paths(config: StackConfig, component: str) -> list[Path]:
    if component == "all":
        return [config.log_path(name) for name in COMPONENTS]
    if component not in COMPONENTS:
        raise ValueError(f"Unknown service: {component}. Valid options: {', '.join(LOG_CHOICES)}")
    return [config.log_path(component)]


def tail_lines(path: Path, lines: int) -> list[str]:
    """Return the last ``lines`` lines of ``path`` without loading it whole."""
    if lines <= 0:
        return []
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=lines)]


def follow(
    paths: list[Path],
    *,
    interval: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[tuple[Path, str]]:
    """Yield (path, line) for output appended after the call, like ``tail -f``."""
    handles = {}
    try:
        for path in paths:
            handle = path.open("r", encoding="utf-8", errors="replace")
            handle.seek(0, 2)
            handles[path] = handle
        while True:
            produced = False
            for path, handle in handles.items():
                line = handle.readline()
                while line:
                    produced = True
                    yield path, line.rstrip("\n")
                    line = handle.readline()
            if not produced:
                sleep(interval)
    finally:
        for handle in handles.values():
            handle.close()
