"""Bounded-retry readiness probing for commands and HTTP endpoints."""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

import httpx

from devstack.errors import NotReady

logger = logging.getLogger("devstack.readiness")

AttemptCallback = Callable[[int, int, bool], None]


class ReadinessCheck(Protocol):
    def __call__(self) -> bool: ...

    def describe(self) -> str: ...


def poll(
    check: Callable[[], bool],
    max_attempts: int,
    delay: float,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: AttemptCallback | None = None,
) -> bool:
    """Run ``check`` up to ``max_attempts`` times and return True on first success.

    ``delay`` is slept between attempts only, never after the last one.
    ``on_attempt`` receives (attempt, max_attempts, ok) for progress output.
    """
    for attempt in range(1, max_attempts + 1):
        ok = bool(check())
        if on_attempt is not None:
            on_attempt(attempt, max_attempts, ok)
        if ok:
            return True
        if attempt < max_attempts and delay > 0:
            sleep(delay)
    return False


class CommandCheck:
    """Ready when the command exits 0 (and stdout contains ``expect_stdout``)."""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        timeout: float = 10.0,
        expect_stdout: str | None = None,
    ) -> None:
        self.argv = list(argv)
        self.timeout = timeout
        self.expect_stdout = expect_stdout

    def describe(self) -> str:
        return " ".join(self.argv)

    def __call__(self) -> bool:
        try:
            result = subprocess.run(
                self.argv,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            logger.debug("Readiness command not found: %s", self.argv[0])
            return False
        except subprocess.TimeoutExpired:
            logger.debug("Readiness command timed out after %ss: %s", self.timeout, self.describe())
            return False
        if result.returncode != 0:
            logger.debug("Readiness command exited %s: %s", result.returncode, self.describe())
            return False
        if self.expect_stdout is not None:
            return self.expect_stdout in (result.stdout or "")
        return True


class AllOf:
    """Ready when every sub-check passes, evaluated in order."""

    def __init__(self, checks: Sequence[ReadinessCheck]) -> None:
        self.checks = list(checks)

    def describe(self) -> str:
        return " && ".join(check.describe() for check in self.checks)

    def __call__(self) -> bool:
        return all(check() for check in self.checks)


class HttpCheck:
    """Ready when any of ``urls`` answers GET with the expected status.

    ``expect_status=None`` accepts any 2xx. Network errors and timeouts are
    failed attempts, never fatal.
    """

    def __init__(
        self,
        urls: str | Sequence[str],
        *,
        expect_status: int | None = 200,
        timeout: float = 2.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.urls = [urls] if isinstance(urls, str) else list(urls)
        self.expect_status = expect_status
        self.timeout = timeout
        self.transport = transport
        self.last_status: int | None = None
        self.last_url: str | None = None

    def describe(self) -> str:
        return " | ".join(self.urls)

    def _accepts(self, status_code: int) -> bool:
        if self.expect_status is None:
            return 200 <= status_code < 300
        return status_code == self.expect_status

    def __call__(self) -> bool:
        with httpx.Client(timeout=httpx.Timeout(self.timeout), transport=self.transport) as client:
            for url in self.urls:
                try:
                    response = client.get(url)
                except httpx.HTTPError as exc:
                    logger.debug("GET %s failed: %s", url, exc.__class__.__name__)
                    self.last_status = None
                    continue
                self.last_status = response.status_code
                if self._accepts(response.status_code):
                    self.last_url = url
                    return True
                logger.debug("GET %s returned HTTP %s", url, response.status_code)
        return False


@dataclass(frozen=True)
class ReadinessTarget:
    name: str
    check: ReadinessCheck
    max_attempts: int = 30
    delay: float = 1.0


class Prober:
    """Runs readiness targets through :func:`poll` and reports the outcome."""

    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        progress: AttemptCallback | None = None,
    ) -> None:
        self.sleep = sleep
        self.progress = progress

    def probe(self, target: ReadinessTarget) -> None:
        """Return when ``target`` is ready; raise :class:`NotReady` otherwise."""
        logger.info("Waiting for %s to be ready (%s)...", target.name, target.check.describe())
        ready = poll(
            target.check,
            target.max_attempts,
            target.delay,
            sleep=self.sleep,
            on_attempt=self.progress,
        )
        if not ready:
            raise NotReady(target.name, target.max_attempts, hint=target.check.describe())
        logger.info("%s is ready", target.name)
