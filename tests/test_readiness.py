"""Tests for the bounded-retry readiness prober."""

import sys
import unittest

import httpx

from devstack.errors import NotReady
from devstack.readiness import AllOf, CommandCheck, HttpCheck, Prober, ReadinessTarget, poll


class PollTests(unittest.TestCase):
    """Validate attempt counting and inter-attempt sleeps."""

    def test_poll_stops_on_first_success(self) -> None:
        results = iter([False, False, True, True])
        calls = []

        def check() -> bool:
            calls.append(1)
            return next(results)

        self.assertTrue(poll(check, 5, 0, sleep=lambda _: None))
        self.assertEqual(len(calls), 3)

    def test_poll_sleeps_between_attempts_only(self) -> None:
        sleeps = []
        self.assertFalse(poll(lambda: False, 3, 0.25, sleep=sleeps.append))
        self.assertEqual(sleeps, [0.25, 0.25])

    def test_progress_marker_does_not_change_outcome(self) -> None:
        marks = []
        ok = poll(
            lambda: False,
            2,
            0,
            sleep=lambda _: None,
            on_attempt=lambda attempt, total, result: marks.append((attempt, total, result)),
        )
        self.assertFalse(ok)
        self.assertEqual(marks, [(1, 2, False), (2, 2, False)])


class HttpCheckTests(unittest.TestCase):
    """Validate HTTP readiness semantics against a mocked transport."""

    def test_always_503_reports_not_ready_after_exactly_three_attempts(self) -> None:
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request.url)
            return httpx.Response(503)

        check = HttpCheck("http://backend.test/health", transport=httpx.MockTransport(handler))
        prober = Prober(sleep=lambda _: None)
        with self.assertRaises(NotReady) as cm:
            prober.probe(ReadinessTarget("backend", check, max_attempts=3, delay=0))
        self.assertEqual(len(requests), 3)
        self.assertEqual(cm.exception.target, "backend")
        self.assertEqual(cm.exception.attempts, 3)

    def test_network_error_is_a_failed_attempt(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        check = HttpCheck("http://backend.test/health", transport=httpx.MockTransport(handler))
        self.assertFalse(check())

    def test_any_2xx_accepted_when_status_unset(self) -> None:
        check = HttpCheck(
            "http://frontend.test/",
            expect_status=None,
            transport=httpx.MockTransport(lambda request: httpx.Response(204)),
        )
        self.assertTrue(check())

    def test_exact_status_required_by_default(self) -> None:
        check = HttpCheck(
            "http://backend.test/health",
            transport=httpx.MockTransport(lambda request: httpx.Response(204)),
        )
        self.assertFalse(check())
        self.assertEqual(check.last_status, 204)

    def test_fallback_url_used_when_first_fails(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.port == 5173:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200)

        check = HttpCheck(
            ["http://localhost:5173", "http://localhost:3000"],
            expect_status=None,
            transport=httpx.MockTransport(handler),
        )
        self.assertTrue(check())
        self.assertEqual(check.last_url, "http://localhost:3000")

    def test_probe_returns_when_ready(self) -> None:
        statuses = iter([503, 200])
        check = HttpCheck(
            "http://backend.test/health",
            transport=httpx.MockTransport(lambda request: httpx.Response(next(statuses))),
        )
        Prober(sleep=lambda _: None).probe(ReadinessTarget("backend", check, max_attempts=5, delay=0))


class CommandCheckTests(unittest.TestCase):
    """Validate command readiness against real short-lived interpreters."""

    def test_zero_exit_is_ready(self) -> None:
        self.assertTrue(CommandCheck([sys.executable, "-c", "pass"])())

    def test_nonzero_exit_is_not_ready(self) -> None:
        self.assertFalse(CommandCheck([sys.executable, "-c", "raise SystemExit(2)"])())

    def test_missing_executable_is_not_ready(self) -> None:
        self.assertFalse(CommandCheck(["devstack-no-such-binary"])())

    def test_expected_stdout(self) -> None:
        argv = [sys.executable, "-c", "print('web\\nstub-db')"]
        self.assertTrue(CommandCheck(argv, expect_stdout="stub-db")())
        self.assertFalse(CommandCheck(argv, expect_stdout="other-db")())

    def test_all_of_short_circuits(self) -> None:
        calls = []

        class Recorder:
            def __init__(self, name: str, result: bool) -> None:
                self.name = name
                self.result = result

            def describe(self) -> str:
                return self.name

            def __call__(self) -> bool:
                calls.append(self.name)
                return self.result

        check = AllOf([Recorder("ps", True), Recorder("pg_isready", False), Recorder("select", True)])
        self.assertFalse(check())
        self.assertEqual(calls, ["ps", "pg_isready"])
        self.assertEqual(check.describe(), "ps && pg_isready && select")


if __name__ == "__main__":
    unittest.main()
