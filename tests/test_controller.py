"""Tests for the stack controller start/stop state machine."""

import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from devstack.config import validate_config
from devstack.controller import StackController, StackState
from devstack.errors import DevstackError, EnvironmentProblem, MigrationFailed, RegistryExists, StageFailed
from devstack.readiness import Prober
from devstack.supervisor import ProcessSupervisor, StopOutcome, StopResult

from stack_stubs import StubRuntime, build_stub_tree, free_port, stub_raw_config


class _ControllerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()
        build_stub_tree(self.root)
        self.raw = stub_raw_config(self.root, free_port(), free_port())

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _controller(self, **overrides) -> StackController:
        config = validate_config(self.raw, self.root)
        overrides.setdefault("runtime", StubRuntime())
        overrides.setdefault("prober", Prober())
        return StackController(config, which=lambda tool: "/usr/bin/" + tool, **overrides)


class StartGuardTests(_ControllerTestCase):
    """A leftover registry file must block a second start."""

    def test_start_refused_while_registry_exists(self) -> None:
        supervisor = mock.Mock(spec=ProcessSupervisor)
        runtime = StubRuntime()
        controller = self._controller(supervisor=supervisor, runtime=runtime)
        controller.config.registry_path.parent.mkdir(parents=True)
        controller.config.registry_path.write_text("backend=1\n", encoding="utf-8")

        with self.assertRaises(RegistryExists):
            controller.start()
        supervisor.launch.assert_not_called()
        self.assertEqual(runtime.calls, [])
        self.assertEqual(controller.state, StackState.IDLE)

    def test_missing_directory_is_environment_error(self) -> None:
        (self.root / "frontend" / "package.json").unlink()
        (self.root / "frontend").rmdir()
        runtime = StubRuntime()
        controller = self._controller(runtime=runtime)
        with self.assertRaises(EnvironmentProblem) as cm:
            controller.start()
        self.assertIn("Required directory not found", str(cm.exception))
        self.assertEqual(runtime.calls, [])
        self.assertFalse(controller.config.registry_path.exists())


class StartSequenceTests(_ControllerTestCase):
    """Validate ordering and the migration failure policy."""

    def _controller_with_fake_stages(self, events: list) -> StackController:
        controller = self._controller()
        controller.start_infra = lambda: events.append("infra")
        controller.gate = mock.Mock()
        controller.gate.bring_up.side_effect = lambda stages: events.extend(s.name for s in stages)
        return controller

    def test_start_order_infra_migrate_backend_frontend(self) -> None:
        events = []
        controller = self._controller_with_fake_stages(events)
        with mock.patch.object(controller, "migrate", side_effect=lambda verb: events.append(f"migrate:{verb}")):
            controller.start()
        self.assertEqual(events, ["infra", "migrate:up", "backend", "frontend"])
        self.assertEqual(controller.state, StackState.RUNNING)

    def test_migration_failure_halts_by_default(self) -> None:
        events = []
        controller = self._controller_with_fake_stages(events)
        with mock.patch.object(controller, "migrate", side_effect=MigrationFailed("up", 1)):
            with self.assertRaises(MigrationFailed):
                controller.start()
        self.assertEqual(events, ["infra"])
        self.assertTrue(controller.config.registry_path.exists())

    def test_migration_failure_can_be_tolerated(self) -> None:
        self.raw["migrations"]["halt_on_failure"] = False
        events = []
        controller = self._controller_with_fake_stages(events)
        with mock.patch.object(controller, "migrate", side_effect=MigrationFailed("up", 1)):
            controller.start()
        self.assertEqual(events, ["infra", "backend", "frontend"])

    def test_infra_stages_bring_datastore_up_before_group(self) -> None:
        self.raw["infra"]["services"] = [{"name": "user-service", "urls": ["http://svc.test/health"]}]
        runtime = StubRuntime()
        controller = self._controller(runtime=runtime)
        stages = controller._infra_stages()
        self.assertEqual([stage.name for stage in stages], ["datastore postgres", "user-service"])
        stages[0].launch()
        stages[1].launch()
        self.assertEqual(runtime.calls, [("up", "postgres"), ("up", None)])

    def test_datastore_not_ready_aborts_infra(self) -> None:
        runtime = StubRuntime(healthy=False)
        controller = self._controller(runtime=runtime, prober=Prober(sleep=lambda _: None))
        with self.assertRaises(StageFailed) as cm:
            controller.start_infra()
        self.assertEqual(cm.exception.stage, "datastore postgres")
        self.assertEqual(runtime.calls, [("up", "postgres")])

    def test_migrate_runs_runner_with_verb(self) -> None:
        self.assertTrue(self._controller().migrate("up"))

    def test_migrate_nonzero_exit_raises(self) -> None:
        (self.root / "backend" / "migrate.py").write_text("import sys\nsys.exit(3)\n", encoding="utf-8")
        with self.assertRaises(MigrationFailed) as cm:
            self._controller().migrate("down")
        self.assertEqual(cm.exception.returncode, 3)
        self.assertEqual(cm.exception.verb, "down")


class TeardownTests(_ControllerTestCase):
    """Validate best-effort teardown aggregation and idempotency."""

    def test_stop_twice_without_anything_running(self) -> None:
        runtime = StubRuntime()
        controller = self._controller(runtime=runtime)
        first = controller.stop()
        second = controller.stop()
        self.assertTrue(first.ok)
        self.assertTrue(second.ok)
        self.assertEqual(runtime.calls, [("down", False), ("down", False)])
        self.assertEqual(controller.state, StackState.IDLE)

    def test_infra_failure_does_not_skip_process_stop_or_cleanup(self) -> None:
        supervisor = mock.Mock(spec=ProcessSupervisor)
        supervisor.stop.side_effect = lambda name, pid, **kw: StopOutcome(name, pid, StopResult.TERMINATED)
        supervisor.stop_by_pattern.return_value = []
        controller = self._controller(supervisor=supervisor, runtime=StubRuntime(fail_down=True))
        controller.registry.save("backend", 111)
        controller.registry.save("frontend", 222)

        report = controller.stop()

        self.assertFalse(report.ok)
        self.assertEqual(len(report.errors), 1)
        self.assertIn("infrastructure", report.errors[0])
        stopped = [call.args[0] for call in supervisor.stop.call_args_list]
        self.assertEqual(stopped, ["frontend", "backend"])
        self.assertTrue(supervisor.stop_by_pattern.called)
        self.assertTrue(report.registry_cleared)
        self.assertFalse(controller.config.registry_path.exists())

    def test_unkillable_process_keeps_registry(self) -> None:
        supervisor = mock.Mock(spec=ProcessSupervisor)
        supervisor.stop.return_value = StopOutcome("backend", 111, StopResult.SURVIVED)
        supervisor.stop_by_pattern.return_value = []
        controller = self._controller(supervisor=supervisor)
        controller.registry.save("backend", 111)
        report = controller.stop()
        self.assertFalse(report.ok)
        self.assertFalse(report.registry_cleared)
        self.assertTrue(controller.config.registry_path.exists())

    def test_restart_not_attempted_after_failed_stop(self) -> None:
        controller = self._controller(runtime=StubRuntime(fail_down=True))
        with mock.patch.object(controller, "start") as start:
            with self.assertRaises(DevstackError):
                controller.restart()
        start.assert_not_called()


class StatusTests(_ControllerTestCase):
    """Nothing running means degraded, never a crash."""

    def test_status_with_nothing_running(self) -> None:
        controller = self._controller(runtime=StubRuntime(container_running=False))
        report = controller.status(http_timeout=0.5)
        self.assertFalse(report.registry_present)
        self.assertFalse(report.healthy)
        self.assertEqual([p.running for p in report.processes], [False, False])
        self.assertEqual([e.responding for e in report.endpoints], [False, False])
        self.assertFalse(report.datastore_running)


@unittest.skipUnless(os.name == "posix", "process groups are POSIX-specific")
class FullCycleTests(_ControllerTestCase):
    """Start then stop against stub datastore, server and client processes."""

    def test_start_then_stop_leaves_no_runtime_directory(self) -> None:
        runtime = StubRuntime()
        controller = self._controller(runtime=runtime)
        tracked = {}
        try:
            controller.start()
            self.assertEqual(controller.state, StackState.RUNNING)
            tracked = controller.registry.load_all()
            self.assertEqual(sorted(tracked), ["backend", "frontend"])
            for pid in tracked.values():
                self.assertTrue(controller.supervisor.is_alive(pid))
            self.assertTrue(controller.status(http_timeout=1.0).healthy)

            with self.assertRaises(RegistryExists):
                controller.start()
        finally:
            report = controller.stop()

        self.assertTrue(report.ok, report.errors)
        for pid in tracked.values():
            self.assertFalse(controller.supervisor.is_alive(pid))
        self.assertFalse(controller.config.registry_path.exists())
        self.assertFalse(controller.config.runtime_dir.exists())
        self.assertEqual(runtime.calls, [("up", "postgres"), ("up", None), ("down", False)])

        again = controller.stop()
        self.assertTrue(again.ok)

    def test_component_start_refuses_live_duplicate(self) -> None:
        controller = self._controller()
        try:
            controller.start_process("backend")
            with self.assertRaises(StageFailed):
                controller.start_process("backend")
        finally:
            outcomes = controller.stop_process("backend")
            controller.stop()
        self.assertTrue(all(outcome.ok for outcome in outcomes))


if __name__ == "__main__":
    unittest.main()
