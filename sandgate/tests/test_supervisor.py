import asyncio
import unittest

from sandgate.errors import ProcessCrashed, StartFailed, StartTimeout, TransferFailed
from sandgate.supervisor import ComputeState, LifecycleSupervisor, StartPolicy


async def _yield(_delay):
    await asyncio.sleep(0)


class FakeProcess:
    def __init__(self, pid):
        self.pid = pid
        self.returncode = None
        self.terminated = False
        self.stop_gate = None

    async def terminate(self, timeout):
        self.terminated = True
        if self.stop_gate is not None:
            await self.stop_gate.wait()
        if self.returncode is None:
            self.returncode = -15
        return self.returncode


class FakeLauncher:
    def __init__(self, events):
        self.events = events
        self.processes = []
        self.gate = None

    async def launch(self):
        self.events.append("launch")
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        process = FakeProcess(pid=1000 + len(self.processes))
        self.processes.append(process)
        return process


class FakeProbe:
    def __init__(self, results=None, default=True):
        self.results = list(results or [])
        self.default = default
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.results:
            return self.results.pop(0)
        return self.default


class FakeRestorer:
    def __init__(self, events):
        self.events = events
        self.error = None

    async def restore(self):
        self.events.append("restore")
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error


class LifecycleSupervisorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.events = []
        self.launcher = FakeLauncher(self.events)
        self.probe = FakeProbe(results=[False, False])
        self.restorer = FakeRestorer(self.events)
        self.supervisor = LifecycleSupervisor(
            self.launcher,
            self.probe,
            self.restorer,
            StartPolicy(max_attempts=5, initial_delay=0.01, max_delay=0.04, health_failure_threshold=2),
            sleep=_yield,
        )

    async def test_cold_start_restores_before_launch(self):
        unit = await self.supervisor.ensure_running()

        self.assertEqual(unit.state, ComputeState.READY)
        self.assertEqual(self.events, ["restore", "launch"])
        self.assertEqual(unit.pid, 1000)
        self.assertIsNotNone(unit.ready_at)

    async def test_concurrent_callers_share_one_launch(self):
        units = await asyncio.gather(*(self.supervisor.ensure_running() for _ in range(10)))

        self.assertEqual(len(self.launcher.processes), 1)
        self.assertEqual(self.events.count("restore"), 1)
        self.assertTrue(all(unit.state is ComputeState.READY for unit in units))

    async def test_ready_is_a_no_op(self):
        await self.supervisor.ensure_running()
        probes = self.probe.calls

        await self.supervisor.ensure_running()

        self.assertEqual(self.probe.calls, probes)
        self.assertEqual(len(self.launcher.processes), 1)

    async def test_concurrent_callers_share_a_timeout(self):
        self.probe.results = []
        self.probe.default = False

        results = await asyncio.gather(
            *(self.supervisor.ensure_running() for _ in range(4)), return_exceptions=True
        )

        self.assertTrue(all(isinstance(r, StartTimeout) for r in results))
        self.assertEqual(len({id(r) for r in results}), 1)
        self.assertEqual(len(self.launcher.processes), 1)
        self.assertEqual(self.probe.calls, 5)
        self.assertTrue(self.launcher.processes[0].terminated)
        self.assertEqual(self.supervisor.state, ComputeState.ABSENT)
        self.assertIn("not ready", self.supervisor.snapshot().last_error)

    async def test_failure_is_not_sticky(self):
        self.probe.results = []
        self.probe.default = False
        with self.assertRaises(StartTimeout):
            await self.supervisor.ensure_running()

        self.probe.default = True
        unit = await self.supervisor.ensure_running()

        self.assertEqual(unit.state, ComputeState.READY)
        self.assertEqual(len(self.launcher.processes), 2)
        self.assertIsNone(unit.last_error)

    async def test_process_exit_during_start_fails_fast(self):
        self.probe.results = []
        self.probe.default = False

        async def exit_then_probe():
            self.launcher.processes[-1].returncode = 1
            return False

        self.supervisor.probe = exit_then_probe

        with self.assertRaises(StartFailed):
            await self.supervisor.ensure_running()
        self.assertEqual(self.supervisor.state, ComputeState.ABSENT)

    async def test_restore_failure_blocks_launch(self):
        self.restorer.error = TransferFailed("bucket unreachable", entry="config")

        with self.assertRaises(StartFailed):
            await self.supervisor.ensure_running()

        self.assertEqual(self.events, ["restore"])
        self.assertEqual(self.supervisor.state, ComputeState.ABSENT)

    async def test_cancelled_caller_does_not_cancel_start(self):
        self.launcher.gate = asyncio.Event()
        caller = asyncio.create_task(self.supervisor.ensure_running())
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertEqual(self.supervisor.state, ComputeState.STARTING)

        caller.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await caller
        self.launcher.gate.set()
        unit = await self.supervisor.ensure_running()

        self.assertEqual(unit.state, ComputeState.READY)
        self.assertEqual(len(self.launcher.processes), 1)

    async def test_exited_backend_is_restarted_on_next_call(self):
        await self.supervisor.ensure_running()
        self.launcher.processes[0].returncode = 137

        self.assertEqual(await self.supervisor.check_health(), ComputeState.ABSENT)
        unit = await self.supervisor.ensure_running()

        self.assertEqual(unit.state, ComputeState.READY)
        self.assertEqual(len(self.launcher.processes), 2)
        self.assertEqual(unit.launches, 2)

    async def test_failed_health_probes_mark_backend_absent(self):
        await self.supervisor.ensure_running()
        self.probe.results = [False, False]

        self.assertEqual(await self.supervisor.check_health(), ComputeState.READY)
        self.assertEqual(await self.supervisor.check_health(), ComputeState.ABSENT)
        self.assertTrue(self.launcher.processes[0].terminated)

    async def test_replacement_waits_for_slow_stop_of_lost_backend(self):
        await self.supervisor.ensure_running()
        old = self.launcher.processes[0]
        old.stop_gate = asyncio.Event()
        self.probe.results = [False, False]
        await self.supervisor.check_health()

        health = asyncio.create_task(self.supervisor.check_health())
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertEqual(self.supervisor.state, ComputeState.ABSENT)

        callers = [asyncio.create_task(self.supervisor.ensure_running()) for _ in range(3)]
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertEqual(len(self.launcher.processes), 1)

        old.stop_gate.set()
        await health
        units = await asyncio.gather(*callers)
        await self.supervisor.ensure_running()

        self.assertTrue(all(unit.state is ComputeState.READY for unit in units))
        self.assertEqual(self.supervisor.state, ComputeState.READY)
        self.assertEqual(len(self.launcher.processes), 2)
        alive = [p.pid for p in self.launcher.processes if p.returncode is None]
        self.assertEqual(alive, [1001])

    async def test_concurrent_loss_reports_stop_once(self):
        await self.supervisor.ensure_running()
        old = self.launcher.processes[0]
        old.stop_gate = asyncio.Event()
        old.returncode = 1

        first = asyncio.create_task(self.supervisor.check_health())
        second = asyncio.create_task(self.supervisor.check_health())
        for _ in range(5):
            await asyncio.sleep(0)
        old.stop_gate.set()

        self.assertEqual(await first, ComputeState.ABSENT)
        self.assertEqual(await second, ComputeState.ABSENT)
        self.assertEqual(self.supervisor.state, ComputeState.ABSENT)

    async def test_confirm_alive_reports_crash(self):
        await self.supervisor.ensure_running()
        self.launcher.processes[0].returncode = 1

        with self.assertRaises(ProcessCrashed):
            await self.supervisor.confirm_alive()

    async def test_stop_and_restart(self):
        await self.supervisor.ensure_running()

        await self.supervisor.stop()
        self.assertEqual(self.supervisor.state, ComputeState.ABSENT)
        self.assertTrue(self.launcher.processes[0].terminated)

        unit = await self.supervisor.restart()
        self.assertEqual(unit.state, ComputeState.READY)
        self.assertEqual(len(self.launcher.processes), 2)


class StartPolicyTests(unittest.TestCase):
    def test_delays_back_off_to_ceiling(self):
        policy = StartPolicy(max_attempts=6, initial_delay=0.5, max_delay=3.0)
        self.assertEqual(list(policy.delays()), [0.5, 1.0, 2.0, 3.0, 3.0, 3.0])


if __name__ == "__main__":
    unittest.main()
