import tempfile
import unittest
from pathlib import Path

from apscheduler.triggers.interval import IntervalTrigger

from sandgate.manifest import ManifestEntry
from sandgate.scheduler import (
    BACKUP_JOB_ID,
    HEALTH_JOB_ID,
    create_scheduler,
    run_backup_tick,
    run_health_tick,
)
from sandgate.storage import InMemoryStorageClient
from sandgate.supervisor import ComputeState
from sandgate.sync import EntryOutcome, SyncEngine


class BrokenEngine:
    async def backup(self, *, wait=False):
        raise RuntimeError("disk vanished")


class StubSupervisor:
    def __init__(self, state=ComputeState.READY, error=None):
        self.state = state
        self.error = error
        self.checks = 0

    async def check_health(self):
        self.checks += 1
        if self.error is not None:
            raise self.error
        return self.state


class SchedulerTickTests(unittest.IsolatedAsyncioTestCase):
    async def test_backup_tick_returns_report(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "notes.md").write_text("hello")
            storage = InMemoryStorageClient()
            engine = SyncEngine(
                storage, [ManifestEntry(name="notes", local_dir=tmp, remote_prefix="notes")]
            )

            report = await run_backup_tick(engine)

        self.assertTrue(report.ok)
        self.assertEqual(report.results[0].outcome, EntryOutcome.SYNCED)
        self.assertEqual(storage.stored_objects["notes/notes.md"], b"hello")

    async def test_backup_tick_swallows_failures(self):
        with self.assertLogs("sandgate.scheduler", level="ERROR"):
            self.assertIsNone(await run_backup_tick(BrokenEngine()))

    async def test_health_tick(self):
        supervisor = StubSupervisor(state=ComputeState.ABSENT)
        self.assertEqual(await run_health_tick(supervisor), ComputeState.ABSENT)

        failing = StubSupervisor(error=RuntimeError("health check exploded"))
        with self.assertLogs("sandgate.scheduler", level="ERROR"):
            self.assertIsNone(await run_health_tick(failing))


class CreateSchedulerTests(unittest.TestCase):
    def test_registers_backup_and_health_jobs(self):
        engine = SyncEngine(InMemoryStorageClient(), [])
        supervisor = StubSupervisor()

        scheduler = create_scheduler(
            engine, supervisor, sync_interval_seconds=120, health_interval_seconds=15
        )

        jobs = {job.id: job for job in scheduler.get_jobs()}
        self.assertEqual(set(jobs), {BACKUP_JOB_ID, HEALTH_JOB_ID})
        backup = jobs[BACKUP_JOB_ID]
        self.assertIsInstance(backup.trigger, IntervalTrigger)
        self.assertEqual(backup.trigger.interval.total_seconds(), 120)
        self.assertEqual(backup.args, (engine,))
        self.assertEqual(backup.max_instances, 1)
        self.assertEqual(jobs[HEALTH_JOB_ID].trigger.interval.total_seconds(), 15)


if __name__ == "__main__":
    unittest.main()
