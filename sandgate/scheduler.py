"""
Periodic background jobs: durability backups and backend health probes.

Both run on the app's event loop, independent of request traffic, so
backups happen even when nobody is using the backend.
"""

from __future__ import annotations

import logging
from datetime import timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from sandgate.supervisor import ComputeState, LifecycleSupervisor
from sandgate.sync import SyncEngine, SyncReport

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = "backup"
HEALTH_JOB_ID = "health"


async def run_backup_tick(engine: SyncEngine, *, wait: bool = False) -> Optional[SyncReport]:
    """
    Run one backup pass. Failures are logged and left for the next tick.

    ``wait`` queues behind a pass already in progress instead of skipping.
    """
    try:
        report = await engine.backup(wait=wait)
    except Exception:
        logger.exception("Backup tick failed")
        return None
    if not report.ok:
        logger.warning("Backup tick incomplete; retrying on the next tick")
    return report


async def run_health_tick(supervisor: LifecycleSupervisor) -> Optional[ComputeState]:
    try:
        return await supervisor.check_health()
    except Exception:
        logger.exception("Health tick failed")
        return None


def create_scheduler(
    engine: SyncEngine,
    supervisor: LifecycleSupervisor,
    *,
    sync_interval_seconds: int = 300,
    health_interval_seconds: int = 30,
) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=timezone.utc)
    scheduler.add_job(
        run_backup_tick,
        IntervalTrigger(seconds=sync_interval_seconds),
        args=[engine],
        id=BACKUP_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_health_tick,
        IntervalTrigger(seconds=health_interval_seconds),
        args=[supervisor],
        id=HEALTH_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
