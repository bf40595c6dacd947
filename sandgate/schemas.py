"""
Pydantic schemas for the gateway's admin endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from sandgate.supervisor import ComputeUnit
from sandgate.sync import EntryStatus, SyncReport


class HealthResponse(BaseModel):
    status: str = "ok"


class ComputeUnitResponse(BaseModel):
    state: str
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    launches: int = 0
    last_error: Optional[str] = None

    @classmethod
    def from_unit(cls, unit: ComputeUnit) -> "ComputeUnitResponse":
        return cls(
            state=unit.state.value,
            pid=unit.pid,
            started_at=unit.started_at,
            ready_at=unit.ready_at,
            launches=unit.launches,
            last_error=unit.last_error,
        )


class EntryStatusResponse(BaseModel):
    name: str
    last_outcome: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @classmethod
    def from_status(cls, name: str, status: EntryStatus) -> "EntryStatusResponse":
        return cls(
            name=name,
            last_outcome=status.last_outcome.value if status.last_outcome else None,
            last_run_at=status.last_run_at,
            last_success_at=status.last_success_at,
            last_error=status.last_error,
        )


class StatusResponse(BaseModel):
    backend: ComputeUnitResponse
    sync: list[EntryStatusResponse]
    auth_bypassed: bool = False


class EntryResultResponse(BaseModel):
    entry: str
    outcome: str
    files: int = 0
    detail: Optional[str] = None


class SyncReportResponse(BaseModel):
    operation: str
    ok: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: list[EntryResultResponse]

    @classmethod
    def from_report(cls, report: SyncReport) -> "SyncReportResponse":
        return cls(
            operation=report.operation,
            ok=report.ok,
            started_at=report.started_at,
            finished_at=report.finished_at,
            results=[
                EntryResultResponse(
                    entry=r.entry, outcome=r.outcome.value, files=r.files, detail=r.detail
                )
                for r in report.results
            ],
        )
