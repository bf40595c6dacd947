"""
Bidirectional durability sync between local directories and object storage.

``restore()`` pulls remote state into local directories when the remote
marker is newer; ``backup()`` pushes changed local files and then writes the
marker. Both are additive: nothing is ever deleted on either side.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Awaitable, Callable, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from sandgate.errors import MarkerWriteFailed, SyncError, TransferFailed
from sandgate.manifest import ManifestEntry, Marker
from sandgate.storage import StorageClient

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"
_CHUNK_SIZE = 1024 * 1024
_UNKNOWN_SYNC_TIME = datetime.min.replace(tzinfo=timezone.utc)
_TRANSIENT_ERRORS = (OSError, BotoCoreError, ClientError)


class EntryOutcome(str, Enum):
    RESTORED = "restored"
    SYNCED = "synced"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"
    DEFERRED = "deferred"


@dataclass
class EntryResult:
    entry: str
    outcome: EntryOutcome
    files: int = 0
    detail: Optional[str] = None


@dataclass
class SyncReport:
    operation: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: list[EntryResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(
            r.outcome not in (EntryOutcome.FAILED, EntryOutcome.DEFERRED)
            for r in self.results
        )


@dataclass
class EntryStatus:
    last_outcome: Optional[EntryOutcome] = None
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None


def file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class SyncEngine:
    """Restores and backs up every entry of the sync manifest."""

    def __init__(
        self,
        storage: StorageClient,
        entries: Sequence[ManifestEntry],
        *,
        exclude: Sequence[str] = (),
        tick_timeout: float = 240.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.storage = storage
        self.entries = list(entries)
        self.exclude = list(exclude)
        self.tick_timeout = tick_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._lock = asyncio.Lock()
        # Entries whose remote state has been compared with local state in
        # this process. Backups of other entries reconcile first.
        self._reconciled: set[str] = set()
        self._status = {entry.name: EntryStatus() for entry in self.entries}

    def status(self) -> dict[str, EntryStatus]:
        return dict(self._status)

    def is_reconciled(self, name: str) -> bool:
        return name in self._reconciled

    async def restore(self) -> SyncReport:
        """
        Bring local directories up to date with remote state.

        Raises SyncError when any entry could not be restored, after every
        entry has been attempted.
        """
        report = SyncReport(operation="restore", started_at=_utcnow())
        failures: list[SyncError] = []
        async with self._lock:
            for entry in self.entries:
                error = None
                try:
                    result = await self._restore_entry(entry)
                except SyncError as exc:
                    logger.error("Restore of %s failed: %s", entry.name, exc)
                    error = str(exc)
                    result = EntryResult(entry.name, EntryOutcome.FAILED, detail=exc.kind)
                    failures.append(exc)
                self._record(result, error=error)
                report.results.append(result)
        report.finished_at = _utcnow()
        if failures:
            names = ", ".join(exc.entry or "?" for exc in failures)
            raise TransferFailed(f"restore failed for: {names}") from failures[0]
        return report

    async def backup(self, *, wait: bool = False) -> SyncReport:
        """
        Push local changes to remote storage. Never raises SyncError; failed
        or unfinished entries are reported and picked up on the next run.

        A run already in progress makes this a no-op unless ``wait`` is set,
        in which case the lock is awaited for at most one tick.
        """
        report = SyncReport(operation="backup", started_at=_utcnow())
        if self._lock.locked() and not wait:
            logger.info("Backup skipped; another sync run is in progress")
            return self._busy_report(report, EntryOutcome.SKIPPED)
        try:
            await asyncio.wait_for(self._lock.acquire(), self.tick_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Backup deferred; another sync run held the lock for over %.0fs",
                self.tick_timeout,
            )
            return self._busy_report(report, EntryOutcome.DEFERRED)

        try:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.tick_timeout
            for entry in self.entries:
                error = None
                remaining = deadline - loop.time()
                if remaining <= 0:
                    result = EntryResult(entry.name, EntryOutcome.DEFERRED, detail="tick budget exhausted")
                else:
                    try:
                        result = await asyncio.wait_for(self._backup_entry(entry), remaining)
                    except asyncio.TimeoutError:
                        logger.warning(
                            "Backup of %s did not finish within the tick; deferring", entry.name
                        )
                        result = EntryResult(entry.name, EntryOutcome.DEFERRED, detail="timed out")
                    except SyncError as exc:
                        logger.error("Backup of %s failed: %s", entry.name, exc)
                        error = str(exc)
                        result = EntryResult(entry.name, EntryOutcome.FAILED, detail=exc.kind)
                self._record(result, error=error)
                report.results.append(result)
        finally:
            self._lock.release()
        report.finished_at = _utcnow()
        logger.info(
            "Backup finished: %s",
            ", ".join(f"{r.entry}={r.outcome.value}" for r in report.results),
        )
        return report

    def _busy_report(self, report: SyncReport, outcome: EntryOutcome) -> SyncReport:
        report.results = [
            EntryResult(entry.name, outcome, detail="sync in progress") for entry in self.entries
        ]
        report.finished_at = _utcnow()
        return report

    async def _restore_entry(self, entry: ManifestEntry) -> EntryResult:
        remote = await self._read_remote_marker(entry)
        local = await asyncio.to_thread(self._read_local_marker, entry)
        if remote is None:
            self._reconciled.add(entry.name)
            return EntryResult(entry.name, EntryOutcome.SKIPPED, detail="no remote state")
        if local is not None and not remote.is_newer_than(local):
            self._reconciled.add(entry.name)
            return EntryResult(entry.name, EntryOutcome.UNCHANGED, detail="local state is current")

        keys = await self._call(entry, self.storage.list_keys, f"{entry.remote_prefix}/")
        copied = 0
        for key in keys:
            relpath = entry.relpath_for_key(key)
            if relpath is None or entry.is_excluded(relpath, self.exclude):
                continue
            dest = _safe_join(entry.local_path, relpath)
            if dest is None:
                logger.warning("Ignoring remote key outside %s: %s", entry.name, key)
                continue
            expected = remote.files.get(relpath)
            if expected and await asyncio.to_thread(_matches_digest, dest, expected):
                continue
            await self._call(entry, self._download, key, dest)
            copied += 1

        try:
            await asyncio.to_thread(self._write_local_marker, entry, remote)
        except OSError as exc:
            raise MarkerWriteFailed(f"local marker write failed: {exc}", entry=entry.name) from exc
        self._reconciled.add(entry.name)
        logger.info("Restored %d file(s) for %s", copied, entry.name)
        return EntryResult(entry.name, EntryOutcome.RESTORED, files=copied)

    async def _backup_entry(self, entry: ManifestEntry) -> EntryResult:
        if entry.name not in self._reconciled:
            await self._restore_entry(entry)
        if not entry.local_path.is_dir():
            return EntryResult(entry.name, EntryOutcome.SKIPPED, detail="local directory missing")

        files = await asyncio.to_thread(self._hash_tree, entry)
        if not files:
            return EntryResult(entry.name, EntryOutcome.SKIPPED, detail="local directory empty")

        local = await asyncio.to_thread(self._read_local_marker, entry)
        if local is not None and local.files == files:
            await self._write_remote_marker(entry, local)
            return EntryResult(entry.name, EntryOutcome.UNCHANGED)

        previous = local.files if local is not None else {}
        changed = sorted(path for path, digest in files.items() if previous.get(path) != digest)
        for relpath in changed:
            await self._call(
                entry,
                self.storage.upload_file,
                str(entry.local_path / relpath),
                entry.remote_key(relpath),
            )

        marker = Marker.now(files)
        await self._write_remote_marker(entry, marker)
        try:
            await asyncio.to_thread(self._write_local_marker, entry, marker)
        except OSError as exc:
            raise MarkerWriteFailed(f"local marker write failed: {exc}", entry=entry.name) from exc
        return EntryResult(entry.name, EntryOutcome.SYNCED, files=len(changed))

    async def _call(self, entry: ManifestEntry, fn, *args):
        delay = self.retry_base_delay
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await asyncio.to_thread(fn, *args)
            except FileNotFoundError as exc:
                raise TransferFailed(f"{_name(fn)}: missing {exc}", entry=entry.name) from exc
            except _TRANSIENT_ERRORS as exc:
                if attempt == self.retry_attempts:
                    raise TransferFailed(
                        f"{_name(fn)} failed after {attempt} attempt(s): {exc}",
                        entry=entry.name,
                    ) from exc
                logger.warning(
                    "%s for %s failed (attempt %d/%d): %s",
                    _name(fn), entry.name, attempt, self.retry_attempts, exc,
                )
                await self._sleep(delay)
                delay *= 2

    async def _read_remote_marker(self, entry: ManifestEntry) -> Optional[Marker]:
        try:
            raw = await self._call(entry, self.storage.get_bytes, entry.marker_key)
        except TransferFailed as exc:
            if isinstance(exc.__cause__, FileNotFoundError):
                return None
            raise
        try:
            return Marker.from_bytes(raw)
        except (ValueError, KeyError, UnicodeDecodeError) as exc:
            logger.error("Remote marker for %s is unreadable: %s", entry.name, exc)
            return Marker(synced_at=_UNKNOWN_SYNC_TIME)

    async def _write_remote_marker(self, entry: ManifestEntry, marker: Marker) -> None:
        try:
            await self._call(entry, self.storage.put_bytes, entry.marker_key, marker.to_bytes())
        except TransferFailed as exc:
            raise MarkerWriteFailed(str(exc), entry=entry.name) from exc

    def _read_local_marker(self, entry: ManifestEntry) -> Optional[Marker]:
        path = entry.local_marker_path
        try:
            return Marker.from_bytes(path.read_bytes())
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Ignoring unreadable local marker %s: %s", path, exc)
            return None

    def _write_local_marker(self, entry: ManifestEntry, marker: Marker) -> None:
        entry.local_path.mkdir(parents=True, exist_ok=True)
        tmp = entry.local_marker_path.with_name(entry.local_marker_path.name + PARTIAL_SUFFIX)
        tmp.write_bytes(marker.to_bytes())
        os.replace(tmp, entry.local_marker_path)

    def _download(self, key: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + PARTIAL_SUFFIX)
        self.storage.download_file(key, str(tmp))
        os.replace(tmp, dest)

    def _hash_tree(self, entry: ManifestEntry) -> dict[str, str]:
        root = entry.local_path
        files = {}
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                if path.is_symlink() or not path.is_file():
                    continue
                relpath = path.relative_to(root).as_posix()
                if relpath.endswith(PARTIAL_SUFFIX) or entry.is_excluded(relpath, self.exclude):
                    continue
                files[relpath] = file_digest(path)
        return files

    def _record(self, result: EntryResult, *, error: Optional[str] = None) -> None:
        status = self._status.setdefault(result.entry, EntryStatus())
        now = _utcnow()
        status.last_outcome = result.outcome
        status.last_run_at = now
        if result.outcome in (EntryOutcome.FAILED, EntryOutcome.DEFERRED):
            status.last_error = error or result.detail
        else:
            status.last_error = None
            if result.outcome is not EntryOutcome.SKIPPED:
                status.last_success_at = now


def _safe_join(root: Path, relpath: str) -> Optional[Path]:
    parts = PurePosixPath(relpath).parts
    if not parts or any(part in ("..", "") for part in parts) or PurePosixPath(relpath).is_absolute():
        return None
    return root.joinpath(*parts)


def _matches_digest(path: Path, expected: str) -> bool:
    try:
        return path.is_file() and file_digest(path) == expected
    except OSError:
        return False


def _name(fn) -> str:
    return getattr(fn, "__name__", repr(fn))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
