"""
Lifecycle supervision for the backend process (the ComputeUnit).

The supervisor owns the single process handle. ``ensure_running()`` is
level-triggered: any caller may invoke it at any time, and callers that
arrive while a start is in flight share that start.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Sequence

import httpx

from sandgate.errors import (
    LifecycleError,
    ProcessCrashed,
    StartFailed,
    StartTimeout,
    SyncError,
)

logger = logging.getLogger(__name__)
backend_logger = logging.getLogger("sandgate.backend")


class ComputeState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    READY = "ready"
    CRASHED = "crashed"


@dataclass
class ComputeUnit:
    state: ComputeState = ComputeState.ABSENT
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    launches: int = 0
    last_error: Optional[str] = None


@dataclass(frozen=True)
class StartPolicy:
    max_attempts: int = 60
    initial_delay: float = 0.25
    max_delay: float = 5.0
    timeout: float = 180.0
    stop_timeout: float = 10.0
    health_failure_threshold: int = 3

    def delays(self):
        delay = self.initial_delay
        for _ in range(self.max_attempts):
            yield delay
            delay = min(delay * 2, self.max_delay)


class BackendProcess(Protocol):
    pid: Optional[int]

    @property
    def returncode(self) -> Optional[int]:
        ...

    async def terminate(self, timeout: float) -> Optional[int]:
        ...


class ProcessLauncher(Protocol):
    async def launch(self) -> BackendProcess:
        ...


class Restorer(Protocol):
    async def restore(self):
        ...


ReadinessProbe = Callable[[], Awaitable[bool]]


class SubprocessHandle:
    """Wraps an asyncio subprocess and relays its output to the log."""

    def __init__(self, process: asyncio.subprocess.Process):
        self._process = process
        self.pid = process.pid
        self._readers = [
            asyncio.create_task(_relay(process.stdout, logging.INFO)),
            asyncio.create_task(_relay(process.stderr, logging.WARNING)),
        ]

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    async def terminate(self, timeout: float) -> Optional[int]:
        if self._process.returncode is None:
            try:
                self._process.terminate()
                await asyncio.wait_for(self._process.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning("Backend pid %s ignored SIGTERM; killing", self.pid)
                self._process.kill()
                await self._process.wait()
            except ProcessLookupError:
                pass
        for reader in self._readers:
            reader.cancel()
        return self._process.returncode


async def _relay(stream: Optional[asyncio.StreamReader], level: int) -> None:
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            return
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            backend_logger.log(level, text)


class SubprocessLauncher:
    """Launches the backend command with the configured environment."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        if not command:
            raise ValueError("backend command must not be empty")
        self.command = list(command)
        self.env = dict(env or {})
        self.cwd = cwd

    async def launch(self) -> SubprocessHandle:
        env = {**os.environ, **self.env}
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.cwd,
            )
        except OSError as exc:
            raise StartFailed(f"could not launch {self.command[0]}: {exc}") from exc
        logger.info("Launched backend pid %s: %s", process.pid, " ".join(self.command))
        return SubprocessHandle(process)


class HttpReadinessProbe:
    """Treats any non-5xx answer on the health path as ready."""

    def __init__(self, client: httpx.AsyncClient, url: str, timeout: float = 2.0):
        self.client = client
        self.url = url
        self.timeout = timeout

    async def __call__(self) -> bool:
        try:
            response = await self.client.get(self.url, timeout=self.timeout)
        except httpx.HTTPError:
            return False
        return response.status_code < 500


class LifecycleSupervisor:
    def __init__(
        self,
        launcher: ProcessLauncher,
        probe: ReadinessProbe,
        restorer: Restorer,
        policy: StartPolicy = StartPolicy(),
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.launcher = launcher
        self.probe = probe
        self.restorer = restorer
        self.policy = policy
        self._sleep = sleep
        self._unit = ComputeUnit()
        self._process: Optional[BackendProcess] = None
        self._pending: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Task] = None
        self._health_failures = 0

    @property
    def state(self) -> ComputeState:
        return self._unit.state

    def snapshot(self) -> ComputeUnit:
        return replace(self._unit)

    async def ensure_running(self) -> ComputeUnit:
        """
        Return once the backend is ready, starting it if needed.

        Raises LifecycleError when the start attempt this call joined fails.
        Cancelling the caller does not cancel the shared start.
        """
        if self._unit.state is ComputeState.READY:
            if self._process_alive():
                return self.snapshot()
            await self._lost("backend process exited")

        if self._pending is None or self._pending.done():
            self._pending = asyncio.create_task(self._start())
            self._pending.add_done_callback(self._clear_pending)
        return await asyncio.shield(self._pending)

    async def check_health(self) -> ComputeState:
        """Detect external termination of a ready backend."""
        if self._unit.state is not ComputeState.READY:
            return self._unit.state
        if not self._process_alive():
            await self._lost("backend process exited")
            return self._unit.state
        if await self.probe():
            self._health_failures = 0
            return self._unit.state
        self._health_failures += 1
        logger.warning(
            "Backend health probe failed (%d/%d)",
            self._health_failures, self.policy.health_failure_threshold,
        )
        if self._health_failures >= self.policy.health_failure_threshold:
            await self._lost("backend stopped answering health probes")
        return self._unit.state

    async def confirm_alive(self) -> None:
        """Raise ProcessCrashed if the backend turned out to be gone."""
        if self._unit.state is ComputeState.READY and not self._process_alive():
            await self._lost("backend process exited")
        if self._unit.state is not ComputeState.READY:
            raise ProcessCrashed(self._unit.last_error or "backend is not running")

    async def stop(self) -> None:
        pending = self._pending
        if pending is not None and not pending.done():
            pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, LifecycleError):
                pass
        self._transition(ComputeState.ABSENT)
        await self._terminate()

    async def restart(self) -> ComputeUnit:
        logger.info("Restarting backend")
        await self.stop()
        return await self.ensure_running()

    async def _start(self) -> ComputeUnit:
        self._transition(ComputeState.STARTING)
        self._unit.started_at = _utcnow()
        self._unit.ready_at = None
        self._unit.last_error = None
        try:
            # A replacement never runs alongside the process it replaces.
            await self._wait_stopped()
            try:
                await self.restorer.restore()
            except SyncError as exc:
                raise StartFailed(f"state restore failed: {exc}") from exc
            self._process = await self.launcher.launch()
            self._unit.pid = self._process.pid
            self._unit.launches += 1
            await self._wait_until_ready()
        except asyncio.CancelledError:
            await self._terminate()
            self._transition(ComputeState.ABSENT)
            raise
        except Exception as exc:
            error = exc if isinstance(exc, LifecycleError) else StartFailed(str(exc))
            if error is exc:
                logger.error("Backend start failed: %s", exc)
            else:
                logger.exception("Backend start failed unexpectedly")
            self._unit.last_error = str(error)
            self._transition(ComputeState.CRASHED)
            await self._terminate()
            self._transition(ComputeState.ABSENT)
            if error is exc:
                raise
            raise error from exc

        self._health_failures = 0
        self._unit.ready_at = _utcnow()
        self._transition(ComputeState.READY)
        return self.snapshot()

    async def _wait_until_ready(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.policy.timeout
        attempts = 0
        for delay in self.policy.delays():
            attempts += 1
            if not self._process_alive():
                raise StartFailed(
                    f"backend exited with code {self._process.returncode} during start"
                )
            if await self.probe():
                logger.info("Backend ready after %d probe(s)", attempts)
                return
            if loop.time() + delay > deadline:
                break
            await self._sleep(delay)
        raise StartTimeout(f"backend not ready after {attempts} probe(s)")

    async def _lost(self, reason: str) -> None:
        if self._unit.state is not ComputeState.READY:
            return
        logger.warning("Backend lost: %s", reason)
        self._unit.last_error = reason
        # Leave READY before the (possibly slow) stop so callers arriving in
        # the meantime start a replacement instead of reporting a loss again.
        self._transition(ComputeState.ABSENT)
        await self._terminate()

    async def _terminate(self) -> None:
        process, self._process = self._process, None
        self._unit.pid = None
        if process is not None:
            self._stopping = asyncio.create_task(self._stop_process(process))
        await self._wait_stopped()

    async def _wait_stopped(self) -> None:
        stopping = self._stopping
        if stopping is not None:
            await asyncio.shield(stopping)

    async def _stop_process(self, process: BackendProcess) -> None:
        try:
            code = await process.terminate(self.policy.stop_timeout)
            logger.info("Backend pid %s stopped with code %s", process.pid, code)
        finally:
            if self._stopping is asyncio.current_task():
                self._stopping = None

    def _process_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _transition(self, state: ComputeState) -> None:
        if self._unit.state is not state:
            logger.info("ComputeUnit %s -> %s", self._unit.state.value, state.value)
            self._unit.state = state

    def _clear_pending(self, task: asyncio.Task) -> None:
        if self._pending is task:
            self._pending = None
        if not task.cancelled():
            task.exception()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
