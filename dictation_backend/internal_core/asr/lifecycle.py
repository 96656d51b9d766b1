from __future__ import annotations

"""
Acquire/load/ready/recover state machine for one provider's model.

Design intent:
- One prepare sequence per instance; concurrent callers share it.
- Exactly one recovery attempt (full cache wipe, then acquire-and-load again).
- Clearing invalidates readiness before in-flight transcriptions drain, so no
  transcription ever runs against a released handle.
"""

import asyncio
import contextlib
import logging
import time
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from .. import audit
from ..contracts import ProviderState
from .base import (
    LoadFailureError,
    ModelCacheError,
    NotReadyError,
    ProgressCallback,
    ProviderUnavailableError,
    RecoveryExhaustedError,
)
from .capability import CapabilityGate
from .model_cache import ModelCache

logger = logging.getLogger(__name__)

PROGRESS_START = 0.05
PROGRESS_RESTART = 0.35
PROGRESS_ACQUIRED = 0.75
PROGRESS_REACQUIRED = 0.85
PROGRESS_DONE = 1.0

AcquireFn = Callable[[ModelCache], Awaitable[Path]]
LoadFn = Callable[[Path], Awaitable[Any]]
ReleaseFn = Callable[[Any], Awaitable[None]]


def _noop_progress(_value: float) -> None:
    return None


def _retrieve_outcome(task: asyncio.Task[None]) -> None:
    # Waiters may all have been cancelled; the failure is already in the event log.
    if not task.cancelled():
        task.exception()


class ProgressFanout:
    """Forwards progress to every caller waiting on the same prepare.

    Values are clamped to [0, 1] and never go below the last emitted value.
    """

    def __init__(self, provider_name: str) -> None:
        self._provider_name = provider_name
        self._sinks: List[ProgressCallback] = []
        self._last: Optional[float] = None

    @property
    def last(self) -> Optional[float]:
        return self._last

    def add(self, sink: Optional[ProgressCallback]) -> None:
        if sink is None or sink is _noop_progress:
            return
        self._sinks.append(sink)
        if self._last is not None:
            self._deliver(sink, self._last)

    def emit(self, value: float) -> None:
        value = min(1.0, max(0.0, float(value)))
        if self._last is not None:
            value = max(self._last, value)
        self._last = value
        for sink in list(self._sinks):
            self._deliver(sink, value)

    def _deliver(self, sink: ProgressCallback, value: float) -> None:
        try:
            sink(value)
        except Exception:
            # A broken observer must not abort model preparation.
            logger.warning(
                "progress callback raised provider=%s value=%.2f",
                self._provider_name,
                value,
                exc_info=True,
            )


class ModelLifecycle:
    def __init__(
        self,
        *,
        provider_id: str,
        provider_name: str,
        gate: CapabilityGate,
        cache: ModelCache,
        acquire: AcquireFn,
        load: LoadFn,
        release: Optional[ReleaseFn] = None,
        events: Optional[audit.LifecycleEventLog] = None,
    ) -> None:
        self._provider_id = provider_id
        self._provider_name = provider_name
        self._gate = gate
        self._cache = cache
        self._acquire = acquire
        self._load = load
        self._release = release
        self._events = events

        self._state: ProviderState = "uninitialized"
        self._handle: Any = None
        self._last_error: Optional[str] = None
        self._active_transcriptions = 0

        self._prepare_task: Optional[asyncio.Task[None]] = None
        self._progress: Optional[ProgressFanout] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._exclusive: Optional[asyncio.Lock] = None
        self._idle: Optional[asyncio.Condition] = None

        # Attempt bookkeeping, useful for diagnostics and tests.
        self.load_attempts = 0
        self.recoveries = 0

    # -- state ---------------------------------------------------------------

    @property
    def state(self) -> ProviderState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == "ready" and self._handle is not None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def active_transcriptions(self) -> int:
        return self._active_transcriptions

    @property
    def is_preparing(self) -> bool:
        task = self._prepare_task
        return task is not None and not task.done()

    def _primitives(self) -> tuple[asyncio.Lock, asyncio.Condition]:
        # asyncio primitives bind to the loop that first waits on them.
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._exclusive is None or self._idle is None:
            self._loop = loop
            self._exclusive = asyncio.Lock()
            self._idle = asyncio.Condition()
        return self._exclusive, self._idle

    def _log(self, event_type: audit.LifecycleEventType, code: str, detail: str, duration_ms: Optional[int] = None) -> None:
        audit.log_event(self._events, self._provider_id, event_type, code, detail, duration_ms=duration_ms)

    # -- prepare -------------------------------------------------------------

    async def prepare(self, progress: Optional[ProgressCallback] = None) -> None:
        if self.is_ready:
            return

        support = self._gate.evaluate()
        if not support.supported:
            self._log("PROVIDER_UNAVAILABLE", "PROVIDER_UNAVAILABLE", support.reason)
            raise ProviderUnavailableError(support.reason, self._provider_name)

        self._primitives()
        loop = asyncio.get_running_loop()
        task = self._prepare_task
        if task is None or task.done() or task.get_loop() is not loop:
            fanout = ProgressFanout(self._provider_name)
            fanout.add(progress)
            self._progress = fanout
            task = loop.create_task(self._run_prepare(fanout))
            task.add_done_callback(_retrieve_outcome)
            self._prepare_task = task
        else:
            logger.info("prepare already in flight; joining provider=%s", self._provider_id)
            if self._progress is not None:
                self._progress.add(progress)

        # Shield so one cancelled waiter does not abort the shared load.
        await asyncio.shield(task)

    async def _run_prepare(self, progress: ProgressFanout) -> None:
        exclusive, _ = self._primitives()
        async with exclusive:
            if self.is_ready:
                self._log("PREPARE_SKIPPED", "ALREADY_READY", "ready before prepare acquired the lifecycle")
                return
            started = time.monotonic()
            self._state = "preparing"
            self._last_error = None
            self._log("PREPARE_STARTED", "PREPARE_START", f"models_on_disk={self._cache.exists()}")
            try:
                progress.emit(PROGRESS_START)
                try:
                    handle = await self._acquire_and_load(progress, PROGRESS_ACQUIRED)
                except LoadFailureError as first:
                    handle = await self._recover(progress, first)
            except RecoveryExhaustedError as e:
                self._state = "failed"
                self._last_error = e.message
                self._log(
                    "RECOVERY_EXHAUSTED",
                    e.code,
                    f"original={e.original} retry={e.retry}",
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                raise
            finally:
                if self._state == "preparing":
                    # Cancelled or interrupted by something outside the retry policy.
                    self._state = "uninitialized"

            self._handle = handle
            self._state = "ready"
            progress.emit(PROGRESS_DONE)
            duration_ms = int((time.monotonic() - started) * 1000)
            self._log("MODEL_LOADED", "READY", f"path={self._cache.resolve_path()}", duration_ms=duration_ms)
            logger.info("provider ready provider=%s duration_ms=%d", self._provider_id, duration_ms)

    async def _recover(self, progress: ProgressFanout, first: LoadFailureError) -> Any:
        logger.warning(
            "initial model load failed provider=%s error=%s; clearing cache and retrying once",
            self._provider_id,
            first.message,
        )
        self._log("LOAD_FAILED", first.code, f"attempt=1 {first.message}")
        self.recoveries += 1
        try:
            removed = await asyncio.to_thread(self._cache.clear)
            self._log("CACHE_CLEARED", "RECOVERY_WIPE", f"removed={removed}")
        except ModelCacheError as e:
            logger.warning("cache wipe during recovery failed provider=%s error=%s", self._provider_id, e.message)

        progress.emit(PROGRESS_RESTART)
        try:
            return await self._acquire_and_load(progress, PROGRESS_REACQUIRED)
        except LoadFailureError as second:
            self._log("LOAD_FAILED", second.code, f"attempt=2 {second.message}")
            raise RecoveryExhaustedError(first, second, self._provider_name) from second

    async def _acquire_and_load(self, progress: ProgressFanout, acquired_value: float) -> Any:
        self.load_attempts += 1
        attempt = self.load_attempts
        try:
            path = await self._acquire(self._cache)
            self._log("MODEL_ACQUIRED", "ACQUIRED", f"attempt={attempt} path={path}")
            progress.emit(acquired_value)
            handle = await self._load(path)
        except LoadFailureError:
            raise
        except Exception as e:
            raise LoadFailureError(f"{type(e).__name__}: {e}", self._provider_name) from e
        if handle is None:
            raise LoadFailureError("engine load returned no handle", self._provider_name)
        if not self._cache.exists():
            await self._release_handle(handle)
            raise LoadFailureError("model assets missing on disk after load", self._provider_name)
        return handle

    # -- handle access ---------------------------------------------------------

    @contextlib.asynccontextmanager
    async def borrow_handle(self) -> AsyncIterator[Any]:
        """Yield the loaded handle; raise NotReadyError immediately if there is none."""
        if not self.is_ready:
            raise NotReadyError(self._provider_name, self._state)
        _, idle = self._primitives()
        handle = self._handle
        self._active_transcriptions += 1
        try:
            yield handle
        finally:
            self._active_transcriptions -= 1
            if self._active_transcriptions == 0:
                async with idle:
                    idle.notify_all()

    # -- teardown --------------------------------------------------------------

    async def clear(self) -> bool:
        """Invalidate readiness, wait for transcriptions to drain, then delete the assets."""
        removed = await self._teardown(delete_assets=True)
        self._log("CACHE_CLEARED", "CLEAR_CACHE", f"removed={removed}")
        return removed

    async def shutdown(self) -> None:
        await self._teardown(delete_assets=False)
        self._log("PROVIDER_SHUTDOWN", "SHUTDOWN", "handle released")

    async def _teardown(self, *, delete_assets: bool) -> bool:
        exclusive, idle = self._primitives()
        # Waits for any in-flight prepare to finish before touching state.
        async with exclusive:
            self._state = "uninitialized"
            async with idle:
                await idle.wait_for(lambda: self._active_transcriptions == 0)
            handle, self._handle = self._handle, None
            if handle is not None:
                await self._release_handle(handle)
            if not delete_assets:
                return False
            self._last_error = None
            return await asyncio.to_thread(self._cache.clear)

    async def _release_handle(self, handle: Any) -> None:
        if self._release is None:
            return
        try:
            await self._release(handle)
        except Exception:
            logger.warning("engine release failed provider=%s", self._provider_id, exc_info=True)
