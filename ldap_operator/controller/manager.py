"""
Controller Manager — turns change notifications into reconcile work.

  notification ─┐
  resync pass ──┼─▶ work queue ─▶ workers ─▶ IdentityReconciler
  retry timer ──┘

- A key is queued at most once. A key re-triggered while a worker holds it is
  re-queued when that worker finishes, so one key is never reconciled twice
  at the same time within a process.
- Retryable failures re-queue the key after exponential backoff; a success
  resets the key's failure count.
- A bulk sync pass runs at start and then every resync interval, after which
  every tracked key is queued so lost notifications are made up for.
- Blocking collaborator calls run in worker threads.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from ldap_operator.errors import PartialBatchFailure, RetryableError
from ldap_operator.models.config import ControllerConfig
from ldap_operator.models.reconcile import ReconcileResult
from ldap_operator.models.resources import ChangeEvent
from ldap_operator.models.sync import SyncReport
from ldap_operator.reconciler.identity import IdentityReconciler
from ldap_operator.sync.engine import BulkSyncEngine

logger = logging.getLogger(__name__)


class ControllerManager:
    """Work queue, reconcile workers and the periodic bulk pass."""

    def __init__(
        self,
        reconciler: IdentityReconciler,
        sync_engine: BulkSyncEngine,
        config: Optional[ControllerConfig] = None,
    ):
        self.reconciler = reconciler
        self.sync_engine = sync_engine
        self.registry = sync_engine.registry
        self.config = config or ControllerConfig()
        self.last_sync: Optional[SyncReport] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._queued: Set[str] = set()
        self._active: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._retry_handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self._subscribed = False

    @property
    def status(self) -> str:
        """Current manager status."""
        return "running" if self._running else "stopped"

    @property
    def pending_keys(self) -> List[str]:
        return sorted(self._queued)

    def failure_count(self, key: str) -> int:
        return self._failures.get(key, 0)

    def backoff_for(self, failures: int) -> float:
        """Delay before the next attempt after `failures` consecutive failures."""
        if failures <= 0:
            return 0.0
        delay = self.config.base_backoff_seconds * (2 ** (failures - 1))
        return min(delay, self.config.max_backoff_seconds)

    # --- Queueing ---

    def enqueue(self, key: str) -> None:
        """Queue a key for reconciliation. Must be called on the event loop."""
        if self._queue is None:
            raise RuntimeError("Controller manager is not started")
        if key in self._queued:
            return
        self._queued.add(key)
        if key not in self._active:
            self._queue.put_nowait(key)

    def notify(self, event: ChangeEvent) -> None:
        """Change-notification callback. Safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._enqueue_if_running, event.key)

    def _enqueue_if_running(self, key: str) -> None:
        if self._running:
            self.enqueue(key)

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._queued.clear()
        self._active.clear()
        self._running = True

        if not self._subscribed:
            self.registry.subscribe(self.notify)
            self._subscribed = True

        for i in range(self.config.workers):
            self._tasks.append(
                asyncio.create_task(self._worker(), name=f"reconcile-worker-{i}")
            )
        self._tasks.append(asyncio.create_task(self._resync_loop(), name="resync"))
        logger.info("Controller manager started with %d workers", self.config.workers)

    async def stop(self) -> None:
        self._running = False
        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        # Queued keys belonged to the discarded queue.
        self._queued.clear()
        self._active.clear()
        logger.info("Controller manager stopped")

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run until stop_event is set."""
        if stop_event is None:
            stop_event = asyncio.Event()

        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    async def wait_idle(self) -> None:
        """Wait until every queued key has been processed once."""
        if self._queue is not None:
            await self._queue.join()

    # --- Work ---

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            self._active.add(key)
            try:
                await self.process_key(key)
            finally:
                self._active.discard(key)
                if key in self._queued:
                    self._queue.put_nowait(key)
                self._queue.task_done()

    async def process_key(self, key: str) -> Optional[ReconcileResult]:
        """Reconcile one key, scheduling a retry if it fails."""
        try:
            result = await asyncio.to_thread(self.reconciler.reconcile, key)
        except RetryableError as e:
            self._schedule_retry(key, e)
            return None
        except Exception as e:
            logger.exception("Unexpected error reconciling %s", key)
            self._schedule_retry(key, e)
            return None

        self._failures.pop(key, None)
        logger.debug("Reconciled %s: %s", key, result.phase.value)
        return result

    def _schedule_retry(self, key: str, error: Exception) -> None:
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = self.backoff_for(failures)
        logger.warning(
            "Reconcile %s failed (attempt %d): %s; retrying in %.1fs",
            key, failures, error, delay,
        )
        if self._loop is None or not self._running:
            return

        previous = self._retry_handles.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._retry_handles[key] = self._loop.call_later(delay, self._retry, key)

    def _retry(self, key: str) -> None:
        self._retry_handles.pop(key, None)
        if self._running:
            self.enqueue(key)

    async def run_sync_once(self) -> SyncReport:
        """Run one bulk pass, then queue every tracked key."""
        report = await asyncio.to_thread(self.sync_engine.run)
        self.last_sync = report

        if self._running:
            keys = await asyncio.to_thread(self.sync_engine.tracked_keys)
            for key in sorted(keys):
                self.enqueue(key)
        return report

    async def _resync_loop(self) -> None:
        while True:
            try:
                report = await self.run_sync_once()
                report.raise_for_failures()
            except PartialBatchFailure as e:
                logger.warning("%s; retrying on next resync", e)
            except RetryableError as e:
                logger.warning("Bulk sync could not run: %s", e)
            except Exception:
                logger.exception("Unexpected error during bulk sync")
            await asyncio.sleep(self.config.resync_interval_seconds)
