import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol, Set

from redirect_operator.internal.domain.models import ObjectKey, Redirect
from redirect_operator.internal.reconciler.action import Action
from redirect_operator.internal.store.reflector import Store
from redirect_operator.metrics import Metrics

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 2
DEFAULT_ERROR_REQUEUE_SECONDS = 1.0


class Leadership(Protocol):
    def is_leader(self) -> bool: ...


class Controller:
    """Schedules reconciliations of stored Redirects.

    At most `concurrency` reconciliations run at once and never two for the
    same key: a key triggered while in flight is deferred and run again once
    the current attempt finishes. Delayed requeues keep one timer per key and
    the earliest deadline wins. Nothing is dispatched unless `leader` reports
    valid leadership at that moment.
    """

    def __init__(self, store: Store, reconcile: Callable[[Redirect], Awaitable[Action]],
                 leader: Leadership, metrics: Metrics, concurrency: int = DEFAULT_CONCURRENCY,
                 error_requeue_seconds: float = DEFAULT_ERROR_REQUEUE_SECONDS):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.reconcile = reconcile
        self.leader = leader
        self.metrics = metrics
        self.concurrency = concurrency
        self.error_requeue_seconds = error_requeue_seconds

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._queued: Set[ObjectKey] = set()
        self._active: Set[ObjectKey] = set()
        self._deferred: Set[ObjectKey] = set()
        self._timers: Dict[ObjectKey, asyncio.TimerHandle] = {}
        self._idle = asyncio.Event()
        self._stopping = False

    def enqueue(self, key: ObjectKey, delay: float = 0.0):
        """Schedules key for reconciliation. Must be called on the driver's loop."""
        if self._stopping or self._loop is None:
            return

        if delay > 0:
            when = self._loop.time() + delay
            existing = self._timers.get(key)
            if existing is not None:
                if existing.when() <= when:
                    return
                existing.cancel()
            self._timers[key] = self._loop.call_at(when, self._fire_timer, key)
            return

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if key in self._active:
            self._deferred.add(key)
        elif key not in self._queued:
            self._queued.add(key)
            self._queue.put_nowait(key)

    def _fire_timer(self, key: ObjectKey):
        self._timers.pop(key, None)
        self.enqueue(key)

    def resync(self):
        """Queues every stored Redirect, if we currently lead."""
        if not self.leader.is_leader():
            return
        keys = self.store.keys()
        logger.info(f"Queueing all {len(keys)} known Redirects for reconciliation.")
        for key in keys:
            self.enqueue(key)

    def _call_soon(self, callback, *args):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Driver loop closed, dropping trigger.")

    def notify(self, key: ObjectKey):
        """Thread-safe trigger for a single key, used by the reflector."""
        self._call_soon(self.enqueue, key)

    def notify_all(self):
        """Thread-safe full resync, used when leadership is gained."""
        self._call_soon(self.resync)

    async def _worker(self):
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            if self._stopping:
                continue
            if not self.leader.is_leader():
                logger.debug(f"Not leading, skipping reconciliation of {key}")
                continue

            self._active.add(key)
            self._idle.clear()
            try:
                await self._reconcile_key(key)
            finally:
                self._active.discard(key)
                if key in self._deferred:
                    self._deferred.discard(key)
                    self.enqueue(key)
                if not self._active:
                    self._idle.set()

    async def _reconcile_key(self, key: ObjectKey):
        redirect = self.store.get(key)
        if redirect is None:
            logger.debug(f"Redirect {key} is gone, nothing to reconcile.")
            return

        with self.metrics.reconcile.count_and_measure():
            try:
                action = await self.reconcile(redirect)
            except Exception as e:
                self.metrics.reconcile.set_failure(str(key), e)
                logger.warning(f"reconcile failed for {key}: {e}")
                self.enqueue(key, self.error_requeue_seconds)
                return

        logger.info(f"Reconciled {key}: requeue after {action.requeue_after}s")
        if action.requeue_after is not None:
            self.enqueue(key, action.requeue_after)

    async def run(self, stop_event: asyncio.Event):
        """Runs the workers until stop_event is set, then drains in-flight reconciliations."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._stopping = False
        self._idle.set()

        workers = [asyncio.create_task(self._worker(), name=f"reconcile-worker-{i}")
                   for i in range(self.concurrency)]
        logger.info(f"Reconciliation driver started with concurrency {self.concurrency}.")
        self.resync()

        try:
            await stop_event.wait()
            logger.info("Stopping reconciliation driver, waiting for in-flight reconciliations.")
            self._stopping = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            await self._idle.wait()
        finally:
            self._stopping = True
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("Reconciliation driver stopped.")
