import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class LeaseBackend(ABC):
    """Storage for a single named lease.

    Implementations must make try_acquire atomic: it succeeds only if the
    lease is unheld, expired, or already held by holder.
    """

    @abstractmethod
    def try_acquire(self, holder: str, lease_duration: float) -> bool:
        ...

    @abstractmethod
    def renew(self, holder: str, lease_duration: float) -> bool:
        """Extends the lease if holder still owns it. Returns False if it does not."""

    @abstractmethod
    def release(self, holder: str) -> None:
        """Gives the lease up if holder owns it, so another replica can take over at once."""


class LeaseHandle:
    """Leadership state of this replica.

    A background thread acquires and renews the lease; it is the only writer
    of the state below. is_leader() never blocks and turns False as soon as
    the validity window of the last successful renewal has passed, even if
    the renewal thread is stuck in a call. The window starts when the renew
    call was issued, so it always closes no later than the lease expiry the
    backend recorded. Exclusivity therefore assumes clock skew between
    replicas stays well below lease_duration - renew_interval.
    """

    def __init__(self, backend: LeaseBackend, identity: str, lease_duration: float = 15.0,
                 renew_interval: float = 5.0, retry_interval: float = 2.0, max_renew_failures: int = 3,
                 clock: Callable[[], float] = time.monotonic):
        if not (0 < renew_interval < lease_duration):
            raise ValueError("renew_interval must be positive and shorter than lease_duration")
        self.backend = backend
        self.identity = identity
        self.lease_duration = lease_duration
        self.renew_interval = renew_interval
        self.retry_interval = retry_interval
        self.max_renew_failures = max_renew_failures
        self._clock = clock

        self._leader = False
        self._valid_until = 0.0
        self._consecutive_failures = 0
        self._leading = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started_callbacks: List[Callable[[], None]] = []
        self._stopped_callbacks: List[Callable[[], None]] = []

    def is_leader(self) -> bool:
        return self._leader and self._clock() < self._valid_until

    def wait_for_leadership(self, timeout: Optional[float] = None) -> bool:
        return self._leading.wait(timeout)

    def on_started_leading(self, callback: Callable[[], None]):
        self._started_callbacks.append(callback)

    def on_stopped_leading(self, callback: Callable[[], None]):
        self._stopped_callbacks.append(callback)

    def _fire(self, callbacks: List[Callable[[], None]]):
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Leadership callback failed: {e}", exc_info=True)

    def _promote(self, issued_at: float):
        self._valid_until = issued_at + self.lease_duration
        self._consecutive_failures = 0
        self._leader = True
        self._leading.set()
        logger.info(f"{self.identity} acquired the lease and is now leader.")
        self._fire(self._started_callbacks)

    def _demote(self, reason: str):
        if not self._leader:
            return
        self._leader = False
        self._leading.clear()
        logger.warning(f"{self.identity} lost leadership: {reason}")
        self._fire(self._stopped_callbacks)

    def _try_acquire(self) -> bool:
        issued_at = self._clock()
        try:
            acquired = self.backend.try_acquire(self.identity, self.lease_duration)
        except Exception as e:
            logger.error(f"Error acquiring lease for {self.identity}: {e}")
            return False
        if acquired:
            self._promote(issued_at)
        return acquired

    def _renew(self):
        issued_at = self._clock()
        try:
            renewed = self.backend.renew(self.identity, self.lease_duration)
            error = None
        except Exception as e:
            renewed = False
            error = e

        if renewed:
            self._valid_until = issued_at + self.lease_duration
            self._consecutive_failures = 0
            logger.debug(f"{self.identity} renewed the lease.")
            return

        self._consecutive_failures += 1
        logger.warning(f"Failed to renew lease for {self.identity} "
                       f"(attempt {self._consecutive_failures}/{self.max_renew_failures}): {error or 'lease held by another replica'}")
        if error is None:
            self._demote("lease is held by another replica")
        elif self._consecutive_failures >= self.max_renew_failures:
            self._demote(f"{self._consecutive_failures} consecutive renewal failures")
        elif self._clock() >= self._valid_until:
            self._demote("lease expired before it could be renewed")

    def _run(self):
        logger.info(f"Starting leader election for {self.identity} "
                    f"(lease {self.lease_duration}s, renew every {self.renew_interval}s).")
        while not self._stop_event.is_set():
            if self._leader:
                self._renew()
                interval = self.renew_interval if self._leader else self.retry_interval
            else:
                interval = self.renew_interval if self._try_acquire() else self.retry_interval
            if self._stop_event.wait(interval):
                break
        logger.info(f"Leader election for {self.identity} stopped.")

    def start(self) -> 'LeaseHandle':
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='leader-election', daemon=True)
        self._thread.start()
        return self

    def shutdown(self, timeout: float = 10.0):
        """Stops renewing and releases the lease if held."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        if self._leader:
            try:
                self.backend.release(self.identity)
                logger.info(f"{self.identity} released the lease.")
            except Exception as e:
                logger.error(f"Failed to release lease for {self.identity}: {e}")
            self._demote("shutting down")


def acquire(backend: LeaseBackend, identity: str, lease_duration: float, **kwargs) -> LeaseHandle:
    """Starts competing for the lease in the background and returns the handle."""
    return LeaseHandle(backend, identity, lease_duration, **kwargs).start()
