"""
backend/grant_timer.py
Deadline actions and the background expiry sweep for access grants.

DeadlineTimer runs one-shot actions when a grant deadline elapses. Every
action is paired with a guard that re-reads the current ledger (or cache)
state, so a grant revoked early turns its scheduled action into a no-op.

ExpirySweeper calls AccessLedger.sweep() on a fixed cadence.
"""

import os
import logging
import datetime
import threading
from typing import Callable, Optional

logger = logging.getLogger("jeevan.grant_timer")

SWEEP_INTERVAL_S = float(os.environ.get("ACCESS_SWEEP_INTERVAL_S", 5))


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _daemon_timer(delay: float, fn: Callable[[], None]):
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    return timer


class DeadlineTimer:
    """One-shot deadline actions keyed by request id."""

    def __init__(self, clock: Callable[[], datetime.datetime] = _utcnow, timer_factory=_daemon_timer):
        self.clock = clock
        self.timer_factory = timer_factory
        self._timers: dict = {}
        self._lock = threading.Lock()

    def schedule(
        self,
        key: str,
        deadline: datetime.datetime,
        action: Callable[[], None],
        guard: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Run `action` at `deadline` if `guard()` still holds. Replaces any timer for `key`."""
        delay = max((deadline - self.clock()).total_seconds(), 0.0)

        def fire():
            with self._lock:
                if self._timers.get(key) is not timer:
                    return
                del self._timers[key]
            try:
                if guard is not None and not guard():
                    logger.info(f"Deadline for {key} reached; state changed, nothing to do")
                    return
                action()
                logger.info(f"Deadline action executed for {key}")
            except Exception as e:
                logger.error(f"Deadline action for {key} failed: {e}")

        timer = self.timer_factory(delay, fire)
        with self._lock:
            previous = self._timers.pop(key, None)
            self._timers[key] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def cancel(self, key: str) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def pending(self) -> list:
        with self._lock:
            return sorted(self._timers)


class ExpirySweeper:
    """
    Daemon thread running ledger.sweep() every `interval` seconds, followed
    by any housekeeping callables (e.g. purging stale OTP codes).
    """

    def __init__(self, ledger, interval: float = SWEEP_INTERVAL_S, housekeeping=()):
        self.ledger = ledger
        self.interval = interval
        self.housekeeping = list(housekeeping)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        changed = 0
        try:
            changed = self.ledger.sweep()
        except Exception as e:
            logger.error(f"Ledger sweep failed: {e}", exc_info=True)
        for task in self.housekeeping:
            try:
                task()
            except Exception as e:
                logger.error(f"Housekeeping task failed: {e}", exc_info=True)
        return changed

    def _loop(self):
        logger.info(f"Expiry sweeper started (every {self.interval}s)")
        while not self._stop.wait(self.interval):
            self.run_once()
        logger.info("Expiry sweeper stopped")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="ledger-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())
