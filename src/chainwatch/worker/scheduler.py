"""Per-chain schedulers and the threaded poller service that drives them."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from chainwatch.models import Chain
from chainwatch.worker.cycle import CycleError, CycleReport

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


class ChainScheduler:
    """Timer state for one chain's cycle.

    The scheduler owns its next fire time and failure streak; nothing is
    shared between chains. ``run_once`` never overlaps itself: a call made
    while a cycle is in flight returns ``None`` immediately. After a failed
    cycle the next fire time backs off exponentially with jitter, capped at
    ``max_backoff_seconds``; a successful cycle restores the base interval.
    """

    def __init__(
        self,
        cycle,
        *,
        interval_seconds: float,
        backoff_multiplier: float = 2.0,
        max_backoff_seconds: float = 900.0,
        jitter_ratio: float = 0.1,
        clock: Clock = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.cycle = cycle
        self.chain: Chain = cycle.chain
        self.interval_seconds = interval_seconds
        self.backoff_multiplier = max(1.0, backoff_multiplier)
        self.max_backoff_seconds = max(interval_seconds, max_backoff_seconds)
        self.jitter_ratio = min(max(0.0, jitter_ratio), 1.0)
        self._clock = clock
        self._rng = rng or random.Random()
        self._in_flight = threading.Lock()
        self.next_fire_at: float | None = None
        self.consecutive_failures = 0
        self.last_report: CycleReport | None = None
        self.last_error: CycleError | None = None

    def is_due(self, now: float | None = None) -> bool:
        current = self._clock() if now is None else now
        return self.next_fire_at is None or current >= self.next_fire_at

    def seconds_until_due(self, now: float | None = None) -> float:
        if self.next_fire_at is None:
            return 0.0
        current = self._clock() if now is None else now
        return max(0.0, self.next_fire_at - current)

    def next_delay(self) -> float:
        """Delay before the next cycle given the current failure streak."""

        if not self.consecutive_failures:
            return self.interval_seconds
        backoff = self.interval_seconds * (self.backoff_multiplier**self.consecutive_failures)
        capped = min(self.max_backoff_seconds, backoff)
        jitter = capped * self.jitter_ratio * self._rng.uniform(-1.0, 1.0)
        return max(self.interval_seconds, capped + jitter)

    def defer(self, now: float | None = None) -> float:
        """Count a failed cycle and push the next fire time out; returns the delay."""

        self.consecutive_failures += 1
        delay = self.next_delay()
        start = self._clock() if now is None else now
        self.next_fire_at = start + delay
        LOGGER.warning(
            "%s cycle failed (%s consecutive); retrying in %.1fs",
            self.chain.value,
            self.consecutive_failures,
            delay,
        )
        return delay

    def run_once(self, now: float | None = None) -> Optional[CycleReport]:
        """Run the cycle now unless one is already in flight."""

        if not self._in_flight.acquire(blocking=False):
            LOGGER.debug("%s cycle still in flight; skipping", self.chain.value)
            return None
        try:
            try:
                report = self.cycle.run()
            except CycleError as exc:
                self.last_error = exc
                self.defer(now)
                return None
            self.consecutive_failures = 0
            self.last_error = None
            self.last_report = report
            start = self._clock() if now is None else now
            self.next_fire_at = start + self.next_delay()
            return report
        finally:
            self._in_flight.release()

    def run_if_due(self, now: float | None = None) -> Optional[CycleReport]:
        if not self.is_due(now):
            return None
        return self.run_once(now)


class PollerService:
    """Run each scheduler on its own daemon thread until stopped.

    Threads wake at least every ``tick_seconds`` to check for shutdown, so a
    stop request lets an in-flight cycle finish and then exits.
    """

    def __init__(self, schedulers: Iterable[ChainScheduler], *, tick_seconds: float = 5.0) -> None:
        self.schedulers: List[ChainScheduler] = list(schedulers)
        self.tick_seconds = max(0.01, tick_seconds)
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> Dict[Chain, Optional[CycleReport]]:
        """Run every scheduler's cycle once, sequentially."""

        return {scheduler.chain: scheduler.run_once() for scheduler in self.schedulers}

    def _loop(self, scheduler: ChainScheduler) -> None:
        LOGGER.info("Polling %s every %ss", scheduler.chain.value, scheduler.interval_seconds)
        while not self._stop.is_set():
            try:
                scheduler.run_if_due()
            except Exception:
                LOGGER.exception("Unexpected scheduler failure for %s", scheduler.chain.value)
                scheduler.defer()
            self._stop.wait(min(self.tick_seconds, max(scheduler.seconds_until_due(), 0.01)))
        LOGGER.info("Stopped polling %s", scheduler.chain.value)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("PollerService already started")
        self._stop.clear()
        for scheduler in self.schedulers:
            thread = threading.Thread(
                target=self._loop,
                args=(scheduler,),
                name=f"chainwatch-poller-{scheduler.chain.value}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def request_stop(self) -> None:
        """Ask the loops to exit after their current cycle (signal-handler safe)."""

        self._stop.set()

    def stop(self, timeout: float | None = None) -> None:
        """Signal every loop to exit and wait for in-flight cycles."""

        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def wait(self, timeout: float | None = None) -> bool:
        """Block until :meth:`stop` is requested; True when stopping."""

        return self._stop.wait(timeout)


__all__ = ["ChainScheduler", "PollerService"]
