#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Cadence Scheduler

One periodic timer at the base tick drives every reporting cadence
(e.g. 5 minutes, hourly, daily). The base tick is the greatest common
divisor of all cadence periods, so every cadence threshold is a whole
number of ticks.

On each wake the timer reports how many ticks elapsed (normally 1, more if
the process was delayed). Each cadence counter accumulates those ticks;
a cadence whose counter reaches its threshold fires its callbacks once and
keeps the remainder (counter %= threshold). Missed periods are never
replayed.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

CadenceCallback = Callable[[], None]


class TickTimerError(OSError):
    """The periodic timer cannot be created or read."""


@dataclass(frozen=True)
class CadenceDefinition:
    """A named period expressed as a whole number of base ticks."""
    name: str
    ticks: int

    def __post_init__(self):
        if isinstance(self.ticks, bool) or not isinstance(self.ticks, int):
            raise ValueError(f"Cadence {self.name}: tick multiple must be an int, got {self.ticks!r}")
        if self.ticks < 1:
            raise ValueError(f"Cadence {self.name}: tick multiple must be >= 1, got {self.ticks}")


def derive_cadences(periods_sec: Mapping[str, int]) -> Tuple[int, List[CadenceDefinition]]:
    """
    Turn cadence periods in seconds into a base tick and tick multiples.

    Args:
        periods_sec: Ordered mapping cadence name -> period in seconds

    Returns:
        (base_tick_sec, cadence definitions in the given order)
    """
    if not periods_sec:
        raise ValueError("At least one cadence period is required")
    for name, period in periods_sec.items():
        if isinstance(period, bool) or not isinstance(period, int) or period <= 0:
            raise ValueError(f"Cadence {name}: period must be a positive int of seconds, got {period!r}")

    base = 0
    for period in periods_sec.values():
        base = math.gcd(base, period)

    cadences = [CadenceDefinition(name, period // base) for name, period in periods_sec.items()]
    return base, cadences


class MonotonicTickTimer:
    """
    Periodic timer that reports accumulated expirations.

    Deadlines are fixed multiples of the interval from the start time, so
    wake-up jitter never accumulates into drift. wait() blocks until at
    least one deadline has passed and returns the number of deadlines
    passed since the previous wait(), or 0 if the stop event was set.
    """

    def __init__(self, interval_sec: float,
                 clock: Optional[Callable[[], float]] = None,
                 stop_event: Optional[threading.Event] = None):
        if interval_sec <= 0:
            raise TickTimerError(f"Invalid timer interval: {interval_sec}")
        self.interval_sec = interval_sec
        self.clock = clock or _boottime_clock()
        self.stop_event = stop_event or threading.Event()
        self._start: Optional[float] = None
        self._expirations = 0

    def start(self):
        try:
            self._start = self.clock()
        except OSError as e:
            raise TickTimerError(f"Unable to read timer clock - {e}") from e
        self._expirations = 0

    def wait(self) -> int:
        if self._start is None:
            self.start()

        while True:
            try:
                now = self.clock()
            except OSError as e:
                raise TickTimerError(f"Timer read error - {e}") from e

            total = int((now - self._start) // self.interval_sec)
            if total > self._expirations:
                elapsed = total - self._expirations
                self._expirations = total
                return elapsed

            next_deadline = self._start + (self._expirations + 1) * self.interval_sec
            if self.stop_event.wait(max(0.0, next_deadline - now)):
                return 0


def _boottime_clock() -> Callable[[], float]:
    # CLOCK_BOOTTIME keeps counting while the device is suspended
    clock_id = getattr(time, 'CLOCK_BOOTTIME', None)
    if clock_id is None:
        return time.monotonic
    return lambda: time.clock_gettime(clock_id)


class CadenceScheduler:
    """Drives cadence callbacks from one base-tick timer."""

    def __init__(self, base_tick_sec: int, cadences: List[CadenceDefinition],
                 timer: Optional[MonotonicTickTimer] = None):
        """
        Initialize scheduler.

        Args:
            base_tick_sec: Timer interval in seconds
            cadences: Cadence definitions, fixed for the scheduler's lifetime
            timer: Tick source (defaults to a MonotonicTickTimer)
        """
        names = [c.name for c in cadences]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate cadence names: {names}")

        self.base_tick_sec = base_tick_sec
        self._cadences: Dict[str, CadenceDefinition] = {c.name: c for c in cadences}
        self._counters: Dict[str, int] = {c.name: 0 for c in cadences}
        self._callbacks: Dict[str, List[Tuple[str, CadenceCallback]]] = {c.name: [] for c in cadences}
        self.timer = timer or MonotonicTickTimer(base_tick_sec)

        self.stats = {
            'wakes': 0,
            'ticks': 0,
            'fired': {c.name: 0 for c in cadences},
            'callback_errors': 0,
            'overshoots': 0,
        }

    @classmethod
    def from_periods(cls, periods_sec: Mapping[str, int],
                     timer: Optional[MonotonicTickTimer] = None) -> "CadenceScheduler":
        base, cadences = derive_cadences(periods_sec)
        return cls(base, cadences, timer=timer or MonotonicTickTimer(base))

    @property
    def cadences(self) -> List[CadenceDefinition]:
        return list(self._cadences.values())

    def counter(self, name: str) -> int:
        return self._counters[name]

    def register(self, cadence_name: str, callback: CadenceCallback, name: Optional[str] = None):
        """Add a callback to a cadence's callback set."""
        if cadence_name not in self._cadences:
            raise KeyError(f"Unknown cadence: {cadence_name}")
        label = name or getattr(callback, '__name__', repr(callback))
        self._callbacks[cadence_name].append((label, callback))

    def run_cadence(self, cadence_name: str):
        """Invoke every callback of one cadence; a failing callback does not stop the rest."""
        for label, callback in self._callbacks[cadence_name]:
            try:
                callback()
            except Exception as e:
                self.stats['callback_errors'] += 1
                logger.error(f"{cadence_name} callback {label} failed: {e}", exc_info=True)
        self.stats['fired'][cadence_name] += 1

    def run_initial(self):
        """First observation pass: every cadence once, before the first tick."""
        for name in self._cadences:
            self.run_cadence(name)

    def on_ticks(self, elapsed: int) -> List[str]:
        """
        Account elapsed base ticks and fire due cadences.

        Args:
            elapsed: Ticks since the previous wake

        Returns:
            Names of the cadences that fired, in registration order
        """
        if elapsed <= 0:
            return []

        self.stats['wakes'] += 1
        self.stats['ticks'] += elapsed
        for name in self._counters:
            self._counters[name] += elapsed

        fired = []
        for name, cadence in self._cadences.items():
            count = self._counters[name]
            if count < cadence.ticks:
                continue
            if count >= 2 * cadence.ticks:
                self.stats['overshoots'] += 1
                logger.warning(f"{name} wake: slept too much: {count} ticks accumulated "
                               f"for a {cadence.ticks}-tick cadence (elapsed={elapsed})")
            self._counters[name] = count % cadence.ticks
            self.run_cadence(name)
            fired.append(name)
        return fired

    def run_forever(self):
        """
        Initial pass, then the tick loop.

        Returns when the timer's stop event is set. TickTimerError
        propagates: a broken timer is fatal.
        """
        self.run_initial()
        self.timer.start()
        logger.info(f"Cadence scheduler running: base tick {self.base_tick_sec}s, "
                    + ", ".join(f"{c.name}={c.ticks}" for c in self._cadences.values()))

        while True:
            elapsed = self.timer.wait()
            if elapsed == 0:
                logger.info("Cadence scheduler stopped")
                return
            self.on_ticks(elapsed)
