#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 KernelSight AI
"""
Delta State Tracker

Most hardware metrics are cumulative counters since boot. Reporting them
raw makes every report a spike, so collectors report the change since the
last successful sample instead. The tracker keeps that last sample per
metric-stream key:

- no prior state            -> store baseline, report first sample
- compatible descriptor     -> delta = current - previous
- negative delta            -> explicit reset signal, never a negative delta
- incompatible descriptor   -> drop prior state, treat as a first sample

State is stored after every computation, whatever the sign of the delta.
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Optional, Sequence


@dataclass(frozen=True)
class DeltaState:
    """Last observed cumulative value for one key."""
    value: Any
    descriptor: Any = None


@dataclass(frozen=True)
class DeltaResult:
    """
    Outcome of one delta computation.

    delta is None whenever there is nothing safe to report: on the first
    sample (is_first_sample) and on a counter regression (is_reset).
    """
    delta: Optional[int]
    is_first_sample: bool = False
    is_reset: bool = False

    @property
    def reportable(self) -> bool:
        return self.delta is not None

    def value_or(self, default: int) -> int:
        return default if self.delta is None else self.delta


@dataclass(frozen=True)
class VectorDeltaResult:
    """Outcome of a per-bucket delta computation."""
    deltas: Optional[List[int]]
    is_first_sample: bool = False
    is_reset: bool = False

    @property
    def reportable(self) -> bool:
        return self.deltas is not None


FIRST_SAMPLE = DeltaResult(delta=None, is_first_sample=True)
COUNTER_RESET = DeltaResult(delta=None, is_reset=True)


class DeltaStateTracker:
    """Previous-vs-current sample engine for cumulative counters."""

    def __init__(self, name: str = "delta"):
        self.name = name
        self._states: Dict[Hashable, DeltaState] = {}
        # One writer at a time; state is partitioned by key so a single
        # short critical section is enough
        self._lock = threading.Lock()

        self.stats = {
            'first_samples': 0,
            'deltas': 0,
            'resets': 0,
            'descriptor_changes': 0,
        }

    def compute_delta(self, key: Hashable, value: int, descriptor: Any = None) -> DeltaResult:
        """
        Compare a cumulative value with the last one seen for key.

        Args:
            key: Metric-stream key (e.g. counter name, sensor id)
            value: Current cumulative value
            descriptor: Shape of the sample; a different descriptor than the
                stored one invalidates the prior state

        Returns:
            DeltaResult
        """
        with self._lock:
            prior = self._states.get(key)
            self._states[key] = DeltaState(value, descriptor)

            if prior is None:
                self.stats['first_samples'] += 1
                return FIRST_SAMPLE

            if prior.descriptor != descriptor:
                self.stats['descriptor_changes'] += 1
                self.stats['first_samples'] += 1
                return FIRST_SAMPLE

            delta = value - prior.value
            if delta < 0:
                self.stats['resets'] += 1
                return COUNTER_RESET

            self.stats['deltas'] += 1
            return DeltaResult(delta=delta)

    def compute_vector_delta(self, key: Hashable, values: Sequence[int]) -> VectorDeltaResult:
        """
        Per-bucket delta for histogram-style counters.

        The bucket count is the descriptor: a histogram whose bucket count
        changed is a fresh baseline. Any bucket going backwards is a reset.
        """
        current = tuple(values)
        with self._lock:
            prior = self._states.get(key)
            self._states[key] = DeltaState(current, len(current))

            if prior is None or prior.descriptor != len(current):
                if prior is not None:
                    self.stats['descriptor_changes'] += 1
                self.stats['first_samples'] += 1
                return VectorDeltaResult(deltas=None, is_first_sample=True)

            deltas = [c - p for c, p in zip(current, prior.value)]
            if any(d < 0 for d in deltas):
                self.stats['resets'] += 1
                return VectorDeltaResult(deltas=None, is_reset=True)

            self.stats['deltas'] += 1
            return VectorDeltaResult(deltas=deltas)

    def get(self, key: Hashable) -> Optional[DeltaState]:
        with self._lock:
            return self._states.get(key)

    def reset(self, key: Hashable):
        """Forget the stored state for one key."""
        with self._lock:
            self._states.pop(key, None)

    def clear(self):
        with self._lock:
            self._states.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
