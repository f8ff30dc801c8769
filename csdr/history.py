"""
Fixed-capacity history of actor time steps.

Samples are allocated once at construction and overwritten in place.
Eviction rotates a start index instead of moving samples around, so
inserting never allocates and indexing is always oldest-first.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

import numpy as np

from .errors import ConfigurationError


@dataclass
class HistorySample:
    """One time step: inputs, the action lattice, optional feedback, reward."""
    input_cs: List[np.ndarray]
    hidden_cs: np.ndarray
    feedback_cs: Optional[np.ndarray] = None
    reward: float = 0.0

    @classmethod
    def allocate(
        cls,
        input_columns: Sequence[int],
        hidden_columns: int,
        with_feedback: bool = False
    ) -> 'HistorySample':
        return cls(
            input_cs=[np.zeros(n, dtype=np.int32) for n in input_columns],
            hidden_cs=np.zeros(hidden_columns, dtype=np.int32),
            feedback_cs=np.zeros(hidden_columns, dtype=np.int32) if with_feedback else None
        )

    def copy(self) -> 'HistorySample':
        return HistorySample(
            input_cs=[cs.copy() for cs in self.input_cs],
            hidden_cs=self.hidden_cs.copy(),
            feedback_cs=None if self.feedback_cs is None else self.feedback_cs.copy(),
            reward=self.reward
        )


class HistoryBuffer:
    """
    Ring buffer of pre-allocated HistorySamples.

    `buffer[0]` is the oldest retained sample and `buffer[len(buffer) - 1]`
    the newest.
    """

    def __init__(self, samples: List[HistorySample]):
        if not samples:
            raise ConfigurationError("history capacity must be >= 1")
        self._samples = samples
        self._start = 0
        self._size = 0

    @classmethod
    def allocate(
        cls,
        capacity: int,
        input_columns: Sequence[int],
        hidden_columns: int,
        with_feedback: bool = False
    ) -> 'HistoryBuffer':
        if capacity < 1:
            raise ConfigurationError(f"history capacity must be >= 1, got {capacity}")
        return cls([
            HistorySample.allocate(input_columns, hidden_columns, with_feedback)
            for _ in range(capacity)
        ])

    @property
    def capacity(self) -> int:
        return len(self._samples)

    @property
    def is_full(self) -> bool:
        return self._size == self.capacity

    def __len__(self) -> int:
        return self._size

    def __getitem__(self, index: int) -> HistorySample:
        if index < 0:
            index += self._size
        if not 0 <= index < self._size:
            raise IndexError(f"history index {index} out of range for size {self._size}")
        return self._samples[(self._start + index) % self.capacity]

    def __iter__(self) -> Iterator[HistorySample]:
        for i in range(self._size):
            yield self[i]

    def push(
        self,
        input_cs: Sequence[np.ndarray],
        hidden_cs: np.ndarray,
        feedback_cs: Optional[np.ndarray] = None,
        reward: float = 0.0
    ) -> HistorySample:
        """Copy a time step into the next slot, evicting the oldest when full."""
        if self.is_full:
            sample = self._samples[self._start]
            self._start = (self._start + 1) % self.capacity
        else:
            sample = self._samples[(self._start + self._size) % self.capacity]
            self._size += 1

        for dst, src in zip(sample.input_cs, input_cs):
            dst[:] = src
        sample.hidden_cs[:] = hidden_cs
        if sample.feedback_cs is not None and feedback_cs is not None:
            sample.feedback_cs[:] = feedback_cs
        sample.reward = float(reward)

        return sample

    def clear(self) -> None:
        self._start = 0
        self._size = 0

    def copy(self) -> 'HistoryBuffer':
        """Deep copy with the same (oldest-first) contents and capacity."""
        samples = [s.copy() for s in self._samples]
        dup = HistoryBuffer(samples)
        dup._start = self._start
        dup._size = self._size
        return dup

    def restore(self, samples: List[HistorySample], size: int) -> None:
        """Replace contents with `samples` (oldest-first) of which the first `size` are live."""
        if len(samples) != self.capacity:
            raise ConfigurationError(
                f"expected {self.capacity} samples, got {len(samples)}"
            )
        if not 0 <= size <= self.capacity:
            raise ConfigurationError(f"history size {size} exceeds capacity {self.capacity}")
        self._samples = samples
        self._start = 0
        self._size = size

    def slots(self) -> List[HistorySample]:
        """Every allocated sample, oldest live sample first, unused slots last."""
        return [self._samples[(self._start + i) % self.capacity] for i in range(self.capacity)]
