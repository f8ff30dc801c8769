"""
Kernel Dispatch

Implements:
- Per-cell "kernels" mapped over every position of a 1D or 2D lattice
- Sequential or thread-pool execution with static batch partitioning
- Per-cell random streams derived from (seed, pass, position)

Key insight: a kernel may only write to its own cell's outputs (and to
weights no other cell of the same pass touches). With that contract, and
with each cell's random stream a pure function of its coordinate, the
result of a pass is the same whatever the batch size, worker count or
execution order.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

import numpy as np

from .errors import ConfigurationError
from .lattice import Int2

logger = logging.getLogger(__name__)

Kernel1 = Callable[[int, np.random.Generator], None]
Kernel2 = Callable[[Int2, np.random.Generator], None]


class ComputeBackend(Enum):
    SEQUENTIAL = "sequential"
    THREADED = "threaded"


class ComputeSystem:
    """
    Executes kernels across lattices.

    `rng` is a shared generator for layer-level draws made outside kernels
    (weight initialisation, history sampling). Kernels receive their own
    generator from `cell_rng`, never this one.
    """

    def __init__(
        self,
        num_workers: int = 0,
        batch_size1: int = 64,
        batch_size2: Tuple[int, int] = (2, 2),
        seed: Optional[int] = None
    ):
        if num_workers < 0:
            raise ConfigurationError(f"num_workers must be >= 0, got {num_workers}")
        if batch_size1 < 1 or batch_size2[0] < 1 or batch_size2[1] < 1:
            raise ConfigurationError("batch sizes must be >= 1")
        if seed is not None and seed < 0:
            raise ConfigurationError(f"seed must be non-negative, got {seed}")

        self.num_workers = num_workers
        self.batch_size1 = batch_size1
        self.batch_size2 = Int2(*batch_size2)
        self.backend = ComputeBackend.THREADED if num_workers > 0 else ComputeBackend.SEQUENTIAL

        if seed is None:
            seed = int(np.random.SeedSequence().entropy % (2 ** 63))
        self.seed = seed

        self.rng = np.random.default_rng(seed)

        # Incremented once per dispatched pass so successive passes see fresh streams
        self._pass_count = 0

        self._executor: Optional[ThreadPoolExecutor] = None

        logger.debug(
            "ComputeSystem: backend=%s workers=%d batch1=%d batch2=%s seed=%d",
            self.backend.value, num_workers, batch_size1, tuple(self.batch_size2), seed
        )

    @classmethod
    def from_config(cls, config) -> 'ComputeSystem':
        return cls(
            num_workers=config.num_workers,
            batch_size1=config.batch_size1,
            batch_size2=tuple(config.batch_size2),
            seed=config.seed
        )

    @property
    def pass_count(self) -> int:
        return self._pass_count

    def cell_rng(self, pass_id: int, index: int) -> np.random.Generator:
        """Random stream for one cell of one pass."""
        return np.random.default_rng([self.seed, pass_id, index])

    def run_kernel1(self, kernel: Kernel1, size: int, batch_size: Optional[int] = None) -> None:
        """Run `kernel(i, rng)` for every i in [0, size)."""
        batch_size = batch_size or self.batch_size1
        pass_id = self._next_pass()

        def run_batch(start: int) -> None:
            for i in range(start, min(size, start + batch_size)):
                kernel(i, self.cell_rng(pass_id, i))

        self._dispatch(run_batch, list(range(0, size, batch_size)))

    def run_kernel2(
        self,
        kernel: Kernel2,
        size: Union[Int2, Tuple[int, int]],
        batch_size: Optional[Tuple[int, int]] = None
    ) -> None:
        """Run `kernel(Int2(x, y), rng)` for every position of a width x height lattice."""
        width, height = size
        bx, by = batch_size or self.batch_size2
        pass_id = self._next_pass()

        def run_batch(corner: Int2) -> None:
            for x in range(corner.x, min(width, corner.x + bx)):
                for y in range(corner.y, min(height, corner.y + by)):
                    kernel(Int2(x, y), self.cell_rng(pass_id, x + y * width))

        corners = [Int2(x, y) for x in range(0, width, bx) for y in range(0, height, by)]

        self._dispatch(run_batch, corners)

    def _next_pass(self) -> int:
        pass_id = self._pass_count
        self._pass_count += 1
        return pass_id

    def _dispatch(self, run_batch: Callable, batches: List) -> None:
        if self.backend == ComputeBackend.SEQUENTIAL or len(batches) <= 1:
            for batch in batches:
                run_batch(batch)
            return

        # Consuming the iterator re-raises the first kernel exception here
        list(self._get_executor().map(run_batch, batches))

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.num_workers,
                thread_name_prefix="csdr-kernel"
            )
        return self._executor

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> 'ComputeSystem':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def __getstate__(self):
        state = self.__dict__.copy()
        state['_executor'] = None
        return state
