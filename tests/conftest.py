"""Shared fixtures for the csdr test suite."""

import os

# Headless plotting for the visualization tests
os.environ.setdefault("MPLBACKEND", "Agg")

import numpy as np
import pytest

from csdr import ComputeSystem, Int3, VisibleLayerDesc


@pytest.fixture
def cs():
    system = ComputeSystem(seed=1234)
    yield system
    system.shutdown()


@pytest.fixture
def threaded_cs():
    system = ComputeSystem(num_workers=4, batch_size1=3, batch_size2=(1, 2), seed=1234)
    yield system
    system.shutdown()


@pytest.fixture
def small_desc():
    return VisibleLayerDesc(size=Int3(4, 4, 3), radius=1)


@pytest.fixture
def make_csdr():
    """Factory for random CSDRs of a given lattice size."""
    rng = np.random.default_rng(99)

    def make(size: Int3) -> np.ndarray:
        return rng.integers(0, size.z, size=size.x * size.y).astype(np.int32)

    return make
