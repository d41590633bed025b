"""
conftest.py
~~~~~~~~~~~

Shared fixtures for the digitnet test suite.
"""

import os
import sys

import numpy as np
import pytest

# Make the package importable without installing it
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from digitnet.network import Network, Sample, construct


XOR_SAMPLES = [
    Sample([0.0, 0.0], [0.0]),
    Sample([0.0, 1.0], [1.0]),
    Sample([1.0, 0.0], [1.0]),
    Sample([1.0, 1.0], [0.0]),
]


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(1234)


@pytest.fixture
def simple_network(rng) -> Network:
    """Create a simple 3-layer network for testing."""
    return construct([3, 4, 2], rng=rng)


@pytest.fixture
def labelled_samples(rng):
    """Ten random samples for the [3, 4, 2] network, alternating classes."""
    samples = []
    for i in range(10):
        x = rng.standard_normal((3, 1))
        y = np.zeros((2, 1))
        y[i % 2] = 1.0
        samples.append(Sample(x, y))
    return samples


@pytest.fixture
def xor_samples():
    return list(XOR_SAMPLES)


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)
