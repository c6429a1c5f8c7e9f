"""Shared pytest fixtures for all test modules."""

from __future__ import annotations

from typing import Callable, List

import numpy as np
import pytest

from core.matcher.types import DESCRIPTOR_DIM, Candidate
from tests.helpers import make_candidate


@pytest.fixture
def zero_descriptor() -> List[float]:
    return [0.0] * DESCRIPTOR_DIM


@pytest.fixture
def random_descriptor() -> np.ndarray:
    rng = np.random.default_rng(42)
    return rng.standard_normal(DESCRIPTOR_DIM) * 0.1


@pytest.fixture
def candidate_factory() -> Callable[..., Candidate]:
    return make_candidate


@pytest.fixture
def sample_candidates() -> List[Candidate]:
    """Two matches (0.3, 0.59), one miss (0.8) and one without a descriptor."""
    return [
        make_candidate(1, 0.59, name="Near Miss"),
        make_candidate(2, 0.3, name="Closest"),
        make_candidate(3, 0.8, name="Too Far"),
        make_candidate(4, None, name="No Photo"),
    ]
