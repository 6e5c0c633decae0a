"""
Shared fixtures.

The workhorse is a one-site triclinic prim (trivial factor group) with three
allowed occupants: in the 4×1×1 supercell its configurations are necklaces of
length 4, whose orbits under the four translations are easy to count by hand.
"""

import numpy as np
import pytest

from crystal import Configuration, make_prim


def config_from_digits(supercell, digits: str) -> Configuration:
    """Helper to build a configuration from a string like '0012'."""
    return Configuration(supercell, [int(c) for c in digits])


def rotations(digits: str):
    """All cyclic rotations of a digit string, starting with itself."""
    return [digits[k:] + digits[:k] for k in range(len(digits))]


# Aperiodic ternary necklaces of length 4, one per orbit
NECKLACES = ["0001", "0011", "0111", "0012", "0021"]


@pytest.fixture
def chain_prim():
    return make_prim('triclinic_P', ['A', 'B', 'C'], title='chain')


@pytest.fixture
def binary_chain_prim():
    return make_prim('triclinic_P', ['A', 'B'], title='binary chain')


@pytest.fixture
def chain4(chain_prim):
    return chain_prim.supercell(np.diag([4, 1, 1]))


@pytest.fixture
def chain2(chain_prim):
    return chain_prim.supercell(np.diag([2, 1, 1]))


@pytest.fixture
def cubic_prim():
    return make_prim('cubic_P', ['A', 'B'])


@pytest.fixture
def necklace_candidates(chain4):
    """Every rotation of every necklace: 20 candidates in 5 orbits."""
    return [config_from_digits(chain4, r) for n in NECKLACES for r in rotations(n)]
