"""
Tests for the canonical form engine.

These tests verify:
1. Canonical form is maximal over the orbit and idempotent
2. to_canonical / from_canonical round trip
3. Ties are broken by the first maximal action
4. Orbit-stabilizer relation
5. Empty action ranges fail
6. Memoized results are bound to one cell identity
7. Global and local modes on crystal objects
"""

import numpy as np
import pytest

from canonical_form import (
    CONFIGURATION_COMPARE,
    CanonicalFormEngine,
    KeyCompare,
    MemoizedCanonicalForm,
    StabilizerComputer,
    global_canonicalizer,
    local_canonicalizer,
)
from crystal import Configuration
from errors import InvariantViolation

from conftest import NECKLACES, config_from_digits, rotations


# =============================================================================
# TEST FIXTURES
# =============================================================================

class Shift:
    """Cyclic shift of a tuple of length n by k places."""

    def __init__(self, k: int, n: int):
        self.k = k
        self.n = n

    def apply(self, t):
        return tuple(t[(i - self.k) % self.n] for i in range(self.n))

    def inverse(self):
        return Shift(-self.k % self.n, self.n)


TUPLE_COMPARE = KeyCompare(lambda t: t, name="tuple")


@pytest.fixture
def engine():
    return CanonicalFormEngine(TUPLE_COMPARE, [Shift(k, 4) for k in range(4)])


# =============================================================================
# GENERIC ENGINE TESTS
# =============================================================================

class TestCanonicalForm:
    """Test canonical form queries on cyclic tuples."""

    def test_maximal_image(self, engine):
        assert engine.canonical_form((0, 0, 0, 1)) == (1, 0, 0, 0)

    def test_maximality(self, engine):
        obj = (0, 2, 1, 0)
        canonical = engine.canonical_form(obj)
        for action in engine.actions():
            assert not TUPLE_COMPARE.less(canonical, action.apply(obj))

    def test_idempotent(self, engine):
        for obj in [(0, 0, 1, 2), (2, 1, 0, 0), (1, 1, 1, 1)]:
            canonical = engine.canonical_form(obj)
            assert engine.canonical_form(canonical) == canonical
            assert engine.is_canonical(canonical)

    def test_is_canonical(self, engine):
        assert engine.is_canonical((1, 0, 0, 0))
        assert not engine.is_canonical((0, 1, 0, 0))

    def test_first_maximum_wins(self, engine):
        """(0,1,0,1) reaches its maximum under shifts 1 and 3."""
        assert engine.to_canonical((0, 1, 0, 1)).k == 1

    def test_round_trip(self, engine):
        obj = (0, 2, 1, 0)
        result = engine.canonical_result(obj)
        assert result.to_canonical.apply(obj) == result.representative
        assert result.from_canonical.apply(result.representative) == obj
        assert engine.from_canonical(obj).apply(engine.canonical_form(obj)) == obj

    def test_equivalence(self, engine):
        assert engine.is_equivalent((0, 0, 1, 2), (1, 2, 0, 0))
        assert not engine.is_equivalent((0, 0, 1, 2), (0, 0, 2, 1))

    def test_explicit_actions_override(self, engine):
        identity_only = [Shift(0, 4)]
        assert engine.canonical_form((0, 0, 0, 1), identity_only) == (0, 0, 0, 1)

    def test_callable_actions(self):
        calls = []

        def actions():
            calls.append(1)
            return [Shift(k, 4) for k in range(4)]

        lazy = CanonicalFormEngine(TUPLE_COMPARE, actions)
        assert calls == []
        assert lazy.canonical_form((0, 1, 0, 0)) == (1, 0, 0, 0)
        assert len(calls) == 1


class TestSubgroupAndOrbit:
    """Test invariant subgroup, orbit and orbit size."""

    def test_invariant_subgroup(self, engine):
        assert [a.k for a in engine.invariant_subgroup((0, 1, 0, 1))] == [0, 2]

    def test_orbit_greatest_first(self, engine):
        assert engine.orbit((0, 0, 0, 1)) == [
            (1, 0, 0, 0), (0, 1, 0, 0), (0, 0, 1, 0), (0, 0, 0, 1)]

    def test_orbit_distinct(self, engine):
        assert engine.orbit((1, 1, 1, 1)) == [(1, 1, 1, 1)]

    @pytest.mark.parametrize("obj", [(0, 0, 0, 1), (0, 1, 0, 1), (2, 2, 2, 2)])
    def test_orbit_stabilizer(self, engine, obj):
        stabilizer = StabilizerComputer(engine)
        n_stab = len(stabilizer.invariant_subgroup(obj))
        assert n_stab * len(engine.orbit(obj)) == 4
        assert stabilizer.orbit_size(obj) == len(engine.orbit(obj))


class TestEmptyRange:
    """Test that a missing identity is a precondition failure."""

    def test_empty_range_raises(self):
        engine = CanonicalFormEngine(TUPLE_COMPARE, [])
        with pytest.raises(InvariantViolation):
            engine.canonical_form((0, 1))

    def test_no_range_raises(self):
        engine = CanonicalFormEngine(TUPLE_COMPARE)
        with pytest.raises(InvariantViolation):
            engine.is_canonical((0, 1))

    def test_empty_override_raises(self, engine):
        with pytest.raises(InvariantViolation):
            engine.invariant_subgroup((0, 1, 0, 1), [])


class TestMemoizedCanonicalForm:
    """Test the explicit cache of canonical results."""

    def test_hits_and_misses(self, engine):
        memo = MemoizedCanonicalForm(engine)
        assert memo((0, 0, 0, 1)) == (1, 0, 0, 0)
        assert memo((0, 0, 0, 1)) == (1, 0, 0, 0)
        assert (memo.hits, memo.misses) == (1, 1)
        assert len(memo) == 1

    def test_bind_same_identity_keeps_cache(self, engine):
        memo = MemoizedCanonicalForm(engine)
        memo.bind("cell-a")
        memo((0, 0, 0, 1))
        memo.bind("cell-a")
        assert len(memo) == 1

    def test_bind_new_identity_clears_cache(self, engine):
        memo = MemoizedCanonicalForm(engine)
        memo.bind("cell-a")
        memo((0, 0, 0, 1))
        memo.bind("cell-b")
        assert len(memo) == 0

    def test_invalidate(self, engine):
        memo = MemoizedCanonicalForm(engine)
        memo((0, 0, 0, 1))
        memo.invalidate()
        assert len(memo) == 0


# =============================================================================
# CRYSTAL MODES
# =============================================================================

class TestGlobalMode:
    """Test canonical supercells under the cubic point group."""

    def test_canonical_supercell(self, cubic_prim):
        engine = global_canonicalizer(cubic_prim.factor_group)
        scel = cubic_prim.supercell(np.diag([1, 1, 2]))
        canonical = engine.canonical_form(scel)
        assert canonical == cubic_prim.supercell(np.diag([2, 1, 1]))
        assert engine.is_canonical(canonical)
        assert not engine.is_canonical(scel)

    def test_round_trip(self, cubic_prim):
        engine = global_canonicalizer(cubic_prim.factor_group)
        scel = cubic_prim.supercell(np.diag([1, 2, 1]))
        result = engine.canonical_result(scel)
        assert result.from_canonical.apply(result.representative) == scel

    def test_equivalent_superlattices(self, cubic_prim):
        engine = global_canonicalizer(cubic_prim.factor_group)
        assert engine.is_equivalent(cubic_prim.supercell(np.diag([1, 1, 2])),
                                    cubic_prim.supercell(np.diag([1, 2, 1])))
        assert not engine.is_equivalent(cubic_prim.supercell(np.diag([2, 1, 1])),
                                        cubic_prim.supercell(np.diag([2, 2, 1])))


class TestLocalMode:
    """Test canonical configurations within one supercell."""

    def test_necklace_orbits(self, chain4):
        engine = local_canonicalizer(chain4)
        for necklace in NECKLACES:
            forms = {engine.canonical_form(config_from_digits(chain4, r))
                     for r in rotations(necklace)}
            assert len(forms) == 1

    def test_canonical_is_lexicographic_maximum(self, chain4):
        engine = local_canonicalizer(chain4)
        canonical = engine.canonical_form(config_from_digits(chain4, "0012"))
        assert canonical.occupation == (2, 0, 0, 1)

    def test_round_trip(self, chain4):
        engine = local_canonicalizer(chain4)
        config = config_from_digits(chain4, "0120")
        canonical = engine.canonical_form(config)
        assert engine.from_canonical(config).apply(canonical) == config

    def test_orbit_stabilizer_cubic(self, cubic_prim):
        """One B in a 2×2×2 cube: 8 positions, 48 point operations fix each."""
        scel = cubic_prim.supercell(np.diag([2, 2, 2]))
        engine = local_canonicalizer(scel)
        occupation = [0] * scel.n_sites
        occupation[0] = 1
        config = Configuration(scel, occupation)

        assert len(scel.permutations) == 48 * 8
        stabilizer = StabilizerComputer(engine)
        assert len(stabilizer.invariant_subgroup(config)) == 48
        assert stabilizer.orbit_size(config) == 8
        assert len(engine.orbit(config)) == 8

    def test_compare_is_occupation_order(self, chain4):
        a = config_from_digits(chain4, "0100")
        b = config_from_digits(chain4, "1000")
        assert CONFIGURATION_COMPARE.less(a, b)
