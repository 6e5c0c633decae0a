"""
Tests for symmetry operations and the cubic group catalogue.
"""

import numpy as np
import pytest

from symmetry import (
    SymOp,
    centered_factor_group,
    cubic_point_group,
    identity_group,
    is_closed,
)


SWAP_XZ = np.array([[0, 0, 1], [0, 1, 0], [1, 0, 0]])
ROT_Z = np.array([[0, 1, 0], [-1, 0, 0], [0, 0, 1]])


class TestSymOp:
    """Test construction, application, composition and inverse."""

    def test_identity(self):
        op = SymOp.identity()
        assert op.is_identity()
        assert np.allclose(op.apply([0.1, 0.2, 0.3]), [0.1, 0.2, 0.3])

    def test_apply_point(self):
        op = SymOp(SWAP_XZ, [0.5, 0, 0])
        assert np.allclose(op.apply([0.1, 0.2, 0.3]), [0.8, 0.2, 0.1])

    def test_composition(self):
        a = SymOp(ROT_Z, [0.5, 0, 0])
        b = SymOp(SWAP_XZ, [0, 0.25, 0])
        x = np.array([0.1, 0.2, 0.3])
        assert np.allclose((a * b).apply(x), a.apply(b.apply(x)))

    def test_inverse(self):
        op = SymOp(ROT_Z, [0.5, 0.25, 0])
        assert (op * op.inverse()).is_identity()
        assert (op.inverse() * op).is_identity()

    def test_translation_equal_modulo_lattice(self):
        assert SymOp.pure_translation([1, 0, -2]) == SymOp.identity()
        assert hash(SymOp.pure_translation([1, 0, 0])) == hash(SymOp.identity())

    def test_different_rotation_not_equal(self):
        assert SymOp(SWAP_XZ) != SymOp.identity()

    def test_non_integer_rotation_raises(self):
        with pytest.raises(ValueError):
            SymOp(np.eye(3) * 0.5)

    def test_bad_shape_raises(self):
        with pytest.raises(ValueError):
            SymOp(np.eye(2))


class TestGroupCatalogue:
    """Test the hard-coded groups used by make_prim."""

    def test_identity_group(self):
        group = identity_group()
        assert len(group) == 1
        assert group[0].is_identity()

    def test_cubic_point_group(self):
        group = cubic_point_group()
        assert len(group) == 48
        assert len(set(group)) == 48
        assert group[0].is_identity()
        assert is_closed(group)

    def test_body_centered_factor_group(self):
        group = centered_factor_group(cubic_point_group(),
                                      [(0, 0, 0), (0.5, 0.5, 0.5)])
        assert len(group) == 96
        assert group[0].is_identity()
        assert is_closed(group)

    def test_open_set_detected(self):
        assert not is_closed([SymOp.identity(), SymOp(ROT_Z)])
