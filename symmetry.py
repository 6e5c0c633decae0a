"""
Symmetry operations in fractional coordinates.

A SymOp maps a fractional row vector x to x @ S + tau, with S an integer
unimodular matrix. Groups are supplied by the caller; this module only
provides the operation type and a small catalogue of cubic groups used by
the prim library, tests and demos.
"""

from __future__ import annotations

import itertools
from typing import List, Optional, Sequence

import numpy as np

from hnf_tools import integer_matrix_inverse


TOL = 1e-5


class SymOp:
    """Space-group operation x -> x @ rotation + translation (fractional)."""

    __slots__ = ("rotation", "translation", "label")

    def __init__(self, rotation, translation=None, label: Optional[str] = None):
        rot = np.asarray(rotation)
        if rot.shape != (3, 3):
            raise ValueError(f"Rotation must be 3×3, got shape {rot.shape}")
        if not np.allclose(rot, np.rint(rot)):
            raise ValueError("Rotation must be an integer matrix in fractional coordinates")
        self.rotation = np.rint(rot).astype(np.int64)
        if translation is None:
            translation = np.zeros(3)
        self.translation = np.asarray(translation, dtype=float).reshape(3)
        self.label = label

    @classmethod
    def identity(cls) -> 'SymOp':
        return cls(np.eye(3, dtype=np.int64), np.zeros(3), label="E")

    @classmethod
    def pure_translation(cls, t) -> 'SymOp':
        return cls(np.eye(3, dtype=np.int64), t)

    def apply(self, target):
        """Apply to a point (array) or to any object with copy_apply()."""
        if hasattr(target, "copy_apply"):
            return target.copy_apply(self)
        x = np.asarray(target, dtype=float)
        return x @ self.rotation + self.translation

    def __mul__(self, other: 'SymOp') -> 'SymOp':
        """Composition: (self * other).apply(x) == self.apply(other.apply(x))."""
        rot = other.rotation @ self.rotation
        trans = other.translation @ self.rotation + self.translation
        return SymOp(rot, trans)

    def inverse(self) -> 'SymOp':
        inv = integer_matrix_inverse(self.rotation)
        return SymOp(inv, -self.translation @ inv)

    def is_identity(self) -> bool:
        return self == SymOp.identity()

    def __eq__(self, other):
        if not isinstance(other, SymOp):
            return NotImplemented
        if not np.array_equal(self.rotation, other.rotation):
            return False
        # Translations compared modulo lattice vectors
        d = self.translation - other.translation
        return bool(np.allclose(d, np.rint(d), atol=TOL))

    def __hash__(self):
        t = np.round(np.mod(self.translation, 1.0), 4) % 1.0
        return hash((self.rotation.tobytes(), tuple(t)))

    def __repr__(self):
        name = f" {self.label}" if self.label else ""
        return (f"SymOp({self.rotation.tolist()}, "
                f"t={np.round(self.translation, 4).tolist()}{name})")


# ─────────────────────────────────────────────────────────────────────────────
# Group catalogue
# ─────────────────────────────────────────────────────────────────────────────

def identity_group() -> List[SymOp]:
    """Trivial group (triclinic P1)."""
    return [SymOp.identity()]


def cubic_point_group() -> List[SymOp]:
    """
    The 48 operations of m-3m for a cubic lattice in fractional coordinates.

    These are the signed permutation matrices; identity is first.
    """
    ops = []
    for perm in itertools.permutations(range(3)):
        for signs in itertools.product((1, -1), repeat=3):
            R = np.zeros((3, 3), dtype=np.int64)
            for i, (j, s) in enumerate(zip(perm, signs)):
                R[i, j] = s
            ops.append(SymOp(R))
    ops.sort(key=lambda op: not op.is_identity())
    return ops


def centered_factor_group(point_group: Sequence[SymOp],
                          centering: Sequence[Sequence[float]]) -> List[SymOp]:
    """
    Factor group of a centred conventional cell: every point operation
    combined with every centring translation (identity stays first).
    """
    ops = []
    for t in centering:
        for op in point_group:
            ops.append(SymOp(op.rotation, op.translation + np.asarray(t, dtype=float)))
    return ops


def is_closed(group: Sequence[SymOp]) -> bool:
    """True if the set of operations is closed under composition."""
    members = set(group)
    return all((a * b) in members for a in group for b in group)
