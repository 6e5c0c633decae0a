"""
Crystal objects acted on by the canonical-form engine.

- Prim: lattice, basis, allowed occupants and the (supplied) factor group
- Supercell: a superlattice of the prim, stored as its HNF
- ScelPermutation: a site permutation of one supercell (local action)
- Configuration: an occupation of every site of a supercell
- ConfigEnumInput: a configuration plus the sites selected for enumeration

Sites are indexed sublattice-major: l = b * volume + j, where j is the
unit-cell index (see hnf_tools.unit_cell_index).
"""

from __future__ import annotations

from functools import cached_property
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from canonical_form import (
    CanonicalFormEngine,
    KeyCompare,
    StabilizerComputer,
)
from errors import InvalidInput
from hnf_tools import (
    enumerate_unit_cells,
    hermite_normal_form,
    hnf_from_key,
    hnf_key,
    reduce_translation,
    supercell_name,
    unit_cell_index,
)
from symmetry import (
    SymOp,
    TOL,
    centered_factor_group,
    cubic_point_group,
    identity_group,
)


def _wrap(frac: np.ndarray, tol: float = TOL) -> np.ndarray:
    """Map fractional coordinates into [0, 1), snapping values near 1 to 0."""
    w = np.mod(np.asarray(frac, dtype=float), 1.0)
    w[w > 1.0 - tol] = 0.0
    return w


# =============================================================================
# Prim
# =============================================================================

class Prim:
    """
    Primitive structure.

    Args:
        lattice: 3×3, rows are lattice vectors
        basis: fractional coordinates of the basis sites
        occupants: allowed species on each basis site
        factor_group: symmetry operations (fractional coordinates); the first
                      must be the identity. Defaults to the trivial group.
        title: name used in reports
    """

    def __init__(self, lattice, basis, occupants: Sequence[Sequence[str]],
                 factor_group: Optional[Sequence[SymOp]] = None,
                 title: str = "prim", tol: float = TOL):
        self.lattice = np.asarray(lattice, dtype=float)
        if self.lattice.shape != (3, 3) or abs(np.linalg.det(self.lattice)) < tol:
            raise InvalidInput(f"Lattice must be a non-singular 3×3 matrix: {lattice}")

        self.basis = np.asarray(basis, dtype=float).reshape(-1, 3)
        if len(self.basis) == 0:
            raise InvalidInput("Prim needs at least one basis site")

        self.occupants = [list(o) for o in occupants]
        if len(self.occupants) != len(self.basis):
            raise InvalidInput(
                f"{len(self.occupants)} occupant lists for {len(self.basis)} basis sites")
        if any(len(o) == 0 for o in self.occupants):
            raise InvalidInput("Every basis site needs at least one allowed occupant")

        self.factor_group = list(factor_group) if factor_group is not None else identity_group()
        if not self.factor_group or not self.factor_group[0].is_identity():
            raise InvalidInput("Factor group must start with the identity operation")

        self.title = title
        self.tol = tol
        self._tree = cKDTree(_wrap(self.basis, tol), boxsize=1.0)
        self._supercells = {}

    @property
    def n_basis(self) -> int:
        return len(self.basis)

    def supercell(self, transformation_matrix) -> 'Supercell':
        """
        Supercell of this prim, one shared instance per superlattice.

        Sharing the instance shares its lazily built site permutations.
        """
        scel = Supercell(self, transformation_matrix)
        return self._supercells.setdefault(scel.key, scel)

    def find_basis(self, coords) -> Tuple[np.ndarray, np.ndarray]:
        """
        Locate basis sites for fractional coordinates.

        Returns (b, n) arrays with coords = basis[b] + n, n integer.

        Raises:
            ValueError: if a coordinate is not the image of a basis site
        """
        coords = np.atleast_2d(np.asarray(coords, dtype=float))
        dist, b = self._tree.query(_wrap(coords, self.tol))
        if np.any(dist > self.tol):
            bad = coords[np.argmax(dist)]
            raise ValueError(f"No basis site at fractional coordinate {bad}")
        n = np.rint(coords - self.basis[b]).astype(np.int64)
        return b, n

    def __repr__(self):
        return f"Prim({self.title!r}, n_basis={self.n_basis}, |G|={len(self.factor_group)})"


# Bravais lattice catalogue: (basis, centring translations) of conventional cells
_CUBIC_CELLS = {
    'cubic_P': [(0, 0, 0)],
    'cubic_I': [(0, 0, 0), (0.5, 0.5, 0.5)],
    'cubic_F': [(0, 0, 0), (0.5, 0.5, 0), (0.5, 0, 0.5), (0, 0.5, 0.5)],
}


def make_prim(lattice_type: str, occupants: Sequence[str], a: float = 1.0,
              lattice=None, title: Optional[str] = None) -> Prim:
    """
    Build a one-species-list prim for a catalogue lattice.

    Args:
        lattice_type: 'cubic_P', 'cubic_I', 'cubic_F' (conventional cells
                      with their full factor group) or 'triclinic_P'
                      (trivial group)
        occupants: species allowed on every site
        a: lattice constant for the cubic cells
        lattice: explicit 3×3 lattice for 'triclinic_P'
    """
    if lattice_type in _CUBIC_CELLS:
        centering = _CUBIC_CELLS[lattice_type]
        factor_group = centered_factor_group(cubic_point_group(), centering)
        return Prim(np.eye(3) * a, centering, [occupants] * len(centering),
                    factor_group, title=title or lattice_type)

    if lattice_type == 'triclinic_P':
        if lattice is None:
            lattice = np.diag([1.0, 1.2, 1.5]) * a
        return Prim(lattice, [(0, 0, 0)], [occupants], identity_group(),
                    title=title or lattice_type)

    raise InvalidInput(f"Unknown lattice type: {lattice_type}")


# =============================================================================
# Supercell
# =============================================================================

class Supercell:
    """
    Superlattice of a prim, stored in Hermite Normal Form.

    Two Supercell instances are equal when they share the prim and the HNF.
    Site permutations are built lazily and kept on the instance.
    """

    def __init__(self, prim: Prim, transformation_matrix):
        self.prim = prim
        self.hnf = hermite_normal_form(transformation_matrix)
        self.volume = int(self.hnf[0, 0] * self.hnf[1, 1] * self.hnf[2, 2])
        self.key = hnf_key(self.hnf)
        self.name = supercell_name(self.hnf)

    @classmethod
    def from_key(cls, prim: Prim, key) -> 'Supercell':
        return prim.supercell(hnf_from_key(key))

    @property
    def n_sites(self) -> int:
        return self.prim.n_basis * self.volume

    @property
    def lattice(self) -> np.ndarray:
        """Cartesian superlattice vectors (rows)."""
        return self.hnf @ self.prim.lattice

    @cached_property
    def unit_cells(self) -> np.ndarray:
        return enumerate_unit_cells(self.hnf)

    @cached_property
    def site_sublattice(self) -> np.ndarray:
        return np.repeat(np.arange(self.prim.n_basis), self.volume)

    @cached_property
    def site_coordinates(self) -> np.ndarray:
        """Fractional coordinates (prim units) of every site."""
        cells = np.tile(self.unit_cells, (self.prim.n_basis, 1))
        return self.prim.basis[self.site_sublattice] + cells

    def site_index(self, b: int, unit_cell) -> int:
        v = reduce_translation(unit_cell, self.hnf)
        return b * self.volume + unit_cell_index(v, self.hnf)

    def site_image(self, op: SymOp, target: Optional['Supercell'] = None) -> np.ndarray:
        """
        Index in `target` (default: self) of the image of every site under op.

        `target` must be the superlattice self.hnf @ op.rotation.
        """
        if target is None:
            target = self
        y = self.site_coordinates @ op.rotation + op.translation
        b, n = self.prim.find_basis(y)
        cells = reduce_translation(n, target.hnf)
        return b * target.volume + unit_cell_index(cells, target.hnf)

    def is_supercell_of(self, other: 'Supercell') -> bool:
        """True if this superlattice is a sublattice of other's."""
        if other.prim is not self.prim:
            return False
        return not np.any(reduce_translation(self.hnf, other.hnf))

    def copy_apply(self, op: SymOp) -> 'Supercell':
        """Superlattice rotated by op, re-reduced to HNF."""
        return self.prim.supercell(self.hnf @ op.rotation)

    @cached_property
    def factor_group(self) -> List[SymOp]:
        """Prim operations that leave the superlattice invariant."""
        return [op for op in self.prim.factor_group
                if np.array_equal(hermite_normal_form(self.hnf @ op.rotation), self.hnf)]

    @cached_property
    def translation_permutations(self) -> List['ScelPermutation']:
        perms = []
        for u in self.unit_cells:
            op = SymOp.pure_translation(u)
            perms.append(ScelPermutation(self, self.site_image(op), op))
        return perms

    @cached_property
    def permutations(self) -> List['ScelPermutation']:
        """
        Every site permutation: factor group op followed by a translation.

        Ordered factor group outer, translation inner; the identity is first.
        """
        perms = []
        for op in self.factor_group:
            op_perm = self.site_image(op)
            for trans in self.translation_permutations:
                perms.append(ScelPermutation(
                    self, trans.perm[op_perm], trans.sym_op * op))
        return perms

    def __eq__(self, other):
        if not isinstance(other, Supercell):
            return NotImplemented
        return self.prim is other.prim and self.key == other.key

    def __hash__(self):
        return hash((id(self.prim), self.key))

    def __repr__(self):
        return f"Supercell({self.name})"


# =============================================================================
# Site permutations
# =============================================================================

class ScelPermutation:
    """
    Site permutation of one supercell: the value on site l moves to perm[l].

    `sym_op` is the space-group operation that generated it.
    """

    __slots__ = ("supercell", "perm", "sym_op")

    def __init__(self, supercell: Supercell, perm, sym_op: Optional[SymOp] = None):
        self.supercell = supercell
        self.perm = np.asarray(perm, dtype=np.int64)
        self.sym_op = sym_op if sym_op is not None else SymOp.identity()

    def apply(self, target):
        return target.permute(self)

    def inverse(self) -> 'ScelPermutation':
        inv = np.empty_like(self.perm)
        inv[self.perm] = np.arange(len(self.perm))
        return ScelPermutation(self.supercell, inv, self.sym_op.inverse())

    def __mul__(self, other: 'ScelPermutation') -> 'ScelPermutation':
        """(self * other).apply(x) == self.apply(other.apply(x))"""
        return ScelPermutation(self.supercell, self.perm[other.perm],
                               self.sym_op * other.sym_op)

    def is_identity(self) -> bool:
        return bool(np.array_equal(self.perm, np.arange(len(self.perm))))

    def __eq__(self, other):
        if not isinstance(other, ScelPermutation):
            return NotImplemented
        return (self.supercell == other.supercell
                and np.array_equal(self.perm, other.perm))

    def __hash__(self):
        return hash(self.perm.tobytes())

    def __repr__(self):
        return f"ScelPermutation({self.supercell.name}, {self.perm.tolist()})"


# =============================================================================
# Configuration
# =============================================================================

class Configuration:
    """
    Occupation of every site of a supercell.

    occupation[l] indexes into prim.occupants[b] for the sublattice b of
    site l. Configurations are values: every operation returns a new one.
    """

    __slots__ = ("supercell", "occupation")

    def __init__(self, supercell: Supercell, occupation: Optional[Iterable[int]] = None):
        self.supercell = supercell
        if occupation is None:
            occupation = [0] * supercell.n_sites
        occupation = tuple(int(x) for x in occupation)
        if len(occupation) != supercell.n_sites:
            raise InvalidInput(
                f"Occupation has {len(occupation)} values for {supercell.n_sites} sites")
        n_allowed = [len(o) for o in supercell.prim.occupants]
        for l, (b, x) in enumerate(zip(supercell.site_sublattice, occupation)):
            if not 0 <= x < n_allowed[b]:
                raise InvalidInput(f"Occupation {x} not allowed on site {l}")
        self.occupation = occupation

    @classmethod
    def _trusted(cls, supercell: Supercell, occupation) -> 'Configuration':
        # occupation already validated (a permutation of a valid one)
        config = cls.__new__(cls)
        config.supercell = supercell
        config.occupation = tuple(int(x) for x in occupation)
        return config

    @classmethod
    def from_species(cls, supercell: Supercell, species: Sequence[str]) -> 'Configuration':
        occupants = supercell.prim.occupants
        try:
            occ = [occupants[b].index(s) for b, s in zip(supercell.site_sublattice, species)]
        except ValueError as e:
            raise InvalidInput(f"Species not allowed: {e}") from e
        return cls(supercell, occ)

    def species(self) -> List[str]:
        occupants = self.supercell.prim.occupants
        return [occupants[b][x] for b, x in zip(self.supercell.site_sublattice, self.occupation)]

    def permute(self, perm: ScelPermutation) -> 'Configuration':
        if perm.supercell != self.supercell:
            raise ValueError(
                f"Permutation of {perm.supercell.name} applied to configuration "
                f"in {self.supercell.name}")
        occ = np.empty(len(self.occupation), dtype=np.int64)
        occ[perm.perm] = self.occupation
        return Configuration._trusted(self.supercell, occ)

    def copy_apply(self, op: SymOp) -> 'Configuration':
        """Configuration transformed by a prim operation (may change supercell)."""
        target = self.supercell.copy_apply(op)
        image = self.supercell.site_image(op, target)
        occ = np.empty(len(self.occupation), dtype=np.int64)
        occ[image] = self.occupation
        return Configuration._trusted(target, occ)

    def invariant_translations(self) -> List[np.ndarray]:
        """Unit-cell translations that leave the occupation unchanged."""
        scel = self.supercell
        return [u for u, t in zip(scel.unit_cells, scel.translation_permutations)
                if self.permute(t).occupation == self.occupation]

    def is_primitive(self) -> bool:
        return len(self.invariant_translations()) == 1

    def primitive(self) -> 'Configuration':
        """Same occupation pattern in the smallest supercell that repeats it."""
        translations = self.invariant_translations()
        if len(translations) == 1:
            return self
        H = hermite_normal_form(np.vstack([self.supercell.hnf] + translations))
        return self._values_on(self.supercell.prim.supercell(H))

    def fill_supercell(self, supercell: Supercell) -> 'Configuration':
        """Tile this configuration into a larger supercell of the same prim."""
        if not supercell.is_supercell_of(self.supercell):
            raise ValueError(f"{supercell.name} is not a supercell of {self.supercell.name}")
        return self._values_on(supercell)

    def _values_on(self, supercell: Supercell) -> 'Configuration':
        cells = reduce_translation(np.tile(supercell.unit_cells, (supercell.prim.n_basis, 1)),
                                   self.supercell.hnf)
        src = (supercell.site_sublattice * self.supercell.volume
               + unit_cell_index(cells, self.supercell.hnf))
        occ = np.asarray(self.occupation, dtype=np.int64)[src]
        return Configuration._trusted(supercell, occ)

    def __eq__(self, other):
        if not isinstance(other, Configuration):
            return NotImplemented
        return self.supercell == other.supercell and self.occupation == other.occupation

    def __hash__(self):
        return hash((self.supercell, self.occupation))

    def __repr__(self):
        occ = "".join(str(x) for x in self.occupation) if self.supercell.n_sites <= 32 \
            else f"{self.supercell.n_sites} sites"
        return f"Configuration({self.supercell.name}, {occ})"


# =============================================================================
# Enumeration input
# =============================================================================

def _enum_input_key(enum_input: 'ConfigEnumInput'):
    return (enum_input.configuration.occupation, tuple(sorted(enum_input.sites)))


ENUM_INPUT_COMPARE = KeyCompare(_enum_input_key)


class ConfigEnumInput:
    """
    Starting configuration plus the sites selected for enumeration.

    Sites default to every site of the supercell.
    """

    def __init__(self, configuration: Configuration, sites: Optional[Iterable[int]] = None):
        self.configuration = configuration
        n_sites = configuration.supercell.n_sites
        if sites is None:
            sites = range(n_sites)
        self.sites = frozenset(int(s) for s in sites)
        if not self.sites:
            raise InvalidInput("No sites selected for enumeration")
        bad = [s for s in self.sites if not 0 <= s < n_sites]
        if bad:
            raise InvalidInput(f"Selected sites out of range [0, {n_sites}): {sorted(bad)}")

    @classmethod
    def from_supercell(cls, supercell: Supercell, sites=None) -> 'ConfigEnumInput':
        return cls(Configuration(supercell), sites)

    @property
    def supercell(self) -> Supercell:
        return self.configuration.supercell

    def permute(self, perm: ScelPermutation) -> 'ConfigEnumInput':
        return ConfigEnumInput(self.configuration.permute(perm),
                               (int(perm.perm[s]) for s in self.sites))

    def group(self) -> List[ScelPermutation]:
        """Supercell permutations leaving both the configuration and the site set unchanged."""
        engine = CanonicalFormEngine(ENUM_INPUT_COMPARE, self.supercell.permutations,
                                     name=f"input {self.supercell.name}")
        return StabilizerComputer(engine).invariant_subgroup(self)

    def __repr__(self):
        return f"ConfigEnumInput({self.supercell.name}, n_sites={len(self.sites)})"
