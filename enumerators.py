"""
Enumerators: lazy, finite generators of supercells and configurations.

Each enumerator may declare `guaranteed_for_database_insert = True` when
every object it yields is already canonical and ready for insertion; the
pipeline then skips canonicalization. Types that cannot carry the attribute
can be registered with register_guaranteed().
"""

from __future__ import annotations

import itertools
from typing import Dict, Iterable, Iterator, List, Union

from canonical_form import global_canonicalizer, local_canonicalizer
from crystal import ConfigEnumInput, Configuration, Prim, Supercell
from errors import InvalidInput
from hnf_tools import enumerate_diagonal_hnf, enumerate_hnf


_GUARANTEED: Dict[type, bool] = {}


def register_guaranteed(generator_type: type, guaranteed: bool = True) -> None:
    """Declare whether every object a generator type yields is database-ready."""
    _GUARANTEED[generator_type] = guaranteed


def is_guaranteed_for_database_insert(generator) -> bool:
    """
    True if the generator promises canonical, database-ready output.

    The generator's own `guaranteed_for_database_insert` attribute wins,
    then the type registry; unknown generators are not trusted.
    """
    flag = getattr(generator, 'guaranteed_for_database_insert', None)
    if flag is not None:
        return bool(flag)
    for cls in type(generator).__mro__:
        if cls in _GUARANTEED:
            return _GUARANTEED[cls]
    return False


class SupercellEnumerator:
    """
    Symmetrically distinct supercells of a prim, by increasing volume.

    Every HNF of each volume is tested for canonicity under the prim factor
    group, so each orbit of superlattices yields exactly its canonical
    member.
    """

    guaranteed_for_database_insert = True

    def __init__(self, prim: Prim, min_volume: int = 1, max_volume: int = 1,
                 diagonal_only: bool = False):
        if min_volume < 1:
            raise InvalidInput(f"min_volume must be >= 1, got {min_volume}")
        if max_volume < min_volume:
            raise InvalidInput(f"max_volume={max_volume} < min_volume={min_volume}")
        self.prim = prim
        self.min_volume = min_volume
        self.max_volume = max_volume
        self.diagonal_only = diagonal_only
        self.engine = global_canonicalizer(prim.factor_group, name=f"{prim.title} supercells")

    def __iter__(self) -> Iterator[Supercell]:
        for volume in range(self.min_volume, self.max_volume + 1):
            if self.diagonal_only:
                seen = set()
                for H in enumerate_diagonal_hnf(volume):
                    canonical = self.engine.canonical_form(self.prim.supercell(H))
                    if canonical.key not in seen:
                        seen.add(canonical.key)
                        yield canonical
            else:
                for H in enumerate_hnf(volume):
                    scel = self.prim.supercell(H)
                    if self.engine.is_canonical(scel):
                        yield scel


class ConfigEnumAllOccupations:
    """
    Every occupation of the selected sites (others keep their starting
    values), one per orbit of the input's symmetry group.

    The output is canonical within its supercell but is neither reduced to
    the primitive cell nor placed in the canonical supercell, so it still
    needs make_canonical_and_insert.
    """

    guaranteed_for_database_insert = False

    def __init__(self, enum_input: Union[ConfigEnumInput, Supercell, Configuration]):
        if isinstance(enum_input, Supercell):
            enum_input = ConfigEnumInput.from_supercell(enum_input)
        elif isinstance(enum_input, Configuration):
            enum_input = ConfigEnumInput(enum_input)
        elif not isinstance(enum_input, ConfigEnumInput):
            raise InvalidInput(f"Cannot enumerate occupations from {enum_input!r}")
        self.input = enum_input
        self.sites = sorted(enum_input.sites)

    def __iter__(self) -> Iterator[Configuration]:
        scel = self.input.supercell
        group = self.input.group()
        engine = local_canonicalizer(scel)
        occupants = scel.prim.occupants
        base = list(self.input.configuration.occupation)
        choices = [range(len(occupants[scel.site_sublattice[l]])) for l in self.sites]

        for values in itertools.product(*choices):
            occ = list(base)
            for l, x in zip(self.sites, values):
                occ[l] = x
            config = Configuration(scel, occ)
            if engine.is_canonical(config, group):
                yield config


class ListEnumerator:
    """Replays an explicit sequence of objects."""

    def __init__(self, objects: Iterable, guaranteed: bool = False):
        self.objects: List = list(objects)
        self.guaranteed_for_database_insert = guaranteed

    def __iter__(self):
        return iter(self.objects)

    def __len__(self):
        return len(self.objects)


def make_occupation_enumerator(name: str, enum_input) -> ConfigEnumAllOccupations:
    """Generator factory for enumerate_configurations: (name, input) -> enumerator."""
    if enum_input is None:
        raise InvalidInput(f"No input for {name}")
    return ConfigEnumAllOccupations(enum_input)


def make_supercell_enumerator(prim: Prim):
    """Generator factory for enumerate_supercells; input is (min_volume, max_volume)."""
    def factory(name: str, volumes) -> SupercellEnumerator:
        try:
            min_volume, max_volume = volumes
        except (TypeError, ValueError):
            raise InvalidInput(f"{name}: expected (min_volume, max_volume), got {volumes!r}")
        return SupercellEnumerator(prim, int(min_volume), int(max_volume))
    return factory
