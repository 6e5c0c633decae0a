"""
CANONICAL FORM ENGINE
=====================

Reduce an object to the single representative of its symmetry orbit.

Given an object o, a range of actions A (each with apply() and inverse())
and a strict total order `less`, the canonical form is

    max{ a.apply(o) : a in A }

found with a linear scan, the first maximal image winning ties. The same
skeleton answers every symmetry query:

    is_canonical        none_of(less(o, a.apply(o)))
    canonical_form      max_element over the orbit
    to_canonical        the action achieving the maximum
    from_canonical      to_canonical(...).inverse()
    invariant_subgroup  copy_if(equal(a.apply(o), o))

The engine works in two modes which differ only in the action range and the
comparator (see global_canonicalizer / local_canonicalizer):

- Global: actions are space-group operations; the comparator orders objects
  living on different cells (e.g. supercells under the point group).
- Local: actions are the site permutations of one fixed supercell; the
  comparator orders configurations within that supercell.

An empty action range is a precondition failure (the identity must always
be present) and raises InvariantViolation.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional

from errors import InvariantViolation


# ─────────────────────────────────────────────────────────────────────────────
# Comparators
# ─────────────────────────────────────────────────────────────────────────────

class KeyCompare:
    """Strict total order from a key function (keys must be totally ordered)."""

    def __init__(self, key: Callable[[Any], Any], name: str = ""):
        self.key = key
        self.name = name or getattr(key, "__name__", "key")

    def less(self, a, b) -> bool:
        return self.key(a) < self.key(b)

    def equal(self, a, b) -> bool:
        return self.key(a) == self.key(b)

    def __repr__(self):
        return f"KeyCompare({self.name})"


def supercell_order_key(scel):
    """Supercells order by HNF key; comparable across different superlattices."""
    return scel.key


def occupation_order_key(config):
    """Configurations in one supercell order lexicographically by occupation."""
    return config.occupation


SUPERCELL_COMPARE = KeyCompare(supercell_order_key)
CONFIGURATION_COMPARE = KeyCompare(occupation_order_key)


# ─────────────────────────────────────────────────────────────────────────────
# Result type
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CanonicalResult:
    """Canonical representative plus the actions mapping to and from it."""
    representative: Any
    to_canonical: Any
    from_canonical: Any


# ─────────────────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────────────────

class CanonicalFormEngine:
    """
    Generic canonical-form algorithm over a range of actions.

    Args:
        compare: object with less(a, b) and equal(a, b)
        actions: default action range; either an iterable or a zero-argument
                 callable returning a fresh iterable (re-evaluated each call)
        name: label used in error messages
    """

    def __init__(self, compare, actions=None, name: str = "canonical form"):
        self.compare = compare
        self._actions = actions
        self.name = name

    def actions(self, actions=None) -> List[Any]:
        """Materialize the action range for one call."""
        if actions is None:
            actions = self._actions
        if actions is None:
            raise InvariantViolation(f"{self.name}: no action range supplied")
        if callable(actions):
            actions = actions()
        actions = list(actions)
        if not actions:
            raise InvariantViolation(
                f"{self.name}: empty action range (identity must be present)")
        return actions

    def _max_element(self, obj, actions):
        best_action = None
        best = None
        for action in self.actions(actions):
            image = action.apply(obj)
            # strict less: the first maximal image wins
            if best is None or self.compare.less(best, image):
                best, best_action = image, action
        return best, best_action

    def canonical_result(self, obj, actions=None) -> CanonicalResult:
        """Canonical form, to_canonical and from_canonical in one scan."""
        best, best_action = self._max_element(obj, actions)
        return CanonicalResult(best, best_action, best_action.inverse())

    def to_canonical(self, obj, actions=None):
        """First action whose image of obj is maximal."""
        return self._max_element(obj, actions)[1]

    def from_canonical(self, obj, actions=None):
        return self.to_canonical(obj, actions).inverse()

    def canonical_form(self, obj, actions=None):
        return self.to_canonical(obj, actions).apply(obj)

    def is_canonical(self, obj, actions=None) -> bool:
        less = self.compare.less
        return not any(less(obj, a.apply(obj)) for a in self.actions(actions))

    def is_equivalent(self, obj_a, obj_b, actions=None) -> bool:
        """
        True if both objects have the same canonical form.

        Both objects must be acted on by the same range.
        """
        actions = self.actions(actions)
        return self.compare.equal(self.canonical_form(obj_a, actions),
                                  self.canonical_form(obj_b, actions))

    def invariant_subgroup(self, obj, actions=None) -> List[Any]:
        """Actions leaving obj equal (not merely equivalent) to itself."""
        equal = self.compare.equal
        return [a for a in self.actions(actions) if equal(a.apply(obj), obj)]

    def orbit(self, obj, actions=None) -> List[Any]:
        """Distinct images of obj, greatest first."""
        images = [a.apply(obj) for a in self.actions(actions)]

        def cmp(x, y):
            if self.compare.less(x, y):
                return 1
            if self.compare.less(y, x):
                return -1
            return 0

        images.sort(key=functools.cmp_to_key(cmp))
        distinct = []
        for image in images:
            if not distinct or not self.compare.equal(distinct[-1], image):
                distinct.append(image)
        return distinct

    def __repr__(self):
        return f"CanonicalFormEngine({self.name}, compare={self.compare!r})"


class StabilizerComputer:
    """
    Invariant subgroup queries without a full canonicalization pass.

    Thin view over an engine; holds no state of its own.
    """

    def __init__(self, engine: CanonicalFormEngine):
        self.engine = engine

    def invariant_subgroup(self, obj, actions=None) -> List[Any]:
        return self.engine.invariant_subgroup(obj, actions)

    def orbit_size(self, obj, actions=None) -> int:
        """|actions| / |stabilizer|; valid when the range is a finite group."""
        actions = self.engine.actions(actions)
        return len(actions) // len(self.invariant_subgroup(obj, actions))


# ─────────────────────────────────────────────────────────────────────────────
# Memoization
# ─────────────────────────────────────────────────────────────────────────────

class MemoizedCanonicalForm:
    """
    Explicit cache of canonical results.

    Entries are keyed by key(obj). The cache is bound to the identity of an
    underlying cell (or prim): binding a different identity clears it.
    """

    def __init__(self, engine: CanonicalFormEngine,
                 key: Callable[[Any], Hashable] = lambda obj: obj):
        self.engine = engine
        self.key = key
        self._cache: Dict[Hashable, CanonicalResult] = {}
        self._bound: Optional[Hashable] = None
        self.hits = 0
        self.misses = 0

    def bind(self, identity: Hashable) -> None:
        if identity != self._bound:
            self.invalidate()
            self._bound = identity

    def invalidate(self) -> None:
        self._cache.clear()

    def result(self, obj) -> CanonicalResult:
        k = self.key(obj)
        cached = self._cache.get(k)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        res = self.engine.canonical_result(obj)
        self._cache[k] = res
        return res

    def __call__(self, obj):
        return self.result(obj).representative

    def __len__(self):
        return len(self._cache)


# ─────────────────────────────────────────────────────────────────────────────
# Modes
# ─────────────────────────────────────────────────────────────────────────────

def global_canonicalizer(factor_group: Iterable, compare=SUPERCELL_COMPARE,
                         name: str = "global") -> CanonicalFormEngine:
    """Engine acting with space-group operations on objects of any cell."""
    return CanonicalFormEngine(compare, list(factor_group), name=name)


def local_canonicalizer(supercell, compare=CONFIGURATION_COMPARE,
                        name: Optional[str] = None) -> CanonicalFormEngine:
    """
    Engine acting with the site permutations of one supercell.

    The permutation range is looked up on each call, so it is built lazily
    by the supercell.
    """
    return CanonicalFormEngine(compare, lambda: supercell.permutations,
                               name=name or f"local {supercell.name}")
