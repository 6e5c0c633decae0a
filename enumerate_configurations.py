"""
Deduplicated Enumeration Pipeline
=================================

Drives enumerators batch by batch and inserts what they produce into the
supercell and configuration databases, keeping only one representative per
symmetry orbit.

Outline:
--------
    for (name, input) in batches:
        generator = make_generator(name, input)
        for configuration in generator:
            if filter and not filter(configuration):
                count as filtered; continue
            if generator is guaranteed database-ready:
                insert supercell, insert configuration
            else:
                primitive -> canonical supercell -> canonical occupation, insert
                unless primitive_only: same for the non-primitive configuration
    unless dry_run:
        commit supercell database
        commit configuration database

Usage:
------
    prim = make_prim('cubic_F', ['A', 'B'])
    scel_db = SupercellDatabase(prim)
    config_db = ConfigurationDatabase(scel_db)
    batches = [(scel.name, scel) for scel in SupercellEnumerator(prim, 1, 4)]
    report = enumerate_configurations(
        EnumerationOptions(dry_run=True), make_occupation_enumerator,
        batches, scel_db, config_db)
    print(report.to_dataframe())
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from canonical_form import (
    MemoizedCanonicalForm,
    global_canonicalizer,
    local_canonicalizer,
)
from crystal import Configuration, Prim, Supercell
from database import ConfigurationDatabase, SupercellDatabase
from enumerators import is_guaranteed_for_database_insert
from errors import EnumerationError, InvalidInput, StorageError

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Options
# ─────────────────────────────────────────────────────────────────────────────

VERBOSITY_LEVELS = {'quiet': 0, 'standard': 10, 'verbose': 20, 'debug': 100}


def parse_verbosity(value: Union[str, int]) -> int:
    """Verbosity from a level name or an integer 0..100."""
    if isinstance(value, str):
        try:
            return VERBOSITY_LEVELS[value.lower()]
        except KeyError:
            raise InvalidInput(
                f"Unknown verbosity {value!r}, expected one of {sorted(VERBOSITY_LEVELS)}")
    value = int(value)
    if not 0 <= value <= 100:
        raise InvalidInput(f"Verbosity must be in [0, 100], got {value}")
    return value


@dataclass
class EnumerationOptions:
    """Options controlling one enumeration run."""
    method_name: str = "enumerate_configurations"
    primitive_only: bool = False
    dry_run: bool = False
    verbosity: Union[str, int] = "standard"
    filter: Optional[Callable[[Any], bool]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EnumerationOptions':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InvalidInput(f"Unknown enumeration options: {sorted(unknown)}")
        options = cls(**data)
        parse_verbosity(options.verbosity)
        return options

    @classmethod
    def from_json(cls, path) -> 'EnumerationOptions':
        """Read options from a json file (all keys except 'filter')."""
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidInput(f"Could not parse options file {path}: {e}") from e
        if not isinstance(data, dict):
            raise InvalidInput(f"Options file {path} must contain a json object")
        if 'filter' in data:
            raise InvalidInput("'filter' cannot be read from json; pass a callable")
        return cls.from_dict(data)


# ─────────────────────────────────────────────────────────────────────────────
# Progress output
# ─────────────────────────────────────────────────────────────────────────────

def dry_run_msg(dry_run: bool) -> str:
    return "(dry run) " if dry_run else ""


class ProgressLog:
    """
    Prints enumeration progress.

    Messages at a level above `verbosity` are suppressed; every message of a
    dry run is prefixed with '(dry run) '.
    """

    def __init__(self, stream=None, verbosity: Union[str, int] = "standard",
                 dry_run: bool = False):
        self.stream = stream
        self.verbosity = parse_verbosity(verbosity)
        self.prefix = dry_run_msg(dry_run)

    def _print(self, text: str, level: int = 10, end: str = "\n"):
        if self.verbosity >= level:
            print(text, end=end, file=self.stream or sys.stdout, flush=True)

    def message(self, text: str, level: int = 10, prefix: bool = True):
        self._print((self.prefix if prefix else "") + text, level)

    def begin(self, method_name: str):
        self._print(f"-- {method_name} --")

    def batch_started(self, name: str, kind: str = "configurations"):
        self._print(f"{self.prefix}Enumerate {kind} for {name} ...  ", end="")

    def batch_finished(self, name: str, accepted: int, new: int, filtered: int,
                       kind: str = "configurations"):
        self._print(f"{accepted} {kind} ({new} new, {filtered} excluded by filter).")

    def batch_failed(self, name: str, error: Exception):
        self._print(f"FAILED: {error}")

    def end(self):
        self._print("")


# ─────────────────────────────────────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class BatchResult:
    """Counters for one (name, input) batch."""
    name: str
    accepted: int = 0
    new: int = 0
    filtered: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class EnumerationReport:
    """Run-wide counters."""
    method_name: str
    dry_run: bool
    initial_count: int
    final_count: int = 0
    batches: List[BatchResult] = field(default_factory=list)
    committed: bool = False

    @property
    def new_count(self) -> int:
        return self.final_count - self.initial_count

    @property
    def accepted(self) -> int:
        return sum(b.accepted for b in self.batches)

    @property
    def filtered(self) -> int:
        return sum(b.filtered for b in self.batches)

    @property
    def failed(self) -> List[BatchResult]:
        return [b for b in self.batches if not b.ok]

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(b.name, b.accepted, b.new, b.filtered, b.error) for b in self.batches],
            columns=['name', 'accepted', 'new', 'filtered', 'error'])


# ─────────────────────────────────────────────────────────────────────────────
# Run context
# ─────────────────────────────────────────────────────────────────────────────

class EnumerationContext:
    """
    State shared by every step of one run: the progress log and the cache of
    canonical supercells (bound to one prim at a time).
    """

    def __init__(self, log: Optional[ProgressLog] = None,
                 options: Optional[EnumerationOptions] = None):
        if log is None:
            options = options or EnumerationOptions()
            log = ProgressLog(verbosity=options.verbosity, dry_run=options.dry_run)
        self.log = log
        self._supercell_forms: Optional[MemoizedCanonicalForm] = None
        self._forms_prim: Optional[Prim] = None

    def supercell_canonicalizer(self, prim: Prim) -> MemoizedCanonicalForm:
        """Memoized global-mode canonical forms of supercells of `prim`."""
        if self._forms_prim is not prim:
            engine = global_canonicalizer(prim.factor_group, name=f"{prim.title} supercells")
            if self._supercell_forms is None:
                self._supercell_forms = MemoizedCanonicalForm(engine, key=lambda scel: scel.key)
            else:
                self._supercell_forms.engine = engine
            self._forms_prim = prim
        # cached results are only valid for one prim
        self._supercell_forms.bind(id(prim))
        return self._supercell_forms


# ─────────────────────────────────────────────────────────────────────────────
# Canonical insertion
# ─────────────────────────────────────────────────────────────────────────────

def canonical_configuration(config: Configuration,
                            supercell_forms: Optional[MemoizedCanonicalForm] = None
                            ) -> Configuration:
    """
    Canonical form of a configuration across supercells.

    The configuration is first moved into the canonical equivalent supercell
    (global mode, prim factor group), then reduced to the maximal occupation
    under that supercell's permutations (local mode).
    """
    if supercell_forms is None:
        prim = config.supercell.prim
        supercell_forms = MemoizedCanonicalForm(
            global_canonicalizer(prim.factor_group), key=lambda scel: scel.key)
    moved = config.copy_apply(supercell_forms.result(config.supercell).to_canonical)
    return local_canonicalizer(moved.supercell).canonical_form(moved)


def make_canonical_and_insert(config: Configuration,
                              supercell_db: SupercellDatabase,
                              configuration_db: ConfigurationDatabase,
                              primitive_only: bool = False,
                              context: Optional[EnumerationContext] = None
                              ) -> List[Tuple[str, bool]]:
    """
    Insert the primitive canonical configuration, and unless primitive_only
    the non-primitive canonical configuration when it differs.

    Each supercell is inserted before any configuration referencing it.

    Returns:
        (name, was_new) for each configuration insertion
    """
    forms = context.supercell_canonicalizer(config.supercell.prim) if context else None

    prim_canonical = canonical_configuration(config.primitive(), forms)
    supercell_db.insert(prim_canonical.supercell)
    results = [configuration_db.insert(prim_canonical)]

    if not primitive_only:
        canonical = canonical_configuration(config, forms)
        if canonical != prim_canonical:
            supercell_db.insert(canonical.supercell)
            results.append(configuration_db.insert(canonical))

    return results


def insert_configuration(config: Configuration,
                         supercell_db: SupercellDatabase,
                         configuration_db: ConfigurationDatabase) -> Tuple[str, bool]:
    """Insert a configuration known to be canonical, registering its supercell first."""
    supercell_db.insert(config.supercell)
    return configuration_db.insert(config)


# ─────────────────────────────────────────────────────────────────────────────
# Batch loop
# ─────────────────────────────────────────────────────────────────────────────

def _run_batches(options: EnumerationOptions,
                 make_generator: Callable[[str, Any], Iterable],
                 batches: Iterable[Tuple[str, Any]],
                 counted_db,
                 insert: Callable[[Any, bool], None],
                 context: EnumerationContext,
                 kind: str) -> EnumerationReport:
    log = context.log
    report = EnumerationReport(options.method_name, options.dry_run,
                               initial_count=counted_db.size())

    log.message(f"# {kind} in this project: {report.initial_count}\n")
    log.begin(options.method_name)

    for name, value in batches:
        result = BatchResult(name)
        num_before = counted_db.size()
        log.batch_started(name, kind)
        index = 0
        try:
            generator = make_generator(name, value)
            guaranteed = is_guaranteed_for_database_insert(generator)
            for obj in generator:
                if options.filter is not None and not options.filter(obj):
                    result.filtered += 1
                else:
                    result.accepted += 1
                    insert(obj, guaranteed)
                index += 1
        except InvalidInput as e:
            e.with_context(name, index)
            result.error = str(e)
            logger.warning("Skipping batch %s: %s", name, e)
        except EnumerationError as e:
            e.with_context(name, index)
            log.batch_failed(name, e)
            raise
        except Exception as e:
            error = EnumerationError(f"{type(e).__name__}: {e}", name, index)
            log.batch_failed(name, error)
            raise error from e

        result.new = counted_db.size() - num_before
        report.batches.append(result)
        if result.ok:
            log.batch_finished(name, result.accepted, result.new, result.filtered, kind)
        else:
            log.batch_failed(name, result.error)

    log.message("  DONE.\n")
    report.final_count = counted_db.size()
    log.message(f"# new {kind}: {report.new_count}")
    log.message(f"# {kind} in this project: {report.final_count}\n")
    return report


def _commit(db, label: str, log: ProgressLog) -> None:
    log.message(f"Write {label} database...", prefix=False)
    try:
        db.commit()
    except StorageError:
        log.message(f"  FAILED writing {label} database", prefix=False)
        raise
    log.message("  DONE", prefix=False)


def enumerate_configurations(options: EnumerationOptions,
                             make_generator: Callable[[str, Any], Iterable[Configuration]],
                             batches: Iterable[Tuple[str, Any]],
                             supercell_db: SupercellDatabase,
                             configuration_db: ConfigurationDatabase,
                             context: Optional[EnumerationContext] = None
                             ) -> EnumerationReport:
    """
    Enumerate configurations batch by batch into the databases.

    Args:
        options: see EnumerationOptions
        make_generator: (name, input) -> iterable of Configuration
        batches: ordered (name, input) pairs
        supercell_db, configuration_db: borrowed for the run; committed in
            that order unless options.dry_run
        context: progress log and run caches (created from options if None)

    Returns:
        EnumerationReport with per-batch and run-wide counters

    Raises:
        InvariantViolation: with batch_name/index attached; nothing committed
        EnumerationError: wraps any other failure inside a batch (chained),
            with batch_name/index attached; nothing committed
        StorageError: supercell commit failure skips the configuration commit
    """
    context = context or EnumerationContext(options=options)

    def insert(config, guaranteed):
        if guaranteed:
            insert_configuration(config, supercell_db, configuration_db)
        else:
            make_canonical_and_insert(config, supercell_db, configuration_db,
                                      options.primitive_only, context)

    report = _run_batches(options, make_generator, batches, configuration_db,
                          insert, context, "configurations")

    if not options.dry_run:
        _commit(supercell_db, "supercell", context.log)
        _commit(configuration_db, "configuration", context.log)
        report.committed = True
    context.log.end()
    return report


def enumerate_supercells(options: EnumerationOptions,
                         make_generator: Callable[[str, Any], Iterable[Supercell]],
                         batches: Iterable[Tuple[str, Any]],
                         supercell_db: SupercellDatabase,
                         context: Optional[EnumerationContext] = None
                         ) -> EnumerationReport:
    """Enumerate supercells batch by batch into the supercell database."""
    context = context or EnumerationContext(options=options)

    def insert(scel, guaranteed):
        if not guaranteed:
            scel = context.supercell_canonicalizer(scel.prim)(scel)
        supercell_db.insert(scel)

    report = _run_batches(options, make_generator, batches, supercell_db,
                          insert, context, "supercells")

    if not options.dry_run:
        _commit(supercell_db, "supercell", context.log)
        report.committed = True
    context.log.end()
    return report


# =============================================================================
# Main (Demo)
# =============================================================================

if __name__ == "__main__":
    from crystal import make_prim
    from enumerators import SupercellEnumerator, make_occupation_enumerator

    print("=" * 70)
    print("DEDUPLICATED ENUMERATION - DEMO (dry run)")
    print("=" * 70)

    prim = make_prim('cubic_P', ['A', 'B'])
    scel_db = SupercellDatabase(prim)
    config_db = ConfigurationDatabase(scel_db)

    batches = [(scel.name, scel) for scel in SupercellEnumerator(prim, 1, 4)]
    report = enumerate_configurations(
        EnumerationOptions(dry_run=True), make_occupation_enumerator,
        batches, scel_db, config_db)

    print(report.to_dataframe().to_string(index=False))
