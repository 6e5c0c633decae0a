"""
Supercell and configuration databases.

Both are keyed, deduplicating containers: insert() returns the entry name
and whether the value was new. Entries live in memory until commit(), which
pickles plain data (HNF keys, occupations) to the database file. A database
without a path is memory-only; its commit() just marks the entries durable.

Configurations reference supercells by name, so a configuration can only be
inserted once its supercell is registered, and the supercell database must
be committed (and loaded) before the configuration database.
"""

from __future__ import annotations

import logging
import os
import pickle
from pathlib import Path
from typing import Any, Dict, Hashable, Iterator, List, Tuple

from crystal import Configuration, Prim, Supercell
from errors import InvalidInput, InvariantViolation, StorageError

logger = logging.getLogger(__name__)


class _PickleDatabase:
    """Insertion-ordered store of unique values with names."""

    kind = "object"

    def __init__(self, path=None):
        self.path = Path(path) if path else None
        self._entries: Dict[Hashable, Tuple[str, Any]] = {}
        self._by_name: Dict[str, Any] = {}
        self.n_committed = 0

    # --- subclass hooks ---

    def _key(self, value) -> Hashable:
        raise NotImplementedError

    def _new_name(self, value) -> str:
        raise NotImplementedError

    def _belongs(self, value) -> bool:
        return True

    def _check_insert(self, value) -> None:
        pass

    def _dump(self) -> Any:
        raise NotImplementedError

    # --- store contract ---

    def size(self) -> int:
        return len(self._entries)

    def __len__(self):
        return len(self._entries)

    def __contains__(self, value) -> bool:
        return self._belongs(value) and self._key(value) in self._entries

    def __iter__(self) -> Iterator[Any]:
        for _, value in self._entries.values():
            yield value

    def names(self) -> List[str]:
        return [name for name, _ in self._entries.values()]

    def find(self, name: str):
        """Value with the given name (KeyError if absent)."""
        return self._by_name[name]

    def insert(self, value) -> Tuple[str, bool]:
        """
        Insert value unless an equal one is stored. Returns (name, was_new).

        Raises:
            InvalidInput: if value belongs to a different prim
        """
        self._check_insert(value)
        key = self._key(value)
        existing = self._entries.get(key)
        if existing is not None:
            return existing[0], False
        name = self._new_name(value)
        self._entries[key] = (name, value)
        self._by_name[name] = value
        return name, True

    def commit(self) -> None:
        """
        Make the current entries durable.

        Raises:
            StorageError: if the database file cannot be written
        """
        if self.path is not None:
            tmp = self.path.with_name(self.path.name + ".tmp")
            try:
                with open(tmp, 'wb') as f:
                    pickle.dump(self._dump(), f)
                os.replace(tmp, self.path)
            except (OSError, pickle.PicklingError) as e:
                tmp.unlink(missing_ok=True)
                raise StorageError(
                    f"Could not write {self.kind} database {self.path}: {e}") from e
            logger.debug("Wrote %d %s entries to %s", len(self), self.kind, self.path)
        self.n_committed = len(self)

    def _read(self) -> Any:
        try:
            with open(self.path, 'rb') as f:
                return pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError) as e:
            raise StorageError(f"Could not read {self.kind} database {self.path}: {e}") from e

    def _restore(self, key: Hashable, name: str, value) -> None:
        self._entries[key] = (name, value)
        self._by_name[name] = value

    def __repr__(self):
        return f"{type(self).__name__}(size={len(self)}, path={self.path})"


class SupercellDatabase(_PickleDatabase):
    """Unique supercells of one prim, named by their HNF."""

    kind = "supercell"

    def __init__(self, prim: Prim, path=None):
        super().__init__(path)
        self.prim = prim
        if self.path is not None and self.path.exists():
            self.load()

    def _key(self, scel: Supercell):
        return scel.key

    def _new_name(self, scel: Supercell) -> str:
        return scel.name

    def _belongs(self, scel: Supercell) -> bool:
        return scel.prim is self.prim

    def _check_insert(self, scel: Supercell) -> None:
        if not self._belongs(scel):
            raise InvalidInput(f"{scel.name} belongs to a different prim")

    def _dump(self):
        return {'prim': self.prim.title, 'supercells': [scel.key for scel in self]}

    def load(self) -> None:
        data = self._read()
        for key in data['supercells']:
            scel = Supercell.from_key(self.prim, tuple(key))
            self._restore(scel.key, scel.name, scel)
        self.n_committed = len(self)


class ConfigurationDatabase(_PickleDatabase):
    """
    Unique configurations, named '{supercell name}/{k}'.

    Every configuration's supercell must already be in `supercell_db`.
    """

    kind = "configuration"

    def __init__(self, supercell_db: SupercellDatabase, path=None):
        super().__init__(path)
        self.supercell_db = supercell_db
        self._next_id: Dict[str, int] = {}
        if self.path is not None and self.path.exists():
            self.load()

    def _key(self, config: Configuration):
        return (config.supercell.key, config.occupation)

    def _new_name(self, config: Configuration) -> str:
        scel_name = config.supercell.name
        k = self._next_id.get(scel_name, 0)
        self._next_id[scel_name] = k + 1
        return f"{scel_name}/{k}"

    def _belongs(self, config: Configuration) -> bool:
        return config.supercell.prim is self.supercell_db.prim

    def _check_insert(self, config: Configuration) -> None:
        if not self._belongs(config):
            raise InvalidInput(
                f"Configuration in {config.supercell.name} belongs to a different prim")
        if config.supercell not in self.supercell_db:
            raise InvariantViolation(
                f"Supercell {config.supercell.name} must be inserted in the "
                f"supercell database before its configurations")

    def _dump(self):
        return {'configurations': [
            (name, config.supercell.name, config.occupation)
            for name, config in self._entries.values()
        ]}

    def load(self) -> None:
        data = self._read()
        for name, scel_name, occupation in data['configurations']:
            try:
                scel = self.supercell_db.find(scel_name)
            except KeyError:
                raise StorageError(
                    f"Configuration {name} references unknown supercell {scel_name}")
            config = Configuration(scel, occupation)
            self._restore(self._key(config), name, config)
            k = int(name.rsplit('/', 1)[1])
            self._next_id[scel_name] = max(self._next_id.get(scel_name, 0), k + 1)
        self.n_committed = len(self)

    def configurations_in(self, scel: Supercell) -> List[Configuration]:
        return [c for c in self if c.supercell == scel]
