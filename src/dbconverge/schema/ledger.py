"""
Ownership ledger (whitelist) for dbconverge.

Tracks, per module, every schema element the module has caused to exist.
Only whitelisted elements may ever be dropped. Entries are stored one
document per module and are replaced wholesale; two modules' histories are
never merged.
"""

import json
from abc import ABC, abstractmethod
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from .model import ElementId
from ..exceptions import LedgerError


logger = logging.getLogger(__name__)


WHITELIST_SUFFIX = ".whitelist.json"


@dataclass(frozen=True)
class WhitelistEntry:
    """Durable record of what one module has installed."""

    module: str
    version: str
    installed_elements: FrozenSet[ElementId] = field(default_factory=frozenset)

    def to_dict(self) -> Dict:
        return {
            "module": self.module,
            "version": self.version,
            "installed_elements": [e.to_dict() for e in sorted(self.installed_elements)],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "WhitelistEntry":
        return cls(
            module=data["module"],
            version=str(data.get("version", "0.0.0")),
            installed_elements=frozenset(
                ElementId.from_dict(item) for item in data.get("installed_elements", [])
            ),
        )


class WhitelistStore(ABC):
    """Persistence backend for whitelist entries."""

    @abstractmethod
    def load_all(self) -> List[WhitelistEntry]:
        """Return every stored entry."""

    @abstractmethod
    def save(self, entry: WhitelistEntry) -> None:
        """Replace the entry for ``entry.module``."""

    @abstractmethod
    def delete(self, module: str) -> None:
        """Remove a module's entry; a missing entry is not an error."""


class InMemoryWhitelistStore(WhitelistStore):
    """Whitelist store kept in memory (tests, dry runs)."""

    def __init__(self, entries: Optional[Iterable[WhitelistEntry]] = None):
        self.entries: Dict[str, WhitelistEntry] = {e.module: e for e in entries or []}

    def load_all(self) -> List[WhitelistEntry]:
        return list(self.entries.values())

    def save(self, entry: WhitelistEntry) -> None:
        self.entries[entry.module] = entry

    def delete(self, module: str) -> None:
        self.entries.pop(module, None)


class FileWhitelistStore(WhitelistStore):
    """One JSON document per module: ``<directory>/<module>.whitelist.json``."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def path_for(self, module: str) -> Path:
        return self.directory / f"{module}{WHITELIST_SUFFIX}"

    def load_all(self) -> List[WhitelistEntry]:
        if not self.directory.exists():
            return []

        entries = []
        for path in sorted(self.directory.glob(f"*{WHITELIST_SUFFIX}")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                entry = WhitelistEntry.from_dict(data)
            except (OSError, ValueError, KeyError) as e:
                raise LedgerError(
                    f"Invalid whitelist file {path}", {"path": str(path)}, e
                ) from e

            expected = path.name[: -len(WHITELIST_SUFFIX)]
            if entry.module != expected:
                raise LedgerError(
                    f"Whitelist file {path} belongs to module '{entry.module}'",
                    {"path": str(path), "expected_module": expected},
                )
            entries.append(entry)
        return entries

    def save(self, entry: WhitelistEntry) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.path_for(entry.module)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entry.to_dict(), f, indent=2, sort_keys=True)
                f.write("\n")
            os.replace(tmp_path, target)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise LedgerError(f"Failed to write whitelist {target}", cause=e) from e

    def delete(self, module: str) -> None:
        path = self.path_for(module)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise LedgerError(f"Failed to delete whitelist {path}", cause=e) from e


class OwnershipLedger:
    """In-memory view of the whitelist, written through to its store."""

    def __init__(self, store: Optional[WhitelistStore] = None):
        self.store = store or InMemoryWhitelistStore()
        self._entries: Dict[str, WhitelistEntry] = {}

    @classmethod
    def load(cls, store: WhitelistStore) -> "OwnershipLedger":
        ledger = cls(store)
        for entry in store.load_all():
            if entry.module in ledger._entries:
                raise LedgerError(f"Duplicate whitelist entry for module '{entry.module}'")
            ledger._entries[entry.module] = entry
        logger.debug(f"Loaded {len(ledger._entries)} whitelist entries")
        return ledger

    def record(self, module: str, version: str, elements: Iterable[ElementId]) -> WhitelistEntry:
        """Replace the module's entry with the given installed elements."""
        entry = WhitelistEntry(module, version, frozenset(elements))
        self.store.save(entry)
        self._entries[module] = entry
        logger.debug(
            f"Recorded whitelist for '{module}' v{version}: "
            f"{len(entry.installed_elements)} elements"
        )
        return entry

    def forget(self, module: str) -> None:
        """Remove the module's entry (module uninstalled)."""
        if module in self._entries:
            self.store.delete(module)
            del self._entries[module]
            logger.info(f"Forgot whitelist entry for module '{module}'")

    def is_owned(self, element_id: ElementId) -> bool:
        return any(element_id in e.installed_elements for e in self._entries.values())

    def owning_modules(self, element_id: ElementId) -> FrozenSet[str]:
        return frozenset(
            module
            for module, entry in self._entries.items()
            if element_id in entry.installed_elements
        )

    def entry(self, module: str) -> Optional[WhitelistEntry]:
        return self._entries.get(module)

    def entries(self) -> List[WhitelistEntry]:
        return [self._entries[m] for m in sorted(self._entries)]

    def whitelisted_elements(self) -> FrozenSet[ElementId]:
        result = set()
        for entry in self._entries.values():
            result.update(entry.installed_elements)
        return frozenset(result)

    @property
    def modules(self) -> FrozenSet[str]:
        return frozenset(self._entries)

    def to_dict(self) -> Dict[str, Dict]:
        return {module: self._entries[module].to_dict() for module in sorted(self._entries)}
