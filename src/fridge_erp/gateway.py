"""Transactional document-store facade over the master workbook.

Services never touch ``openpyxl`` directly. They read typed records through
:class:`PersistenceGateway` and hand every multi-collection mutation to
:meth:`PersistenceGateway.commit` as one :class:`UnitOfWork`. A commit either
lands completely on disk or not at all.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import SheetName
from .errors import MissingReferenceError, PersistenceCommitError


@dataclass
class UnitOfWork:
    """Mutations that must be committed together.

    ``upserts`` replace or insert whole records keyed by their id; ``appends``
    add records to append-only collections such as ``InventoryEvents``.
    """

    upserts: Dict[SheetName, List[Any]] = field(default_factory=dict)
    appends: Dict[SheetName, List[Any]] = field(default_factory=dict)

    def put(self, sheet: SheetName, record: Any) -> "UnitOfWork":
        self.upserts.setdefault(sheet, []).append(record)
        return self

    def put_all(self, sheet: SheetName, records) -> "UnitOfWork":
        for record in records:
            self.put(sheet, record)
        return self

    def append(self, sheet: SheetName, record: Any) -> "UnitOfWork":
        self.appends.setdefault(sheet, []).append(record)
        return self

    def append_all(self, sheet: SheetName, records) -> "UnitOfWork":
        for record in records:
            self.append(sheet, record)
        return self

    def touched(self) -> List[SheetName]:
        return sorted(set(self.upserts) | set(self.appends), key=lambda sheet: sheet.value)

    def is_empty(self) -> bool:
        return not any(self.upserts.values()) and not any(self.appends.values())


class PersistenceGateway:
    """Typed, cached access to the workbook collections with atomic commits."""

    def __init__(self, workbook: Workbook, data_file: Path) -> None:
        self.workbook = workbook
        self.data_file = Path(data_file)
        self._lock = threading.RLock()
        self._cache: Dict[SheetName, Dict[str, Any]] = {}

    @contextmanager
    def locked(self) -> Iterator["PersistenceGateway"]:
        """Hold the writer lock so reads and the following commit share one snapshot."""

        with self._lock:
            yield self

    def _bucket(self, sheet: SheetName) -> Dict[str, Any]:
        bucket = self._cache.get(sheet)
        if bucket is None:
            records = list(data_manager.iter_records(self.workbook, sheet))
            spec = data_manager.COLLECTIONS[sheet]
            bucket = {
                "all": records,
                "by_id": {spec.key_of(record): record for record in records},
            }
            self._cache[sheet] = bucket
            log.debug("Populated %s cache with %d entries", sheet.value, len(records))
        return bucket

    def _invalidate(self, *sheets: SheetName) -> None:
        if not sheets:
            return
        log.debug("Invalidating cache buckets: %s", ", ".join(sheet.value for sheet in sheets))
        for sheet in sheets:
            self._cache.pop(sheet, None)

    def list(self, sheet: SheetName) -> List[Any]:
        """Return every record of ``sheet`` in worksheet order."""

        with self._lock:
            return list(self._bucket(sheet)["all"])

    def by_id(self, sheet: SheetName) -> Dict[str, Any]:
        """Return a fresh ``id -> record`` mapping for ``sheet``."""

        with self._lock:
            return dict(self._bucket(sheet)["by_id"])

    def find(self, sheet: SheetName, record_id: str) -> Optional[Any]:
        with self._lock:
            return self._bucket(sheet)["by_id"].get(record_id)

    def get(self, sheet: SheetName, record_id: str) -> Any:
        """Return the record identified by ``record_id``.

        Raises:
            MissingReferenceError: If ``sheet`` holds no such record.
        """

        record = self.find(sheet, record_id)
        if record is None:
            log.warning("%s lookup failed for id '%s'", sheet.value, record_id)
            raise MissingReferenceError(f"Unknown {sheet.value} id: {record_id}")
        return record

    def put(self, sheet: SheetName, record: Any) -> None:
        self.commit(UnitOfWork().put(sheet, record))

    def bulk_put(self, sheet: SheetName, records) -> None:
        self.commit(UnitOfWork().put_all(sheet, records))

    def commit(self, mutations: UnitOfWork) -> None:
        """Apply ``mutations`` to the workbook and persist them atomically.

        The records are written into the live workbook, which is then saved to
        a temporary file that replaces the data file in one step. When any
        part fails the workbook is reloaded from disk, dropping the partially
        applied rows, and :class:`PersistenceCommitError` is raised.

        Args:
            mutations (UnitOfWork): Records to upsert and append.

        Raises:
            PersistenceCommitError: If validation, the in-memory apply, or the
                save fails. Nothing is persisted in that case.
        """

        if mutations.is_empty():
            return

        with self._lock:
            self._check_mutations(mutations)
            touched = mutations.touched()
            try:
                for sheet, records in mutations.upserts.items():
                    for record in records:
                        data_manager.upsert_record(self.workbook, sheet, record)
                for sheet, records in mutations.appends.items():
                    for record in records:
                        data_manager.append_record(self.workbook, sheet, record)
                data_manager.save_workbook(self.workbook, destination=self.data_file)
            except Exception as exc:
                log.error("Commit touching %s failed: %s", ", ".join(s.value for s in touched), exc)
                self._rollback()
                raise PersistenceCommitError(f"Failed to commit changes: {exc}", cause=exc) from exc
            finally:
                self._invalidate(*touched)

            log.info(
                "Committed %d upserts and %d appends to '%s'",
                sum(len(records) for records in mutations.upserts.values()),
                sum(len(records) for records in mutations.appends.values()),
                self.data_file,
            )

    def _check_mutations(self, mutations: UnitOfWork) -> None:
        for sheet, records in mutations.upserts.items():
            spec = data_manager.COLLECTIONS[sheet]
            if spec.append_only:
                raise PersistenceCommitError(f"{sheet.value} is append-only; records cannot be replaced")
            for record in records:
                if not isinstance(record, spec.row_type):
                    raise PersistenceCommitError(
                        f"{sheet.value} expects {spec.row_type.__name__}, got {type(record).__name__}"
                    )
        for sheet, records in mutations.appends.items():
            spec = data_manager.COLLECTIONS[sheet]
            existing = self._bucket(sheet)["by_id"]
            seen = set()
            for record in records:
                key = spec.key_of(record)
                if key in existing or key in seen:
                    raise PersistenceCommitError(f"Duplicate {sheet.value} id: {key}")
                seen.add(key)

    def _rollback(self) -> None:
        try:
            self.workbook = data_manager.refresh_workbook(self.data_file)
        except Exception as exc:
            log.error("Unable to reload workbook '%s' after failed commit: %s", self.data_file, exc)
            raise PersistenceCommitError(
                f"Commit failed and the workbook could not be reloaded: {exc}", cause=exc
            ) from exc
        finally:
            self._cache.clear()
        log.info("Reloaded workbook '%s' after failed commit", self.data_file)


__all__ = ["PersistenceGateway", "UnitOfWork"]
