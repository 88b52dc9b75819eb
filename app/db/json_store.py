"""
Flat JSON file storage: one file per collection, each file a JSON array of records
keyed by their "id" field.

Every write replaces the file atomically (temp file + os.replace), and every
read-modify-write runs under a per-collection lock, so concurrent callers in
the same process never lose updates or observe a half-written file.
"""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from app.reminders.errors import StorageError

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class JsonCollection:
    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.RLock()

    def _ensure_file(self) -> None:
        if self.path.exists():
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._write([])
        except OSError as exc:
            raise StorageError(f"Cannot create data file {self.path}: {exc}") from exc

    def _read(self) -> List[Record]:
        self._ensure_file()
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(f"Error reading data file {self.path}: {exc}")
            raise StorageError(f"Cannot read data file {self.path}: {exc}") from exc
        if not isinstance(data, list):
            raise StorageError(f"Data file {self.path} does not contain a JSON array")
        return data

    def _write(self, records: List[Record]) -> None:
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(records, fh, ensure_ascii=False, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(f"Error writing data file {self.path}: {exc}")
            raise StorageError(f"Cannot write data file {self.path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def all(self) -> List[Record]:
        with self._lock:
            return self._read()

    def get(self, record_id: str) -> Optional[Record]:
        with self._lock:
            for record in self._read():
                if record.get("id") == record_id:
                    return record
        return None

    def count(self) -> int:
        return len(self.all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def insert(self, record: Record) -> Record:
        with self._lock:
            records = self._read()
            if any(r.get("id") == record["id"] for r in records):
                raise StorageError(f"Duplicate id {record['id']} in {self.path.name}")
            records.append(record)
            self._write(records)
        return record

    def mutate(self, record_id: str, fn: Callable[[Record], Optional[Record]]) -> Optional[Record]:
        """
        Atomically replace one record with ``fn(record)``.

        Returns the new record, or None when the id is unknown or ``fn`` declines
        the change by returning None.
        """
        with self._lock:
            records = self._read()
            for index, record in enumerate(records):
                if record.get("id") != record_id:
                    continue
                updated = fn(dict(record))
                if updated is None:
                    return None
                updated["id"] = record_id
                records[index] = updated
                self._write(records)
                return updated
        return None

    def update(self, record_id: str, changes: Record) -> Optional[Record]:
        return self.mutate(record_id, lambda record: {**record, **changes})

    def mutate_where(self, predicate: Callable[[Record], bool], fn: Callable[[Record], Record]) -> int:
        """Apply ``fn`` to every record matching ``predicate``; returns how many changed."""
        with self._lock:
            records = self._read()
            changed = 0
            for index, record in enumerate(records):
                if predicate(record):
                    records[index] = fn(dict(record))
                    changed += 1
            if changed:
                self._write(records)
            return changed

    def delete(self, record_id: str) -> bool:
        with self._lock:
            records = self._read()
            remaining = [r for r in records if r.get("id") != record_id]
            if len(remaining) == len(records):
                return False
            self._write(remaining)
            return True


class JsonFileStore:
    """Hands out one JsonCollection per collection name under ``data_dir``."""

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        self._collections: Dict[str, JsonCollection] = {}
        self._lock = threading.Lock()

    def collection(self, name: str) -> JsonCollection:
        with self._lock:
            if name not in self._collections:
                self._collections[name] = JsonCollection(self.data_dir / f"{name}.json")
            return self._collections[name]
