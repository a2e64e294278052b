# micropay/oracle/store.py
"""
File-backed store for swap records.

The whole record set lives in a single JSON array. Every write replaces the file
atomically (temporary file in the same directory, fsync, rename), so an
interrupted write leaves the previous content intact.

The store serializes read-modify-write cycles made within one process (the API
and an embedded oracle thread may share it). It does not arbitrate between
processes: run exactly one oracle against a given file.
"""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from micropay.oracle.records import SwapRecord, SwapStatus

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base error for swap store failures."""


class StoreCorruptedError(StoreError):
    """Raised when the store file exists but cannot be parsed into records."""


class DuplicateSwapError(StoreError):
    """Raised when appending a record whose swap id is already stored."""


class SwapRecordStore:
    """JSON file store keyed by swap id."""

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def load_all(self) -> List[SwapRecord]:
        """
        Load every stored record.

        Returns:
            All records in file order; an empty list if the store does not exist yet

        Raises:
            StoreCorruptedError: If the file content is not a valid record list
        """
        with self._lock:
            if not self._path.exists():
                return []

            raw = self._path.read_text(encoding="utf-8")
            if not raw.strip():
                return []

            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                raise StoreCorruptedError(f"Swap store {self._path} is not valid JSON: {e}") from e

            if not isinstance(data, list):
                raise StoreCorruptedError(
                    f"Swap store {self._path} must contain a JSON array, got {type(data).__name__}"
                )

            try:
                return [SwapRecord.model_validate(item) for item in data]
            except ValidationError as e:
                raise StoreCorruptedError(f"Swap store {self._path} contains an invalid record: {e}") from e

    def save_all(self, records: Iterable[SwapRecord]) -> None:
        """Atomically replace the persisted record set."""
        payload = [record.to_storage() for record in records]

        with self._lock:
            directory = self._path.parent
            directory.mkdir(parents=True, exist_ok=True)

            fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                    f.write("\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                # Leave the previous store untouched
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                raise

        logger.debug(f"Saved {len(payload)} swap records to {self._path}")

    def get(self, swap_id: str) -> Optional[SwapRecord]:
        for record in self.load_all():
            if record.swap_id == swap_id:
                return record
        return None

    def append(self, record: SwapRecord) -> None:
        """
        Add a new record.

        Raises:
            DuplicateSwapError: If a record with the same swap id already exists
        """
        with self._lock:
            records = self.load_all()
            if any(existing.swap_id == record.swap_id for existing in records):
                raise DuplicateSwapError(f"Swap {record.swap_id} is already tracked")
            records.append(record)
            self.save_all(records)
        logger.info(f"Tracking new swap {record.swap_id} for content {record.content_id}")

    def upsert(self, record: SwapRecord) -> None:
        """Replace the stored record with the same swap id, appending it if absent."""
        with self._lock:
            records = self.load_all()
            for index, existing in enumerate(records):
                if existing.swap_id == record.swap_id:
                    records[index] = record
                    break
            else:
                records.append(record)
            self.save_all(records)

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in SwapStatus}
        for record in self.load_all():
            counts[record.status.value] += 1
        return counts
