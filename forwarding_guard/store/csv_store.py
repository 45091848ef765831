"""
CSV persistence for the forwarding history.

File layout (header row, UTF-8):
    Name,ForwardingAddress,FirstSeen,LastSeen,Guid,DisplayName

Timestamps are ISO-8601 UTC, Guid is the canonical UUID string.
DisplayName is optional on load so older files remain readable.
"""

from __future__ import annotations

import csv
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path

from ..forwarding.models import ForwardingRecord, ForwardingStore, as_utc, canonical_guid

logger = logging.getLogger("forwarding_guard.store")

FIELDS = ["Name", "ForwardingAddress", "FirstSeen", "LastSeen", "Guid", "DisplayName"]
REQUIRED_FIELDS = FIELDS[:5]


class PersistenceRefused(Exception):
    """Raised when a save would shrink the on-disk forwarding history."""
    def __init__(self, path: Path, on_disk: int, proposed: int):
        self.path = path
        self.on_disk = on_disk
        self.proposed = proposed
        super().__init__(
            f"Refusing to overwrite {path}: it holds {on_disk} records "
            f"but the new store has only {proposed}"
        )


class StoreFormatError(Exception):
    """Raised when the forwarding history file cannot be parsed."""
    pass


def _parse_timestamp(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))


def _row_to_record(row: dict, line: int) -> ForwardingRecord:
    missing = [f for f in REQUIRED_FIELDS if not (row.get(f) or "").strip()]
    if missing:
        raise StoreFormatError(f"Line {line}: missing value for {', '.join(missing)}")
    try:
        first_seen = _parse_timestamp(row["FirstSeen"])
        last_seen = _parse_timestamp(row["LastSeen"])
        guid = canonical_guid(row["Guid"])
    except ValueError as e:
        raise StoreFormatError(f"Line {line}: {e}") from e
    if last_seen < first_seen:
        raise StoreFormatError(f"Line {line}: LastSeen is earlier than FirstSeen")
    return ForwardingRecord(
        name=row["Name"].strip(),
        display_name=(row.get("DisplayName") or "").strip(),
        guid=guid,
        forwarding_address=row["ForwardingAddress"].strip(),
        first_seen=first_seen,
        last_seen=last_seen,
    )


class CsvForwardingStore:
    """Loads and saves a ForwardingStore to a single CSV file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> ForwardingStore:
        """Load the history. A missing file yields an empty store."""
        if not self.path.exists():
            logger.info(f"No forwarding history at {self.path}; starting empty.")
            return ForwardingStore()

        with open(self.path, "r", newline="", encoding="utf-8-sig") as fh:
            reader = csv.DictReader(fh)
            header = reader.fieldnames or []
            absent = [f for f in REQUIRED_FIELDS if f not in header]
            if absent:
                raise StoreFormatError(
                    f"{self.path}: missing column(s) {', '.join(absent)}"
                )
            records = [
                _row_to_record(row, line)
                for line, row in enumerate(reader, start=2)
            ]

        guids = {r.guid for r in records}
        if len(guids) != len(records):
            raise StoreFormatError(f"{self.path}: duplicate Guid rows")

        logger.info(f"Loaded {len(records)} forwarding records from {self.path}")
        return ForwardingStore.of(records)

    def count_on_disk(self) -> int:
        if not self.path.exists():
            return 0
        with open(self.path, "r", newline="", encoding="utf-8-sig") as fh:
            return sum(1 for _ in csv.DictReader(fh))

    def save(self, store: ForwardingStore) -> Path:
        """
        Write the store, replacing the file atomically.
        Raises PersistenceRefused without touching the file if the new
        store has fewer records than the existing one.
        """
        on_disk = self.count_on_disk()
        if len(store) < on_disk:
            logger.error(
                f"Save refused: {len(store)} records would replace {on_disk} in {self.path}"
            )
            raise PersistenceRefused(self.path, on_disk, len(store))

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as fh:
                writer = csv.DictWriter(fh, fieldnames=FIELDS)
                writer.writeheader()
                for r in store:
                    writer.writerow({
                        "Name": r.name,
                        "ForwardingAddress": r.forwarding_address,
                        "FirstSeen": r.first_seen.isoformat(),
                        "LastSeen": r.last_seen.isoformat(),
                        "Guid": r.guid,
                        "DisplayName": r.display_name,
                    })
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.info(f"Saved {len(store)} forwarding records to {self.path}")
        return self.path
