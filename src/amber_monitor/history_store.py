"""Bounded, deduplicated price history persisted as a JSON array.

Records are kept newest first. The file is read once at startup and
rewritten in full after every accepted append. Durability is best
effort: read/write failures are logged and the in-memory sequence stays
authoritative for the running process.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from amber_monitor.config import DEFAULT_CONFIG
from amber_monitor.schemas import HistoryRecord

logger = logging.getLogger(__name__)

_RECORDS = TypeAdapter(list[HistoryRecord])


class HistoryStore:
    """Append-only history capped at ``capacity`` records."""

    def __init__(
        self,
        path: Path = DEFAULT_CONFIG.history.path,
        capacity: int = DEFAULT_CONFIG.history.capacity,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._path = Path(path)
        self._capacity = capacity
        self._records: tuple[HistoryRecord, ...] = ()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._records)

    def records(self, limit: Optional[int] = None) -> list[HistoryRecord]:
        """Newest-first copy of the history, optionally only the first ``limit``."""
        records = self._records
        return list(records if limit is None else records[:limit])

    def head(self) -> Optional[HistoryRecord]:
        records = self._records
        return records[0] if records else None

    # ── Persistence ────────────────────────────────────────────────────

    def load(self) -> list[HistoryRecord]:
        """Read the durable store. A missing file is an empty history."""
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No existing price history at %s, starting fresh", self._path)
            self._records = ()
            return []
        except (OSError, UnicodeDecodeError):
            logger.error("Failed to read price history from %s", self._path, exc_info=True)
            return self.records()

        try:
            loaded = _RECORDS.validate_python(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            logger.error("Price history at %s is corrupt, ignoring it", self._path, exc_info=True)
            return self.records()

        self._records = tuple(loaded[: self._capacity])
        if len(loaded) > self._capacity:
            self._persist(self._records)
            logger.info("Cleaned up %d old price records", len(loaded) - self._capacity)
        logger.info("Loaded %d price history records from %s", len(self._records), self._path)
        return self.records()

    def _persist(self, records: tuple[HistoryRecord, ...]) -> bool:
        """Rewrite the whole file. A failed write leaves the old file intact."""
        payload = json.dumps(
            [r.model_dump(mode="json", by_alias=True) for r in records], indent=2,
        )
        tmp_name: Optional[str] = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp_name, self._path)
        except OSError:
            logger.error("Failed to save price history to %s", self._path, exc_info=True)
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            return False
        logger.debug("Saved %d price history records", len(records))
        return True

    # ── Mutation ───────────────────────────────────────────────────────

    def append(self, record: HistoryRecord) -> bool:
        """Insert ``record`` at the head and persist.

        Returns False (and changes nothing) when the head already has the
        same feed time. The new sequence is built aside and swapped in as
        a whole, so readers never see a half-applied append.
        """
        current = self._records
        if current and current[0].nem_time == record.nem_time:
            logger.debug("Skipping duplicate history record for %s", record.nem_time)
            return False

        updated = ((record,) + current)[: self._capacity]
        self._records = updated
        self._persist(updated)
        return True

    def range(self, start: datetime, end: datetime) -> list[HistoryRecord]:
        """Records captured between ``start`` and ``end`` inclusive, newest first."""
        return [r for r in self._records if start <= r.captured_at <= end]
